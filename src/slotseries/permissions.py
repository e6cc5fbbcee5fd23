"""Write-permission collaborator consulted before acting on a creator's behalf."""

from __future__ import annotations

import json
import os
from collections.abc import Iterable, Mapping
from functools import lru_cache
from typing import Protocol

from loguru import logger

WILDCARD = "*"


class PermissionChecker(Protocol):
    """Port answering whether an identity may write to a target table."""

    def can_write(self, actor: str | None, table: str) -> bool:
        ...


class AllowAllPermissions(PermissionChecker):
    """Adapter used when the deployment has no authorization engine."""

    def can_write(self, actor: str | None, table: str) -> bool:
        return True


class StaticPermissions(PermissionChecker):
    """Adapter that checks grants held in memory.

    ``grants`` maps an actor to the tables it may write; ``*`` matches any
    actor or any table.
    """

    def __init__(self, grants: Mapping[str, Iterable[str]]) -> None:
        self._grants: dict[str, frozenset[str]] = {
            actor.lower(): frozenset(tables) for actor, tables in grants.items()
        }

    def grant(self, actor: str, table: str) -> None:
        key = actor.lower()
        self._grants[key] = self._grants.get(key, frozenset()) | {table}

    def revoke(self, actor: str, table: str) -> None:
        key = actor.lower()
        self._grants[key] = self._grants.get(key, frozenset()) - {table}

    def can_write(self, actor: str | None, table: str) -> bool:
        for key in (actor.lower() if actor else None, WILDCARD):
            if key is None:
                continue
            tables = self._grants.get(key, frozenset())
            if table in tables or WILDCARD in tables:
                return True
        return False


@lru_cache
def get_permission_checker() -> PermissionChecker:
    """Return the configured permission checker.

    ``SLOTSERIES_WRITE_GRANTS`` holds a JSON object of actor to table list;
    without it every actor may write everywhere.
    """
    raw = os.getenv("SLOTSERIES_WRITE_GRANTS")
    if not raw:
        return AllowAllPermissions()
    try:
        grants = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError("SLOTSERIES_WRITE_GRANTS must be a JSON object.") from exc
    if not isinstance(grants, dict):
        raise RuntimeError("SLOTSERIES_WRITE_GRANTS must be a JSON object.")
    logger.bind(actors=len(grants)).info("Loaded static write grants")
    return StaticPermissions(grants)


__all__ = [
    "AllowAllPermissions",
    "PermissionChecker",
    "StaticPermissions",
    "get_permission_checker",
]
