"""Notification collaborator used to tell series owners about paused series."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import requests  # type: ignore[import-untyped]
from loguru import logger
from requests import Response, Session


class NotificationError(RuntimeError):
    """Raised when a notification could not be delivered."""


class Notifier(Protocol):
    def notify(self, recipient: str | None, subject: str, payload: Mapping[str, Any]) -> None:
        ...


class LoggingNotifier(Notifier):
    """Default notifier that only writes to the log."""

    def notify(self, recipient: str | None, subject: str, payload: Mapping[str, Any]) -> None:
        logger.bind(recipient=recipient, **dict(payload)).warning(subject)


class WebhookNotifier(Notifier):
    """Posts notifications as JSON to a webhook endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: str | None = None,
        verify_ssl: bool = True,
        timeout: int = 10,
    ) -> None:
        self.url = url
        self.token = token
        self.verify_ssl = verify_ssl
        self.timeout = timeout
        self._session: Session | None = None

    def establish_connection(self) -> Session:
        """Initialize (or reuse) a requests.Session for the webhook."""
        if self._session is not None:
            return self._session

        session = requests.Session()
        session.verify = self.verify_ssl
        session.headers.update(
            {"Accept": "application/json", "Content-Type": "application/json"}
        )
        if self.token:
            session.headers["Authorization"] = f"Bearer {self.token}"

        self._session = session
        return session

    def notify(self, recipient: str | None, subject: str, payload: Mapping[str, Any]) -> None:
        session = self.establish_connection()
        try:
            response: Response = session.post(
                self.url,
                json={"recipient": recipient, "subject": subject, "payload": dict(payload)},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NotificationError(f"Webhook request failed: {exc}") from exc

        if not response.ok:
            raise NotificationError(
                f"Webhook request failed ({response.status_code}): {response.text}"
            )

    def close(self) -> None:
        """Close the underlying session if it was created."""
        if self._session is not None:
            self._session.close()
            self._session = None


def safe_notify(
    notifier: Notifier | None,
    recipient: str | None,
    subject: str,
    payload: Mapping[str, Any],
) -> bool:
    """Deliver a notification without ever failing the caller."""
    if notifier is None:
        return False
    try:
        notifier.notify(recipient, subject, payload)
    except Exception:  # noqa: BLE001 - delivery must never block expansion
        logger.bind(recipient=recipient, subject=subject).opt(exception=True).warning(
            "Notification delivery failed"
        )
        return False
    return True


__all__ = [
    "LoggingNotifier",
    "NotificationError",
    "Notifier",
    "WebhookNotifier",
    "safe_notify",
]
