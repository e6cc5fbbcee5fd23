"""Recurring series of time-slot records, exposed as a FastAPI application."""

from __future__ import annotations

from .app import app

__all__ = ["app"]
