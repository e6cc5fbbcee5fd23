"""SQLAlchemy ORM models for series groups, series versions, instances, and audit events."""

from __future__ import annotations

from datetime import date

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base for ORM models."""


class SeriesGroupModel(Base):
    """User-facing container unifying every version of one recurring schedule."""

    __tablename__ = "series_groups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    color: Mapped[str | None] = mapped_column(String(7), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)
    updated_at: Mapped[str] = mapped_column(String(64), nullable=False)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_until: Mapped[str | None] = mapped_column(String(64), nullable=True)


class SeriesModel(Base):
    """One versioned recurrence definition."""

    __tablename__ = "series"
    __table_args__ = (
        Index("ix_series_group", "group_id"),
        Index("ix_series_expansion", "status", "effective_until", "materialized_through"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    group_id: Mapped[int] = mapped_column(
        ForeignKey("series_groups.id", ondelete="CASCADE"), nullable=False
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_until: Mapped[date | None] = mapped_column(Date, nullable=True)
    target_table: Mapped[str] = mapped_column(String(128), nullable=False)
    template_json: Mapped[str] = mapped_column(Text, nullable=False)
    rule: Mapped[str] = mapped_column(Text, nullable=False)
    anchor: Mapped[str] = mapped_column(String(64), nullable=False)
    duration_seconds: Mapped[int] = mapped_column(Integer, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    materialized_through: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)
    template_updated_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    template_updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_until: Mapped[str | None] = mapped_column(String(64), nullable=True)


class InstanceModel(Base):
    """Junction row mapping one occurrence date to at most one target record."""

    __tablename__ = "series_instances"
    __table_args__ = (
        UniqueConstraint("series_id", "occurrence_date", name="uq_instance_series_date"),
        UniqueConstraint("target_table", "target_ref", name="uq_instance_target"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    series_id: Mapped[int] = mapped_column(
        ForeignKey("series.id", ondelete="CASCADE"), nullable=False, index=True
    )
    occurrence_date: Mapped[date] = mapped_column(Date, nullable=False)
    target_table: Mapped[str] = mapped_column(String(128), nullable=False)
    target_ref: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_exception: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    exception_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    original_start: Mapped[str | None] = mapped_column(String(64), nullable=True)
    original_end: Mapped[str | None] = mapped_column(String(64), nullable=True)
    exception_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    exception_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    exception_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[str] = mapped_column(String(64), nullable=False)


class SeriesEventModel(Base):
    """Audit log entries for series and occurrence changes."""

    __tablename__ = "series_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    actor: Mapped[str | None] = mapped_column(String(255), nullable=True)
    series_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    group_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
