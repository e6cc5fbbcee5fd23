"""Utility CLI for preparing the database and running maintenance by hand."""

from __future__ import annotations

import argparse
import sys
from datetime import date

from sqlalchemy.exc import SQLAlchemyError

from .database import get_database_settings, get_engine, prepare_schema
from .defaults import install_sample_tables
from .errors import RecurrenceError


def ensure_configured() -> None:
    if get_database_settings().is_memory:
        raise SystemExit(
            "SLOTSERIES_DB_URL is not set (or SLOTSERIES_DB_MODE=memory); "
            "cannot run database commands."
        )


def init_db(*, with_sample_table: bool = False) -> None:
    """Create the bookkeeping tables if they do not already exist."""
    ensure_configured()
    try:
        engine = get_engine()
        prepare_schema(engine)
        if with_sample_table:
            install_sample_tables(engine)
    except SQLAlchemyError as exc:
        raise SystemExit(f"Failed to prepare database: {exc}") from exc
    print("Database tables ensured.")


def run_sweep() -> None:
    """Run one expansion sweep and print a line per series."""
    ensure_configured()
    from .service import get_recurrence_service

    outcomes = get_recurrence_service().scheduler.sweep_once()
    for outcome in outcomes:
        print(
            f"series {outcome.series_id}: {outcome.status} "
            f"(created={outcome.created}, skipped={outcome.skipped}, "
            f"through={outcome.materialized_through})"
        )
    print(f"Sweep finished for {len(outcomes)} series.")


def expand_series(series_id: int, until: date) -> None:
    ensure_configured()
    from .service import get_recurrence_service

    try:
        outcome = get_recurrence_service().series.expand_instances(series_id, until)
    except RecurrenceError as exc:
        raise SystemExit(str(exc)) from exc
    print(
        f"series {outcome.series_id}: {outcome.status} "
        f"(created={outcome.created}, skipped={outcome.skipped}, "
        f"through={outcome.materialized_through})"
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Manage the slotseries SQL database.")
    sub = parser.add_subparsers(dest="command", required=True)

    init_parser = sub.add_parser("init", help="Create database tables.")
    init_parser.add_argument(
        "--with-sample-table",
        action="store_true",
        help="Also create the sample reservations target table.",
    )
    sub.add_parser("sweep", help="Extend every series that is due for expansion.")
    expand_parser = sub.add_parser("expand", help="Materialize one series up to a date.")
    expand_parser.add_argument("series_id", type=int, help="Series to expand.")
    expand_parser.add_argument(
        "--until",
        type=date.fromisoformat,
        required=True,
        help="Last date to materialize (YYYY-MM-DD).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    if args.command == "init":
        init_db(with_sample_table=args.with_sample_table)
    elif args.command == "sweep":
        run_sweep()
    elif args.command == "expand":
        expand_series(args.series_id, args.until)
    else:
        raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main(sys.argv[1:])
