"""Recurrence rule validation and expansion into concrete UTC occurrences."""

from __future__ import annotations

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr
from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from .domain import Occurrence
from .errors import RuleValidationError, TimezoneValidationError, ValidationError

SUPPORTED_FREQUENCIES = ("HOURLY", "DAILY", "WEEKLY", "MONTHLY", "YEARLY")
SUBHOURLY_FREQUENCIES = ("SECONDLY", "MINUTELY")
MAX_EXPANSION_SPAN_MONTHS = 24
DEFAULT_MAX_COUNT = 1000

_DURATION_ADAPTER = TypeAdapter(timedelta)
_UNTIL_FORMATS = ("%Y%m%dT%H%M%SZ", "%Y%m%dT%H%M%S", "%Y%m%d")


# Rule text -------------------------------------------------------------------


def parse_rule_parts(rule: str) -> dict[str, str]:
    """Split ``FREQ=WEEKLY;BYDAY=MO`` into an ordered key/value mapping."""
    text = (rule or "").strip()
    if text.upper().startswith("RRULE:"):
        text = text[len("RRULE:") :]
    parts: dict[str, str] = {}
    for chunk in text.split(";"):
        chunk = chunk.strip()
        if not chunk:
            continue
        if "=" not in chunk:
            raise RuleValidationError(f"Malformed recurrence rule part: {chunk!r}")
        key, value = chunk.split("=", 1)
        key = key.strip().upper()
        if not key or not value.strip():
            raise RuleValidationError(f"Malformed recurrence rule part: {chunk!r}")
        if key in parts:
            raise RuleValidationError(f"Duplicate recurrence rule part: {key}")
        parts[key] = value.strip().upper()
    return parts


def format_rule_parts(parts: dict[str, str]) -> str:
    ordered = dict(parts)
    freq = ordered.pop("FREQ", None)
    items = ([("FREQ", freq)] if freq else []) + list(ordered.items())
    return ";".join(f"{key}={value}" for key, value in items)


def is_terminated(rule: str) -> bool:
    parts = parse_rule_parts(rule)
    return "COUNT" in parts or "UNTIL" in parts


def rule_count(rule: str) -> int | None:
    value = parse_rule_parts(rule).get("COUNT")
    return int(value) if value is not None else None


def _parse_until(value: str) -> datetime | date:
    for fmt in _UNTIL_FORMATS:
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        if fmt.endswith("Z"):
            return parsed.replace(tzinfo=UTC)
        if fmt == "%Y%m%d":
            return parsed.date()
        return parsed
    raise RuleValidationError(f"UNTIL value {value!r} is not a valid date or date-time.")


def _local_rule_text(parts: dict[str, str], zone: ZoneInfo) -> str:
    """Rewrite UNTIL as a naive local value so it matches a naive local DTSTART."""
    local = dict(parts)
    until_raw = local.get("UNTIL")
    if until_raw is not None:
        until = _parse_until(until_raw)
        if isinstance(until, datetime):
            if until.tzinfo is not None:
                until = until.astimezone(zone).replace(tzinfo=None)
        else:
            until = datetime.combine(until, time(23, 59, 59))
        local["UNTIL"] = until.strftime("%Y%m%dT%H%M%S")
    return format_rule_parts(local)


def validate_rule(rule: str, *, allow_unterminated: bool = True) -> str:
    """Validate ``rule`` and return its normalised text.

    Sub-hourly frequencies are rejected outright, as are rules that could emit
    several occurrences per hour through BYMINUTE or BYSECOND lists.
    """
    parts = parse_rule_parts(rule)
    if not parts:
        raise RuleValidationError("Recurrence rule is required.")

    freq = parts.get("FREQ")
    if freq is None:
        raise RuleValidationError("Recurrence rule must include FREQ.")
    if freq in SUBHOURLY_FREQUENCIES:
        raise RuleValidationError(
            f"FREQ={freq} is not allowed; the smallest supported frequency is HOURLY."
        )
    if freq not in SUPPORTED_FREQUENCIES:
        raise RuleValidationError(f"Unsupported recurrence frequency: {freq}")

    if "COUNT" in parts and "UNTIL" in parts:
        raise RuleValidationError("COUNT and UNTIL cannot be combined in one rule.")
    if "COUNT" in parts:
        try:
            count = int(parts["COUNT"])
        except ValueError as exc:
            raise RuleValidationError("COUNT must be a positive integer.") from exc
        if count < 1:
            raise RuleValidationError("COUNT must be a positive integer.")
    if "UNTIL" in parts:
        _parse_until(parts["UNTIL"])
    if not allow_unterminated and "COUNT" not in parts and "UNTIL" not in parts:
        raise RuleValidationError(
            "Recurrence rule must end with COUNT or UNTIL in this deployment."
        )
    for key in ("BYMINUTE", "BYSECOND"):
        if key in parts and "," in parts[key]:
            raise RuleValidationError(f"{key} may only list a single value.")
    if "DTSTART" in parts:
        raise RuleValidationError("DTSTART is supplied by the series anchor, not the rule.")

    try:
        rrulestr(_local_rule_text(parts, ZoneInfo("UTC")), dtstart=datetime(2000, 1, 1))
    except (ValueError, TypeError) as exc:
        raise RuleValidationError(f"Recurrence rule could not be parsed: {exc}") from exc
    return format_rule_parts(parts)


def truncate_rule(rule: str, last_day: date, timezone: str) -> str:
    """Return ``rule`` ending at the close of ``last_day`` in local time."""
    zone = resolve_timezone(timezone)
    parts = parse_rule_parts(rule)
    parts.pop("COUNT", None)
    parts.pop("UNTIL", None)
    end_of_day = localize(datetime.combine(last_day, time(23, 59, 59)), zone)
    parts["UNTIL"] = end_of_day.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")
    return format_rule_parts(parts)


def with_count(rule: str, count: int) -> str:
    parts = parse_rule_parts(rule)
    parts.pop("UNTIL", None)
    parts["COUNT"] = str(count)
    return format_rule_parts(parts)


# Inputs ----------------------------------------------------------------------


def resolve_timezone(name: str) -> ZoneInfo:
    if not name or not name.strip():
        raise TimezoneValidationError("Timezone is required.")
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise TimezoneValidationError(f"Unknown timezone: {name}") from exc


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """Accept ISO-8601 durations such as ``PT2H``, seconds, or timedeltas."""
    try:
        duration = _DURATION_ADAPTER.validate_python(value)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid duration: {value!r}") from exc
    if duration <= timedelta(0):
        raise ValidationError("Duration must be positive.")
    return duration


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# DST handling ----------------------------------------------------------------


def localize(naive: datetime, zone: ZoneInfo) -> datetime:
    """Attach ``zone`` to a wall-clock time.

    Ambiguous times take the earlier instant (``fold=0``). Times inside a
    spring-forward gap move to the transition instant, the first valid local
    time after the gap.
    """
    candidate = naive.replace(tzinfo=zone, fold=0)
    if candidate.astimezone(UTC).astimezone(zone).replace(tzinfo=None) == naive:
        return candidate

    before = naive.replace(tzinfo=zone, fold=1).astimezone(UTC)
    after = candidate.astimezone(UTC)
    if after < before:
        before, after = after, before
    target_offset = after.astimezone(zone).utcoffset()
    low, high = 0, int((after - before).total_seconds())
    while low < high:
        middle = (low + high) // 2
        probe = before + timedelta(seconds=middle)
        if probe.astimezone(zone).utcoffset() == target_offset:
            high = middle
        else:
            low = middle + 1
    return (before + timedelta(seconds=low)).astimezone(zone)


def local_anchor(anchor: datetime, timezone: str) -> datetime:
    zone = resolve_timezone(timezone)
    return ensure_utc(anchor).astimezone(zone)


def horizon_end(anchor: datetime, timezone: str, months: int) -> date:
    """Inclusive last local date of a horizon of ``months`` from the anchor."""
    return (local_anchor(anchor, timezone) + relativedelta(months=months)).date()


def hard_ceiling(today: date, anchor_date: date, max_months: int) -> date:
    return max(today, anchor_date) + relativedelta(months=max_months)


# Expansion -------------------------------------------------------------------


def expand(
    rule: str,
    anchor: datetime,
    duration: timedelta,
    timezone: str,
    from_date: date | None = None,
    until_date: date | None = None,
    max_count: int = DEFAULT_MAX_COUNT,
) -> list[Occurrence]:
    """Expand ``rule`` into ordered occurrences between two local dates.

    The rule is evaluated in local wall-clock time starting at the anchor, and
    every start is converted back to UTC. ``from_date`` and ``until_date`` are
    inclusive local dates; a single call never spans more than
    ``MAX_EXPANSION_SPAN_MONTHS`` and never yields more than ``max_count``
    occurrences. At most one occurrence is produced per local date.
    """
    if max_count < 1:
        return []
    if duration <= timedelta(0):
        raise ValidationError("Duration must be positive.")
    zone = resolve_timezone(timezone)
    parts = parse_rule_parts(validate_rule(rule))

    start_local = ensure_utc(anchor).astimezone(zone).replace(tzinfo=None)
    window_first = max(from_date or start_local.date(), start_local.date())
    span_limit = window_first + relativedelta(months=MAX_EXPANSION_SPAN_MONTHS)
    window_last = min(until_date, span_limit) if until_date is not None else span_limit
    if window_last < window_first:
        return []

    recurrence = rrulestr(_local_rule_text(parts, zone), dtstart=start_local)
    window_start = datetime.combine(window_first, time.min)
    window_end = datetime.combine(window_last + timedelta(days=1), time.min)

    occurrences: list[Occurrence] = []
    last_date: date | None = None
    for local_start in recurrence.xafter(window_start, inc=True):
        if local_start >= window_end:
            break
        if local_start.date() == last_date:
            continue
        last_date = local_start.date()
        start = localize(local_start, zone).astimezone(UTC)
        occurrences.append(Occurrence(local_start.date(), start, start + duration))
        if len(occurrences) >= max_count:
            break

    logger.bind(
        rule=format_rule_parts(parts),
        timezone=timezone,
        from_date=str(window_first),
        until_date=str(window_last),
        count=len(occurrences),
    ).debug("Expanded recurrence rule")
    return occurrences


def first_occurrence_on_or_after(
    rule: str, anchor: datetime, duration: timedelta, timezone: str, day: date
) -> Occurrence | None:
    found = expand(rule, anchor, duration, timezone, from_date=day, max_count=1)
    return found[0] if found else None


__all__ = [
    "DEFAULT_MAX_COUNT",
    "MAX_EXPANSION_SPAN_MONTHS",
    "SUPPORTED_FREQUENCIES",
    "ensure_utc",
    "expand",
    "first_occurrence_on_or_after",
    "format_rule_parts",
    "hard_ceiling",
    "horizon_end",
    "is_terminated",
    "local_anchor",
    "localize",
    "parse_duration",
    "parse_rule_parts",
    "resolve_timezone",
    "rule_count",
    "truncate_rule",
    "validate_rule",
    "with_count",
]
