from __future__ import annotations

from collections import Counter
from datetime import UTC, date, datetime

import pytest

from slotseries.domain import TimeRange
from slotseries.errors import (
    ConflictAbortError,
    GroupBusyError,
    GroupNotFoundError,
    InvalidSplitError,
    PermissionDeniedError,
    SeriesNotFoundError,
    TemplateValidationError,
    ValidationError,
)
from slotseries.recurrence import expand


def _book_blocker(service, day: int, month: int = 1, resource_id: int = 1) -> str:
    with service.session_factory() as session:
        ref = service.store.create_record(
            session,
            "reservations",
            {"resource_id": resource_id, "title": "Blocker"},
            TimeRange(
                datetime(2025, month, day, 13, 0, tzinfo=UTC),
                datetime(2025, month, day, 15, 0, tzinfo=UTC),
            ),
        )
        session.commit()
    return ref


# Creation --------------------------------------------------------------------


def test_create_series_materializes_six_month_horizon(service, make_definition, reservations):
    result = service.series.create_series(make_definition(group_color="#1a2b3c"), actor="alice")

    assert result.instances_created == 78
    assert result.instances_skipped == 0
    assert len(reservations(1)) == 78

    record = service.series.get_series(result.series_id)
    assert record.version_number == 1
    assert record.effective_from == date(2025, 1, 6)
    assert record.effective_until is None
    assert record.materialized_through == date(2025, 7, 6)
    assert record.created_by == "alice"
    assert record.status == "active"

    summary, versions = service.series.get_group(result.group_id)
    assert summary.group.display_name == "Team sync"
    assert summary.group.color == "#1A2B3C"
    assert summary.version_count == 1
    assert summary.current_series_id == result.series_id
    assert summary.active_instance_count == 78
    assert summary.status == "active"
    assert [item.id for item in versions] == [result.series_id]

    actions = [event.action for event in service.recent_events(series_id=result.series_id)]
    assert actions == ["series_created"]


def test_create_series_with_skip_policy_reports_skipped_dates(service, make_definition):
    blocker = _book_blocker(service, 8)

    result = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    assert result.instances_skipped == 1
    assert result.skipped_occurrences == [date(2025, 1, 8)]
    instances = service.series.list_instances(result.series_id)
    skipped = [item for item in instances if item.occurrence_date == date(2025, 1, 8)][0]
    assert skipped.state == "conflict_skipped"
    assert blocker in (skipped.exception_reason or "")


def test_create_series_with_abort_policy_leaves_no_trace(service, make_definition, reservations):
    _book_blocker(service, 8)

    with pytest.raises(ConflictAbortError):
        service.series.create_series(
            make_definition(conflict_policy="abort", expand_until=date(2025, 1, 31)),
            actor="alice",
        )

    assert service.series.list_groups() == []
    assert len(reservations()) == 1


@pytest.mark.parametrize(
    ("template", "match"),
    [
        ({"resource_id": 1, "colour": "red"}, "not a writable field"),
        ({"resource_id": 1, "created_at": "now"}, "cannot be set"),
        ({"resource_id": 1, "id": 99}, "cannot be set"),
        ({"title": "No resource"}, "Required field"),
    ],
)
def test_create_series_rejects_bad_templates(service, make_definition, template, match):
    with pytest.raises(TemplateValidationError, match=match):
        service.series.create_series(make_definition(template=template), actor="alice")


def test_time_fields_in_template_are_ignored(service, make_definition, reservations):
    template = {"resource_id": 1, "starts_at": "2030-01-01T00:00:00+00:00"}
    result = service.series.create_series(
        make_definition(template=template, expand_until=date(2025, 1, 6)), actor="alice"
    )

    assert result.instances_created == 1
    assert reservations()[0]["starts_at"] == "2025-01-06T14:00:00+00:00"
    assert "starts_at" not in service.series.get_series(result.series_id).template


@pytest.mark.parametrize(
    "overrides",
    [
        {"group_color": "blue"},
        {"group_name": "  "},
        {"rule": "FREQ=MINUTELY"},
        {"timezone": "Nowhere/City"},
        {"duration": "PT0S"},
        {"conflict_policy": "retry"},
    ],
)
def test_create_series_rejects_invalid_definitions(service, make_definition, overrides):
    with pytest.raises(ValidationError):
        service.series.create_series(make_definition(**overrides), actor="alice")


def test_create_series_requires_write_permission(service, make_definition, permissions):
    permissions.revoke("*", "*")
    permissions.grant("bob", "reservations")

    with pytest.raises(PermissionDeniedError):
        service.series.create_series(make_definition(), actor="alice")
    result = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 10)), actor="bob"
    )
    assert result.instances_created == 3


def test_preview_series_flags_conflicts_without_writing(service, make_definition, reservations):
    _book_blocker(service, 13)

    previewed = service.series.preview_series(make_definition(expand_until=date(2025, 1, 17)))

    assert [item.occurrence.local_date for item in previewed] == [
        date(2025, 1, 6),
        date(2025, 1, 8),
        date(2025, 1, 10),
        date(2025, 1, 13),
        date(2025, 1, 15),
        date(2025, 1, 17),
    ]
    assert [item.conflict.has_conflict for item in previewed] == [
        False,
        False,
        False,
        True,
        False,
        False,
    ]
    assert len(reservations()) == 1
    assert service.series.list_groups() == []


def test_adding_a_version_to_a_group_with_a_current_version_is_rejected(
    service, make_definition
):
    first = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 10)), actor="alice"
    )

    with pytest.raises(ValidationError, match="current version"):
        service.series.create_series(
            make_definition(group_id=first.group_id, template={"resource_id": 2}),
            actor="alice",
        )
    with pytest.raises(GroupNotFoundError):
        service.series.create_series(make_definition(group_id=999), actor="alice")


# Listing and on-demand extension ----------------------------------------------


def test_list_instances_extends_past_the_horizon(service, make_definition):
    result = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    instances = service.series.list_instances(result.series_id, until=date(2025, 2, 28))

    assert instances[-1].occurrence_date == date(2025, 2, 28)
    assert len(instances) == 24
    assert service.series.get_series(result.series_id).materialized_through == date(2025, 2, 28)


def test_list_instances_without_extension(service, make_definition):
    result = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    instances = service.series.list_instances(
        result.series_id, until=date(2025, 2, 28), extend=False
    )

    assert instances[-1].occurrence_date == date(2025, 1, 31)


def test_unknown_series_raises_not_found(service):
    with pytest.raises(SeriesNotFoundError):
        service.series.get_series(404)
    with pytest.raises(SeriesNotFoundError):
        service.series.update_template(404, {"title": "x"})


# Splitting -------------------------------------------------------------------


def test_split_preserves_one_record_per_occurrence(service, make_definition, reservations):
    created = service.series.create_series(make_definition(), actor="alice")

    successor_id = service.series.split_from_date(
        created.series_id,
        date(2025, 3, 3),
        new_template={"title": "Renamed"},
        actor="bob",
        reason="New name from March",
    )

    original = service.series.get_series(created.series_id)
    successor = service.series.get_series(successor_id)
    assert original.effective_until == date(2025, 3, 2)
    assert original.materialized_through == date(2025, 3, 2)
    assert successor.effective_from == date(2025, 3, 3)
    assert successor.effective_until is None
    assert successor.version_number == 2
    assert successor.group_id == original.group_id
    assert successor.anchor == datetime(2025, 3, 3, 14, 0, tzinfo=UTC)
    assert successor.template == {"resource_id": 1, "title": "Renamed"}
    assert successor.materialized_through == date(2025, 7, 6)

    before = service.series.list_instances(created.series_id)
    after = service.series.list_instances(successor_id)
    assert len(before) == 24
    assert len(after) == 54
    assert all(item.occurrence_date < date(2025, 3, 3) for item in before)
    assert all(item.occurrence_date >= date(2025, 3, 3) for item in after)

    dates = Counter(item.occurrence_date for item in before + after)
    assert all(count == 1 for count in dates.values())

    rows = reservations(1)
    assert len(rows) == 78
    titles = Counter(row["title"] for row in rows)
    assert titles == {"Team sync": 24, "Renamed": 54}

    # The truncated rule of the old version stops before the split date.
    remaining = expand(
        original.rule, original.anchor, original.duration, original.timezone
    )
    assert remaining[-1].local_date == date(2025, 2, 28)

    summary, versions = service.series.get_group(created.group_id)
    assert summary.version_count == 2
    assert summary.current_series_id == successor_id
    assert [item.version_number for item in versions] == [1, 2]


def test_split_moves_reconciled_records_to_new_anchor(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    successor_id = service.series.split_from_date(
        created.series_id,
        date(2025, 1, 20),
        new_anchor=datetime(2025, 1, 20, 9, 0, tzinfo=UTC),
        new_duration="PT1H",
        actor="alice",
    )

    moved = [row for row in reservations(1) if row["starts_at"] >= "2025-01-20"]
    assert len(moved) == 6
    assert all(row["starts_at"].endswith("T09:00:00+00:00") for row in moved)
    assert all(row["ends_at"].endswith("T10:00:00+00:00") for row in moved)
    assert service.series.get_series(successor_id).duration.total_seconds() == 3600


def test_split_of_count_rule_carries_remaining_count(service, make_definition):
    created = service.series.create_series(
        make_definition(rule="FREQ=WEEKLY;BYDAY=MO,WE,FR;COUNT=10"), actor="alice"
    )
    assert created.instances_created == 10

    successor_id = service.series.split_from_date(
        created.series_id, date(2025, 1, 20), actor="alice"
    )

    successor = service.series.get_series(successor_id)
    assert successor.rule == "FREQ=WEEKLY;BYDAY=MO,WE,FR;COUNT=4"
    assert [item.occurrence_date for item in service.series.list_instances(successor_id)] == [
        date(2025, 1, 20),
        date(2025, 1, 22),
        date(2025, 1, 24),
        date(2025, 1, 27),
    ]


def test_split_keeps_exception_instances_untouched(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    instances = service.series.list_instances(created.series_id)
    target = [item for item in instances if item.occurrence_date == date(2025, 1, 22)][0]
    service.occurrences.modify_occurrence(
        "reservations", target.target_ref, {"purpose": "Planning"}, actor="alice"
    )

    successor_id = service.series.split_from_date(
        created.series_id, date(2025, 1, 20), new_template={"title": "Renamed"}, actor="alice"
    )

    moved = service.series.list_instances(successor_id)
    exception = [item for item in moved if item.occurrence_date == date(2025, 1, 22)][0]
    assert exception.state == "modified"
    rows = {str(row["id"]): row for row in reservations()}
    assert rows[target.target_ref]["title"] == "Team sync"
    assert rows[target.target_ref]["purpose"] == "Planning"


@pytest.mark.parametrize("split_date", [date(2025, 1, 6), date(2025, 1, 1)])
def test_split_date_must_follow_effective_from(service, make_definition, split_date):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    with pytest.raises(InvalidSplitError):
        service.series.split_from_date(created.series_id, split_date, actor="alice")


def test_only_current_version_can_be_split(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    service.series.split_from_date(created.series_id, date(2025, 1, 20), actor="alice")

    with pytest.raises(InvalidSplitError, match="current version"):
        service.series.split_from_date(created.series_id, date(2025, 1, 27), actor="alice")


# Template, schedule, and status edits -----------------------------------------


def test_update_template_skips_exceptions_by_default(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    instances = service.series.list_instances(created.series_id)
    edited = instances[0]
    service.occurrences.modify_occurrence(
        "reservations", edited.target_ref, {"purpose": "Demo"}, actor="alice"
    )

    updated = service.series.update_template(
        created.series_id, {"title": "Weekly sync", "attendee_count": 8}, actor="bob"
    )

    assert updated == len(instances) - 1
    rows = {str(row["id"]): row for row in reservations()}
    assert rows[edited.target_ref]["title"] == "Team sync"
    others = [row for ref, row in rows.items() if ref != edited.target_ref]
    assert all(row["title"] == "Weekly sync" and row["attendee_count"] == 8 for row in others)

    record = service.series.get_series(created.series_id)
    assert record.template == {"resource_id": 1, "title": "Weekly sync", "attendee_count": 8}
    assert record.template_updated_by == "bob"


def test_update_template_can_include_exceptions(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 17)), actor="alice"
    )
    first = service.series.list_instances(created.series_id)[0]
    service.occurrences.modify_occurrence(
        "reservations", first.target_ref, {"title": "Special"}, actor="alice"
    )

    updated = service.series.update_template(
        created.series_id, {"title": "Everyone"}, skip_exceptions=False, actor="alice"
    )

    assert updated == 6
    assert {row["title"] for row in reservations()} == {"Everyone"}


def test_update_template_rejects_unknown_fields(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 17)), actor="alice"
    )

    with pytest.raises(TemplateValidationError):
        service.series.update_template(created.series_id, {"room": "B"}, actor="alice")


def test_update_schedule_replaces_non_exception_instances(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 2, 28)), actor="alice"
    )
    instances = service.series.list_instances(created.series_id)
    cancelled = instances[1]
    service.occurrences.cancel_occurrence("reservations", cancelled.target_ref, actor="alice")

    outcome = service.series.update_schedule(
        created.series_id,
        rule="FREQ=WEEKLY;BYDAY=TU",
        anchor=datetime(2025, 1, 7, 10, 0, tzinfo=UTC),
        actor="alice",
    )

    assert outcome.status == "expanded"
    assert outcome.created == 26
    assert outcome.materialized_through == date(2025, 7, 7)
    rows = reservations()
    assert len(rows) == 26
    assert all(row["starts_at"].endswith("T10:00:00+00:00") for row in rows)

    remaining = service.series.list_instances(created.series_id)
    history = [item for item in remaining if item.state == "cancelled"]
    assert [item.occurrence_date for item in history] == [cancelled.occurrence_date]
    record = service.series.get_series(created.series_id)
    assert record.rule == "FREQ=WEEKLY;BYDAY=TU"


def test_update_schedule_rejects_anchor_before_effective_from(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 17)), actor="alice"
    )

    with pytest.raises(ValidationError):
        service.series.update_schedule(
            created.series_id, anchor=datetime(2024, 12, 30, 14, 0, tzinfo=UTC), actor="alice"
        )


def test_paused_series_is_not_expanded(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 17)), actor="alice"
    )

    paused = service.series.set_status(created.series_id, "paused", actor="alice")
    outcome = service.series.expand_instances(created.series_id, date(2025, 2, 28))
    resumed = service.series.set_status(created.series_id, "active", actor="alice")

    assert paused.status == "paused"
    assert outcome.status == "skipped"
    assert resumed.status == "active"
    with pytest.raises(ValidationError):
        service.series.set_status(created.series_id, "sleeping", actor="alice")


# Groups and deletes ----------------------------------------------------------


def test_update_group_info(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 10)), actor="alice"
    )

    group = service.series.update_group_info(
        created.group_id, display_name="  ", description="Daily standup", color="#abcdef"
    )

    assert group.display_name == "Team sync"
    assert group.description == "Daily standup"
    assert group.color == "#ABCDEF"
    with pytest.raises(ValidationError):
        service.series.update_group_info(created.group_id, color="red")
    with pytest.raises(GroupNotFoundError):
        service.series.update_group_info(999, display_name="Ghost")


def test_delete_series_removes_records_and_empty_group(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )

    service.series.delete_series(created.series_id, actor="alice", reason="Cancelled course")

    assert reservations() == []
    assert service.series.list_groups() == []
    with pytest.raises(SeriesNotFoundError):
        service.series.get_series(created.series_id)
    events = service.recent_events(series_id=created.series_id)
    assert events[0].action == "series_deleted"
    assert events[0].reason == "Cancelled course"


def test_delete_series_keeps_group_with_other_versions(service, make_definition):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    successor_id = service.series.split_from_date(
        created.series_id, date(2025, 1, 20), actor="alice"
    )

    service.series.delete_series(successor_id, actor="alice")

    summary, versions = service.series.get_group(created.group_id)
    assert [item.id for item in versions] == [created.series_id]
    assert summary.current_series_id is None
    assert summary.status == "ended"


def test_delete_group_removes_every_version(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    service.series.split_from_date(created.series_id, date(2025, 1, 20), actor="alice")

    service.series.delete_group(created.group_id, actor="alice")

    assert reservations() == []
    with pytest.raises(GroupNotFoundError):
        service.series.get_group(created.group_id)
    actions = [event.action for event in service.recent_events(group_id=created.group_id)]
    assert actions[0] == "group_deleted"
    assert actions.count("series_deleted") == 2


def test_abort_policy_rolls_back_overlap_rejected_at_commit(
    service, make_definition, reservations
):
    # Daily slots longer than a day overlap each other, which only the storage guard sees.
    definition = make_definition(
        rule="FREQ=DAILY",
        duration="PT25H",
        conflict_policy="abort",
        expand_until=date(2025, 1, 31),
    )

    with pytest.raises(ConflictAbortError):
        service.series.create_series(definition, actor="alice")

    assert reservations() == []
    assert service.series.list_groups() == []


def test_delete_group_includes_version_split_off_while_waiting(
    service, make_definition, reservations, monkeypatch
):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    group_lease = service.group_lease
    original_hold = group_lease.hold
    state = {"split": False}

    def split_then_hold(row_ids, **kwargs):
        if not state["split"]:
            state["split"] = True
            service.series.split_from_date(created.series_id, date(2025, 1, 20), actor="bob")
        return original_hold(row_ids, **kwargs)

    monkeypatch.setattr(group_lease, "hold", split_then_hold)

    service.series.delete_group(created.group_id, actor="alice")

    assert state["split"] is True
    assert reservations() == []
    with pytest.raises(GroupNotFoundError):
        service.series.get_group(created.group_id)
    actions = [event.action for event in service.recent_events(group_id=created.group_id)]
    assert actions.count("series_deleted") == 2


def test_group_claim_blocks_split_and_delete(service, make_definition, reservations):
    created = service.series.create_series(
        make_definition(expand_until=date(2025, 1, 31)), actor="alice"
    )
    booked = reservations()
    assert service.group_lease.try_claim(created.group_id, "other-editor")

    with pytest.raises(GroupBusyError):
        service.series.split_from_date(created.series_id, date(2025, 1, 20), actor="alice")
    with pytest.raises(GroupBusyError):
        service.series.delete_group(created.group_id, actor="alice")
    with pytest.raises(GroupBusyError):
        service.series.delete_series(created.series_id, actor="alice")

    assert reservations() == booked
    assert service.series.get_series(created.series_id).effective_until is None

    service.group_lease.release(created.group_id, "other-editor")
    service.series.delete_group(created.group_id, actor="alice")
    assert reservations() == []
