from __future__ import annotations

import os

import pytest
from fastapi.testclient import TestClient

# Ensure we operate against the in-memory database during tests.
os.environ["SLOTSERIES_DB_MODE"] = "memory"
os.environ["SLOTSERIES_DB_URL"] = ""

from slotseries import router as router_module  # noqa: E402
from slotseries.app import app  # noqa: E402

WEEKDAYS = "FREQ=WEEKLY;BYDAY=MO,WE,FR"


@pytest.fixture
def client(service, monkeypatch) -> TestClient:
    monkeypatch.setattr(router_module, "get_recurrence_service", lambda: service)
    return TestClient(app)


def _series_payload(**overrides: object) -> dict[str, object]:
    payload: dict[str, object] = {
        "targetTable": "reservations",
        "template": {"resource_id": 1, "title": "Standup"},
        "rule": WEEKDAYS,
        "anchor": "2025-01-06T14:00:00Z",
        "duration": "PT2H",
        "timezone": "UTC",
        "groupName": "Standup",
        "groupColor": "#00aa88",
        "expandUntil": "2025-01-31",
    }
    payload.update(overrides)
    return payload


def _create(client: TestClient, **overrides: object) -> dict[str, object]:
    response = client.post(
        "/api/series", json=_series_payload(**overrides), headers={"X-Actor": "alice"}
    )
    assert response.status_code == 201, response.text
    return response.json()


def _instances(client: TestClient, series_id: object) -> list[dict[str, object]]:
    response = client.get(f"/api/series/{series_id}/instances")
    assert response.status_code == 200
    return response.json()["instances"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_create_and_get_series(client):
    created = _create(client)

    assert created["instancesCreated"] == 12
    assert created["instancesSkipped"] == 0
    assert created["skippedOccurrences"] == []

    response = client.get(f"/api/series/{created['seriesId']}")
    assert response.status_code == 200
    detail = response.json()
    assert detail["groupId"] == created["groupId"]
    assert detail["versionNumber"] == 1
    assert detail["effectiveFrom"] == "2025-01-06"
    assert detail["effectiveUntil"] is None
    assert detail["durationSeconds"] == 7200
    assert detail["materializedThrough"] == "2025-01-31"
    assert detail["createdBy"] == "alice"
    assert detail["template"] == {"resource_id": 1, "title": "Standup"}


def test_create_series_validation_errors(client):
    bad_rule = client.post("/api/series", json=_series_payload(rule="FREQ=MINUTELY"))
    bad_table = client.post("/api/series", json=_series_payload(targetTable="rooms"))
    bad_color = client.post("/api/series", json=_series_payload(groupColor="teal"))
    missing = client.post("/api/series", json={"targetTable": "reservations"})

    assert bad_rule.status_code == 422
    assert "MINUTELY" in bad_rule.json()["detail"]
    assert bad_table.status_code == 422
    assert bad_color.status_code == 422
    assert missing.status_code == 422


def test_create_series_without_permission_is_forbidden(client, permissions):
    permissions.revoke("*", "*")

    response = client.post("/api/series", json=_series_payload(), headers={"X-Actor": "eve"})

    assert response.status_code == 403


def test_abort_policy_conflict_returns_409(client):
    _create(client, expandUntil="2025-01-10")

    response = client.post(
        "/api/series",
        json=_series_payload(
            groupName="Clash",
            anchor="2025-01-08T15:00:00Z",
            rule="FREQ=WEEKLY;BYDAY=WE",
            conflictPolicy="abort",
        ),
    )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["conflicts"][0]["occurrenceDate"] == "2025-01-08"
    assert detail["conflicts"][0]["conflictingRef"] is not None


def test_preview_series_counts_conflicts(client):
    _create(client, expandUntil="2025-01-10")

    response = client.post(
        "/api/series/preview",
        json=_series_payload(
            rule="FREQ=DAILY", anchor="2025-01-06T15:00:00Z", expandUntil="2025-01-12"
        ),
    )

    assert response.status_code == 200
    data = response.json()
    assert len(data["occurrences"]) == 7
    assert data["conflictCount"] == 3
    assert [item["hasConflict"] for item in data["occurrences"]][:3] == [True, False, True]


def test_unknown_series_returns_404(client):
    assert client.get("/api/series/404").status_code == 404
    assert client.post("/api/series/404/expand", json={"until": "2025-03-01"}).status_code == 404
    assert client.delete("/api/series/404").status_code == 404


def test_list_instances_extends_on_demand(client):
    created = _create(client)

    response = client.get(
        f"/api/series/{created['seriesId']}/instances", params={"until": "2025-02-14"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["materializedThrough"] == "2025-02-14"
    assert len(data["instances"]) == 18
    assert data["instances"][0]["occurrenceDate"] == "2025-01-06"
    assert data["instances"][0]["state"] == "active"


def test_expand_endpoint(client):
    created = _create(client)

    response = client.post(
        f"/api/series/{created['seriesId']}/expand", json={"until": "2025-02-28"}
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "expanded"
    assert data["created"] == 12
    assert data["materializedThrough"] == "2025-02-28"


def test_split_and_group_detail(client):
    created = _create(client)

    response = client.post(
        f"/api/series/{created['seriesId']}/split",
        json={"splitDate": "2025-01-20", "newTemplate": {"title": "Standup v2"}},
        headers={"X-Actor": "bob", "X-Reason": "New title"},
    )
    assert response.status_code == 201
    new_series_id = response.json()["newSeriesId"]

    group = client.get(f"/api/groups/{created['groupId']}").json()
    assert group["group"]["versionCount"] == 2
    assert group["group"]["currentSeriesId"] == new_series_id
    assert group["group"]["color"] == "#00AA88"
    assert [item["versionNumber"] for item in group["versions"]] == [1, 2]
    assert group["versions"][0]["effectiveUntil"] == "2025-01-19"

    events = client.get("/api/events", params={"seriesId": created["seriesId"]}).json()
    split_event = events["events"][0]
    assert split_event["action"] == "series_split"
    assert split_event["actor"] == "bob"
    assert split_event["reason"] == "New title"
    assert split_event["metadata"]["new_series_id"] == new_series_id


def test_invalid_split_date_is_rejected(client):
    created = _create(client)

    response = client.post(
        f"/api/series/{created['seriesId']}/split", json={"splitDate": "2025-01-06"}
    )

    assert response.status_code == 422


def test_template_update_endpoint(client):
    created = _create(client)

    response = client.patch(
        f"/api/series/{created['seriesId']}/template",
        json={"template": {"title": "Daily standup"}},
    )

    assert response.status_code == 200
    assert response.json() == {"seriesId": created["seriesId"], "updatedInstances": 12}


def test_schedule_update_requires_a_change(client):
    created = _create(client)

    empty = client.put(f"/api/series/{created['seriesId']}/schedule", json={})
    changed = client.put(
        f"/api/series/{created['seriesId']}/schedule",
        json={"rule": "FREQ=WEEKLY;BYDAY=MO", "reason": "Fewer meetings"},
    )

    assert empty.status_code == 422
    assert changed.status_code == 200
    assert changed.json()["status"] == "expanded"
    assert len(_instances(client, created["seriesId"])) == 26


def test_status_endpoint_pauses_series(client):
    created = _create(client)

    paused = client.patch(
        f"/api/series/{created['seriesId']}/status", json={"status": "paused"}
    )
    invalid = client.patch(
        f"/api/series/{created['seriesId']}/status", json={"status": "sleeping"}
    )

    assert paused.status_code == 200
    assert paused.json()["status"] == "paused"
    assert invalid.status_code == 422


def test_group_update_and_listing(client):
    created = _create(client)

    response = client.patch(
        f"/api/groups/{created['groupId']}",
        json={"displayName": "Morning standup", "description": "Everyone"},
    )
    listing = client.get("/api/groups").json()

    assert response.status_code == 200
    assert response.json()["group"]["displayName"] == "Morning standup"
    assert listing["groups"][0]["description"] == "Everyone"
    assert listing["groups"][0]["activeInstanceCount"] == 12
    assert listing["groups"][0]["status"] == "active"


def test_delete_series_and_group(client):
    first = _create(client)
    second = _create(client, groupName="Other", template={"resource_id": 2})

    assert client.delete(
        f"/api/series/{first['seriesId']}", headers={"X-Reason": "No longer needed"}
    ).status_code == 204
    assert client.delete(f"/api/groups/{second['groupId']}").status_code == 204
    assert client.get("/api/groups").json() == {"groups": []}
    assert client.get(f"/api/groups/{second['groupId']}").status_code == 404

    events = client.get("/api/events", params={"seriesId": first["seriesId"]}).json()
    assert events["events"][0]["reason"] == "No longer needed"


def test_occurrence_endpoints(client):
    created = _create(client)
    instances = _instances(client, created["seriesId"])
    first_ref = instances[0]["targetRef"]
    second_ref = instances[1]["targetRef"]
    third_ref = instances[2]["targetRef"]

    membership = client.get(
        "/api/occurrences/membership",
        params={"targetTable": "reservations", "targetId": first_ref},
    ).json()
    assert membership["isSeriesMember"] is True
    assert membership["groupName"] == "Standup"
    assert membership["occurrenceDate"] == "2025-01-06"

    modified = client.post(
        "/api/occurrences/modify",
        json={
            "targetTable": "reservations",
            "targetId": first_ref,
            "updates": {"title": "Demo day"},
        },
    )
    assert modified.status_code == 200
    assert modified.json() == {
        "targetTable": "reservations",
        "targetId": first_ref,
        "state": "modified",
    }

    rescheduled = client.post(
        "/api/occurrences/reschedule",
        json={
            "targetTable": "reservations",
            "targetId": second_ref,
            "start": "2025-01-08T17:00:00Z",
            "end": "2025-01-08T18:00:00Z",
        },
    )
    assert rescheduled.status_code == 204

    clash = client.post(
        "/api/occurrences/reschedule",
        json={
            "targetTable": "reservations",
            "targetId": third_ref,
            "start": "2025-01-08T17:30:00Z",
            "end": "2025-01-08T18:30:00Z",
        },
    )
    assert clash.status_code == 409

    cancelled = client.post(
        "/api/occurrences/cancel",
        json={"targetTable": "reservations", "targetId": third_ref, "reason": "Offsite"},
    )
    assert cancelled.status_code == 204

    states = [item["state"] for item in _instances(client, created["seriesId"])[:3]]
    assert states == ["modified", "rescheduled", "cancelled"]
    original = _instances(client, created["seriesId"])[1]
    assert original["originalStart"] == "2025-01-08T14:00:00Z"


def test_occurrence_edits_validate_payloads(client):
    empty_updates = client.post(
        "/api/occurrences/modify",
        json={"targetTable": "reservations", "targetId": "1", "updates": {}},
    )
    backwards = client.post(
        "/api/occurrences/reschedule",
        json={
            "targetTable": "reservations",
            "targetId": "1",
            "start": "2025-01-08T18:00:00Z",
            "end": "2025-01-08T17:00:00Z",
        },
    )
    unknown = client.post(
        "/api/occurrences/modify",
        json={"targetTable": "reservations", "targetId": "77", "updates": {"title": "x"}},
    )
    outsider = client.get(
        "/api/occurrences/membership", params={"targetTable": "reservations", "targetId": "77"}
    )

    assert empty_updates.status_code == 422
    assert backwards.status_code == 422
    assert unknown.status_code == 404
    assert outsider.json()["isSeriesMember"] is False


def test_conflict_preview_endpoint(client):
    _create(client)

    response = client.post(
        "/api/conflicts/preview",
        json={
            "targetTable": "reservations",
            "scopeValue": 1,
            "ranges": [
                {"start": "2025-01-06T15:00:00Z", "end": "2025-01-06T17:00:00Z"},
                {"start": "2025-01-06T16:00:00Z", "end": "2025-01-06T17:00:00Z"},
            ],
        },
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert [item["hasConflict"] for item in results] == [True, False]
    assert results[0]["conflictingRef"] is not None
    assert results[1]["index"] == 1


def test_sweep_endpoint(client):
    created = _create(client)

    response = client.post("/api/maintenance/sweep")

    assert response.status_code == 200
    outcomes = response.json()["outcomes"]
    assert outcomes[0]["seriesId"] == created["seriesId"]
    assert outcomes[0]["materializedThrough"] == "2025-03-02"


def test_events_endpoint_limits_results(client):
    _create(client)
    _create(client, groupName="Other", template={"resource_id": 2})

    response = client.get("/api/events", params={"limit": 1})
    too_many = client.get("/api/events", params={"limit": 1000})

    assert response.status_code == 200
    assert len(response.json()["events"]) == 1
    assert response.json()["events"][0]["action"] == "series_created"
    assert too_many.status_code == 422
