import json

TARGET = {"academicYearId": 2025, "sessionType": "morning", "gradeLevel": "primary", "gradeNumber": 3, "classId": 3, "section": "A"}


def _walk_to_generate(client):
    assert client.post("/api/workflow/restore", json={"academic_year_id": 2025, "session_type": "morning"}).status_code == 200
    assert client.post("/api/workflow/steps/filter/complete", json={"target": TARGET}).json()["accepted"]
    for step in ("validate", "constraints"):
        assert client.post("/api/workflow/advance").json()["accepted"]
        assert client.post(f"/api/workflow/steps/{step}/complete", json={}).json()["accepted"]
    response = client.post("/api/workflow/advance")
    assert response.json()["state"]["current_step"] == "generate"


def test_state_starts_at_filter(client):
    response = client.get("/api/workflow")

    assert response.status_code == 200
    state = response.json()
    assert state["current_step"] == "filter"
    assert state["can_advance"] is False
    assert set(state["step_status"]) == {"filter", "validate", "constraints", "generate", "view", "conflicts", "export"}


def test_refused_transition_is_not_an_error(client):
    response = client.post("/api/workflow/advance")

    assert response.status_code == 200
    assert response.json()["accepted"] is False


def test_unknown_step_is_rejected(client):
    assert client.post("/api/workflow/jump/review").status_code == 422


def test_replace_gate_over_http(client):
    client.post("/api/workflow/restore", json={"academic_year_id": 2025, "session_type": "morning"})
    client.post("/api/workflow/steps/filter/complete", json={"target": TARGET})
    client.post("/api/workflow/existing-schedule", json={"has_existing_schedule": True, "existing_schedule_id": 42})

    assert client.post("/api/workflow/advance").json()["accepted"] is False

    update = {"has_existing_schedule": True, "existing_schedule_id": 42, "replace_confirmed": True}
    client.post("/api/workflow/existing-schedule", json=update)
    assert client.post("/api/workflow/advance").json()["accepted"] is True


def test_generate_preview_over_http(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    _walk_to_generate(client)

    response = client.post("/api/workflow/generate", json={"periods_per_day": 6})

    assert response.status_code == 200
    body = response.json()
    assert body["applied"] is True
    assert body["result"]["status"] == "ready"
    assert body["state"]["current_step"] == "view"
    assert body["state"]["phase"] == "preview_ready"
    assert len(body["state"]["preview_assignments"]) == 3


def test_generation_failure_carries_kind_and_status(client, remote):
    remote.on("POST", "/schedules/generate", {"detail": "Schedule Morning schedule - 2025 already exists"}, status_code=400)
    _walk_to_generate(client)

    response = client.post("/api/workflow/generate")

    assert response.status_code == 409
    failure = response.json()["result"]["failure"]
    assert failure["kind"] == "duplicate_name"
    assert failure["title"] == "Duplicate schedule"


def test_generation_events_stream(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    _walk_to_generate(client)

    response = client.post("/api/workflow/generate/events")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    events = [json.loads(line) for line in response.text.splitlines() if line]
    assert [event["kind"] for event in events] == ["started", "progress", "progress", "finished"]
    assert events[-1]["result"]["status"] == "ready"
    assert client.get("/api/workflow").json()["current_step"] == "view"


def test_generation_events_are_not_started_by_get(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    _walk_to_generate(client)

    response = client.get("/api/workflow/generate/events")

    assert response.status_code == 405
    assert remote.called("POST", "/schedules/generate") == []
    assert client.get("/api/workflow").json()["current_step"] == "generate"


def test_publish_duplicate_name_surfaces_as_typed_error(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    remote.on("POST", "/schedules/save-preview", {"detail": {"code": "duplicate_schedule_name", "message": "Name taken"}}, status_code=409)
    _walk_to_generate(client)
    client.post("/api/workflow/generate")

    response = client.post("/api/workflow/publish")

    assert response.status_code == 409
    assert response.json() == {
        "kind": "duplicate_name",
        "title": "Duplicate schedule",
        "message": "Name taken",
        "details": {"status": 409, "path": "/api/schedules/save-preview", "code": "duplicate_schedule_name"},
    }
    assert client.get("/api/workflow").json()["is_preview_mode"] is True


def test_publish_and_conflict_review_over_http(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    remote.on("POST", "/schedules/save-preview", {"success": True, "data": {"generation_status": "saved", "schedule_id": 42}})
    remote.on("GET", "/schedules/", [{"id": 501, "schedule_id": 42, "day_of_week": 1, "period_number": 1, "subject_id": 1}])
    remote.on(
        "GET",
        "/schedules/42/conflicts",
        {
            "conflicts": [
                {"id": "c1", "type": "teacher_double_booking", "severity": "critical", "description": "Clash"},
                {"id": "w1", "type": "constraint_violation", "severity": "warning", "can_override": True},
            ]
        },
    )
    _walk_to_generate(client)
    client.post("/api/workflow/generate")

    published = client.post("/api/workflow/publish").json()
    assert published["accepted"] is True
    assert published["schedule_id"] == 42
    assert published["analysis"]["can_publish"] is False
    assert published["state"]["committed_assignments"][0]["id"] == "501"

    critical = client.get("/api/workflow/conflicts", params={"severity": "critical"}).json()
    assert [c["id"] for c in critical["conflicts"]] == ["c1"]
    assert critical["pending_count"] == 2

    assert client.post("/api/workflow/conflicts/w1/resolve").json()["resolved_ids"] == ["w1"]
    assert client.post("/api/workflow/conflicts/c1/resolve").json()["resolved_ids"] == ["w1"]
    assert client.post("/api/workflow/conflicts/missing/resolve").status_code == 404

    assert client.post("/api/workflow/jump/conflicts").json()["accepted"] is True
    refused = client.post("/api/workflow/conflicts/publish").json()
    assert refused["accepted"] is False


def test_conflicts_require_a_committed_schedule(client):
    response = client.get("/api/workflow/conflicts")

    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


def test_context_change_and_reset(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    _walk_to_generate(client)
    client.post("/api/workflow/generate")

    changed = client.post("/api/workflow/context", json={"academic_year_id": 2026})
    assert changed.json()["accepted"] is True
    assert changed.json()["state"]["target"] is None

    state = client.post("/api/workflow/reset").json()
    assert state["current_step"] == "filter"
    assert state["academic_year_id"] == 2026


def test_visibility_signal(client):
    hidden = client.post("/api/workflow/visibility", json={"hidden": True})
    shown = client.post("/api/workflow/visibility", json={"hidden": False})

    assert hidden.json()["accepted"] is False
    assert shown.json()["accepted"] is False


def test_swap_over_http(client, remote, preview_response):
    remote.on("POST", "/schedules/generate", preview_response)
    _walk_to_generate(client)
    client.post("/api/workflow/generate")

    response = client.post(
        "/api/workflow/preview/swap",
        json={"first": {"day": 1, "period": 1}, "second": {"day": 1, "period": 2}},
    )

    assert response.json()["accepted"] is True
    assert response.json()["state"]["preview_assignments"][0]["subject_name"] == "Science"
