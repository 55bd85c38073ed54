import asyncio

import httpx
import pytest

from scheduleflow.core.exceptions import (
    AppError,
    CollaboratorError,
    CollaboratorUnavailableError,
    DuplicateScheduleNameError,
    EmptyPreviewError,
    FailureKind,
    ResourceNotFoundError,
)
from scheduleflow.schemas.generator import FailureInfo
from scheduleflow.services.generation import build_generation_request
from scheduleflow.services.schedules_client import error_from_response, is_duplicate_name, unwrap_envelope


def _response(status_code, body):
    request = httpx.Request("POST", "http://schedules.test/api/schedules/generate")
    return httpx.Response(status_code, json=body, request=request)


def test_app_error_defaults():
    err = AppError("Generic error")
    assert err.status_code == 500
    assert err.details == {}
    assert err.to_payload() == {
        "kind": "internal",
        "title": "Unexpected error",
        "message": "Generic error",
        "details": {},
    }


def test_error_kinds_are_distinct():
    assert DuplicateScheduleNameError("taken").kind is FailureKind.duplicate_name
    assert DuplicateScheduleNameError("taken").status_code == 409
    assert CollaboratorUnavailableError("down").kind is FailureKind.transport
    assert CollaboratorUnavailableError("down").status_code == 503
    assert EmptyPreviewError().kind is FailureKind.empty_preview
    assert ResourceNotFoundError("Schedule", "7").message == "Schedule with id 7 not found"
    assert isinstance(DuplicateScheduleNameError("taken"), CollaboratorError)


def test_failure_info_from_error():
    info = FailureInfo.from_error(DuplicateScheduleNameError("Name taken", details={"code": "duplicate_schedule_name"}))

    assert info.kind is FailureKind.duplicate_name
    assert info.title == "Duplicate schedule"
    assert info.status_code == 409
    assert info.details == {"code": "duplicate_schedule_name"}


@pytest.mark.parametrize(
    "message",
    ["يوجد بالفعل جدول باسم الصباحي", "Schedule X already exists", "جدول باسم الصباحي موجود"],
)
def test_duplicate_name_markers(message):
    assert is_duplicate_name(message) is True


def test_structured_code_overrides_message_markers():
    assert is_duplicate_name("Schedule X already exists", code="validation_failed") is False
    assert is_duplicate_name("anything", code="duplicate_schedule_name") is True


def test_client_errors_keep_their_status():
    err = error_from_response(_response(422, {"detail": [{"msg": "field required"}, {"msg": "bad date"}]}))

    assert type(err) is CollaboratorError
    assert err.status_code == 422
    assert err.message == "field required; bad date"
    assert err.details["path"] == "/api/schedules/generate"


def test_server_errors_map_to_bad_gateway():
    err = error_from_response(_response(503, {}))

    assert err.status_code == 502
    assert "HTTP 503" in err.message


def test_envelope_unwrapping():
    assert unwrap_envelope({"success": True, "data": [1, 2]}) == [1, 2]
    assert unwrap_envelope({"items": []}) == {"items": []}

    with pytest.raises(CollaboratorError) as excinfo:
        unwrap_envelope({"success": False, "message": "Class has no subjects", "errors": ["grade 3"]})
    assert excinfo.value.details == {"errors": ["grade 3"]}

    with pytest.raises(DuplicateScheduleNameError):
        unwrap_envelope({"success": False, "message": "x", "code": "duplicate_schedule_name"})


def test_malformed_generation_body_is_a_collaborator_error(schedules_client, remote, target, settings):
    remote.on("POST", "/schedules/generate", {"total_assignments_created": "lots", "warnings": "x"})

    with pytest.raises(CollaboratorError) as excinfo:
        asyncio.run(schedules_client.generate(build_generation_request(target, None, settings)))

    assert excinfo.value.kind is FailureKind.collaborator
    assert excinfo.value.status_code == 502
    assert excinfo.value.message == "Schedule service returned an unexpected response"
    assert excinfo.value.details["path"] == "/schedules/generate"
    assert excinfo.value.details["errors"][0]["loc"] == ("total_assignments_created",)


def test_malformed_diagnostics_body_is_a_collaborator_error(schedules_client, remote):
    remote.on("GET", "/schedules/diagnostics", ["not", "a", "report"])

    with pytest.raises(CollaboratorError) as excinfo:
        asyncio.run(schedules_client.diagnostics(2025, "morning"))

    assert excinfo.value.details["path"] == "/schedules/diagnostics"
