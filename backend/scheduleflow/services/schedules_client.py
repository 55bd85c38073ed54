from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from scheduleflow.core.config import Settings
from scheduleflow.core.exceptions import (
    CollaboratorError,
    CollaboratorUnavailableError,
    DuplicateScheduleNameError,
)
from scheduleflow.schemas.generator import DiagnosticsReport, GenerationRequest, GenerationResponse

logger = logging.getLogger(__name__)

DUPLICATE_NAME_CODE = "duplicate_schedule_name"
# Free-text fallback until every deployment of the schedules service returns DUPLICATE_NAME_CODE.
DUPLICATE_NAME_MARKERS = ("يوجد بالفعل جدول باسم", "already exists", "جدول باسم")


def is_duplicate_name(message: str, code: str | None = None) -> bool:
    if code:
        return code == DUPLICATE_NAME_CODE
    return any(marker in message for marker in DUPLICATE_NAME_MARKERS)


def _error_fields(body: Any) -> tuple[str, str | None]:
    if isinstance(body, dict):
        detail = body.get("detail")
        code = body.get("code")
        if isinstance(detail, dict):
            code = code or detail.get("code")
            detail = detail.get("message") or detail.get("msg")
        elif isinstance(detail, list):
            # FastAPI validation errors
            detail = "; ".join(str(item.get("msg", item)) if isinstance(item, dict) else str(item) for item in detail)
        message = detail or body.get("message") or ""
        return str(message), code
    if isinstance(body, str):
        return body, None
    return "", None


def error_from_response(response: httpx.Response) -> CollaboratorError:
    try:
        body = response.json()
    except ValueError:
        body = response.text
    message, code = _error_fields(body)
    details = {"status": response.status_code, "path": response.request.url.path}
    if code:
        details["code"] = code
    if is_duplicate_name(message, code):
        return DuplicateScheduleNameError(message or "A schedule with this name already exists", details=details)
    if not message:
        message = f"Schedule service responded with HTTP {response.status_code}"
    status_code = response.status_code if 400 <= response.status_code < 500 else 502
    return CollaboratorError(message, status_code=status_code, details=details)


def parse_body(model: type[BaseModel], body: Any, path: str) -> Any:
    try:
        return model.model_validate(body or {})
    except ValidationError as exc:
        logger.warning("Unexpected %s body from %s: %s", model.__name__, path, exc)
        raise CollaboratorError(
            "Schedule service returned an unexpected response",
            details={"path": path, "errors": exc.errors(include_url=False, include_context=False, include_input=False)},
        ) from exc


def unwrap_envelope(body: Any) -> Any:
    """Accept both bare payloads and the `{success, data, message}` envelope."""
    if isinstance(body, dict) and "success" in body and ("data" in body or not body.get("success")):
        if not body.get("success"):
            message = str(body.get("message") or body.get("detail") or "Schedule service reported a failure")
            if is_duplicate_name(message, body.get("code")):
                raise DuplicateScheduleNameError(message)
            raise CollaboratorError(message, details={"errors": body.get("errors") or []})
        return body.get("data")
    return body


class SchedulesClient:
    """Async client for the remote school-management schedules API."""

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json", "Accept-Language": "ar,en"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "SchedulesClient":
        return cls(
            settings.remote_api_base_url,
            token=settings.remote_api_token,
            timeout=settings.remote_api_timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> Any:
        if params:
            params = {key: value for key, value in params.items() if value is not None}
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("Schedules service timed out on %s %s", method, path)
            raise CollaboratorUnavailableError(
                "The schedule service did not respond in time",
                details={"path": path},
            ) from exc
        except httpx.TransportError as exc:
            logger.warning("Schedules service unreachable on %s %s: %s", method, path, exc)
            raise CollaboratorUnavailableError(
                "Could not reach the schedule service",
                details={"path": path},
            ) from exc

        if response.is_error:
            raise error_from_response(response)
        if not response.content:
            return None
        try:
            body = response.json()
        except ValueError as exc:
            raise CollaboratorError("Schedule service returned a non-JSON response", details={"path": path}) from exc
        return unwrap_envelope(body)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        body = await self._request("POST", "/schedules/generate", json=request.model_dump(mode="json"))
        return parse_body(GenerationResponse, body, "/schedules/generate")

    async def diagnostics(self, academic_year_id: int, session_type: str) -> DiagnosticsReport:
        body = await self._request(
            "GET",
            "/schedules/diagnostics",
            params={"academic_year_id": academic_year_id, "session_type": session_type},
        )
        return parse_body(DiagnosticsReport, body, "/schedules/diagnostics")

    async def save_preview(self, request_payload: dict, preview_data: list[dict]) -> Any:
        return await self._request(
            "POST",
            "/schedules/save-preview",
            json={"request": request_payload, "preview_data": preview_data},
        )

    async def validate(
        self,
        *,
        academic_year_id: int,
        class_id: int,
        section: str | None = None,
        session_type: str | None = None,
    ) -> dict:
        body = await self._request(
            "POST",
            "/schedules/validate",
            params={
                "academic_year_id": academic_year_id,
                "class_id": class_id,
                "section": section or None,
                "session_type": session_type,
            },
            json={},
        )
        return body or {}

    async def conflicts(self, schedule_id: int) -> dict:
        body = await self._request("GET", f"/schedules/{schedule_id}/conflicts")
        return body or {}

    async def publish(self, schedule_id: int) -> Any:
        return await self._request("POST", f"/schedules/{schedule_id}/publish", json={})

    async def save_as_draft(self, schedule_id: int) -> Any:
        return await self._request("POST", f"/schedules/{schedule_id}/save-as-draft", json={})

    async def list_schedules(
        self,
        *,
        academic_year_id: int,
        session_type: str,
        class_id: int,
        section: str | None = None,
    ) -> list[dict]:
        body = await self._request(
            "GET",
            "/schedules/",
            params={
                "academic_year_id": academic_year_id,
                "session_type": session_type,
                "class_id": class_id,
                "section": section or None,
            },
        )
        return list(body or [])

    async def list_subjects(self) -> list[dict]:
        return list(await self._request("GET", "/subjects/") or [])

    async def list_teachers(self) -> list[dict]:
        return list(await self._request("GET", "/teachers/") or [])
