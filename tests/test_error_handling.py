# ruff: noqa

from __future__ import annotations

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field
from starlette.requests import Request

from incidentdesk.core import error_handling
from incidentdesk.core.error_handling import (
    REQUEST_ID_HEADER,
    MutationRejectedError,
    _error_payload,
    _get_request_id,
    _http_exception_exception_handler,
    _mutation_rejected_exception_handler,
    _request_validation_exception_handler,
    _response_validation_exception_handler,
    install_error_handling,
)
from incidentdesk.services.results import ErrorKind


def _app() -> FastAPI:
    app = FastAPI()
    install_error_handling(app)
    return app


def _assert_request_id(resp) -> str:
    body = resp.json()
    assert isinstance(body.get("request_id"), str) and body["request_id"]
    assert resp.headers.get(REQUEST_ID_HEADER) == body["request_id"]
    return body["request_id"]


def test_request_validation_error_includes_request_id():
    app = _app()

    @app.get("/incidents")
    def list_incidents(limit: int) -> dict[str, int]:
        return {"limit": limit}

    resp = TestClient(app).get("/incidents?limit=abc")

    assert resp.status_code == 422
    assert isinstance(resp.json().get("detail"), list)
    _assert_request_id(resp)


def test_request_validation_error_handles_bytes_input_without_500():
    class StatusChange(BaseModel):
        status: str

    app = _app()

    @app.post("/status")
    def change_status(payload: StatusChange) -> dict[str, str]:
        return {"status": payload.status}

    client = TestClient(app, raise_server_exceptions=False)
    resp = client.post(
        "/status",
        content=b"Review",
        headers={"content-type": "text/plain"},
    )

    assert resp.status_code == 422
    assert isinstance(resp.json().get("detail"), list)
    _assert_request_id(resp)


def test_http_exception_includes_request_id():
    app = _app()

    @app.get("/missing")
    def missing() -> None:
        raise HTTPException(status_code=404, detail="Incident not found")

    resp = TestClient(app).get("/missing")

    assert resp.status_code == 404
    assert resp.json()["detail"] == "Incident not found"
    _assert_request_id(resp)


@pytest.mark.parametrize(
    ("kind", "status_code", "retryable"),
    [
        (ErrorKind.FORBIDDEN, 403, False),
        (ErrorKind.TERMINAL_STATE, 409, False),
        (ErrorKind.CONFLICT_DETECTED, 409, True),
        (ErrorKind.VALIDATION_FAILED, 422, False),
        (ErrorKind.PERSISTENCE_UNAVAILABLE, 503, True),
    ],
)
def test_rejected_mutation_maps_to_status_and_code(
    kind: ErrorKind, status_code: int, retryable: bool
) -> None:
    app = _app()

    @app.post("/mutate")
    def mutate() -> None:
        raise MutationRejectedError(kind)

    resp = TestClient(app).post("/mutate")

    assert resp.status_code == status_code
    body = resp.json()
    assert body["code"] == kind.value
    assert body["retryable"] is retryable
    assert isinstance(body["detail"], str) and body["detail"]
    _assert_request_id(resp)


def test_rejected_mutation_keeps_explicit_detail():
    error = MutationRejectedError(ErrorKind.FORBIDDEN, "Only a SuperAdmin may grant SuperAdmin.")

    assert error.detail == "Only a SuperAdmin may grant SuperAdmin."
    assert error.status_code == 403


def test_unhandled_exception_returns_500_with_request_id():
    app = _app()

    @app.get("/boom")
    def boom() -> None:
        raise RuntimeError("boom")

    resp = TestClient(app, raise_server_exceptions=False).get("/boom")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"
    _assert_request_id(resp)


def test_response_validation_error_returns_500_with_request_id():
    class Out(BaseModel):
        title: str = Field(min_length=1)

    app = _app()

    @app.get("/bad", response_model=Out)
    def bad() -> dict[str, str]:
        return {"title": ""}

    resp = TestClient(app, raise_server_exceptions=False).get("/bad")

    assert resp.status_code == 500
    assert resp.json()["detail"] == "Internal Server Error"
    _assert_request_id(resp)


def test_client_provided_request_id_is_preserved():
    app = _app()

    @app.get("/incidents")
    def list_incidents(limit: int) -> dict[str, int]:
        return {"limit": limit}

    resp = TestClient(app).get("/incidents?limit=abc", headers={REQUEST_ID_HEADER: "  req-123  "})

    assert resp.status_code == 422
    assert resp.json()["request_id"] == "req-123"
    assert resp.headers.get(REQUEST_ID_HEADER) == "req-123"


def test_slow_request_emits_slow_log(monkeypatch: pytest.MonkeyPatch) -> None:
    warnings: list[tuple[str, dict[str, object]]] = []

    def _fake_warning(message: str, *args: object, **kwargs: object) -> None:
        extra = kwargs.get("extra")
        warnings.append((message, extra if isinstance(extra, dict) else {}))

    perf_ticks = iter((100.0, 100.2))

    monkeypatch.setattr(error_handling.settings, "request_log_slow_ms", 1)
    monkeypatch.setattr(error_handling, "perf_counter", lambda: next(perf_ticks))
    monkeypatch.setattr(error_handling.logger, "warning", _fake_warning)

    app = _app()

    @app.get("/slow")
    def slow() -> dict[str, str]:
        return {"ok": "1"}

    resp = TestClient(app).get("/slow")

    assert resp.status_code == 200
    assert any(
        message == "http.request.slow" and extra.get("slow_threshold_ms") == 1
        for message, extra in warnings
    )


def test_health_route_skips_request_logs_when_disabled(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    infos: list[str] = []
    monkeypatch.setattr(error_handling.settings, "request_log_include_health", False)
    monkeypatch.setattr(
        error_handling.logger, "info", lambda message, *args, **kwargs: infos.append(message)
    )

    app = _app()

    @app.get("/healthz")
    def healthz() -> dict[str, bool]:
        return {"ok": True}

    resp = TestClient(app).get("/healthz")

    assert resp.status_code == 200
    assert resp.json() == {"ok": True}
    assert isinstance(resp.headers.get(REQUEST_ID_HEADER), str)
    assert "http.request.complete" not in infos


def test_get_request_id_returns_none_for_missing_or_invalid_state() -> None:
    for state in ({}, {"request_id": 123}, {"request_id": ""}):
        req = Request({"type": "http", "headers": [], "state": state})
        assert _get_request_id(req) is None


def test_error_payload_omits_optional_fields_when_none() -> None:
    assert _error_payload(detail="x", request_id=None) == {"detail": "x"}
    assert _error_payload(detail="x", request_id="r", code="noop", retryable=False) == {
        "detail": "x",
        "code": "noop",
        "retryable": False,
        "request_id": "r",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("handler", "expected"),
    [
        (_request_validation_exception_handler, "RequestValidationError"),
        (_response_validation_exception_handler, "ResponseValidationError"),
        (_http_exception_exception_handler, "StarletteHTTPException"),
        (_mutation_rejected_exception_handler, "MutationRejectedError"),
    ],
)
async def test_typed_handlers_reject_wrong_exception(handler, expected: str) -> None:
    req = Request({"type": "http", "headers": [], "state": {}})
    with pytest.raises(TypeError, match=f"Expected {expected}"):
        await handler(req, Exception("x"))


def test_json_safe_covers_bytes_bytearray_and_fallback_str() -> None:
    assert error_handling._json_safe(b"\xff") == "\ufffd"
    assert error_handling._json_safe(bytearray(b"\xff")) == "\ufffd"
    assert error_handling._json_safe(memoryview(b"\xff")) == "\ufffd"
    assert error_handling._json_safe({"k": [b"v"]}) == {"k": ["v"]}

    class Weird:
        def __str__(self) -> str:
            return "weird"

    assert error_handling._json_safe(Weird()) == "weird"
