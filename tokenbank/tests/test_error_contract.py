"""Tests for normalized error responses."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from tokenbank.core.errors import (
    AppError,
    ConflictError,
    InsufficientBalanceError,
    app_error_handler,
    http_error_handler,
)
from tokenbank.core.middleware.request_id import RequestIdMiddleware
from fastapi import HTTPException


def _assert_contract(resp, status, code):
    assert resp.status_code == status
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert rid
    assert body["error"]["code"] == code
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_validation_error_has_standard_shape(client):
    resp = client.post(
        "/api/payments/create",
        json={"plan_type": "CUSTOM", "payment_method": "HUMO"},
        headers={"X-User-Id": "err-user"},
    )
    _assert_contract(resp, 400, "validation_error")


def test_not_found_carries_reason(client):
    resp = client.get("/api/payments/missing-id", headers={"X-User-Id": "err-user"})
    _assert_contract(resp, 404, "not_found")
    assert resp.json()["error"]["reason"] == "payment_not_found"


def test_malformed_body_is_validation_error(client):
    resp = client.post(
        "/api/payments/create",
        json={"plan_type": "GOLD", "payment_method": "HUMO"},
        headers={"X-User-Id": "err-user"},
    )
    _assert_contract(resp, 400, "validation_error")
    error = resp.json()["error"]
    assert error["reason"] == "invalid_request"
    assert error["details"]["fields"][0]["loc"] == ["body", "plan_type"]


def test_gate_denial_explains_itself(client):
    resp = client.post(
        "/api/generation/authorize",
        json={"grade": "DISTINCTION", "estimated_tokens": 10},
        headers={"X-User-Id": "err-user"},
    )
    _assert_contract(resp, 403, "grade_not_allowed")
    assert resp.json()["error"]["details"] == {"grade": "DISTINCTION", "allowed_grades": ["PASS"]}


def test_permission_error_normalized(client):
    created = client.post(
        "/api/payments/create",
        json={"plan_type": "P", "payment_method": "HUMO"},
        headers={"X-User-Id": "owner"},
    ).json()
    resp = client.get(f"/api/payments/{created['payment']['id']}", headers={"X-User-Id": "intruder"})
    _assert_contract(resp, 403, "unauthorized")


def test_missing_auth_is_http_error(client):
    resp = client.get("/api/payments/active")
    _assert_contract(resp, 401, "http_error")


def test_request_id_echoed_in_error_body(client):
    resp = client.get("/api/payments/nope", headers={"X-User-Id": "err-user", "X-Request-Id": "rid-err-1"})
    assert resp.headers["x-request-id"] == "rid-err-1"
    assert resp.json()["error"]["request_id"] == "rid-err-1"


def test_handlers_on_bare_app():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    test_app.add_exception_handler(HTTPException, http_error_handler)

    @test_app.get("/conflict")
    async def conflict():
        raise ConflictError("already pending")

    @test_app.get("/broke")
    async def broke():
        raise InsufficientBalanceError("Insufficient tokens", available=1, requested=5)

    client = TestClient(test_app)
    _assert_contract(client.get("/conflict"), 409, "conflict")
    _assert_contract(client.get("/broke"), 402, "insufficient_balance")
