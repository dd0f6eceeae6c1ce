"""Error envelope format and exception-to-response mapping.

Every failure leaves the service as:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "<text>", "details": <object|array|null>},
    "request_id": "<id>"
}
"""

import contextvars
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from authcore.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from authcore.api.schemas import Envelope, ErrorBody
from authcore.logging import set_correlation_id
from authcore.service.errors import (
    BadGatewayError,
    ConflictError,
    InvalidCredentialsError,
    NotFoundError,
)
from authcore.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="invalid token")
        assert error.details is None

    def test_details_may_be_list(self):
        error = ErrorBody(code="validation_error", message="bad", details=[{"field": "email"}])
        assert error.details == [{"field": "email"}]

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="forbidden", message="nope")

    def test_missing_message_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="server_error")


class TestEnvelope:
    def test_ok_envelope(self):
        envelope = Envelope(status="ok", data={"user_id": "123"})
        assert envelope.error is None
        assert envelope.data == {"user_id": "123"}

    def test_request_id_generated(self):
        envelope = contextvars.Context().run(Envelope, status="ok")
        assert len(envelope.request_id) == 36

    def test_request_id_follows_correlation_id(self):
        def build():
            set_correlation_id("req-abc")
            return Envelope(status="ok")

        assert contextvars.Context().run(build).request_id == "req-abc"

    @pytest.mark.parametrize("status", ["pending", "success", ""])
    def test_invalid_status(self, status):
        with pytest.raises(ValidationError):
            Envelope(status=status)


class TestErrorCodeMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (500, "server_error"),
            (502, "upstream_error"),
            (418, "server_error"),
        ],
    )
    def test_status_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_every_mapped_code_is_a_valid_error_code(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")


class TestErrorResponseFactory:
    def test_unauthorized_carries_challenge(self):
        response = _error_response(401, "invalid token")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        data = json.loads(response.body)
        assert data["status"] == "error"
        assert data["error"] == {"code": "unauthorized", "message": "invalid token", "details": None}
        assert data["request_id"]

    def test_custom_code_and_details(self):
        response = _error_response(400, "taken", {"field": "email"}, code="conflict")
        data = json.loads(response.body)
        assert data["error"]["code"] == "conflict"
        assert data["error"]["details"] == {"field": "email"}
        assert "WWW-Authenticate" not in response.headers


class _Body(BaseModel):
    password: str
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/credentials")
    async def credentials():
        raise InvalidCredentialsError()

    @app.get("/conflict")
    async def conflict():
        raise ConflictError("email already registered", detail={"field": "email"})

    @app.get("/missing")
    async def missing():
        raise NotFoundError("user not found")

    @app.get("/upstream")
    async def upstream():
        raise BadGatewayError("profile service unavailable")

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/boom")
    async def boom():
        raise RuntimeError("database password leaked in message")

    @app.post("/validate")
    async def validate(body: _Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "path,status,code",
    [
        ("/credentials", 401, "unauthorized"),
        ("/conflict", 409, "conflict"),
        ("/missing", 404, "not_found"),
        ("/upstream", 502, "upstream_error"),
        ("/constraint", 409, "conflict"),
        ("/boom", 500, "server_error"),
    ],
)
def test_exceptions_become_envelopes(client, path, status, code):
    response = client.get(path)
    assert response.status_code == status
    body = response.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == code
    assert body["data"] is None


def test_unhandled_error_message_is_generic(client):
    body = client.get("/boom").json()
    assert body["error"]["message"] == "internal server error"
    assert "password" not in json.dumps(body)


def test_conflict_reports_field(client):
    assert client.get("/conflict").json()["error"]["details"] == {"field": "email"}
    assert client.get("/constraint").json()["error"]["details"] == {"field": "username"}


def test_request_validation_is_400_without_input_echo(client):
    response = client.post("/validate", json={"password": "hunter2-secret", "count": "many"})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "validation_error"
    assert "hunter2-secret" not in response.text
    locs = [err["loc"] for err in body["error"]["details"]["errors"]]
    assert ["body", "count"] in locs


def test_unknown_route_is_not_found(client):
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"
