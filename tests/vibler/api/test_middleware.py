"""Tests for the aiohttp error middleware and body validation."""

import logging

import pydantic
import pytest
from aiohttp import web
from aiohttp import test_utils

from vibler.api import EXECUTOR_KEY, REQUEST_ID_HEADER, create_app, validate_body
from vibler.errors import (
    KIND_SPECS,
    ErrorKind,
    NotFoundError,
    UpstreamResponseError,
    UpstreamUnavailableError,
)
from vibler.logging.context import get_log_context


class Brief(pydantic.BaseModel):
    product_name: str
    budget: int


async def ok(request: web.Request) -> web.Response:
    return web.json_response(
        {
            "status": "ok",
            "request_id": get_log_context()["request_id"],
            "stored_on_request": "request_id" in request,
        }
    )


async def not_found(request: web.Request) -> web.Response:
    raise NotFoundError("Profile not found", context={"profile_id": "p-1"})


async def crash(request: web.Request) -> web.Response:
    raise RuntimeError("postgres://admin:hunter2@db failed")


async def duplicate(request: web.Request) -> web.Response:
    raise UpstreamResponseError(
        "supabase", "duplicate key value", status=409, provider_code="23505"
    )


async def rejected_token(request: web.Request) -> web.Response:
    raise UpstreamResponseError(
        "supabase",
        "JWT rejected: bearer eyJhbGciOiJIUzI1NiJ9.c2VjcmV0 apikey=sk-live-123456",
        status=401,
    )


async def gone(request: web.Request) -> web.Response:
    raise web.HTTPGone()


async def redirect(request: web.Request) -> web.Response:
    raise web.HTTPFound("/ok")


async def create_brief(request: web.Request) -> web.Response:
    brief = await validate_body(request, Brief)
    return web.json_response(brief.model_dump(), status=201)


async def generate(request: web.Request) -> web.Response:
    async def overloaded():
        raise UpstreamUnavailableError("openai overloaded")

    result = await request.app[EXECUTOR_KEY].call("openai", overloaded)
    return web.json_response(result)


def build_app(config, executor) -> web.Application:
    app = create_app(config, executor=executor)
    app.router.add_get("/ok", ok)
    app.router.add_get("/not-found", not_found)
    app.router.add_get("/crash", crash)
    app.router.add_get("/duplicate", duplicate)
    app.router.add_get("/redirect", redirect)
    app.router.add_get("/rejected-token", rejected_token)
    app.router.add_get("/gone", gone)
    app.router.add_post("/briefs", create_brief)
    app.router.add_post("/generate", generate)
    return app


class TestErrorMiddleware:
    """Exceptions become JSON error responses."""

    @pytest.mark.asyncio
    async def test_success_passes_through(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/ok")
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"

    @pytest.mark.asyncio
    async def test_classified_error(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/not-found")
            assert resp.status == 404
            assert await resp.json() == {
                "error": "Profile not found",
                "code": "RECORD_NOT_FOUND",
                "details": {"profile_id": "p-1"},
            }

    @pytest.mark.asyncio
    async def test_unexpected_error_is_generic_500(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/crash")
            body = await resp.json()

            assert resp.status == 500
            assert body == {
                "error": KIND_SPECS[ErrorKind.INTERNAL].public_message,
                "code": "INTERNAL_SERVER_ERROR",
            }
            assert "hunter2" not in await resp.text()

    @pytest.mark.asyncio
    async def test_upstream_response_is_classified(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/duplicate")
            body = await resp.json()

            assert resp.status == 409
            assert body["code"] == "DUPLICATE_RECORD"
            assert body["details"]["provider_code"] == "23505"

    @pytest.mark.asyncio
    async def test_unknown_route_is_json_404(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/nope")
            assert resp.status == 404
            assert (await resp.json())["code"] == "RECORD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_method_not_allowed_keeps_status_and_allow(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/briefs")
            body = await resp.json()

            assert resp.status == 405
            assert resp.headers["Allow"] == "POST"
            assert body["code"] == "VALIDATION_ERROR"
            assert body["details"] == {"status": 405}

    @pytest.mark.asyncio
    async def test_framework_status_is_preserved(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/gone")
            assert resp.status == 410
            assert "Allow" not in resp.headers

    @pytest.mark.asyncio
    async def test_provider_credentials_are_redacted(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/rejected-token")
            text = await resp.text()

            assert resp.status == 401
            assert (await resp.json())["code"] == "UNAUTHORIZED"
            assert "eyJhbGciOiJIUzI1NiJ9" not in text
            assert "sk-live-123456" not in text

    @pytest.mark.asyncio
    async def test_redirects_pass_through(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/redirect", allow_redirects=False)
            assert resp.status == 302
            assert resp.headers["Location"] == "/ok"

    @pytest.mark.asyncio
    async def test_open_circuit_returns_503_with_retry_after(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            # Two failed attempts open the breaker, the third is rejected
            resp = await client.post("/generate")
            assert resp.status == 503
            assert (await resp.json())["code"] == "CIRCUIT_OPEN"
            assert resp.headers["Retry-After"] == "30"

            resp = await client.post("/generate")
            assert resp.status == 503
            assert (await resp.json())["code"] == "CIRCUIT_OPEN"

    @pytest.mark.asyncio
    async def test_failures_are_logged_at_severity(self, config, executor, caplog):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            with caplog.at_level(logging.DEBUG, logger="vibler.api.middleware"):
                await client.get("/crash")

        failures = [r for r in caplog.records if r.getMessage().startswith("GET /crash failed")]
        assert len(failures) == 1
        assert failures[0].levelno == logging.CRITICAL
        assert failures[0].error_code == "INTERNAL_SERVER_ERROR"
        assert failures[0].http_status == 500


class TestRequestTracking:
    """x-request-id propagation and API call logging."""

    @pytest.mark.asyncio
    async def test_request_id_is_propagated(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/ok", headers={REQUEST_ID_HEADER: "req-123"})
            body = await resp.json()

            assert resp.headers[REQUEST_ID_HEADER] == "req-123"
            assert body["request_id"] == "req-123"
            assert body["stored_on_request"] is False

    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/ok")
            request_id = resp.headers[REQUEST_ID_HEADER]
            assert len(request_id) == 32
            assert (await resp.json())["request_id"] == request_id

    @pytest.mark.asyncio
    async def test_error_responses_carry_request_id(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/crash", headers={REQUEST_ID_HEADER: "req-9"})
            assert resp.headers[REQUEST_ID_HEADER] == "req-9"

    @pytest.mark.asyncio
    async def test_oversized_request_id_is_replaced(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.get("/ok", headers={REQUEST_ID_HEADER: "x" * 500})
            assert resp.headers[REQUEST_ID_HEADER] != "x" * 500

    @pytest.mark.asyncio
    async def test_api_call_is_logged_with_duration(self, config, executor, caplog):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            with caplog.at_level(logging.INFO, logger="vibler.api.middleware"):
                await client.get("/ok", headers={"User-Agent": "pytest"})

        calls = [r for r in caplog.records if r.getMessage() == "GET /ok"]
        assert len(calls) == 1
        assert calls[0].http_status == 200
        assert calls[0].duration_ms >= 0
        assert calls[0].user_agent == "pytest"


class TestValidateBody:
    """pydantic request body validation."""

    @pytest.mark.asyncio
    async def test_valid_body(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.post(
                "/briefs", json={"product_name": "Vibler", "budget": 5000}
            )
            assert resp.status == 201
            assert await resp.json() == {"product_name": "Vibler", "budget": 5000}

    @pytest.mark.asyncio
    async def test_schema_errors_list_fields(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.post("/briefs", json={"budget": "lots"})
            body = await resp.json()

            assert resp.status == 400
            assert body["code"] == "SCHEMA_VALIDATION_FAILED"
            locs = {field["loc"] for field in body["details"]["fields"]}
            assert locs == {"product_name", "budget"}

    @pytest.mark.asyncio
    async def test_invalid_json(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.post(
                "/briefs",
                data="{not json",
                headers={"Content-Type": "application/json"},
            )
            body = await resp.json()

            assert resp.status == 400
            assert body["error"] == "Invalid JSON in request body"

    @pytest.mark.asyncio
    async def test_undecodable_body(self, config, executor):
        async with test_utils.TestClient(test_utils.TestServer(build_app(config, executor))) as client:
            resp = await client.post(
                "/briefs",
                data=b'{"product_name": "\xff\xfe"}',
                headers={"Content-Type": "application/json"},
            )
            body = await resp.json()

            assert resp.status == 400
            assert body["code"] == "INVALID_FORMAT"
            assert body["details"]["encoding"] == "utf-8"
