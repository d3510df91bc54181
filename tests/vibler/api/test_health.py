"""Tests for the health and metrics endpoints and the app factory."""

import pytest
from aiohttp import test_utils

from vibler.api import CONFIG_KEY, EXECUTOR_KEY, create_app
from vibler.config import load_config_from_dict
from vibler.errors import ConfigurationError, UpstreamUnavailableError
from vibler.resilience import OPENAI_CIRCUIT_CONFIG, SUPABASE_CIRCUIT_CONFIG


async def _open_circuit(executor, name: str) -> None:
    breaker = executor.registry.get(name)

    async def down():
        raise UpstreamUnavailableError(f"{name} down")

    for _ in range(breaker.config.min_samples):
        with pytest.raises(UpstreamUnavailableError):
            await breaker.guard(down)


class TestHealthEndpoint:
    """GET /health."""

    @pytest.mark.asyncio
    async def test_ok_without_open_circuits(self, config, executor):
        executor.registry.get("supabase")
        app = create_app(config, executor=executor)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/health")
            body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "ok"
        assert body["open_circuits"] == []
        assert body["circuits"]["supabase"]["state"] == "closed"
        assert body["environment"] == "development"
        assert body["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    async def test_degraded_when_circuit_open(self, config, executor):
        await _open_circuit(executor, "openai")
        app = create_app(config, executor=executor)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            resp = await client.get("/health")
            body = await resp.json()

        assert resp.status == 200
        assert body["status"] == "degraded"
        assert body["open_circuits"] == ["openai"]
        assert body["circuits"]["openai"]["retry_after"] == 30.0


class TestMetricsEndpoint:
    """GET /metrics."""

    @pytest.mark.asyncio
    async def test_prometheus_exposition(self, config, executor):
        app = create_app(config, executor=executor)

        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            await client.get("/health")
            resp = await client.get("/metrics")
            text = await resp.text()

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/plain")
        assert "vibler_api_request_duration_seconds" in text
        assert "vibler_errors_total" in text


class TestCreateApp:
    """Application factory."""

    def test_stores_config_and_executor(self, config, executor):
        app = create_app(config, executor=executor)
        assert app[CONFIG_KEY] is config
        assert app[EXECUTOR_KEY] is executor

    def test_builds_executor_from_config(self, monkeypatch):
        monkeypatch.delenv("VIBLER_RETRY_MAX_ATTEMPTS", raising=False)
        config = load_config_from_dict(
            {"retry": {"max_attempts": 5}, "circuit": {"min_samples": 8}}
        )
        app = create_app(config)
        executor = app[EXECUTOR_KEY]

        assert executor.default_policy.max_attempts == 5
        assert executor.policy_for("openai").max_attempts == 4
        assert executor.registry.get("stripe").config.min_samples == 8

    def test_dependency_presets_and_overrides(self):
        config = load_config_from_dict(
            {"circuits": {"supabase": {"cooldown_seconds": 5}, "stripe": {"min_samples": 3}}}
        )
        registry = create_app(config)[EXECUTOR_KEY].registry

        assert registry.get("openai").config == OPENAI_CIRCUIT_CONFIG
        supabase = registry.get("supabase").config
        assert supabase.cooldown_seconds == 5.0
        assert supabase.min_samples == SUPABASE_CIRCUIT_CONFIG.min_samples
        assert registry.get("stripe").config.min_samples == 3

    def test_invalid_config_raises(self):
        config = load_config_from_dict({"retry": {"max_attempts": 0}})
        with pytest.raises(ConfigurationError) as exc_info:
            create_app(config)
        assert exc_info.value.context["errors"]
