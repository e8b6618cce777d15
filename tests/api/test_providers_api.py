"""Tests for provider status and circuit admin endpoints."""

from __future__ import annotations

import pytest

from src.config import get_settings
from src.routing.circuit_breaker import CircuitState
from src.routing.providers import ProviderId


class TestProviderStatus:
    @pytest.mark.asyncio
    async def test_lists_all_providers(self, client):
        response = await client.get("/api/providers/status")

        assert response.status_code == 200
        data = response.json()
        assert [p["name"] for p in data["providers"]] == ["groq", "gemini", "cerebras"]
        for provider in data["providers"]:
            assert provider["status"] == "healthy"
            assert provider["circuitState"] == "closed"
            assert provider["details"]["isConfigured"] is True
        assert data["traces"] == {}

    @pytest.mark.asyncio
    async def test_reflects_open_circuit_and_traces(self, client, routing_context, session_id):
        await client.post(
            "/api/llm/route",
            json={"sessionId": session_id, "prompt": "Hello there, how are you?"},
        )
        await routing_context.breakers.force_open(ProviderId.CEREBRAS)

        data = (await client.get("/api/providers/status")).json()

        cerebras = data["providers"][2]
        assert cerebras["circuitState"] == "open"
        assert cerebras["status"] == "unavailable"
        assert data["traces"]["groq"]["attempts"] == 1


class TestCircuitAdmin:
    @pytest.mark.asyncio
    async def test_requires_admin_key(self, client):
        response = await client.post("/api/providers/groq/circuit/open")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_wrong_admin_key_rejected(self, client):
        response = await client.post(
            "/api/providers/groq/circuit/open", headers={"X-Admin-Key": "wrong"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_non_ascii_admin_key_rejected(self, client):
        """Test a latin-1 header value is a wrong key, not a server error."""
        response = await client.post(
            "/api/providers/groq/circuit/reset", headers={"X-Admin-Key": b"caf\xe9"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_disabled_without_configured_key(self, client, test_app, fake_settings):
        unset = fake_settings.model_copy(update={"admin_api_key": None})
        test_app.dependency_overrides[get_settings] = lambda: unset

        response = await client.post(
            "/api/providers/groq/circuit/open", headers={"X-Admin-Key": "anything"}
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_force_open_then_reset(self, client, admin_headers, routing_context):
        opened = await client.post("/api/providers/gemini/circuit/open", headers=admin_headers)

        assert opened.status_code == 200
        assert opened.json()["state"] == "open"
        assert await routing_context.breakers.get(ProviderId.GEMINI).get_state() is CircuitState.OPEN

        reset = await client.post("/api/providers/gemini/circuit/reset", headers=admin_headers)

        assert reset.status_code == 200
        assert reset.json()["state"] == "closed"

    @pytest.mark.asyncio
    async def test_unknown_provider_404(self, client, admin_headers):
        response = await client.post("/api/providers/openai/circuit/reset", headers=admin_headers)
        assert response.status_code == 404
