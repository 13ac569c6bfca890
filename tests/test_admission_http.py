"""Tests for the FastAPI admission integration."""

import httpx
import pytest
from fastapi import Depends, FastAPI, Request

from quotagate.app.adapters import (
    AdmissionDecision,
    ScopeLimits,
    StaticConfigProvider,
    UsageAmounts,
    UsageCommit,
    UsageEstimate,
)
from quotagate.app.engine import QuotaGate
from quotagate.app.middleware import admission_dependency, register_exception_handlers


@pytest.fixture
def gate(store, test_settings, observer, clock):
    provider = StaticConfigProvider({
        ("apikey", "k1"): ScopeLimits(
            window_ms=60_000, max_requests=2, daily_token_limit=1000
        ),
    })
    return QuotaGate(
        store=store,
        config=test_settings,
        observer=observer,
        config_provider=provider,
        clock=clock,
    )


@pytest.fixture
def app(gate):
    async def api_key(request: Request) -> str:
        return request.headers["X-Api-Key"]

    async def estimate(request: Request) -> UsageEstimate:
        return UsageEstimate(tokens=int(request.headers.get("X-Tokens", "0")))

    admit = admission_dependency(gate.api_keys, api_key, estimate)
    admit_plain = admission_dependency(gate.api_keys, api_key)

    app = FastAPI()
    register_exception_handlers(app)

    @app.post("/v1/chat")
    async def chat(decision: AdmissionDecision = Depends(admit)):
        return {"reserved": decision.reserved.tokens}

    @app.post("/v1/plain")
    async def plain(decision: AdmissionDecision = Depends(admit_plain)):
        return {"allowed": decision.allowed}

    @app.post("/v1/enforced")
    async def enforced(request: Request):
        decision = await gate.api_keys.enforce(
            request.headers["X-Api-Key"], UsageEstimate(tokens=5000)
        )
        return {"allowed": decision.allowed}

    return app


@pytest.fixture
def client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestAdmissionDependency:

    @pytest.mark.asyncio
    async def test_admitted_request_gets_headers(self, client):
        async with client:
            response = await client.post(
                "/v1/chat", headers={"X-Api-Key": "k1", "X-Tokens": "100"}
            )

        assert response.status_code == 200
        assert response.json() == {"reserved": 100}
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert response.headers["X-Token-Remaining"] == "900"

    @pytest.mark.asyncio
    async def test_rate_limited_request_gets_429(self, client):
        async with client:
            for _ in range(2):
                await client.post("/v1/chat", headers={"X-Api-Key": "k1"})
            response = await client.post("/v1/chat", headers={"X-Api-Key": "k1"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.json()["detail"]["error"] == "rate_limited"

    @pytest.mark.asyncio
    async def test_quota_denial_gets_429(self, client):
        async with client:
            response = await client.post(
                "/v1/chat", headers={"X-Api-Key": "k1", "X-Tokens": "1001"}
            )

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "daily_quota"
        assert int(response.headers["Retry-After"]) == 12 * 3600

    @pytest.mark.asyncio
    async def test_exhausted_scope_denied_without_estimator(self, client, gate):
        await gate.api_keys.commit_usage(UsageCommit(
            scope_type="apikey", identifier="k1", actual=UsageAmounts(tokens=1200)
        ))

        async with client:
            response = await client.post("/v1/plain", headers={"X-Api-Key": "k1"})

        assert response.status_code == 429
        assert response.json()["detail"]["error"] == "daily_quota"
        assert response.headers["X-Token-Remaining"] == "0"


class TestExceptionHandler:

    @pytest.mark.asyncio
    async def test_admission_denied_error_maps_to_429(self, client):
        async with client:
            response = await client.post("/v1/enforced", headers={"X-Api-Key": "k1"})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "daily_quota"
        assert body["retry_after"] == 12 * 3600
        assert response.headers["X-Token-Limit"] == "1000"
