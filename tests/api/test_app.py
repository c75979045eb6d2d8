import httpx
import pytest

from famcal.api.app import create_app
from tests.api.conftest import PARENT_HEADERS

pytestmark = pytest.mark.unit


class TestHealthEndpoint:
    async def test_health_returns_ok(self):
        app = create_app()
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCORSMiddleware:
    async def test_cors_allows_configured_origin(self):
        app = create_app(cors_origins=["https://famcal.example"])
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.options(
                "/api/health",
                headers={
                    "origin": "https://famcal.example",
                    "access-control-request-method": "GET",
                },
            )
        assert response.status_code == 200
        assert response.headers.get("access-control-allow-origin") == "https://famcal.example"

    async def test_cors_default_origins(self):
        app = create_app()
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.options(
                "/api/health",
                headers={
                    "origin": "http://localhost:5173",
                    "access-control-request-method": "GET",
                },
            )
        assert response.headers.get("access-control-allow-origin") == "http://localhost:5173"


class TestServiceWiring:
    async def test_unwired_service_is_an_internal_error(self):
        app = create_app()
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app), base_url="http://test"
        ) as client:
            response = await client.get("/api/households/hh-1/events", headers=PARENT_HEADERS)
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "INTERNAL_ERROR"

    async def test_injected_service_is_used(self, client):
        response = await client.get("/api/households/hh-1/events", headers=PARENT_HEADERS)
        assert response.status_code == 200
