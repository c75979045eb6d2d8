"""Shared fixtures for famcal API tests.

The app is built around the in-memory ``service`` fixture from the root
test conftest, so no database or network is involved.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
import pytest
from fastapi import FastAPI

from famcal.api.app import create_app
from famcal.api.deps import MEMBER_HEADER

PARENT_HEADERS = {MEMBER_HEADER: "parent"}


@pytest.fixture
def app(service) -> FastAPI:
    return create_app(service=service)


@pytest.fixture
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as http_client:
        yield http_client
