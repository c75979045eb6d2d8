"""Dependency wiring for the famcal HTTP API.

Routers declare a ``_get_service`` stub; :func:`wire_service_dependencies`
overrides every stub with the process-wide :class:`CalendarSyncService`
built at startup (or injected by tests).
"""

from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI, Header

from famcal.calendar.notify import Notifier, build_notifier
from famcal.calendar.provider import CalendarProvider, GoogleCalendarProvider
from famcal.calendar.service import CalendarSyncService
from famcal.calendar.store import PostgresEventStore, PostgresHouseholdStore
from famcal.calendar.tokens import GoogleOAuthClient, TokenManager
from famcal.config import FamcalConfig
from famcal.core.metrics import SyncMetrics
from famcal.db import Database

logger = logging.getLogger(__name__)

MEMBER_HEADER = "X-Member-Id"


class CallerRequiredError(Exception):
    """Raised when a request does not identify the calling member."""


def caller_id(x_member_id: str | None = Header(default=None, alias=MEMBER_HEADER)) -> str:
    """Resolve the calling member from the ``X-Member-Id`` header."""
    if x_member_id is None or not x_member_id.strip():
        raise CallerRequiredError(f"Missing {MEMBER_HEADER} header")
    return x_member_id.strip()


class ServiceResources:
    """Process-wide resources backing a :class:`CalendarSyncService`."""

    def __init__(self, config: FamcalConfig) -> None:
        self.config = config
        if config.db_url:
            self.db = Database.from_url(config.db_url, db_name=config.db_name)
        else:
            self.db = Database.from_env(config.db_name)
        self.http_client = httpx.AsyncClient(timeout=config.google.request_timeout_s)
        self.notifier: Notifier = build_notifier(
            config.notifications.url, timeout_s=config.notifications.timeout_s
        )
        self.service: CalendarSyncService | None = None

    def _provider(self, access_token: str) -> CalendarProvider:
        return GoogleCalendarProvider(
            access_token,
            self.config.google,
            self.http_client,
            page_size=self.config.sync.page_size,
        )

    async def start(self) -> CalendarSyncService:
        await self.db.connect()
        households = PostgresHouseholdStore(self.db)
        tokens = TokenManager(
            GoogleOAuthClient(self.config.google, self.http_client),
            households,
            skew_seconds=self.config.sync.token_skew_seconds,
        )
        self.service = CalendarSyncService(
            PostgresEventStore(self.db),
            households,
            tokens,
            provider_factory=self._provider,
            notifier=self.notifier,
            sync=self.config.sync,
            metrics=SyncMetrics(self.config.name),
        )
        logger.info("Calendar sync service ready (db=%s)", self.config.db_name)
        return self.service

    async def close(self) -> None:
        await self.notifier.shutdown()
        await self.http_client.aclose()
        await self.db.close()


def wire_service_dependencies(app: FastAPI, service: CalendarSyncService) -> None:
    """Override all router-level ``_get_service`` stubs with *service*."""
    from famcal.api.routers import calendars, events

    for module in (calendars, events):
        app.dependency_overrides[module._get_service] = lambda: service
