"""OAuth token handling for member calendar bindings.

``GoogleOAuthClient`` talks to Google's OAuth endpoints; ``TokenManager``
decides when a member's stored access token must be refreshed and persists
the result through the household store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

import httpx

from famcal.calendar.errors import (
    CalendarAuthError,
    CalendarTokenRefreshError,
    CalendarTransientError,
)
from famcal.calendar.models import MemberProfile, TokenGrant, utcnow
from famcal.config import GoogleConfig

if TYPE_CHECKING:
    from famcal.calendar.store import HouseholdStore

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
DEFAULT_TOKEN_SKEW_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def _safe_oauth_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        error = payload.get("error")
        if isinstance(error, str) and error.strip():
            return " ".join(error.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class GoogleOAuthClient:
    """Thin client over Google's OAuth 2.0 authorize and token endpoints."""

    def __init__(
        self,
        config: GoogleConfig,
        http_client: httpx.AsyncClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._http_client = http_client
        self._clock = clock

    def authorization_url(self, *, state: str, redirect_uri: str | None = None) -> str:
        """Consent URL requesting offline access; consent is always re-prompted
        so Google issues a refresh token on every connection."""
        resolved_redirect = redirect_uri or self._config.redirect_uri
        if not resolved_redirect:
            raise CalendarAuthError("No OAuth redirect URI configured")
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": resolved_redirect,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent select_account",
            "include_granted_scopes": "true",
            "state": state,
        }
        return f"{GOOGLE_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

    async def refresh(self, refresh_token: str) -> TokenGrant:
        return await self._token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
            action="refresh",
        )

    async def exchange_code(self, code: str, *, redirect_uri: str | None = None) -> TokenGrant:
        normalized_code = code.strip()
        if not normalized_code:
            raise CalendarAuthError("Authorization code is missing")
        return await self._token_request(
            {
                "client_id": self._config.client_id,
                "client_secret": self._config.client_secret,
                "code": normalized_code,
                "redirect_uri": redirect_uri or self._config.redirect_uri or "",
                "grant_type": "authorization_code",
            },
            action="code exchange",
        )

    async def _token_request(self, data: dict[str, str], *, action: str) -> TokenGrant:
        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTransientError(
                status_code=0, message=f"Google OAuth token {action} request failed: {exc}"
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise CalendarTransientError(
                status_code=response.status_code,
                message=f"Google OAuth token {action} unavailable: {_safe_oauth_error_message(response)}",
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                f"Google OAuth token {action} failed "
                f"({response.status_code}): {_safe_oauth_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None

        return TokenGrant(
            access_token=access_token.strip(),
            expiry=self._clock() + timedelta(seconds=expires_in_seconds),
            refresh_token=refresh_token.strip() if refresh_token else None,
        )


class TokenManager:
    """Keeps member access tokens valid, refreshing shortly before expiry.

    Refreshes are not serialized: two concurrent callers may both refresh,
    and the store keeps whichever token expires last.
    """

    def __init__(
        self,
        oauth: GoogleOAuthClient,
        households: HouseholdStore,
        *,
        skew_seconds: int = DEFAULT_TOKEN_SKEW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._oauth = oauth
        self._households = households
        self._skew = timedelta(seconds=skew_seconds)
        self._clock = clock

    def needs_refresh(self, expiry: datetime | None) -> bool:
        if expiry is None:
            return False
        return self._clock() >= expiry - self._skew

    async def ensure_valid_token(self, profile: MemberProfile) -> str:
        """Return a usable access token for *profile*, refreshing it when near expiry.

        Raises
        ------
        CalendarAuthError
            If the member has no connected calendar, the token is expiring and
            no refresh token is stored, or the provider rejects the refresh.
        CalendarTransientError
            If the token endpoint cannot be reached or answers with a server error.
        """
        binding = profile.binding
        if binding is None or not binding.access_token:
            raise CalendarAuthError(f"Google Calendar not connected for member {profile.member_id}")

        if not self.needs_refresh(binding.expiry):
            return binding.access_token

        if not binding.refresh_token:
            raise CalendarAuthError(
                f"Calendar access expired for member {profile.member_id}; reconnect required"
            )

        logger.info("Refreshing calendar access token for member %s", profile.member_id)
        try:
            grant = await self._oauth.refresh(binding.refresh_token)
        except CalendarTokenRefreshError as exc:
            logger.warning(
                "Calendar token refresh failed for member %s: %s", profile.member_id, exc
            )
            raise CalendarAuthError("Calendar access expired. Please reconnect.") from exc

        stored = await self._households.save_token(
            profile.member_id,
            access_token=grant.access_token,
            expiry=grant.expiry,
            refresh_token=grant.refresh_token,
        )
        if not stored:
            logger.debug(
                "Newer token already stored for member %s; keeping it", profile.member_id
            )
        return grant.access_token

    async def connect(
        self,
        member_id: str,
        code: str,
        *,
        redirect_uri: str | None = None,
    ) -> TokenGrant:
        """Exchange an authorization code and store the resulting tokens.

        An existing refresh token is kept when Google does not return a new one.
        """
        grant = await self._oauth.exchange_code(code, redirect_uri=redirect_uri)
        await self._households.save_token(
            member_id,
            access_token=grant.access_token,
            expiry=grant.expiry,
            refresh_token=grant.refresh_token,
        )
        logger.info("Connected Google Calendar for member %s", member_id)
        return grant

    def authorization_url(self, *, state: str, redirect_uri: str | None = None) -> str:
        return self._oauth.authorization_url(state=state, redirect_uri=redirect_uri)
