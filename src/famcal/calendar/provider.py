"""Google Calendar v3 REST provider.

The provider is bound to one access token (one member's credentials). It
performs no token refresh of its own; :class:`~famcal.calendar.tokens.TokenManager`
hands it a valid token before a pass starts, and a 401 mid-pass surfaces as
:class:`CalendarAuthError`.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from datetime import UTC, date, datetime, timedelta, tzinfo
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from famcal.calendar.colors import to_color_id
from famcal.calendar.errors import (
    CalendarAuthError,
    CalendarNotFoundError,
    CalendarRequestError,
    CalendarTransientError,
)
from famcal.calendar.models import RemoteCalendar, RemoteEvent
from famcal.config import GoogleConfig

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

NOT_FOUND_STATUS_CODES = {404, 410}
DEFAULT_PAGE_SIZE = 250
WRITER_ACCESS_ROLE = "writer"

# Server-owned keys that must not be sent back when cloning an event into
# another calendar.
_CLONE_EXCLUDED_KEYS = frozenset(
    {
        "id",
        "etag",
        "htmlLink",
        "iCalUID",
        "created",
        "updated",
        "creator",
        "organizer",
        "attendees",
        "sequence",
        "kind",
        "recurringEventId",
        "originalStartTime",
        "hangoutLink",
        "conferenceData",
    }
)


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def raise_for_google_status(response: httpx.Response) -> None:
    """Map a non-2xx Google response onto the calendar error taxonomy."""
    status_code = response.status_code
    if 200 <= status_code < 300:
        return
    message = _safe_google_error_message(response)
    if status_code == 401:
        raise CalendarAuthError(f"Google Calendar rejected the access token: {message}")
    if status_code in NOT_FOUND_STATUS_CODES:
        raise CalendarNotFoundError(status_code=status_code, message=message)
    if status_code in RATE_LIMIT_RETRY_STATUS_CODES or status_code >= 500:
        raise CalendarTransientError(status_code=status_code, message=message)
    raise CalendarRequestError(status_code=status_code, message=message)


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_zoneinfo(timezone: str | None) -> ZoneInfo | tzinfo:
    if not timezone:
        return UTC
    try:
        return ZoneInfo(timezone)
    except ZoneInfoNotFoundError:
        return UTC


def _parse_google_event_boundary(payload: Any) -> tuple[datetime, bool]:
    """Return ``(moment, is_all_day)`` for a Google ``start``/``end`` object."""
    if not isinstance(payload, dict):
        raise ValueError("Google Calendar event is missing start/end values")

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        tz = _coerce_zoneinfo(payload.get("timeZone"))
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=tz), True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _extract_attendee_emails(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    emails: list[str] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email and email not in emails:
            emails.append(email)
    return emails


def google_event_to_remote_event(payload: dict[str, Any], *, calendar_id: str) -> RemoteEvent | None:
    """Convert a Google event resource, tagging it with its source calendar.

    Returns ``None`` for cancelled events and for resources without an id.
    """
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        return None
    status = _normalize_optional_text(payload.get("status"))
    if status == "cancelled":
        return None

    start_at, all_day = _parse_google_event_boundary(payload.get("start"))
    end_at, _ = _parse_google_event_boundary(payload.get("end"))

    updated_raw = payload.get("updated")
    updated_at = None
    if isinstance(updated_raw, str) and updated_raw.strip():
        try:
            updated_at = _parse_google_datetime(updated_raw)
        except ValueError:
            updated_at = None

    recurrence = payload.get("recurrence")
    color_id = payload.get("colorId")

    return RemoteEvent(
        id=event_id,
        calendar_id=calendar_id,
        summary=_normalize_optional_text(payload.get("summary")),
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        color_id=str(color_id) if color_id is not None else None,
        attendee_emails=_extract_attendee_emails(payload.get("attendees")),
        recurrence=[r for r in recurrence if isinstance(r, str)]
        if isinstance(recurrence, list)
        else [],
        status=status,
        updated_at=updated_at,
        raw=payload,
    )


def _boundary(value: datetime, *, all_day: bool) -> dict[str, str]:
    if all_day:
        return {"date": value.astimezone(UTC).date().isoformat()}
    return {"dateTime": _google_rfc3339(value)}


def build_event_body(
    *,
    title: str,
    start_at: datetime,
    end_at: datetime,
    all_day: bool,
    color: str | None,
    description: str | None = None,
    location: str | None = None,
    recurrence: str | None = None,
) -> dict[str, Any]:
    """Build a Google event resource for insert or patch.

    All-day events use ``date`` boundaries; when the stored end date equals
    the start date the end is pushed one day forward since Google's
    all-day end date is exclusive.
    """
    end_boundary = _boundary(end_at, all_day=all_day)
    if all_day and end_at.astimezone(UTC).date() <= start_at.astimezone(UTC).date():
        end_boundary = {"date": (start_at.astimezone(UTC).date() + timedelta(days=1)).isoformat()}

    body: dict[str, Any] = {
        "summary": title,
        "description": description,
        "location": location,
        "start": _boundary(start_at, all_day=all_day),
        "end": end_boundary,
        "colorId": to_color_id(color),
    }
    if recurrence:
        body["recurrence"] = [recurrence]
    return body


def build_clone_body(original: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Copy an existing event resource for insertion into another calendar.

    Server-owned identity fields are dropped so Google assigns new ones.
    """
    body = {key: value for key, value in original.items() if key not in _CLONE_EXCLUDED_KEYS}
    body.update(overrides)
    return body


def _calendar_list_entry(item: dict[str, Any]) -> RemoteCalendar | None:
    calendar_id = _normalize_optional_text(item.get("id"))
    if calendar_id is None:
        return None
    return RemoteCalendar(
        id=calendar_id,
        summary=_normalize_optional_text(item.get("summary")),
        access_role=_normalize_optional_text(item.get("accessRole")),
        primary=bool(item.get("primary", False)),
        color_id=_normalize_optional_text(item.get("colorId")),
    )


class CalendarProvider(abc.ABC):
    """Provider abstraction used by the synchronization components."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g., ``google``)."""

    @abc.abstractmethod
    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        """List every event of *calendar_id* in the window, following all pages."""

    @abc.abstractmethod
    async def get_event(self, *, calendar_id: str, event_id: str) -> RemoteEvent:
        """Fetch one event; raises :class:`CalendarNotFoundError` when absent."""

    @abc.abstractmethod
    async def insert_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent: ...

    @abc.abstractmethod
    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
    ) -> RemoteEvent: ...

    @abc.abstractmethod
    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete an event; an already-absent event counts as deleted."""

    @abc.abstractmethod
    async def move_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        destination: str,
    ) -> RemoteEvent:
        """Move an event to *destination* using the provider's native move."""

    @abc.abstractmethod
    async def list_calendars(self, *, min_access_role: str = WRITER_ACCESS_ROLE) -> list[RemoteCalendar]:
        """List the calendars the credentials can access with at least *min_access_role*."""

    @abc.abstractmethod
    async def get_calendar(self, *, calendar_id: str) -> RemoteCalendar:
        """Return the calendarList entry for *calendar_id*; raises when it is not accessible."""

    @abc.abstractmethod
    async def insert_calendar(self, *, summary: str, time_zone: str | None = None) -> RemoteCalendar: ...

    @abc.abstractmethod
    async def set_calendar_color(self, *, calendar_id: str, color_id: str) -> None: ...

    async def shutdown(self) -> None:
        """Release provider resources."""
        ...


class GoogleCalendarProvider(CalendarProvider):
    """Google provider issuing bearer-authenticated requests with rate-limit retries."""

    def __init__(
        self,
        access_token: str,
        config: GoogleConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
        *,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._access_token = access_token
        self._config = config or GoogleConfig()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._config.request_timeout_s
        )
        self._page_size = page_size

    @property
    def name(self) -> str:
        return "google"

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method=method,
            path=path,
            params=params,
            json_body=json_body,
        )
        raise_for_google_status(response)

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON for a successful response",
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarRequestError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected JSON payload shape",
            )
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body
        )

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body
            )
            retry += 1

        return response

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise CalendarTransientError(
                status_code=0, message=f"Google Calendar request failed: {exc}"
            ) from exc

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is None:
            return path
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{path}/{quote(normalized_event_id, safe='')}"

    def _to_remote_event(self, payload: dict[str, Any], *, calendar_id: str, action: str) -> RemoteEvent:
        event = google_event_to_remote_event(payload, calendar_id=calendar_id)
        if event is None:
            raise CalendarRequestError(
                status_code=200,
                message=f"Google Calendar returned a cancelled or id-less event after {action}",
            )
        return event

    async def list_events(
        self,
        *,
        calendar_id: str,
        time_min: datetime,
        time_max: datetime | None = None,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            # Recurring series come back as their master so local series keep a remote match.
            "singleEvents": False,
            "showDeleted": False,
            "maxResults": self._page_size,
            "timeMin": _google_rfc3339(time_min),
        }
        if time_max is not None:
            params["timeMax"] = _google_rfc3339(time_max)

        events: list[RemoteEvent] = []
        page_token: str | None = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token
            payload = await self._request_google_json(
                "GET", self._event_path(calendar_id), params=page_params
            )
            items = payload.get("items", [])
            if not isinstance(items, list):
                raise CalendarRequestError(
                    status_code=200,
                    message="Google Calendar list_events response missing items array",
                )
            for item in items:
                if not isinstance(item, dict):
                    continue
                try:
                    event = google_event_to_remote_event(item, calendar_id=calendar_id)
                except ValueError as exc:
                    logger.warning(
                        "Skipping malformed event %r from calendar %s: %s",
                        item.get("id"),
                        calendar_id,
                        exc,
                    )
                    continue
                if event is not None:
                    events.append(event)

            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token
        return events

    async def get_event(self, *, calendar_id: str, event_id: str) -> RemoteEvent:
        payload = await self._request_google_json("GET", self._event_path(calendar_id, event_id))
        return self._to_remote_event(payload, calendar_id=calendar_id, action="get")

    async def insert_event(self, *, calendar_id: str, body: dict[str, Any]) -> RemoteEvent:
        payload = await self._request_google_json(
            "POST", self._event_path(calendar_id), json_body=body
        )
        return self._to_remote_event(payload, calendar_id=calendar_id, action="insert")

    async def patch_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: dict[str, Any],
    ) -> RemoteEvent:
        payload = await self._request_google_json(
            "PATCH", self._event_path(calendar_id, event_id), json_body=body
        )
        return self._to_remote_event(payload, calendar_id=calendar_id, action="patch")

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        """Delete a Google Calendar event.

        A 404 or 410 response is treated as success (the event was already
        deleted).
        """
        response = await self._request_with_bearer(
            method="DELETE", path=self._event_path(calendar_id, event_id)
        )
        if response.status_code in NOT_FOUND_STATUS_CODES:
            logger.debug(
                "delete_event: event '%s' not found (already deleted); treating as success",
                event_id,
            )
            return
        raise_for_google_status(response)

    async def move_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        destination: str,
    ) -> RemoteEvent:
        payload = await self._request_google_json(
            "POST",
            f"{self._event_path(calendar_id, event_id)}/move",
            params={"destination": destination},
        )
        return self._to_remote_event(payload, calendar_id=destination, action="move")

    async def list_calendars(
        self, *, min_access_role: str = WRITER_ACCESS_ROLE
    ) -> list[RemoteCalendar]:
        calendars: list[RemoteCalendar] = []
        page_token: str | None = None
        while True:
            params: dict[str, Any] = {"minAccessRole": min_access_role}
            if page_token:
                params["pageToken"] = page_token
            payload = await self._request_google_json(
                "GET", "/users/me/calendarList", params=params
            )
            for item in payload.get("items", []) or []:
                if not isinstance(item, dict):
                    continue
                calendar = _calendar_list_entry(item)
                if calendar is not None:
                    calendars.append(calendar)
            next_token = payload.get("nextPageToken")
            if not isinstance(next_token, str) or not next_token:
                break
            page_token = next_token
        return calendars

    async def get_calendar(self, *, calendar_id: str) -> RemoteCalendar:
        payload = await self._request_google_json(
            "GET", f"/users/me/calendarList/{quote(calendar_id, safe='')}"
        )
        calendar = _calendar_list_entry(payload)
        if calendar is None:
            raise CalendarRequestError(
                status_code=200, message="Google Calendar returned a calendar without an id"
            )
        return calendar

    async def insert_calendar(
        self, *, summary: str, time_zone: str | None = None
    ) -> RemoteCalendar:
        body: dict[str, Any] = {"summary": summary}
        if time_zone:
            body["timeZone"] = time_zone
        payload = await self._request_google_json("POST", "/calendars", json_body=body)
        calendar_id = _normalize_optional_text(payload.get("id"))
        if calendar_id is None:
            raise CalendarRequestError(
                status_code=200, message="Google Calendar returned a calendar without an id"
            )
        return RemoteCalendar(
            id=calendar_id,
            summary=_normalize_optional_text(payload.get("summary")) or summary,
            access_role="owner",
        )

    async def set_calendar_color(self, *, calendar_id: str, color_id: str) -> None:
        await self._request_google_json(
            "PATCH",
            f"/users/me/calendarList/{quote(calendar_id, safe='')}",
            json_body={"colorId": color_id},
        )

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
