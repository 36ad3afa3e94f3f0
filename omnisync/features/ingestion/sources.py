"""
Provider sources: the Gmail and Calendar specifics of list, get and map.

Both sources speak the same query grammar produced by the window planner
(`after:YYYY/MM/DD` or `newer_than:Nd`). Gmail passes it through as `q`;
Calendar translates it into a timeMin/timeMax range.

A source exposes provider, service, job_kind and item_label plus
list_partitions() -> (partitions, rotated_credential),
list_page() -> (ids, next_page_token, rotated_credential),
get_item() -> (payload, rotated_credential), to_record() and close().

Gmail has a single unnamed partition. Calendar has one partition per
calendar, and its source ids are namespaced as "{calendar_id}/{event_id}"
so the same event id in two calendars stays two rows.
"""

import re
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote

from omnisync.config import settings
from omnisync.features.ingestion.domain import RawEventRecord
from omnisync.models.domain.credential_domain import IntegrationCredential

GMAIL_API_BASE_URL = "https://gmail.googleapis.com/gmail/v1"
CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_PRIMARY = "primary"

GMAIL_LIST_PAGE_SIZE = 500  # API max
CALENDAR_LIST_PAGE_SIZE = 2500  # API max
CALENDAR_LIST_CALENDARS_PAGE_SIZE = 250  # API max

SYNC_TYPE = "service_sync"

_AFTER_RE = re.compile(r"^after:(\d{4})/(\d{2})/(\d{2})$")
_NEWER_THAN_RE = re.compile(r"^newer_than:(\d+)d$")


def parse_query_window(query: str, now: datetime | None = None) -> datetime:
    """Lower time bound encoded by a planner query."""
    now = now or datetime.now(UTC)

    match = _AFTER_RE.match(query.strip())
    if match:
        year, month, day = (int(part) for part in match.groups())
        return datetime(year, month, day, tzinfo=UTC)

    match = _NEWER_THAN_RE.match(query.strip())
    if match:
        return now - timedelta(days=int(match.group(1)))

    raise ValueError(f"Unsupported sync query: {query!r}")


def _parse_event_time(value: dict[str, Any] | None) -> datetime | None:
    if not value:
        return None
    if value.get("dateTime"):
        parsed = datetime.fromisoformat(value["dateTime"])
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    if value.get("date"):
        # All-day events carry a bare date
        return datetime.fromisoformat(value["date"]).replace(tzinfo=UTC)
    return None


def calendar_source_id(calendar_id: str, event_id: str) -> str:
    return f"{calendar_id}/{event_id}"


def split_calendar_source_id(source_id: str) -> tuple[str, str]:
    """Inverse of calendar_source_id. Bare event ids belong to the primary calendar."""
    calendar_id, _, event_id = source_id.rpartition("/")
    return calendar_id or CALENDAR_PRIMARY, event_id


class GmailSource:
    provider = "gmail"
    service = "gmail"
    job_kind = "normalize_google_email"
    item_label = "emails"

    def __init__(self, api_client):
        self._api = api_client

    async def close(self) -> None:
        await self._api.close()

    async def list_partitions(
        self,
        credential: IntegrationCredential,
        preferred: list[str] | None = None,
        *,
        max_retries: int = 0,
    ) -> tuple[list[str | None], IntegrationCredential | None]:
        return [None], None

    async def list_page(
        self,
        credential: IntegrationCredential,
        query: str,
        page_token: str | None,
        *,
        partition: str | None = None,
        max_retries: int = 0,
    ) -> tuple[list[str], str | None, IntegrationCredential | None]:
        params: dict[str, Any] = {"maxResults": GMAIL_LIST_PAGE_SIZE, "q": query}
        if page_token:
            params["pageToken"] = page_token

        data, rotated = await self._api.get_json(
            credential,
            f"{GMAIL_API_BASE_URL}/users/me/messages",
            params=params,
            max_retries=max_retries,
            operation="gmail_list_messages",
        )
        ids = [message["id"] for message in data.get("messages", []) if message.get("id")]
        return ids, data.get("nextPageToken"), rotated

    async def get_item(
        self, credential: IntegrationCredential, source_id: str
    ) -> tuple[dict[str, Any], IntegrationCredential | None]:
        return await self._api.get_json(
            credential,
            f"{GMAIL_API_BASE_URL}/users/me/messages/{source_id}",
            params={"format": "full"},
            operation="gmail_get_message",
        )

    def to_record(
        self, user_id: str, source_id: str, payload: dict[str, Any], batch_id: str, query: str
    ) -> RawEventRecord:
        fetched_at = datetime.now(UTC)
        internal_date = payload.get("internalDate")
        # Messages without internalDate are stamped with the fetch time
        occurred_at = (
            datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
            if internal_date
            else fetched_at
        )

        return RawEventRecord(
            user_id=user_id,
            provider=self.provider,
            source_id=payload.get("id") or source_id,
            payload=payload,
            occurred_at=occurred_at,
            batch_id=batch_id,
            source_meta={
                "labelIds": payload.get("labelIds", []),
                "fetchedAt": fetched_at.isoformat(),
                "matchedQuery": query,
                "syncType": SYNC_TYPE,
            },
        )


class CalendarSource:
    """
    Events from every calendar on the user's calendar list.

    Callers may pin the calendars to sync; otherwise they are discovered
    through calendarList on each run.
    """

    provider = "calendar"
    service = "calendar"
    job_kind = "normalize_google_calendar"
    item_label = "calendar events"

    def __init__(self, api_client, days_future: int | None = None):
        self._api = api_client
        self.days_future = days_future if days_future is not None else settings.CALENDAR_DAYS_FUTURE

    async def close(self) -> None:
        await self._api.close()

    def _events_url(self, calendar_id: str) -> str:
        return f"{CALENDAR_API_BASE_URL}/calendars/{quote(calendar_id, safe='@')}/events"

    async def list_partitions(
        self,
        credential: IntegrationCredential,
        preferred: list[str] | None = None,
        *,
        max_retries: int = 0,
    ) -> tuple[list[str], IntegrationCredential | None]:
        if preferred:
            return list(dict.fromkeys(preferred)), None

        calendar_ids: list[str] = []
        rotated: IntegrationCredential | None = None
        page_token: str | None = None

        while True:
            params: dict[str, Any] = {
                "maxResults": CALENDAR_LIST_CALENDARS_PAGE_SIZE,
                "fields": "items(id),nextPageToken",
            }
            if page_token:
                params["pageToken"] = page_token

            data, page_rotated = await self._api.get_json(
                credential,
                f"{CALENDAR_API_BASE_URL}/users/me/calendarList",
                params=params,
                max_retries=max_retries,
                operation="calendar_list_calendars",
            )
            if page_rotated:
                credential = rotated = page_rotated

            calendar_ids.extend(item["id"] for item in data.get("items", []) if item.get("id"))
            page_token = data.get("nextPageToken")
            if not page_token:
                return calendar_ids, rotated

    async def list_page(
        self,
        credential: IntegrationCredential,
        query: str,
        page_token: str | None,
        *,
        partition: str | None = None,
        max_retries: int = 0,
    ) -> tuple[list[str], str | None, IntegrationCredential | None]:
        calendar_id = partition or CALENDAR_PRIMARY
        now = datetime.now(UTC)
        params: dict[str, Any] = {
            "timeMin": parse_query_window(query, now).isoformat(),
            "timeMax": (now + timedelta(days=self.days_future)).isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": CALENDAR_LIST_PAGE_SIZE,
            "fields": "items(id),nextPageToken",
        }
        if page_token:
            params["pageToken"] = page_token

        data, rotated = await self._api.get_json(
            credential,
            self._events_url(calendar_id),
            params=params,
            max_retries=max_retries,
            operation="calendar_list_events",
        )
        ids = [
            calendar_source_id(calendar_id, event["id"])
            for event in data.get("items", [])
            if event.get("id")
        ]
        return ids, data.get("nextPageToken"), rotated

    async def get_item(
        self, credential: IntegrationCredential, source_id: str
    ) -> tuple[dict[str, Any], IntegrationCredential | None]:
        calendar_id, event_id = split_calendar_source_id(source_id)
        return await self._api.get_json(
            credential,
            f"{self._events_url(calendar_id)}/{quote(event_id, safe='')}",
            operation="calendar_get_event",
        )

    def to_record(
        self, user_id: str, source_id: str, payload: dict[str, Any], batch_id: str, query: str
    ) -> RawEventRecord:
        calendar_id, event_id = split_calendar_source_id(source_id)
        event_id = payload.get("id") or event_id

        return RawEventRecord(
            user_id=user_id,
            provider=self.provider,
            source_id=calendar_source_id(calendar_id, event_id) if event_id else None,
            payload=payload,
            occurred_at=_parse_event_time(payload.get("start")),
            batch_id=batch_id,
            source_meta={
                "calendarId": calendar_id,
                "eventId": event_id,
                "status": payload.get("status", "confirmed"),
                "fetchedAt": datetime.now(UTC).isoformat(),
                "matchedQuery": query,
                "syncType": SYNC_TYPE,
            },
        )


def build_source(provider: str, api_client):
    if provider == "gmail":
        return GmailSource(api_client)
    if provider == "calendar":
        return CalendarSource(api_client)
    raise ValueError(f"Unknown provider: {provider}")
