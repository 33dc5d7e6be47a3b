from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import CalendarSettings
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class CalendarError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def auth_failed(self) -> bool:
        return self.status_code in {401, 403}


@dataclass(slots=True)
class TimeSlot:
    start: datetime
    end: datetime


def _parse_instant(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def event_start(event: dict[str, Any]) -> datetime | None:
    start = event.get("start") or {}
    raw = start.get("dateTime") or start.get("date")
    if not raw:
        return None
    try:
        return _parse_instant(raw)
    except ValueError:
        return None


def free_slots(
    busy: list[tuple[datetime, datetime]],
    *,
    window_start: datetime,
    window_end: datetime,
    duration: timedelta,
) -> list[TimeSlot]:
    """Carve ``duration``-sized gaps out of the busy intervals within the window."""
    slots: list[TimeSlot] = []
    cursor = window_start
    for busy_start, busy_end in sorted(busy):
        while cursor + duration <= min(busy_start, window_end):
            slots.append(TimeSlot(start=cursor, end=cursor + duration))
            cursor += duration
        cursor = max(cursor, busy_end)
    while cursor + duration <= window_end:
        slots.append(TimeSlot(start=cursor, end=cursor + duration))
        cursor += duration
    return slots


class GoogleCalendarClient:
    """Minimal Google Calendar v3 client authenticated per call with a user token."""

    def __init__(self, settings: CalendarSettings, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport

    async def _request(self, method: str, path: str, access_token: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"}
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_random_exponential(multiplier=0.25, max=4),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(
                    base_url=self._settings.base_url,
                    timeout=self._settings.timeout_seconds,
                    transport=self._transport,
                ) as client:
                    response = await client.request(method, path, headers=headers, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("calendar_request_failed", path=path, status_code=exc.response.status_code)
            raise CalendarError(str(exc), status_code=exc.response.status_code) from exc
        return response.json() if response.content else {}

    async def list_events(self, access_token: str, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        payload = await self._request(
            "GET",
            f"/calendars/{self._settings.calendar_id}/events",
            access_token,
            params={
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
            },
        )
        return list(payload.get("items", []))

    async def create_event(self, access_token: str, event: dict[str, Any]) -> dict[str, Any]:
        created = await self._request(
            "POST",
            f"/calendars/{self._settings.calendar_id}/events",
            access_token,
            json=event,
        )
        logger.info("calendar_event_created", event_id=created.get("id"))
        return created

    async def find_free_slots(
        self,
        access_token: str,
        time_min: datetime,
        time_max: datetime,
        *,
        duration_minutes: int,
    ) -> list[TimeSlot]:
        payload = await self._request(
            "POST",
            "/freeBusy",
            access_token,
            json={
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
                "items": [{"id": self._settings.calendar_id}],
            },
        )
        calendars = payload.get("calendars", {})
        busy_raw = calendars.get(self._settings.calendar_id, {}).get("busy", [])
        busy = [(_parse_instant(item["start"]), _parse_instant(item["end"])) for item in busy_raw]
        return free_slots(
            busy,
            window_start=time_min,
            window_end=time_max,
            duration=timedelta(minutes=duration_minutes),
        )
