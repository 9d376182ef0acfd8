"""Google Calendar event fetcher.

Fetches the events in a time window, page by page, and filters them down to
the ones that can ring: timed, not cancelled, not declined by the user and
carrying a video-conference link.

Pagination is capped; hitting the cap with a cursor still pending is a
legitimate partial answer, reported through a :class:`PaginationCapped`
warning rather than an error.  A 401 gets exactly one token refresh and a
restart from the first page.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx
from opentelemetry import trace
from pydantic import BaseModel, ConfigDict, Field

from ringback.auth.session import SessionManager
from ringback.calendar.models import CalendarEvent, parse_google_event
from ringback.config import PollConfig
from ringback.core.clock import rfc3339
from ringback.errors import (
    AuthRequired,
    CalendarNetworkError,
    CalendarQuotaError,
    CalendarUnauthorizedError,
    MalformedEventError,
    safe_google_error,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"


class PaginationCapped(BaseModel):
    """Warning record: the page cap was reached with more pages available."""

    model_config = ConfigDict(frozen=True)

    kind: str = "pagination_capped"
    pages_fetched: int
    page_cap: int

    @property
    def message(self) -> str:
        return (
            f"Stopped after {self.pages_fetched} pages (cap {self.page_cap}); "
            "later events in the window were not fetched"
        )


class FetchResult(BaseModel):
    """Outcome of one :meth:`EventFetcher.fetch_upcoming` call."""

    events: list[CalendarEvent] = Field(default_factory=list)
    warnings: list[PaginationCapped] = Field(default_factory=list)
    partial: bool = False
    pages_fetched: int = 0
    malformed_skipped: int = 0


class EventFetcher:
    """Lists upcoming conference events through the Calendar REST API."""

    def __init__(
        self,
        session: SessionManager,
        config: PollConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._session = session
        self._config = config or PollConfig()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(
            timeout=self._config.request_timeout_seconds
        )
        self._inflight: asyncio.Task[FetchResult] | None = None

    async def fetch_upcoming(self, window_start: datetime, window_end: datetime) -> FetchResult:
        """Return the ringable events starting within ``[window_start, window_end]``.

        A call made while another is still running shares its result.

        Raises
        ------
        CalendarUnauthorizedError
            No credential, or the calendar API rejected it twice.
        CalendarQuotaError
            The API reported a quota or rate limit problem.
        CalendarNetworkError
            Transport failure or any other non-2xx response.
        """
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            logger.debug("Calendar fetch already running; sharing its result")
            return await asyncio.shield(inflight)

        task = asyncio.create_task(self._fetch(window_start, window_end))
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        # Cancelling this caller must not cancel the fetch for those sharing it.
        return await asyncio.shield(task)

    def _clear_inflight(self, task: asyncio.Task[FetchResult]) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _fetch(self, window_start: datetime, window_end: datetime) -> FetchResult:
        tracer = trace.get_tracer("ringback")
        with tracer.start_as_current_span("ringback.calendar.fetch") as span:
            span.set_attribute("calendar_id", self._config.calendar_id)
            token = await self._token(refresh=False)
            try:
                items, result = await self._fetch_pages(token, window_start, window_end)
            except CalendarUnauthorizedError:
                logger.info("Calendar API returned 401; refreshing token and restarting")
                token = await self._token(refresh=True)
                items, result = await self._fetch_pages(token, window_start, window_end)

            for item in items:
                try:
                    event = parse_google_event(item)
                except MalformedEventError as exc:
                    logger.warning("Skipping malformed calendar event: %s", exc)
                    result.malformed_skipped += 1
                    continue
                if event is None or event.declined_by_self or event.conference_link is None:
                    continue
                result.events.append(event)

            span.set_attribute("pages_fetched", result.pages_fetched)
            span.set_attribute("events", len(result.events))
            span.set_attribute("partial", result.partial)
            return result

    async def _token(self, *, refresh: bool) -> str:
        try:
            if refresh:
                return await self._session.refresh(False)
            return await self._session.get_token(False)
        except AuthRequired as exc:
            raise CalendarUnauthorizedError(status_code=401, message=str(exc)) from exc

    async def _fetch_pages(
        self, token: str, window_start: datetime, window_end: datetime
    ) -> tuple[list[Any], FetchResult]:
        calendar_id = quote(self._config.calendar_id, safe="")
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{calendar_id}/events"
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "timeMin": rfc3339(window_start),
            "timeMax": rfc3339(window_end),
            "maxResults": self._config.page_size,
        }

        result = FetchResult()
        items: list[Any] = []
        page_token: str | None = None
        while True:
            if page_token is not None:
                params["pageToken"] = page_token
            payload = await self._get_page(url, token, params)
            result.pages_fetched += 1

            page_items = payload.get("items")
            if isinstance(page_items, list):
                items.extend(page_items)

            next_token = payload.get("nextPageToken")
            page_token = next_token if isinstance(next_token, str) and next_token else None
            if page_token is None:
                break
            if result.pages_fetched >= self._config.page_cap:
                warning = PaginationCapped(
                    pages_fetched=result.pages_fetched, page_cap=self._config.page_cap
                )
                logger.warning("Calendar pagination capped: %s", warning.message)
                result.warnings.append(warning)
                result.partial = True
                break
        return items, result

    async def _get_page(self, url: str, token: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._http_client.get(
                url,
                params=dict(params),
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarNetworkError(
                status_code=0, message=f"Google Calendar request failed: {exc}"
            ) from exc

        if response.status_code == 401:
            _, message = safe_google_error(response)
            raise CalendarUnauthorizedError(status_code=401, message=message)

        if response.status_code < 200 or response.status_code >= 300:
            _, message = safe_google_error(response)
            if response.status_code == 429 or "quota" in message.lower():
                raise CalendarQuotaError(status_code=response.status_code, message=message)
            raise CalendarNetworkError(status_code=response.status_code, message=message)

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarNetworkError(
                status_code=response.status_code,
                message="Google Calendar API returned invalid JSON",
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarNetworkError(
                status_code=response.status_code,
                message="Google Calendar API returned an unexpected payload shape",
            )
        return payload

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
