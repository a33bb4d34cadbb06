"""
Upstream usage event fetchers.

A fetcher produces the next page of raw events after the newest one the store
already holds. The Cloud Foundry flavour reads ``/v2/app_usage_events`` and
``/v2/service_usage_events``, which page oldest-first via ``after_guid``.
Managed database scaling (``managed-metric`` events) comes from the
provider's audit event log.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx

from paas_billing.core.errors import TransientError, ValidationError
from paas_billing.models.raw_event import APP_KIND, MANAGED_METRIC_KIND, SCALE_MEMBERS_EVENT, SERVICE_KIND, RawEvent
from paas_billing.models.timestamps import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger("paas_billing")

DEFAULT_FETCH_LIMIT = 50
MIN_FETCH_LIMIT = 1
MAX_FETCH_LIMIT = 100
DEFAULT_RECORD_MIN_AGE = timedelta(minutes=5)
MIN_RECORD_MIN_AGE = timedelta(minutes=5)

USAGE_EVENT_PATHS = {
    APP_KIND: "/v2/app_usage_events",
    SERVICE_KIND: "/v2/service_usage_events",
}

AUDIT_EVENTS_PATH = "/2016-07/audit_events"
AUDIT_TIME_PRECISION = timedelta(seconds=1)


class EventFetcher(ABC):
    """Produces raw events strictly after ``last_known`` in upstream order."""

    @abstractmethod
    def kind(self) -> str:
        ...

    @abstractmethod
    async def fetch_events(self, last_known: Optional[RawEvent]) -> List[RawEvent]:
        ...


class UsageEventsClient:
    """Thin httpx wrapper around the upstream usage event listing."""

    def __init__(self, base_url: str, token: Optional[str] = None, *, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"bearer {token}"
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    async def list_usage_events(self, kind: str, *, after_guid: Optional[str], results_per_page: int) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"results-per-page": results_per_page}
        if after_guid:
            params["after_guid"] = after_guid
        try:
            response = await self._client.get(USAGE_EVENT_PATHS[kind], params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransientError(
                f"usage event request failed for {kind}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"usage event request failed for {kind}: {exc}") from exc
        except ValueError as exc:
            raise TransientError(f"usage event response for {kind} is not JSON") from exc
        return list(body.get("resources") or [])

    async def aclose(self) -> None:
        await self._client.aclose()


def validate_fetch_limit(limit: int) -> int:
    if not MIN_FETCH_LIMIT <= limit <= MAX_FETCH_LIMIT:
        raise ValidationError(f"fetch limit must be between {MIN_FETCH_LIMIT} and {MAX_FETCH_LIMIT}, got {limit}")
    return limit


def validate_record_min_age(min_age: timedelta) -> timedelta:
    if min_age < MIN_RECORD_MIN_AGE:
        raise ValidationError(f"record min age must be at least {MIN_RECORD_MIN_AGE}, got {min_age}")
    return min_age


class UsageEventFetcher(EventFetcher):
    """Fetches one kind of usage event from the upstream API."""

    def __init__(
        self,
        client: UsageEventsClient,
        kind: str,
        *,
        fetch_limit: int = DEFAULT_FETCH_LIMIT,
        record_min_age: timedelta = DEFAULT_RECORD_MIN_AGE,
        clock: Callable[[], datetime] = utc_now,
    ):
        if kind not in USAGE_EVENT_PATHS:
            raise ValidationError(f"unsupported usage event kind: {kind}")
        self.client = client
        self._kind = kind
        self.fetch_limit = validate_fetch_limit(fetch_limit)
        self.record_min_age = validate_record_min_age(record_min_age)
        self.clock = clock

    def kind(self) -> str:
        return self._kind

    async def fetch_events(self, last_known: Optional[RawEvent]) -> List[RawEvent]:
        resources = await self.client.list_usage_events(
            self._kind,
            after_guid=last_known.guid if last_known else None,
            results_per_page=self.fetch_limit,
        )
        cutoff = self.clock() - self.record_min_age
        events: List[RawEvent] = []
        for resource in resources[: self.fetch_limit]:
            event = self._to_raw_event(resource)
            event.validate_event()
            if event.created_at > cutoff:
                # Upstream pages are oldest first; everything from here on is too young
                break
            events.append(event)
        return events

    def _to_raw_event(self, resource: Dict[str, Any]) -> RawEvent:
        metadata = resource.get("metadata") or {}
        created_at = metadata.get("created_at")
        try:
            return RawEvent(
                guid=metadata.get("guid") or "",
                kind=self._kind,
                created_at=parse_timestamp(created_at) if created_at else None,
                payload=resource.get("entity"),
            )
        except ValueError as exc:
            raise TransientError(f"malformed {self._kind} usage event {metadata.get('guid')}: {exc}") from exc


class ManagedMetricsClient:
    """httpx wrapper around the managed database provider's audit event log."""

    def __init__(self, base_url: str, token: Optional[str] = None, *, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    async def list_audit_events(self, *, newer_than: Optional[datetime], cursor: Optional[str], limit: int) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if newer_than is not None:
            params["newer_than"] = format_timestamp(newer_than)
        if cursor:
            params["cursor"] = cursor
        try:
            response = await self._client.get(AUDIT_EVENTS_PATH, params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            raise TransientError(f"audit event request failed: HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"audit event request failed: {exc}") from exc
        except ValueError as exc:
            raise TransientError("audit event response is not JSON") from exc
        return list((body.get("_embedded") or {}).get("audit_events") or [])

    async def aclose(self) -> None:
        await self._client.aclose()


class ManagedMetricFetcher(EventFetcher):
    """
    Fetches managed database scaling events.

    The audit log pages newest first through a ``cursor`` (the id of the last
    entry seen). Every page newer than the last known event (less one second,
    the log's timestamp precision) is read, non-scaling entries are skipped and
    the result is returned oldest first, starting after ``last_known``.
    """

    def __init__(self, client: ManagedMetricsClient, *, fetch_limit: int = DEFAULT_FETCH_LIMIT):
        self.client = client
        self.fetch_limit = validate_fetch_limit(fetch_limit)

    def kind(self) -> str:
        return MANAGED_METRIC_KIND

    async def fetch_events(self, last_known: Optional[RawEvent]) -> List[RawEvent]:
        newer_than = last_known.created_at - AUDIT_TIME_PRECISION if last_known else None
        cursor: Optional[str] = None
        newest_first: List[RawEvent] = []
        while True:
            previous = cursor
            page = await self.client.list_audit_events(newer_than=newer_than, cursor=cursor, limit=self.fetch_limit)
            for audit_event in page:
                cursor = audit_event.get("id")
                if audit_event.get("event") != SCALE_MEMBERS_EVENT:
                    continue
                newest_first.append(self._to_raw_event(audit_event))
            logger.debug("fetcher.audit_page", extra={"kind": MANAGED_METRIC_KIND, "count": len(page), "cursor": cursor})
            if len(page) < self.fetch_limit or cursor == previous:
                break

        events = list(reversed(newest_first))
        if last_known is not None:
            for index, event in enumerate(events):
                if event.guid == last_known.guid:
                    return events[index + 1:]
        return events

    @staticmethod
    def _to_raw_event(audit_event: Dict[str, Any]) -> RawEvent:
        created_at = audit_event.get("created_at")
        try:
            event = RawEvent(
                guid=audit_event.get("id") or "",
                kind=MANAGED_METRIC_KIND,
                created_at=parse_timestamp(created_at) if created_at else None,
                payload=audit_event,
            )
        except ValueError as exc:
            raise TransientError(f"malformed audit event {audit_event.get('id')}: {exc}") from exc
        event.validate_event()
        return event
