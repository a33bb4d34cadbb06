"""
Event collector: drives one fetcher on a rate-limited loop and persists what it
returns through the raw event store.

States:
- SYNCING: before the first tick (short initial wait)
- COLLECTING: the last page had new events, poll again after min_wait_time
- SCHEDULED: nothing new (or the last tick failed), poll again after schedule

Events dated inside a consolidated month are dropped and counted; the
collector still moves past them.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from paas_billing.core.errors import AppError, TransientError, ValidationError
from paas_billing.core.metrics import (
    collector_errors_total,
    collector_events_dropped_total,
    collector_events_stored_total,
)
from paas_billing.features.events.fetchers import EventFetcher
from paas_billing.features.events.store import RawEventStore
from paas_billing.models.raw_event import RawEvent
from paas_billing.models.timestamps import month_key

logger = logging.getLogger("paas_billing")

MIN_WAIT_TIME = timedelta(seconds=3)


class CollectorState(str, Enum):
    SYNCING = "syncing"
    COLLECTING = "collecting"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class CollectorConfig:
    schedule: timedelta = timedelta(minutes=15)
    min_wait_time: timedelta = MIN_WAIT_TIME
    initial_wait_time: timedelta = timedelta(seconds=1)

    def validate(self) -> "CollectorConfig":
        if self.min_wait_time < MIN_WAIT_TIME:
            raise ValidationError(f"min wait time must be at least {MIN_WAIT_TIME}, got {self.min_wait_time}")
        if self.schedule <= timedelta(0):
            raise ValidationError(f"schedule must be positive, got {self.schedule}")
        if self.initial_wait_time < timedelta(0):
            raise ValidationError("initial wait time must not be negative")
        return self


class EventCollector:
    def __init__(self, fetcher: EventFetcher, store: RawEventStore, config: Optional[CollectorConfig] = None):
        self.fetcher = fetcher
        self.store = store
        self.config = (config or CollectorConfig()).validate()
        self._state = CollectorState.SYNCING
        self._lock = asyncio.Lock()
        # last event handed out by the fetcher, stored or dropped
        self._cursor: Optional[RawEvent] = None

    @property
    def kind(self) -> str:
        return self.fetcher.kind()

    @property
    def state(self) -> CollectorState:
        return self._state

    def wait_duration(self) -> timedelta:
        if self._state == CollectorState.SYNCING:
            return self.config.initial_wait_time
        if self._state == CollectorState.COLLECTING:
            return self.config.min_wait_time
        return self.config.schedule

    async def collect(self) -> int:
        """Run one tick. Returns the number of events stored."""
        async with self._lock:
            try:
                stored = await self._collect()
            except AppError as exc:
                collector_errors_total.inc(labels={"kind": self.kind})
                logger.error(
                    "collector.error",
                    extra={"kind": self.kind, "error_code": exc.code, "error_message": exc.message},
                )
                self._state = CollectorState.SCHEDULED
                return 0
            return stored

    async def _collect(self) -> int:
        last_known = self._cursor
        if last_known is None:
            try:
                last_known = await asyncio.to_thread(self.store.get_latest_event, self.kind)
            except SQLAlchemyError as exc:
                raise TransientError(f"reading latest {self.kind} event failed: {exc}") from exc
        events = await self.fetcher.fetch_events(last_known)

        if not events or (last_known is not None and events[-1].guid == last_known.guid):
            self._state = CollectorState.SCHEDULED
        else:
            self._state = CollectorState.COLLECTING

        if last_known is not None:
            events = [e for e in events if e.guid != last_known.guid]
        if not events:
            return 0

        try:
            keep = await asyncio.to_thread(self._drop_closed_month_events, events)
            stored = await asyncio.to_thread(self.store.store_events, keep) if keep else 0
        except SQLAlchemyError as exc:
            raise TransientError(f"storing {self.kind} events failed: {exc}") from exc
        self._cursor = events[-1]
        collector_events_stored_total.inc(labels={"kind": self.kind}, amount=stored)
        logger.info("collector.stored", extra={"kind": self.kind, "count": stored, "state": self._state.value})
        return stored

    def _drop_closed_month_events(self, events: List[RawEvent]) -> List[RawEvent]:
        closed = self.store.closed_months({month_key(e.created_at) for e in events})
        if not closed:
            return events
        dropped = [e for e in events if month_key(e.created_at) in closed]
        collector_events_dropped_total.inc(labels={"kind": self.kind}, amount=len(dropped))
        logger.warning("collector.closed_month_events_dropped", extra={
            "kind": self.kind,
            "count": len(dropped),
            "months": ",".join(sorted(closed)),
            "event_guids": ",".join(e.guid for e in dropped),
        })
        return [e for e in events if month_key(e.created_at) not in closed]

    async def run(self, stop: asyncio.Event) -> None:
        """Loop until ``stop`` is set. Cancellation propagates."""
        logger.info("collector.started", extra={"kind": self.kind})
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.wait_duration().total_seconds())
                break
            except asyncio.TimeoutError:
                pass
            await self.collect()
        logger.info("collector.stopped", extra={"kind": self.kind})
