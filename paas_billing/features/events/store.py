"""
Append-only raw event store.

Guarantees:
- (kind, guid) is unique; a batch with any collision is rejected whole
- insertion order within a kind is the commit order (``id``)
- events are never updated; nothing but an admin rebuild deletes them
"""

import logging
from datetime import datetime
from typing import Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import func, insert, select, tuple_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from paas_billing.core.database import consolidation_history, raw_events
from paas_billing.core.errors import ClosedMonthError, DuplicateEventError
from paas_billing.models.raw_event import RawEvent, RawEventFilter
from paas_billing.models.timestamps import as_utc, month_key

logger = logging.getLogger("paas_billing")


def _to_event(row) -> RawEvent:
    return RawEvent(
        id=row.id,
        kind=row.kind,
        guid=row.guid,
        created_at=as_utc(row.created_at),
        payload=dict(row.payload),
    )


class RawEventStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def store_events(self, events: Sequence[RawEvent]) -> int:
        """
        Insert a batch atomically.

        Raises:
            InvalidEventError: an event is missing guid, kind, created_at or payload
            DuplicateEventError: a (kind, guid) already exists or repeats in the batch
            ClosedMonthError: an event falls inside an already consolidated month
        """
        if not events:
            return 0
        for event in events:
            event.validate_event()

        keys = [(e.kind, e.guid) for e in events]
        if len(set(keys)) != len(keys):
            raise DuplicateEventError("batch contains the same event more than once")

        months = {month_key(e.created_at) for e in events}
        try:
            with self.engine.begin() as conn:
                closed = self._closed_months(conn, months)
                if closed:
                    raise ClosedMonthError(
                        f"cannot store events for consolidated month(s): {', '.join(sorted(closed))}"
                    )

                existing = conn.execute(
                    select(raw_events.c.kind, raw_events.c.guid).where(
                        tuple_(raw_events.c.kind, raw_events.c.guid).in_(keys)
                    )
                ).first()
                if existing is not None:
                    raise DuplicateEventError(f"duplicate {existing.kind} event: {existing.guid}")

                conn.execute(
                    insert(raw_events),
                    [
                        {
                            "kind": e.kind,
                            "guid": e.guid,
                            "created_at": e.created_at,
                            "payload": e.payload,
                        }
                        for e in events
                    ],
                )
        except IntegrityError as exc:
            # Lost a race with a concurrent writer of the same event
            raise DuplicateEventError(f"duplicate event in batch: {exc.orig}") from exc

        logger.debug("events.stored", extra={"count": len(events), "kind": events[0].kind})
        return len(events)

    @staticmethod
    def _closed_months(conn, months: Iterable[str]) -> Set[str]:
        query = select(consolidation_history.c.month).where(consolidation_history.c.month.in_(list(months)))
        return set(conn.execute(query).scalars().all())

    def closed_months(self, months: Iterable[str]) -> Set[str]:
        """The subset of ``months`` (YYYY-MM) that are already consolidated."""
        with self.engine.connect() as conn:
            return self._closed_months(conn, months)

    def consolidation_watermarks(self) -> List[Tuple[int, datetime]]:
        """(max raw id priced, month end) for every consolidated month."""
        query = select(consolidation_history.c.max_raw_id, consolidation_history.c.range_stop)
        with self.engine.connect() as conn:
            return sorted((row.max_raw_id, as_utc(row.range_stop)) for row in conn.execute(query))

    def get_events(self, event_filter: RawEventFilter) -> List[RawEvent]:
        order = raw_events.c.id.desc() if event_filter.reverse else raw_events.c.id.asc()
        query = select(raw_events).where(raw_events.c.kind == event_filter.kind).order_by(order)
        if event_filter.limit:
            query = query.limit(event_filter.limit)
        with self.engine.connect() as conn:
            return [_to_event(row) for row in conn.execute(query)]

    def get_latest_event(self, kind: str) -> Optional[RawEvent]:
        events = self.get_events(RawEventFilter(kind=kind, limit=1, reverse=True))
        return events[0] if events else None

    def iter_events(self, kinds: Sequence[str], up_to_id: Optional[int] = None) -> Iterator[RawEvent]:
        """Events of ``kinds`` in timeline order: (created_at, id)."""
        query = (
            select(raw_events)
            .where(raw_events.c.kind.in_(list(kinds)))
            .order_by(raw_events.c.created_at, raw_events.c.id)
        )
        if up_to_id is not None:
            query = query.where(raw_events.c.id <= up_to_id)
        with self.engine.connect() as conn:
            for row in conn.execute(query):
                yield _to_event(row)

    def max_id(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.max(raw_events.c.id))).scalar() or 0

    def earliest_created_at(self) -> Optional[datetime]:
        with self.engine.connect() as conn:
            value = conn.execute(select(func.min(raw_events.c.created_at))).scalar()
        return as_utc(value) if value is not None else None

    def count(self, kind: Optional[str] = None) -> int:
        query = select(func.count()).select_from(raw_events)
        if kind:
            query = query.where(raw_events.c.kind == kind)
        with self.engine.connect() as conn:
            return conn.execute(query).scalar() or 0
