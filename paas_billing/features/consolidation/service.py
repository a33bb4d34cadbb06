"""
Consolidation: freeze the billable events of a closed month.

Frozen rows are written once per (month, event_guid) and served verbatim
afterwards. Consolidating a month twice is a no-op that leaves the first
result in place.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from paas_billing.core.database import consolidated_billable_events, consolidation_history
from paas_billing.core.errors import ConflictError, ValidationError
from paas_billing.core.metrics import consolidated_months_total
from paas_billing.features.pricing.engine import PricingEngine
from paas_billing.features.query.cache import DerivedViews
from paas_billing.models.billable_event import BillableEvent
from paas_billing.models.filters import EventFilter
from paas_billing.models.timestamps import (
    as_utc,
    month_key,
    month_start,
    next_month,
    parse_month_key,
    parse_timestamp,
    utc_now,
)
from paas_billing.models.usage_event import UsageEvent, clip_usage_events

logger = logging.getLogger("paas_billing")

DEFAULT_START_DATE = "2017-07-01"
DEFAULT_DELAY = timedelta(days=5)


def price_range(usage_events: Sequence[UsageEvent], pricing: PricingEngine, start: datetime, stop: datetime, org_guids: Sequence[str] = ()) -> List[BillableEvent]:
    """Price every usage event intersecting ``[start, stop)``, clipped to it, in billing order."""
    return [pricing.price(event) for event in clip_usage_events(usage_events, start, stop, org_guids)]


def event_totals(rows) -> Dict[str, Tuple[Decimal, Decimal]]:
    """event_guid -> (ex_vat, inc_vat) for BillableEvents or their JSON payloads."""
    totals = {}
    for row in rows:
        if isinstance(row, BillableEvent):
            totals[row.event_guid] = (row.price.ex_vat, row.price.inc_vat)
        else:
            price = row["price"]
            totals[row["event_guid"]] = (Decimal(price["ex_vat"]), Decimal(price["inc_vat"]))
    return totals


def _coerce_month(month) -> datetime:
    if isinstance(month, datetime):
        start = month_start(month)
        if start != as_utc(month):
            raise ValidationError("consolidation only works with ranges starting and ending on month boundaries")
        return start
    try:
        return parse_month_key(month)
    except ValueError as exc:
        raise ValidationError(str(exc)) from None


class Consolidator:
    def __init__(
        self,
        engine: Engine,
        derived: DerivedViews,
        *,
        start_date: str = DEFAULT_START_DATE,
        delay: timedelta = DEFAULT_DELAY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.engine = engine
        self.derived = derived
        self.start_date = month_start(parse_timestamp(start_date))
        self.delay = delay
        self.clock = clock

    # reads

    def consolidated_months(self, conn: Optional[Connection] = None) -> Set[str]:
        query = select(consolidation_history.c.month)
        if conn is not None:
            return set(conn.execute(query).scalars())
        with self.engine.connect() as own:
            return set(own.execute(query).scalars())

    def is_month_consolidated(self, month) -> bool:
        return month_key(_coerce_month(month)) in self.consolidated_months()

    def is_range_consolidated(self, event_filter: EventFilter) -> bool:
        """True iff every month touched by the filter's range is consolidated."""
        done = self.consolidated_months()
        if not done:
            return False
        return all(month_key(piece.range_start) in done for piece in event_filter.split_by_month())

    def get_consolidated_billable_events(self, event_filter: EventFilter, conn: Optional[Connection] = None) -> Iterator[dict]:
        """Frozen rows of the months in the filter's range, verbatim."""
        months = sorted({month_key(piece.range_start) for piece in event_filter.split_by_month()})
        query = (
            select(consolidated_billable_events.c.payload)
            .where(consolidated_billable_events.c.month.in_(months))
            .order_by(
                consolidated_billable_events.c.resource_guid,
                consolidated_billable_events.c.event_start,
                consolidated_billable_events.c.month,
                consolidated_billable_events.c.position,
            )
        )
        if event_filter.org_guids:
            query = query.where(consolidated_billable_events.c.org_guid.in_(event_filter.org_guids))
        if conn is not None:
            for row in conn.execute(query):
                yield dict(row.payload)
            return
        with self.engine.connect() as own:
            for row in own.execute(query):
                yield dict(row.payload)

    # writes

    def compute_month(self, month, usage_events: Sequence[UsageEvent], pricing: PricingEngine) -> List[BillableEvent]:
        start = _coerce_month(month)
        return price_range(usage_events, pricing, start, next_month(start))

    def consolidate_month(self, month, now: Optional[datetime] = None) -> int:
        """
        Freeze month ``month`` (``YYYY-MM`` or its first instant).

        Returns the number of rows written; 0 when the month was already frozen.
        Raises ConflictError when the month has not ended yet.
        """
        start = _coerce_month(month)
        stop = next_month(start)
        key = month_key(start)
        now = now or self.clock()
        if stop > now:
            raise ConflictError(f"cannot consolidate {key}: the month is not over yet")

        if key in self.consolidated_months():
            logger.info("consolidation.already_done", extra={"month": key})
            return 0

        snapshot = self.derived.snapshot()
        rows = self.compute_month(start, snapshot.usage_events, snapshot.pricing_engine())
        try:
            with self.engine.begin() as conn:
                conn.execute(insert(consolidation_history).values(
                    month=key, range_start=start, range_stop=stop, event_count=len(rows),
                    max_raw_id=snapshot.max_raw_id,
                ))
                if rows:
                    conn.execute(insert(consolidated_billable_events), [
                        {
                            "month": key,
                            "position": position,
                            "event_guid": row.event_guid,
                            "resource_guid": row.resource_guid,
                            "org_guid": row.org_guid,
                            "plan_guid": row.plan_guid,
                            "event_start": row.event_start,
                            "event_stop": row.event_stop,
                            "payload": row.model_dump(mode="json"),
                        }
                        for position, row in enumerate(rows)
                    ])
        except IntegrityError:
            # Another consolidator froze the same month first
            logger.info("consolidation.already_done", extra={"month": key})
            return 0

        consolidated_months_total.inc()
        logger.info("consolidation.month_done", extra={"month": key, "rows": len(rows)})
        return len(rows)

    def consolidate(self, event_filter: EventFilter, now: Optional[datetime] = None) -> int:
        if event_filter.org_guids:
            raise ValidationError("consolidate must be called without an organisations filter")
        if not event_filter.is_month_aligned():
            raise ValidationError("consolidation only works with ranges starting and ending on month boundaries")
        return sum(self.consolidate_month(piece.range_start, now=now) for piece in event_filter.split_by_month())

    def consolidate_all(self, now: Optional[datetime] = None) -> List[str]:
        """Freeze every closed month from the start date up to ``now - delay``."""
        now = now or self.clock()
        cutoff = now - self.delay
        done = self.consolidated_months()
        frozen: List[str] = []
        start = self.start_date
        while next_month(start) <= cutoff:
            key = month_key(start)
            if key not in done:
                self.consolidate_month(start, now=now)
                frozen.append(key)
            start = next_month(start)
        return frozen
