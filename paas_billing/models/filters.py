"""
Query filters.

An EventFilter selects ``[range_start, range_stop)`` and optionally a set of
organisations. Bounds arrive as ``YYYY-MM-DD`` or RFC3339 strings.
"""

from datetime import datetime
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from paas_billing.core.errors import ValidationError
from paas_billing.models.timestamps import (
    as_utc,
    is_month_boundary,
    month_start,
    next_month,
    parse_timestamp,
)

DATE_FORMAT_HINT = "2006-01-02"


def _parse_bound(label: str, value) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if not value or not isinstance(value, str):
        raise ValidationError(
            f"a valid range {label} filter value is required - expected format {DATE_FORMAT_HINT} - got {value or ''}"
        )
    text = value.strip()
    try:
        # only a bare date or an RFC3339 timestamp
        if len(text) > 10 and text[10:11] not in ("T", "t"):
            raise ValueError(text)
        return parse_timestamp(text)
    except ValueError:
        raise ValidationError(
            f"a valid range {label} filter value is required - expected format {DATE_FORMAT_HINT} - got {value}"
        ) from None


class EventFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    range_start: datetime
    range_stop: datetime
    org_guids: List[str] = []

    @classmethod
    def parse(cls, range_start, range_stop, org_guids: Optional[Sequence[str]] = None) -> "EventFilter":
        """Build a validated filter from raw query values."""
        start = _parse_bound("start", range_start)
        stop = _parse_bound("stop", range_stop)
        event_filter = cls(range_start=start, range_stop=stop, org_guids=[g for g in (org_guids or []) if g])
        event_filter.validate_range()
        return event_filter

    def validate_range(self) -> None:
        if self.range_start >= self.range_stop:
            raise ValidationError("range_start must be before range_stop")

    def matches_org(self, org_guid: Optional[str]) -> bool:
        return not self.org_guids or org_guid in self.org_guids

    def is_month_aligned(self) -> bool:
        return is_month_boundary(self.range_start) and is_month_boundary(self.range_stop)

    def truncate_month(self) -> "EventFilter":
        """Widen the range to whole months."""
        stop = self.range_stop if is_month_boundary(self.range_stop) else next_month(self.range_stop)
        return self.model_copy(update={"range_start": month_start(self.range_start), "range_stop": stop})

    def split_by_month(self) -> List["EventFilter"]:
        """Cut the range at every month boundary it crosses."""
        pieces = []
        start = self.range_start
        while start < self.range_stop:
            stop = min(next_month(start), self.range_stop)
            pieces.append(self.model_copy(update={"range_start": start, "range_stop": stop}))
            start = stop
        return pieces
