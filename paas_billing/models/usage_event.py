"""
UsageEvent: one contiguous, homogeneous usage segment of a resource.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from paas_billing.models.timestamps import as_utc


class UsageEvent(BaseModel):
    """
    Usage of a single resource over ``[event_start, event_stop)``.

    Parallel app instances share ``resource_guid`` and differ by ``event_guid``.
    ``sequence`` is the store id of the raw event that opened the segment; it
    only breaks ordering ties and never leaves the process.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    event_guid: str = ""
    event_start: datetime
    event_stop: datetime
    resource_guid: str = ""
    resource_name: str = ""
    resource_type: str = ""
    org_guid: str = ""
    org_name: Optional[str] = None
    space_guid: str = ""
    space_name: Optional[str] = None
    plan_guid: str = Field(default="", validation_alias=AliasChoices("plan_guid", "plan_uid"))
    plan_name: str = ""
    service_guid: Optional[str] = None
    service_name: Optional[str] = None
    number_of_nodes: Optional[int] = None
    memory_in_mb: Optional[int] = None
    storage_in_mb: Optional[int] = None
    sequence: int = Field(default=0, exclude=True)

    @field_validator("event_start", "event_stop")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def plan_uid(self) -> str:
        return self.plan_guid

    def sort_key(self):
        return (self.resource_guid, self.event_start, self.sequence, self.event_guid)

    def clipped(self, start: datetime, stop: datetime) -> Optional["UsageEvent"]:
        """Intersect with ``[start, stop)``; None when nothing is left."""
        new_start = max(self.event_start, start)
        new_stop = min(self.event_stop, stop)
        if new_start >= new_stop:
            return None
        if new_start == self.event_start and new_stop == self.event_stop:
            return self
        return self.model_copy(update={"event_start": new_start, "event_stop": new_stop})


def clip_usage_events(events: Iterable[UsageEvent], start: datetime, stop: datetime, org_guids: Sequence[str] = ()) -> List[UsageEvent]:
    """Events intersecting ``[start, stop)``, clipped to it, in billing order."""
    clipped = []
    for event in events:
        if org_guids and event.org_guid not in org_guids:
            continue
        piece = event.clipped(start, stop)
        if piece is not None:
            clipped.append(piece)
    clipped.sort(key=UsageEvent.sort_key)
    return clipped
