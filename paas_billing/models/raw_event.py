"""
RawEvent model: one upstream lifecycle record, stored verbatim.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paas_billing.core.errors import InvalidEventError
from paas_billing.models.timestamps import as_utc

APP_KIND = "app"
SERVICE_KIND = "service"
MANAGED_METRIC_KIND = "managed-metric"
KINDS = (APP_KIND, SERVICE_KIND, MANAGED_METRIC_KIND)

# the only managed-metric audit event that changes billed sizes
SCALE_MEMBERS_EVENT = "deployment.scale.members"


class RawEvent(BaseModel):
    """
    RawEvent as fetched from upstream.

    ``id`` is assigned by the store on insert and stays None until then.
    ``payload`` is the upstream entity, opaque to everything but the normalizer.
    """
    model_config = ConfigDict(frozen=True)

    guid: str = ""
    kind: str = ""
    created_at: Optional[datetime] = None
    payload: Optional[Dict[str, Any]] = None
    id: Optional[int] = None

    @field_validator("created_at")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def validate_event(self) -> None:
        """Raise InvalidEventError unless every stored field is present."""
        if not self.guid:
            raise InvalidEventError("event guid is required")
        if not self.kind:
            raise InvalidEventError(f"event kind is required (guid {self.guid})")
        if self.created_at is None:
            raise InvalidEventError(f"event created_at is required (guid {self.guid})")
        if self.payload is None:
            raise InvalidEventError(f"event payload is required (guid {self.guid})")


class RawEventFilter(BaseModel):
    """Selection for RawEventStore.get_events; newest first unless reverse=False."""
    kind: str
    limit: Optional[int] = Field(default=None, ge=1)
    reverse: bool = True
