"""
Event normalizer: raw lifecycle events in, usage intervals out.

Raw events are replayed in (created_at, id) order through a small state
machine per resource. Every interval is half-open; an interval still open
when the stream ends gets ``event_stop = INFINITY`` and is clipped by the
query that reads it.

Apps
    Each running instance is an open chain, tracked by its index. A STARTED
    keeps instance i open while i < instance_count and its parameters
    (memory and labels) are unchanged, closes and reopens instance i when
    they changed, and closes every instance at or above the new count.
    STOPPED closes them all.

Services
    CREATED opens, UPDATED closes and reopens, DELETED closes. A service
    whose first observed event is DELETED is back-filled from the collection
    epoch, or from the end of the newest month consolidated before the event
    was stored. Only ``managed_service_instance`` types are billed.

Managed metrics
    A ``deployment.scale.members`` audit event names its service instance
    in the deployment (``prod-<guid>``). Its memory and storage apply to the
    instance from then on: an open interval is cut and reopened with the
    new sizes, and later segments inherit them.
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from paas_billing.models.raw_event import APP_KIND, MANAGED_METRIC_KIND, SCALE_MEMBERS_EVENT, SERVICE_KIND, RawEvent
from paas_billing.models.timestamps import INFINITY
from paas_billing.models.usage_event import UsageEvent

logger = logging.getLogger("paas_billing")

APP_RESOURCE_TYPE = "app"
MANAGED_SERVICE_INSTANCE = "managed_service_instance"

# Namespace for derived event guids; derived guids must be stable across rebuilds
USAGE_EVENT_NAMESPACE = uuid.UUID("6f1d7c8e-2b0a-4c55-9a51-3f9b2e0d4a17")

_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*([KMGT]B)$", re.IGNORECASE)
_SIZE_UNITS = {"KB": Decimal(1) / 1024, "MB": 1, "GB": 1024, "TB": 1024 * 1024}
_INSTANCE_GUID_RE = re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def derived_event_guid(raw_guid: str, suffix: str) -> str:
    return str(uuid.uuid5(USAGE_EVENT_NAMESPACE, f"{raw_guid}/{suffix}"))


def _int_or_none(value) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def size_in_mb(value) -> Optional[int]:
    """``"2 GB"`` -> 2048; None when the value is missing or unreadable."""
    match = _SIZE_RE.match(str(value or "").strip())
    if match is None:
        return None
    return int(Decimal(match.group(1)) * _SIZE_UNITS[match.group(2).upper()])


def deployment_instance_guid(deployment) -> Optional[str]:
    """Service instance guid a managed deployment name ends with (``prod-<guid>``)."""
    match = _INSTANCE_GUID_RE.search(deployment or "")
    return match.group(0) if match else None


@dataclass
class _OpenInterval:
    """A usage segment that has started but not stopped yet."""
    event_guid: str
    start: datetime
    sequence: int
    attrs: Dict[str, object]

    def close(self, stop: datetime) -> Optional[UsageEvent]:
        if stop <= self.start:
            return None
        return UsageEvent(
            event_guid=self.event_guid,
            event_start=self.start,
            event_stop=stop,
            sequence=self.sequence,
            **self.attrs,
        )


@dataclass
class _AppState:
    # one open chain per instance index
    instances: List[_OpenInterval] = field(default_factory=list)


@dataclass
class _ServiceState:
    current: Optional[_OpenInterval] = None
    seen: bool = False
    # memory_in_mb / storage_in_mb from the latest managed-metric scaling
    sizes: Dict[str, int] = field(default_factory=dict)


class EventNormalizer:
    def __init__(self, compute_plan_guid: str, compute_plan_name: str = "app"):
        self.compute_plan_guid = compute_plan_guid
        self.compute_plan_name = compute_plan_name

    def normalize(
        self,
        events: Iterable[RawEvent],
        epoch: Optional[datetime] = None,
        frozen: Sequence[Tuple[int, datetime]] = (),
    ) -> List[UsageEvent]:
        """
        Replay ``events`` and return every usage interval, open ones included.

        ``epoch`` is the collection epoch used to back-fill services first seen
        being deleted; it defaults to the earliest event in the stream.
        ``frozen`` lists ``(max_raw_id, month_end)`` per consolidated month: a
        back-fill for an event stored after a month was frozen starts no
        earlier than that month's end.
        """
        ordered = sorted(events, key=lambda e: (e.created_at, e.id or 0))
        if epoch is None and ordered:
            epoch = ordered[0].created_at

        apps: Dict[str, _AppState] = {}
        services: Dict[str, _ServiceState] = {}
        output: List[UsageEvent] = []

        for event in ordered:
            if event.kind == APP_KIND:
                self._step_app(apps, event, output)
            elif event.kind == SERVICE_KIND:
                self._step_service(services, event, self._backfill_start(event, epoch, frozen), output)
            elif event.kind == MANAGED_METRIC_KIND:
                self._step_managed_metric(services, event, output)

        for state in apps.values():
            output.extend(self._close_all(state.instances, INFINITY))
        for state in services.values():
            if state.current is not None:
                output.extend(self._close_all([state.current], INFINITY))

        output.sort(key=UsageEvent.sort_key)
        return output

    @staticmethod
    def _backfill_start(event: RawEvent, epoch: Optional[datetime], frozen: Sequence[Tuple[int, datetime]]) -> Optional[datetime]:
        start = epoch
        for max_raw_id, month_end in frozen:
            if (event.id or 0) > max_raw_id and start is not None and month_end > start:
                start = month_end
        return start

    @staticmethod
    def _close_all(intervals: List[_OpenInterval], stop: datetime) -> List[UsageEvent]:
        closed = (interval.close(stop) for interval in intervals)
        return [usage for usage in closed if usage is not None]

    # apps

    def _app_attrs(self, payload: dict) -> Dict[str, object]:
        return {
            "resource_guid": payload.get("app_guid") or "",
            "resource_name": payload.get("app_name") or "",
            "resource_type": APP_RESOURCE_TYPE,
            "org_guid": payload.get("org_guid") or "",
            "space_guid": payload.get("space_guid") or "",
            "space_name": payload.get("space_name"),
            "plan_guid": self.compute_plan_guid,
            "plan_name": self.compute_plan_name,
            "number_of_nodes": 1,
            "memory_in_mb": _int_or_none(payload.get("memory_in_mb_per_instance")),
        }

    def _open_instances(self, event: RawEvent) -> List[_OpenInterval]:
        payload = event.payload or {}
        count = max(_int_or_none(payload.get("instance_count")) or 0, 0)
        attrs = self._app_attrs(payload)
        return [
            _OpenInterval(
                event_guid=derived_event_guid(event.guid, str(index)),
                start=event.created_at,
                sequence=event.id or 0,
                attrs=attrs,
            )
            for index in range(count)
        ]

    def _step_app(self, apps: Dict[str, _AppState], event: RawEvent, output: List[UsageEvent]) -> None:
        payload = event.payload or {}
        app_guid = payload.get("app_guid")
        if not app_guid:
            logger.warning("normalizer.app_event_without_guid", extra={"event_guid": event.guid})
            return
        state = apps.setdefault(app_guid, _AppState())
        app_state = payload.get("state")

        if app_state == "STARTED":
            wanted = self._open_instances(event)
            instances: List[_OpenInterval] = []
            for index, fresh in enumerate(wanted):
                current = state.instances[index] if index < len(state.instances) else None
                if current is not None and current.attrs == fresh.attrs:
                    instances.append(current)
                    continue
                if current is not None:
                    output.extend(self._close_all([current], event.created_at))
                instances.append(fresh)
            # scaled down
            output.extend(self._close_all(state.instances[len(wanted):], event.created_at))
            state.instances = instances
        elif app_state == "STOPPED":
            output.extend(self._close_all(state.instances, event.created_at))
            state.instances = []

    # services

    @staticmethod
    def _service_attrs(payload: dict) -> Dict[str, object]:
        label = payload.get("service_label") or payload.get("service_name")
        return {
            "resource_guid": payload.get("service_instance_guid") or "",
            "resource_name": payload.get("service_instance_name") or "",
            "resource_type": label or "service",
            "org_guid": payload.get("org_guid") or "",
            "space_guid": payload.get("space_guid") or "",
            "space_name": payload.get("space_name"),
            "plan_guid": payload.get("service_plan_guid") or "",
            "plan_name": payload.get("service_plan_name") or "",
            "service_guid": payload.get("service_guid"),
            "service_name": label,
        }

    def _step_service(self, services: Dict[str, _ServiceState], event: RawEvent, epoch: Optional[datetime], output: List[UsageEvent]) -> None:
        payload = event.payload or {}
        if payload.get("service_instance_type") != MANAGED_SERVICE_INSTANCE:
            return
        instance_guid = payload.get("service_instance_guid")
        if not instance_guid:
            logger.warning("normalizer.service_event_without_guid", extra={"event_guid": event.guid})
            return
        state = services.setdefault(instance_guid, _ServiceState())
        first_seen = not state.seen
        state.seen = True
        service_state = payload.get("state")

        if service_state in ("CREATED", "UPDATED"):
            if state.current is not None:
                output.extend(self._close_all([state.current], event.created_at))
            state.current = _OpenInterval(
                event_guid=event.guid,
                start=event.created_at,
                sequence=event.id or 0,
                attrs={**self._service_attrs(payload), **state.sizes},
            )
        elif service_state == "DELETED":
            if state.current is not None:
                output.extend(self._close_all([state.current], event.created_at))
                state.current = None
            elif first_seen and epoch is not None:
                backfill = _OpenInterval(
                    event_guid=derived_event_guid(event.guid, "created"),
                    start=epoch,
                    sequence=0,
                    attrs={**self._service_attrs(payload), **state.sizes},
                )
                output.extend(self._close_all([backfill], event.created_at))

    # managed database scaling

    def _step_managed_metric(self, services: Dict[str, _ServiceState], event: RawEvent, output: List[UsageEvent]) -> None:
        payload = event.payload or {}
        if payload.get("event") != SCALE_MEMBERS_EVENT:
            return
        data = payload.get("data") or {}
        instance_guid = deployment_instance_guid(data.get("deployment"))
        if instance_guid is None:
            logger.warning("normalizer.scaling_without_instance", extra={"event_guid": event.guid})
            return
        sizes = {}
        for key, field_name in (("memory", "memory_in_mb"), ("storage", "storage_in_mb")):
            size = size_in_mb(data.get(key))
            if size is not None:
                sizes[field_name] = size
        if not sizes:
            return

        state = services.setdefault(instance_guid, _ServiceState())
        state.sizes = {**state.sizes, **sizes}
        if state.current is None:
            return
        output.extend(self._close_all([state.current], event.created_at))
        state.current = _OpenInterval(
            event_guid=derived_event_guid(event.guid, instance_guid),
            start=event.created_at,
            sequence=event.id or 0,
            attrs={**state.current.attrs, **state.sizes},
        )
