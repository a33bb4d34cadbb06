"""
Derived views over raw events and the installed configuration.

Normalized usage and the pricing engine are pure functions of (raw events,
configuration), so a snapshot is cached under
``sha256(max raw event id, config revision)``. New raw events or a refresh
change the key and the next reader rebuilds.
"""

import hashlib
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from paas_billing.core.errors import PricingError
from paas_billing.core.metrics import dummy_plans_created, inconsistent_plans
from paas_billing.features.events.store import RawEventStore
from paas_billing.features.normalizer.service import EventNormalizer
from paas_billing.features.pricing.config_loader import (
    ConfigRepository,
    InstalledConfig,
    MissingPlan,
    find_missing_plans,
    with_placeholders,
)
from paas_billing.features.pricing.engine import PricingEngine
from paas_billing.models.raw_event import APP_KIND, MANAGED_METRIC_KIND, SERVICE_KIND
from paas_billing.models.usage_event import UsageEvent

logger = logging.getLogger("paas_billing")

NO_CONFIG_VERSION = "unconfigured"


def snapshot_key(max_raw_id: int, config_revision: Optional[int]) -> str:
    raw = f"{max_raw_id}:{config_revision if config_revision is not None else NO_CONFIG_VERSION}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_pricing_engine(installed: InstalledConfig, usage_events: List[UsageEvent]) -> Tuple[PricingEngine, List[MissingPlan]]:
    """Engine for ``installed``; permissive installs price unknown plans at zero."""
    missing = find_missing_plans(installed.config, usage_events)
    config = installed.config
    if missing and installed.ignore_missing_plans:
        config = with_placeholders(config, missing)
        for plan in missing:
            logger.warning("config.placeholder_plan", extra={"plan_guid": plan.plan_guid, "plan_name": plan.plan_name})
        dummy_plans_created.inc(amount=len(missing))
    inconsistent_plans.set(len(missing))
    return PricingEngine(config, missing), missing


@dataclass(frozen=True)
class DerivedSnapshot:
    key: str
    max_raw_id: int
    usage_events: Tuple[UsageEvent, ...]
    installed: Optional[InstalledConfig]
    pricing: Optional[PricingEngine]

    @property
    def config_version(self) -> Optional[str]:
        return self.installed.version if self.installed else None

    def pricing_engine(self) -> PricingEngine:
        if self.pricing is None:
            raise PricingError("no pricing configuration has been installed")
        return self.pricing


class DerivedViews:
    def __init__(self, store: RawEventStore, config_repository: ConfigRepository, normalizer: EventNormalizer):
        self.store = store
        self.config_repository = config_repository
        self.normalizer = normalizer
        self._lock = threading.Lock()
        self._usage: Optional[Tuple[tuple, Tuple[UsageEvent, ...]]] = None
        self._snapshot: Optional[DerivedSnapshot] = None

    def usage_events(self, max_raw_id: Optional[int] = None) -> Tuple[UsageEvent, ...]:
        """Normalized usage for the current raw event store, open intervals included."""
        if max_raw_id is None:
            max_raw_id = self.store.max_id()
        frozen = tuple(self.store.consolidation_watermarks())
        with self._lock:
            cached = self._usage
        if cached is not None and cached[0] == (max_raw_id, frozen):
            return cached[1]

        events = list(self.store.iter_events([APP_KIND, SERVICE_KIND, MANAGED_METRIC_KIND], up_to_id=max_raw_id))
        usage = tuple(self.normalizer.normalize(events, epoch=self.store.earliest_created_at(), frozen=frozen))
        logger.info("derived.usage_rebuilt", extra={"max_raw_id": max_raw_id, "usage_events": len(usage)})
        with self._lock:
            self._usage = ((max_raw_id, frozen), usage)
        return usage

    def snapshot(self) -> DerivedSnapshot:
        max_raw_id = self.store.max_id()
        key = snapshot_key(max_raw_id, self.config_repository.current_revision())
        with self._lock:
            cached = self._snapshot
        if cached is not None and cached.key == key:
            return cached

        installed = self.config_repository.load()
        key = snapshot_key(max_raw_id, installed.revision if installed else None)
        usage = self.usage_events(max_raw_id)
        pricing = None
        if installed is not None:
            pricing, _ = build_pricing_engine(installed, list(usage))
        snapshot = DerivedSnapshot(key=key, max_raw_id=max_raw_id, usage_events=usage, installed=installed, pricing=pricing)
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
