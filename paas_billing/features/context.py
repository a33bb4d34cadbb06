"""Service wiring shared by the HTTP app and the workers."""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.engine import Engine

from paas_billing.core.auth import Authenticator, DenyAllAuthenticator, JWTAuthenticator
from paas_billing.core.config import Settings, split_csv
from paas_billing.features.collector.service import CollectorConfig, EventCollector
from paas_billing.features.consolidation.service import Consolidator
from paas_billing.features.events.fetchers import (
    ManagedMetricFetcher,
    ManagedMetricsClient,
    UsageEventFetcher,
    UsageEventsClient,
)
from paas_billing.features.events.store import RawEventStore
from paas_billing.features.normalizer.service import EventNormalizer
from paas_billing.features.pricing.config_loader import ConfigRepository
from paas_billing.features.pricing.refresh import ConfigRefresher
from paas_billing.features.query.cache import DerivedViews
from paas_billing.features.query.service import BillingQueryService
from paas_billing.models.raw_event import APP_KIND, SERVICE_KIND


@dataclass
class BillingContext:
    engine: Engine
    store: RawEventStore
    config_repository: ConfigRepository
    normalizer: EventNormalizer
    derived: DerivedViews
    consolidator: Consolidator
    query: BillingQueryService
    refresher: ConfigRefresher
    authenticator: Authenticator
    collectors: List[EventCollector] = field(default_factory=list)
    upstream: Optional[UsageEventsClient] = None
    managed_metrics: Optional[ManagedMetricsClient] = None

    async def aclose_clients(self) -> None:
        for client in (self.upstream, self.managed_metrics):
            if client is not None:
                await client.aclose()


def build_authenticator(settings_obj: Settings) -> Authenticator:
    if not settings_obj.AUTH_JWT_SECRET:
        return DenyAllAuthenticator()
    return JWTAuthenticator(
        secret=settings_obj.AUTH_JWT_SECRET,
        algorithms=split_csv(settings_obj.AUTH_JWT_ALGORITHMS),
        admin_scopes=split_csv(settings_obj.AUTH_ADMIN_SCOPES),
        audience=settings_obj.AUTH_JWT_AUDIENCE,
    )


def collector_config(settings_obj: Settings) -> CollectorConfig:
    return CollectorConfig(
        schedule=timedelta(seconds=settings_obj.COLLECTOR_SCHEDULE_SECONDS),
        min_wait_time=timedelta(seconds=settings_obj.COLLECTOR_MIN_WAIT_SECONDS),
        initial_wait_time=timedelta(seconds=settings_obj.COLLECTOR_INITIAL_WAIT_SECONDS),
    )


def build_collectors(store: RawEventStore, settings_obj: Settings, client: UsageEventsClient) -> List[EventCollector]:
    config = collector_config(settings_obj)
    return [
        EventCollector(
            UsageEventFetcher(
                client,
                kind,
                fetch_limit=settings_obj.COLLECTOR_FETCH_LIMIT,
                record_min_age=timedelta(seconds=settings_obj.COLLECTOR_RECORD_MIN_AGE_SECONDS),
            ),
            store,
            config,
        )
        for kind in (APP_KIND, SERVICE_KIND)
    ]


def build_context(
    engine: Engine,
    settings_obj: Settings,
    *,
    authenticator: Optional[Authenticator] = None,
    with_collectors: bool = False,
) -> BillingContext:
    store = RawEventStore(engine)
    config_repository = ConfigRepository(engine)
    normalizer = EventNormalizer(settings_obj.COMPUTE_PLAN_GUID, settings_obj.COMPUTE_PLAN_NAME)
    derived = DerivedViews(store, config_repository, normalizer)
    consolidator = Consolidator(
        engine,
        derived,
        start_date=settings_obj.CONSOLIDATION_START_DATE,
        delay=timedelta(days=settings_obj.CONSOLIDATION_DELAY_DAYS),
    )
    context = BillingContext(
        engine=engine,
        store=store,
        config_repository=config_repository,
        normalizer=normalizer,
        derived=derived,
        consolidator=consolidator,
        query=BillingQueryService(derived, consolidator, config_repository),
        refresher=ConfigRefresher(
            config_repository, derived, consolidator, ignore_missing_plans=settings_obj.IGNORE_MISSING_PLANS,
        ),
        authenticator=authenticator or build_authenticator(settings_obj),
    )
    if with_collectors:
        if not settings_obj.CF_API_ADDRESS:
            raise RuntimeError("CF_API_ADDRESS is required to collect usage events")
        context.upstream = UsageEventsClient(
            settings_obj.CF_API_ADDRESS,
            settings_obj.CF_CLIENT_TOKEN,
            timeout=settings_obj.CF_REQUEST_TIMEOUT_SECONDS,
        )
        context.collectors = build_collectors(store, settings_obj, context.upstream)
        if settings_obj.MANAGED_METRICS_API_TOKEN:
            context.managed_metrics = ManagedMetricsClient(
                settings_obj.MANAGED_METRICS_API_ADDRESS,
                settings_obj.MANAGED_METRICS_API_TOKEN,
                timeout=settings_obj.CF_REQUEST_TIMEOUT_SECONDS,
            )
            context.collectors.append(EventCollector(
                ManagedMetricFetcher(context.managed_metrics, fetch_limit=settings_obj.COLLECTOR_FETCH_LIMIT),
                store,
                collector_config(settings_obj),
            ))
    return context


def billing_context(request) -> BillingContext:
    """The context the app was built with (``app.state.billing``)."""
    context = getattr(request.app.state, "billing", None)
    if context is None:
        raise RuntimeError("billing context is not initialised")
    return context
