"""Factories and fakes shared by the test suite."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

from paas_billing.core.config import DEFAULT_COMPUTE_PLAN_GUID
from paas_billing.features.events.fetchers import EventFetcher
from paas_billing.models.raw_event import APP_KIND, MANAGED_METRIC_KIND, SERVICE_KIND, RawEvent

T0 = datetime(2018, 1, 10, 12, 0, tzinfo=timezone.utc)

ORG_GUID = "11111111-0000-0000-0000-000000000001"
OTHER_ORG_GUID = "11111111-0000-0000-0000-000000000002"
SPACE_GUID = "22222222-0000-0000-0000-000000000001"
APP_GUID = "33333333-0000-0000-0000-000000000001"
SERVICE_INSTANCE_GUID = "44444444-0000-0000-0000-000000000001"
SERVICE_GUID = "55555555-0000-0000-0000-000000000001"
COMPUTE_PLAN_GUID = DEFAULT_COMPUTE_PLAN_GUID
SERVICE_PLAN_GUID = "66666666-0000-0000-0000-000000000001"

ADMIN_TOKEN = "admin-token"
BILLING_TOKEN = "billing-manager-token"
OUTSIDER_TOKEN = "outsider-token"


def minutes(n: float) -> timedelta:
    return timedelta(minutes=n)


def app_event(guid: str, at: datetime, state: str, *, app_guid: str = APP_GUID, instances: int = 1,
              memory: int = 512, org_guid: str = ORG_GUID) -> RawEvent:
    return RawEvent(
        kind=APP_KIND,
        guid=guid,
        created_at=at,
        payload={
            "state": state,
            "app_guid": app_guid,
            "app_name": "my-app",
            "org_guid": org_guid,
            "space_guid": SPACE_GUID,
            "space_name": "dev",
            "instance_count": instances,
            "memory_in_mb_per_instance": memory,
        },
    )


def service_event(guid: str, at: datetime, state: str, *, instance_guid: str = SERVICE_INSTANCE_GUID,
                  plan_guid: str = SERVICE_PLAN_GUID, plan_name: str = "small", org_guid: str = ORG_GUID,
                  instance_type: str = "managed_service_instance") -> RawEvent:
    return RawEvent(
        kind=SERVICE_KIND,
        guid=guid,
        created_at=at,
        payload={
            "state": state,
            "org_guid": org_guid,
            "space_guid": SPACE_GUID,
            "space_name": "dev",
            "service_instance_guid": instance_guid,
            "service_instance_name": "my-db",
            "service_instance_type": instance_type,
            "service_plan_guid": plan_guid,
            "service_plan_name": plan_name,
            "service_guid": SERVICE_GUID,
            "service_label": "postgres",
        },
    )


def scaling_event(guid: str, at: datetime, *, instance_guid: str = SERVICE_INSTANCE_GUID, memory: str = "2 GB",
                  storage: str = "4 GB") -> RawEvent:
    return RawEvent(
        kind=MANAGED_METRIC_KIND,
        guid=guid,
        created_at=at,
        payload={
            "id": guid,
            "event": "deployment.scale.members",
            "data": {"deployment": f"prod-{instance_guid}", "units": "2", "memory": memory, "storage": storage},
        },
    )


def pricing_document(compute_formula: str = "$time_in_seconds * 4", service_formula: str = "$time_in_seconds * 2",
                     extra_plans: Optional[List[dict]] = None, **extra) -> dict:
    document = {
        "vat_rates": [
            {"code": "Standard", "valid_from": "-infinity", "rate": "0.2"},
            {"code": "Reduced", "valid_from": "-infinity", "rate": "0.05"},
            {"code": "Zero", "valid_from": "-infinity", "rate": "0"},
        ],
        "currency_rates": [
            {"code": "GBP", "valid_from": "-infinity", "rate": "1"},
            {"code": "USD", "valid_from": "-infinity", "rate": "0.5"},
        ],
        "pricing_plans": [
            {
                "plan_guid": COMPUTE_PLAN_GUID,
                "valid_from": "-infinity",
                "name": "app",
                "components": [
                    {"name": "compute", "formula": compute_formula, "vat_code": "Standard", "currency_code": "GBP"},
                ],
            },
            {
                "plan_guid": SERVICE_PLAN_GUID,
                "valid_from": "-infinity",
                "name": "postgres small",
                "components": [
                    {"name": "instance", "formula": service_formula, "vat_code": "Standard", "currency_code": "GBP"},
                ],
            },
        ] + list(extra_plans or []),
    }
    document.update(extra)
    return document


class FakeFetcher(EventFetcher):
    """Serves pre-baked pages and records the last_known it was called with."""

    def __init__(self, kind: str, pages: List[List[RawEvent]]):
        self._kind = kind
        self.pages = list(pages)
        self.calls: List[Optional[str]] = []
        self.error: Optional[Exception] = None

    def kind(self) -> str:
        return self._kind

    async def fetch_events(self, last_known: Optional[RawEvent]) -> List[RawEvent]:
        self.calls.append(last_known.guid if last_known else None)
        if self.error is not None:
            raise self.error
        return self.pages.pop(0) if self.pages else []
