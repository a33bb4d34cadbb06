"""Installing configuration against stored usage and frozen months."""

import json
from decimal import Decimal

import pytest

from paas_billing.core.errors import ConfigValidationError, ConsolidationConflictError
from paas_billing.core.metrics import currency_configured_ratio, vat_configured_rate
from paas_billing.features.pricing.config_loader import load_config_document
from paas_billing.models.filters import EventFilter
from paas_billing.models.timestamps import parse_timestamp
from paas_billing.tests.mocks import T0, app_event, minutes, pricing_document, service_event

JANUARY = EventFilter.parse("2018-01-01", "2018-02-01")


def _refresh(context, **kwargs):
    return context.refresher.refresh(load_config_document(pricing_document(**kwargs)))


def test_install_records_version_and_revision(context):
    first = _refresh(context)
    second = _refresh(context, compute_formula="$time_in_seconds * 5")

    assert first.version != second.version
    assert second.revision > first.revision
    assert context.config_repository.load().version == second.version


def test_install_publishes_rate_gauges(context):
    _refresh(context)
    assert vat_configured_rate.value({"code": "Standard"}) == pytest.approx(0.2)
    assert currency_configured_ratio.value({"code": "USD"}) == pytest.approx(0.5)


def test_invalid_document_is_rejected(context):
    document = pricing_document()
    document["vat_rates"] = []
    with pytest.raises(ConfigValidationError):
        context.refresher.refresh(load_config_document(document))
    assert context.config_repository.load() is None


def test_missing_plan_is_rejected_in_strict_mode(configured):
    before = configured.config_repository.load()
    configured.store.store_events([service_event("s1", T0, "CREATED", plan_guid="unknown-plan", plan_name="tiny")])

    with pytest.raises(ConfigValidationError, match="missing 'tiny' pricing plan configuration for 'unknown-plan'"):
        _refresh(configured)
    assert configured.config_repository.load().version == before.version


def test_missing_plan_is_accepted_in_permissive_mode(configured):
    configured.store.store_events([service_event("s1", T0, "CREATED", plan_guid="unknown-plan", plan_name="tiny")])
    installed = configured.refresher.refresh(load_config_document(pricing_document()), ignore_missing_plans=True)

    assert installed.ignore_missing_plans is True
    # placeholders are synthesised at read time, never stored
    assert "unknown-plan" not in {p.plan_guid for p in installed.config.pricing_plans}


def test_permissive_mode_with_rates_starting_after_placeholders(context):
    document = pricing_document()
    for entry in document["vat_rates"] + document["currency_rates"] + document["pricing_plans"]:
        entry["valid_from"] = "2017-01-01"
    context.store.store_events([service_event("s1", T0, "CREATED", plan_guid="unknown-plan", plan_name="tiny")])

    installed = context.refresher.refresh(load_config_document(document), ignore_missing_plans=True)

    assert installed.ignore_missing_plans is True
    [row] = list(context.query.get_billable_events(JANUARY))
    assert row.price.ex_vat == Decimal("0")
    [detail] = row.price.details
    assert detail.name == "pending"
    assert detail.vat_rate == Decimal("0")
    assert detail.currency_rate == Decimal("1")


def test_document_flag_enables_permissive_mode(configured):
    configured.store.store_events([service_event("s1", T0, "CREATED", plan_guid="unknown-plan", plan_name="tiny")])
    installed = configured.refresher.refresh(load_config_document(pricing_document(ignore_missing_plans=True)))
    assert installed.ignore_missing_plans is True


def test_refresh_from_path(context, tmp_path):
    path = tmp_path / "billing.json"
    path.write_text(json.dumps(pricing_document()))
    installed = context.refresher.refresh_from_path(str(path))
    assert {p.name for p in installed.config.pricing_plans} == {"app", "postgres small"}


class TestConsolidatedMonths:
    @pytest.fixture
    def frozen(self, configured):
        configured.store.store_events([
            app_event("a1", T0, "STARTED"),
            app_event("a2", T0 + minutes(30), "STOPPED"),
        ])
        configured.consolidator.consolidate_month("2018-01")
        return configured

    def test_conflicting_change_is_refused(self, frozen):
        before = frozen.config_repository.load()
        with pytest.raises(ConsolidationConflictError, match="consolidated month 2018-01"):
            _refresh(frozen, compute_formula="$time_in_seconds * 5")

        assert frozen.config_repository.load().version == before.version
        [row] = list(frozen.query.get_billable_events(JANUARY))
        assert Decimal(row["price"]["ex_vat"]) == Decimal("7200")

    def test_change_outside_frozen_months_is_accepted(self, frozen):
        document = pricing_document()
        document["pricing_plans"].append({
            **document["pricing_plans"][0],
            "valid_from": "2018-03-01",
            "components": [{**document["pricing_plans"][0]["components"][0], "formula": "$time_in_seconds * 5"}],
        })
        installed = frozen.refresher.refresh(load_config_document(document))

        assert len(installed.config.pricing_plans) == 3
        [row] = list(frozen.query.get_billable_events(JANUARY))
        assert Decimal(row["price"]["ex_vat"]) == Decimal("7200")

    def test_backfill_after_freeze_leaves_frozen_month_alone(self, frozen):
        deleted_at = parse_timestamp("2018-02-10")
        frozen.store.store_events([service_event("s1", deleted_at, "DELETED")])

        _refresh(frozen)

        [row] = list(frozen.query.get_billable_events(JANUARY))
        assert Decimal(row["price"]["ex_vat"]) == Decimal("7200")
        [service] = [u for u in frozen.derived.usage_events() if u.resource_type == "postgres"]
        assert service.event_start == parse_timestamp("2018-02-01")
        assert service.event_stop == deleted_at
