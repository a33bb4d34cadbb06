"""
Install a pricing configuration.

A refresh validates the document, checks that normalized usage is covered by
plans, and replaces the installed tables in one transaction. It refuses to
install a configuration that would change the price of any consolidated
month; frozen history must stay reproducible.
"""

import logging
from typing import Optional

from paas_billing.core.errors import ConfigValidationError, ConsolidationConflictError
from paas_billing.core.metrics import currency_configured_ratio, vat_configured_rate
from paas_billing.features.consolidation.service import Consolidator, event_totals
from paas_billing.features.pricing.config_loader import (
    ConfigRepository,
    InstalledConfig,
    config_version,
    find_missing_plans,
    rate_at,
    load_config_document,
    validate_pricing_config,
    with_placeholders,
)
from paas_billing.features.pricing.engine import PricingEngine
from paas_billing.features.query.cache import DerivedViews
from paas_billing.models.filters import EventFilter
from paas_billing.models.pricing import PricingConfig
from paas_billing.models.timestamps import next_month, parse_month_key, utc_now

logger = logging.getLogger("paas_billing")


def month_filter(month: str) -> EventFilter:
    start = parse_month_key(month)
    return EventFilter(range_start=start, range_stop=next_month(start))


class ConfigRefresher:
    def __init__(
        self,
        config_repository: ConfigRepository,
        derived: DerivedViews,
        consolidator: Consolidator,
        *,
        ignore_missing_plans: bool = False,
    ):
        self.config_repository = config_repository
        self.derived = derived
        self.consolidator = consolidator
        self.ignore_missing_plans = ignore_missing_plans

    def refresh(self, config: PricingConfig, ignore_missing_plans: Optional[bool] = None) -> InstalledConfig:
        """
        Validate and install ``config``.

        ``ignore_missing_plans`` falls back to the document's own flag and then
        to the refresher default.

        Raises:
            ConfigValidationError: rules 1-4 fail, or usage has no plan in strict mode
            ConsolidationConflictError: a consolidated month would be priced differently
        """
        if ignore_missing_plans is None:
            ignore_missing_plans = config.ignore_missing_plans
        if ignore_missing_plans is None:
            ignore_missing_plans = self.ignore_missing_plans

        validate_pricing_config(config)

        usage = list(self.derived.usage_events())
        missing = find_missing_plans(config, usage)
        effective = config
        if missing:
            if not ignore_missing_plans:
                raise ConfigValidationError("; ".join(m.message() for m in missing))
            effective = with_placeholders(config, missing)
        pricing = PricingEngine(effective, missing)

        version = config_version(config)
        with self.config_repository.engine.begin() as conn:
            self.config_repository.write(conn, config, version, ignore_missing_plans)
            for month in sorted(self.consolidator.consolidated_months(conn)):
                frozen = event_totals(self.consolidator.get_consolidated_billable_events(month_filter(month), conn))
                fresh = event_totals(self.consolidator.compute_month(month, usage, pricing))
                if frozen != fresh:
                    logger.error("config.consolidation_conflict", extra={"month": month, "version": version})
                    raise ConsolidationConflictError(
                        f"refusing to refresh configuration: consolidated month {month} would change"
                    )

        self.derived.invalidate()
        self._publish_rates(effective)
        installed = self.config_repository.load()
        logger.info("config.installed", extra={
            "version": version,
            "pricing_plans": len(config.pricing_plans),
            "ignore_missing_plans": ignore_missing_plans,
            "placeholder_plans": len(missing),
        })
        return installed

    def refresh_from_path(self, path: str, ignore_missing_plans: Optional[bool] = None) -> InstalledConfig:
        return self.refresh(load_config_document(path), ignore_missing_plans)

    @staticmethod
    def _publish_rates(config: PricingConfig) -> None:
        now = utc_now()
        for code in {r.code for r in config.vat_rates}:
            rate = rate_at(config.vat_rates, code, now)
            if rate is not None:
                vat_configured_rate.set(float(rate.rate), labels={"code": code})
        for code in {r.code for r in config.currency_rates}:
            rate = rate_at(config.currency_rates, code, now)
            if rate is not None:
                currency_configured_ratio.set(float(rate.rate), labels={"code": code})
