"""
Pricing configuration: load, validate and persist.

The configuration document is ``{vat_rates, currency_rates, pricing_plans}``
(plus an optional ``ignore_missing_plans`` flag). Validation enforces:

1. every valid_from sits on a UTC month boundary
2. (plan_guid, valid_from) and (code, valid_from) are unique
3. each plan version's components have VAT and currency rates in effect at
   the version's valid_from
4. every plan version has at least one component

Rule 5 (usage is covered by plans) needs normalized usage and lives in
``find_missing_plans``.
"""

import hashlib
import json
import logging
from collections import Counter as Tally
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, insert, select
from sqlalchemy.engine import Connection, Engine

from paas_billing.core.database import (
    config_versions,
    currency_rates,
    pricing_plan_components,
    pricing_plans,
    vat_rates,
)
from paas_billing.core.errors import ConfigValidationError, FormulaError
from paas_billing.features.pricing.formula import parse_formula
from paas_billing.models.pricing import (
    BILLING_CURRENCY,
    CURRENCY_CODES,
    VAT_CODES,
    CurrencyRate,
    PricingConfig,
    PricingPlan,
    PricingPlanComponent,
    VATRate,
)
from paas_billing.models.timestamps import EPOCH, as_utc, format_timestamp, is_month_boundary, NEGATIVE_INFINITY
from paas_billing.models.usage_event import UsageEvent

logger = logging.getLogger("paas_billing")

PLACEHOLDER_COMPONENT = "pending"


def load_config_document(source: Union[str, Path, dict]) -> PricingConfig:
    """Parse a config file path (or an already decoded document)."""
    if isinstance(source, dict):
        document = source
    else:
        path = Path(source)
        try:
            with path.open("r", encoding="utf-8") as fh:
                document = json.load(fh, parse_float=Decimal)
        except OSError as exc:
            raise ConfigValidationError(f"cannot read pricing configuration {path}: {exc.strerror}") from exc
        except json.JSONDecodeError as exc:
            raise ConfigValidationError(f"pricing configuration {path} is not valid JSON: {exc.msg}") from exc
    try:
        config = PricingConfig.model_validate(document)
    except PydanticValidationError as exc:
        raise ConfigValidationError(f"invalid pricing configuration: {exc}") from exc
    logger.info("config.loaded", extra={
        "source": "inline" if isinstance(source, dict) else str(source),
        "pricing_plans": len(config.pricing_plans),
    })
    return config


def _label(value: datetime) -> str:
    return "-infinity" if value == NEGATIVE_INFINITY else format_timestamp(value)


def rate_at(rates: Sequence[Union[VATRate, CurrencyRate]], code: str, at: datetime):
    """The rate of ``code`` effective at ``at``, or None."""
    effective = None
    for rate in rates:
        if rate.code == code and rate.valid_from <= at:
            if effective is None or rate.valid_from > effective.valid_from:
                effective = rate
    return effective


def validate_pricing_config(config: PricingConfig) -> None:
    """Enforce rules 1-4 and the fixed vocabularies. Raises ConfigValidationError."""
    problems: List[str] = []

    for label, rates, vocabulary in (
        ("vat_rate", config.vat_rates, VAT_CODES),
        ("currency_rate", config.currency_rates, CURRENCY_CODES),
    ):
        for rate in rates:
            if rate.code not in vocabulary:
                problems.append(f"{label} code '{rate.code}' is not one of {', '.join(vocabulary)}")
            if not is_month_boundary(rate.valid_from):
                problems.append(f"{label} '{rate.code}' valid_from {_label(rate.valid_from)} is not the start of a month")
            if rate.rate < 0:
                problems.append(f"{label} '{rate.code}' must not be negative")
        duplicates = [key for key, n in Tally((r.code, r.valid_from) for r in rates).items() if n > 1]
        for code, valid_from in duplicates:
            problems.append(f"duplicate {label} '{code}' for valid_from {_label(valid_from)}")

    for rate in config.currency_rates:
        if rate.code == BILLING_CURRENCY and rate.rate != 1:
            problems.append(f"currency_rate for {BILLING_CURRENCY} must be 1, got {rate.rate}")

    duplicates = [key for key, n in Tally((p.plan_guid, p.valid_from) for p in config.pricing_plans).items() if n > 1]
    for plan_guid, valid_from in duplicates:
        problems.append(f"duplicate pricing_plan '{plan_guid}' for valid_from {_label(valid_from)}")

    for plan in config.pricing_plans:
        if not is_month_boundary(plan.valid_from):
            problems.append(f"pricing_plan '{plan.name}' valid_from {_label(plan.valid_from)} is not the start of a month")
        if not plan.components:
            problems.append(f"pricing_plan '{plan.name}' has no components")
        for component in plan.components:
            try:
                parse_formula(component.formula)
            except FormulaError as exc:
                problems.append(f"pricing_plan '{plan.name}' component '{component.name}': {exc.message}")
            if rate_at(config.vat_rates, component.vat_code, plan.valid_from) is None:
                problems.append(
                    f"missing vat_rate for '{component.vat_code}' for period '{_label(plan.valid_from)}' required by plan '{plan.name}'"
                )
            if rate_at(config.currency_rates, component.currency_code, plan.valid_from) is None:
                problems.append(
                    f"missing currency_rate for '{component.currency_code}' for period '{_label(plan.valid_from)}' required by plan '{plan.name}'"
                )

    if problems:
        raise ConfigValidationError("; ".join(problems))


@dataclass(frozen=True)
class MissingPlan:
    plan_guid: str
    plan_name: str
    resource_type: str

    def message(self) -> str:
        return f"missing '{self.plan_name}' pricing plan configuration for '{self.plan_guid}' ({self.resource_type})"


def find_missing_plans(config: PricingConfig, usage_events: Iterable[UsageEvent]) -> List[MissingPlan]:
    """Usage whose start is not covered by any version of its plan."""
    first_version: Dict[str, datetime] = {}
    for plan in config.pricing_plans:
        current = first_version.get(plan.plan_guid)
        if current is None or plan.valid_from < current:
            first_version[plan.plan_guid] = plan.valid_from

    missing: Dict[str, MissingPlan] = {}
    for event in usage_events:
        covered_from = first_version.get(event.plan_guid)
        if covered_from is not None and covered_from <= event.event_start:
            continue
        missing.setdefault(event.plan_guid, MissingPlan(event.plan_guid, event.plan_name, event.resource_type))
    return list(missing.values())


def placeholder_plan(missing: MissingPlan) -> PricingPlan:
    return PricingPlan(
        plan_guid=missing.plan_guid,
        valid_from=EPOCH,
        name=f"{missing.resource_type} {missing.plan_name}".strip(),
        components=[
            PricingPlanComponent(name=PLACEHOLDER_COMPONENT, formula="0", vat_code="Standard", currency_code=BILLING_CURRENCY),
        ],
    )


def with_placeholders(config: PricingConfig, missing: Sequence[MissingPlan]) -> PricingConfig:
    existing = {(p.plan_guid, p.valid_from) for p in config.pricing_plans}
    extra = [placeholder_plan(m) for m in missing if (m.plan_guid, EPOCH) not in existing]
    if not extra:
        return config
    return config.model_copy(update={"pricing_plans": list(config.pricing_plans) + extra})


def config_version(config: PricingConfig) -> str:
    """Content hash of a configuration; equal documents share a version."""
    document = config.model_dump(mode="json", exclude={"ignore_missing_plans"})
    encoded = json.dumps(document, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class InstalledConfig:
    config: PricingConfig
    version: str
    ignore_missing_plans: bool
    revision: int = 0


class ConfigRepository:
    """Reads and writes the installed configuration tables."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def write(self, conn: Connection, config: PricingConfig, version: str, ignore_missing_plans: bool) -> None:
        """Replace the installed configuration inside the caller's transaction."""
        for table in (pricing_plan_components, pricing_plans, vat_rates, currency_rates):
            conn.execute(delete(table))

        if config.vat_rates:
            conn.execute(insert(vat_rates), [
                {"code": r.code, "valid_from": r.valid_from, "rate": format(r.rate, "f")} for r in config.vat_rates
            ])
        if config.currency_rates:
            conn.execute(insert(currency_rates), [
                {"code": r.code, "valid_from": r.valid_from, "rate": format(r.rate, "f")} for r in config.currency_rates
            ])
        if config.pricing_plans:
            conn.execute(insert(pricing_plans), [
                {
                    "plan_guid": p.plan_guid,
                    "valid_from": p.valid_from,
                    "name": p.name,
                    "memory_in_mb": p.memory_in_mb,
                    "storage_in_mb": p.storage_in_mb,
                    "number_of_nodes": p.number_of_nodes,
                }
                for p in config.pricing_plans
            ])
            components = [
                {
                    "plan_guid": p.plan_guid,
                    "valid_from": p.valid_from,
                    "position": position,
                    "name": c.name,
                    "formula": c.formula,
                    "vat_code": c.vat_code,
                    "currency_code": c.currency_code,
                }
                for p in config.pricing_plans
                for position, c in enumerate(p.components)
            ]
            if components:
                conn.execute(insert(pricing_plan_components), components)

        conn.execute(insert(config_versions).values(version=version, ignore_missing_plans=ignore_missing_plans))

    def current_revision(self) -> Optional[int]:
        """Id of the newest install; bumps on every install, even of identical content."""
        with self.engine.connect() as conn:
            return conn.execute(select(func.max(config_versions.c.id))).scalar()

    def load(self) -> Optional[InstalledConfig]:
        """The installed configuration, read in one transaction; None before first install."""
        with self.engine.connect() as conn:
            latest = conn.execute(
                select(config_versions).order_by(config_versions.c.id.desc()).limit(1)
            ).first()
            if latest is None:
                return None

            vats = [
                VATRate(code=row.code, valid_from=as_utc(row.valid_from), rate=Decimal(row.rate))
                for row in conn.execute(select(vat_rates).order_by(vat_rates.c.code, vat_rates.c.valid_from))
            ]
            currencies = [
                CurrencyRate(code=row.code, valid_from=as_utc(row.valid_from), rate=Decimal(row.rate))
                for row in conn.execute(select(currency_rates).order_by(currency_rates.c.code, currency_rates.c.valid_from))
            ]
            components: Dict[Tuple[str, datetime], List[PricingPlanComponent]] = {}
            for row in conn.execute(
                select(pricing_plan_components).order_by(
                    pricing_plan_components.c.plan_guid,
                    pricing_plan_components.c.valid_from,
                    pricing_plan_components.c.position,
                )
            ):
                components.setdefault((row.plan_guid, as_utc(row.valid_from)), []).append(
                    PricingPlanComponent(name=row.name, formula=row.formula, vat_code=row.vat_code, currency_code=row.currency_code)
                )
            plans = [
                PricingPlan(
                    plan_guid=row.plan_guid,
                    valid_from=as_utc(row.valid_from),
                    name=row.name,
                    memory_in_mb=row.memory_in_mb,
                    storage_in_mb=row.storage_in_mb,
                    number_of_nodes=row.number_of_nodes,
                    components=components.get((row.plan_guid, as_utc(row.valid_from)), []),
                )
                for row in conn.execute(select(pricing_plans).order_by(pricing_plans.c.plan_guid, pricing_plans.c.valid_from))
            ]

        return InstalledConfig(
            config=PricingConfig(vat_rates=vats, currency_rates=currencies, pricing_plans=plans),
            version=latest.version,
            ignore_missing_plans=bool(latest.ignore_missing_plans),
            revision=latest.id,
        )
