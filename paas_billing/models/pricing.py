"""
Pricing configuration entities: plans, components, VAT and currency rates.

Each entity is versioned by ``valid_from``; a version is effective from its
``valid_from`` until the next version of the same key, or forever.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_serializer, field_validator

from paas_billing.models.timestamps import parse_timestamp

VAT_CODES = ("Standard", "Reduced", "Zero")
CURRENCY_CODES = ("GBP", "USD", "EUR")
BILLING_CURRENCY = "GBP"


class _Versioned(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    valid_from: datetime

    @field_validator("valid_from", mode="before")
    @classmethod
    def _parse_valid_from(cls, value):
        if isinstance(value, (str, datetime)):
            return parse_timestamp(value)
        return value


class VATRate(_Versioned):
    code: str
    rate: Decimal

    @field_serializer("rate")
    def _rate(self, value: Decimal) -> str:
        return format(value, "f")


class CurrencyRate(_Versioned):
    code: str
    rate: Decimal

    @field_serializer("rate")
    def _rate(self, value: Decimal) -> str:
        return format(value, "f")


class PricingPlanComponent(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    formula: str
    vat_code: str
    currency_code: str


class PricingPlan(_Versioned):
    plan_guid: str = Field(validation_alias=AliasChoices("plan_guid", "plan_uid"))
    name: str
    memory_in_mb: int = 0
    storage_in_mb: int = 0
    number_of_nodes: int = 0
    components: List[PricingPlanComponent] = []

    @property
    def plan_uid(self) -> str:
        return self.plan_guid


class PricingConfig(BaseModel):
    """The configuration document: ``{vat_rates, currency_rates, pricing_plans}``."""
    model_config = ConfigDict(frozen=True)

    vat_rates: List[VATRate] = []
    currency_rates: List[CurrencyRate] = []
    pricing_plans: List[PricingPlan] = []
    ignore_missing_plans: Optional[bool] = None
