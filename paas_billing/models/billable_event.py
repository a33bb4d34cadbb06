"""
BillableEvent: a UsageEvent with its price breakdown.

Amounts are exact decimals and serialize as plain decimal strings.
"""

from datetime import datetime
from decimal import Decimal
from typing import List

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from paas_billing.models.timestamps import as_utc
from paas_billing.models.usage_event import UsageEvent

ZERO = Decimal("0")


def decimal_str(value: Decimal) -> str:
    return format(value, "f")


class PriceComponent(BaseModel):
    """One partition of an event: a plan component over a sub-interval."""
    model_config = ConfigDict(frozen=True)

    name: str
    plan_name: str
    start: datetime
    stop: datetime
    currency_code: str
    currency_rate: Decimal
    vat_code: str
    vat_rate: Decimal
    ex_vat: Decimal
    inc_vat: Decimal

    @field_validator("start", "stop")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_serializer("currency_rate", "vat_rate", "ex_vat", "inc_vat")
    def _amount(self, value: Decimal) -> str:
        return decimal_str(value)


class Price(BaseModel):
    model_config = ConfigDict(frozen=True)

    ex_vat: Decimal = ZERO
    inc_vat: Decimal = ZERO
    details: List[PriceComponent] = []

    @field_serializer("ex_vat", "inc_vat")
    def _amount(self, value: Decimal) -> str:
        return decimal_str(value)

    @classmethod
    def from_details(cls, details: List[PriceComponent]) -> "Price":
        return cls(
            ex_vat=sum((d.ex_vat for d in details), ZERO),
            inc_vat=sum((d.inc_vat for d in details), ZERO),
            details=details,
        )


class BillableEvent(UsageEvent):
    price: Price = Price()
