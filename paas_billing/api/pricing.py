"""Installed configuration and cost totals; admins only."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from paas_billing.api.events import JSON_MEDIA_TYPE, parse_filter
from paas_billing.core.auth import require_admin
from paas_billing.features.context import billing_context

router = APIRouter(tags=["pricing"])


def _json(items) -> JSONResponse:
    return JSONResponse(content=items, media_type=JSON_MEDIA_TYPE)


@router.get("/pricing_plans")
def pricing_plans(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_admin(request, context.authenticator)
    return _json([plan.model_dump(mode="json") for plan in context.query.get_pricing_plans(event_filter)])


@router.get("/vat_rates")
def vat_rates(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_admin(request, context.authenticator)
    return _json([rate.model_dump(mode="json") for rate in context.query.get_vat_rates(event_filter)])


@router.get("/currency_rates")
def currency_rates(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_admin(request, context.authenticator)
    return _json([rate.model_dump(mode="json") for rate in context.query.get_currency_rates(event_filter)])


@router.get("/totals")
def totals(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_admin(request, context.authenticator)
    return _json(context.query.total_costs(event_filter))
