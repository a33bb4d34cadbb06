"""
Usage, billable and forecast events, streamed as JSON arrays.

All three take ``range_start``, ``range_stop`` and repeated ``org_guid``.
Filters and authorization are checked before the first byte is written.
"""

import logging
from typing import List

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from paas_billing.core.auth import extract_bearer_token, require_billing_access
from paas_billing.core.errors import AuthError, ValidationError
from paas_billing.core.logging import get_request_id
from paas_billing.features.context import billing_context
from paas_billing.features.query.service import DEMO_ORG_GUID
from paas_billing.features.query.streaming import json_array_chunks, prime
from paas_billing.models.filters import EventFilter
from paas_billing.models.usage_event import UsageEvent

logger = logging.getLogger("paas_billing")

router = APIRouter(tags=["events"])

JSON_MEDIA_TYPE = "application/json; charset=utf-8"

_usage_events_adapter = TypeAdapter(List[UsageEvent])


def parse_filter(request: Request) -> EventFilter:
    params = request.query_params
    return EventFilter.parse(params.get("range_start"), params.get("range_stop"), params.getlist("org_guid"))


def stream_rows(rows) -> StreamingResponse:
    return StreamingResponse(
        json_array_chunks(prime(rows), request_id=get_request_id()),
        media_type=JSON_MEDIA_TYPE,
    )


@router.get("/usage_events")
def usage_events(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_billing_access(request, context.authenticator, event_filter.org_guids)
    return stream_rows(context.query.get_usage_events(event_filter))


@router.get("/billable_events")
def billable_events(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    require_billing_access(request, context.authenticator, event_filter.org_guids)
    return stream_rows(context.query.get_billable_events(event_filter))


@router.get("/forecast_events")
def forecast_events(request: Request):
    context = billing_context(request)
    event_filter = parse_filter(request)
    if extract_bearer_token(request):
        require_billing_access(request, context.authenticator, event_filter.org_guids)
    else:
        for guid in event_filter.org_guids:
            if guid != DEMO_ORG_GUID:
                raise AuthError(f"you are not authorized to forecast events for org '{guid}'")
        event_filter = event_filter.model_copy(update={"org_guids": [DEMO_ORG_GUID]})

    raw_events = request.query_params.get("events")
    if not raw_events:
        raise ValidationError("events param is required")
    try:
        inputs = _usage_events_adapter.validate_json(raw_events)
    except PydanticValidationError as exc:
        raise ValidationError(f"events param is not a valid list of usage events: {exc.error_count()} error(s)") from None

    logger.info("forecast.requested", extra={"events": len(inputs), "request_id": get_request_id()})
    return stream_rows(context.query.forecast_billable_events(inputs, event_filter))
