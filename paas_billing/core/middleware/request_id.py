import logging
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from paas_billing.core.logging import request_id_ctx_var, latency_bucket_ms

# Query parameters worth echoing into request.complete
_LOGGED_PARAMS = ("range_start", "range_stop")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id to each request and log its completion."""

    def __init__(self, app, header_name: str = "x-request-id"):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request, call_next):
        rid = request.headers.get(self.header_name) or str(uuid4())
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        fields = {
            "request_id": rid,
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "latency_bucket": latency_bucket_ms((time.perf_counter() - start) * 1000),
        }
        params = request.query_params
        fields.update({name: params[name] for name in _LOGGED_PARAMS if name in params})
        orgs = params.getlist("org_guid")
        if orgs:
            fields["org_guids"] = ",".join(orgs)
        logging.getLogger("paas_billing").info("request.complete", extra=fields)
        return response
