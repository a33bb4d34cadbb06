from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from paas_billing.core.middleware.request_id import RequestIdMiddleware


def _make_app():
    app = FastAPI()
    app.add_middleware(RequestIdMiddleware)

    @app.get("/")
    async def root(request: Request):
        return {"request_id": getattr(request.state, "request_id", None)}

    return app


def test_generates_request_id_when_missing():
    client = TestClient(_make_app())

    resp = client.get("/")
    assert resp.status_code == 200
    rid_header = resp.headers.get("x-request-id")
    assert rid_header
    assert rid_header == resp.json().get("request_id")


def test_echoes_provided_request_id():
    client = TestClient(_make_app())

    resp = client.get("/", headers={"X-Request-Id": "test-rid-123"})
    assert resp.headers.get("x-request-id") == "test-rid-123"
    assert resp.json().get("request_id") == "test-rid-123"
