"""HTTP contract of the usage, billable and forecast endpoints."""

import json
from decimal import Decimal

import pytest

from paas_billing.core.auth import UNAUTHORIZED_MESSAGE
from paas_billing.features.query.service import DEMO_ORG_GUID
from paas_billing.tests.mocks import (
    ADMIN_TOKEN,
    BILLING_TOKEN,
    COMPUTE_PLAN_GUID,
    ORG_GUID,
    OTHER_ORG_GUID,
    OUTSIDER_TOKEN,
    T0,
    app_event,
    minutes,
)

JANUARY = {"range_start": "2018-01-01", "range_stop": "2018-02-01"}


def _auth(token):
    return {"Authorization": f"bearer {token}"}


@pytest.fixture
def with_usage(configured):
    configured.store.store_events([
        app_event("a1", T0, "STARTED"),
        app_event("a2", T0 + minutes(30), "STOPPED"),
        app_event("b1", T0, "STARTED", app_guid="other-app", org_guid=OTHER_ORG_GUID),
    ])
    return configured


@pytest.mark.parametrize("path", ["/usage_events", "/billable_events"])
class TestEventEndpoints:
    def test_requires_a_token(self, client, path):
        resp = client.get(path, params={**JANUARY, "org_guid": ORG_GUID})
        assert resp.status_code == 401
        assert resp.json() == {"error": "no access token provided"}

    def test_rejects_unknown_token(self, client, path):
        resp = client.get(path, params={**JANUARY, "org_guid": ORG_GUID}, headers=_auth("nope"))
        assert resp.status_code == 401

    def test_rejects_orgs_without_billing_access(self, client, path):
        resp = client.get(path, params={**JANUARY, "org_guid": [ORG_GUID, OTHER_ORG_GUID]}, headers=_auth(BILLING_TOKEN))
        assert resp.status_code == 401
        assert resp.json() == {"error": UNAUTHORIZED_MESSAGE}

    def test_all_orgs_need_an_admin(self, client, path):
        assert client.get(path, params=JANUARY, headers=_auth(OUTSIDER_TOKEN)).status_code == 401
        assert client.get(path, params=JANUARY, headers=_auth(ADMIN_TOKEN)).status_code == 200

    def test_invalid_range(self, client, path):
        resp = client.get(path, params={"range_start": "yesterday", "range_stop": "2018-02-01"}, headers=_auth(ADMIN_TOKEN))
        assert resp.status_code == 400
        assert "range start" in resp.json()["error"]

        resp = client.get(path, params={"range_start": "2018-02-01", "range_stop": "2018-01-01"}, headers=_auth(ADMIN_TOKEN))
        assert resp.status_code == 400
        assert resp.json() == {"error": "range_start must be before range_stop"}

    def test_space_separated_time_is_rejected(self, client, path):
        params = {"range_start": "2018-01-10 12:00", "range_stop": "2018-02-01"}
        resp = client.get(path, params=params, headers=_auth(ADMIN_TOKEN))
        assert resp.status_code == 400
        assert resp.json() == {
            "error": "a valid range start filter value is required - expected format 2006-01-02 - got 2018-01-10 12:00"
        }

    def test_empty_result_is_an_empty_array(self, client, path):
        resp = client.get(path, params=JANUARY, headers=_auth(ADMIN_TOKEN))
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "application/json; charset=utf-8"
        assert resp.text == "[\n]\n"

    def test_rows_are_streamed_one_per_line(self, with_usage, client, path):
        resp = client.get(path, params={**JANUARY, "org_guid": ORG_GUID}, headers=_auth(BILLING_TOKEN))
        assert resp.status_code == 200
        assert resp.text.startswith("[\n") and resp.text.endswith("\n]\n")
        rows = json.loads(resp.text)
        assert [row["org_guid"] for row in rows] == [ORG_GUID]
        assert resp.headers["x-request-id"]


def test_token_is_read_from_cookie(with_usage, client):
    client.cookies.set("authorization", f"bearer {BILLING_TOKEN}")
    resp = client.get("/usage_events", params={**JANUARY, "org_guid": ORG_GUID})
    assert resp.status_code == 200


def test_billable_event_shape(with_usage, client):
    resp = client.get("/billable_events", params={**JANUARY, "org_guid": ORG_GUID}, headers=_auth(BILLING_TOKEN))
    [row] = resp.json()
    assert row["plan_guid"] == COMPUTE_PLAN_GUID
    assert row["event_start"] == "2018-01-10T12:00:00Z"
    assert Decimal(row["price"]["ex_vat"]) == Decimal("7200")
    assert Decimal(row["price"]["inc_vat"]) == Decimal("8640")
    assert [d["vat_code"] for d in row["price"]["details"]] == ["Standard"]


class TestForecast:
    def _events(self, **overrides):
        event = {
            "event_start": "2018-01-10T12:00:00Z",
            "event_stop": "2018-01-10T12:10:00Z",
            "resource_guid": "forecast-app",
            "resource_type": "app",
            "plan_guid": COMPUTE_PLAN_GUID,
            "memory_in_mb": 64,
            "number_of_nodes": 1,
        }
        event.update(overrides)
        return json.dumps([event])

    def test_anonymous_forecast_uses_the_demo_org(self, client):
        resp = client.get("/forecast_events", params={**JANUARY, "events": self._events()})
        assert resp.status_code == 200
        [row] = resp.json()
        assert row["org_guid"] == DEMO_ORG_GUID
        assert row["plan_name"] == "app"
        assert Decimal(row["price"]["ex_vat"]) == Decimal("2400")

    def test_anonymous_forecast_rejects_other_orgs(self, client):
        resp = client.get("/forecast_events", params={**JANUARY, "org_guid": ORG_GUID, "events": self._events()})
        assert resp.status_code == 401
        assert resp.json() == {"error": f"you are not authorized to forecast events for org '{ORG_GUID}'"}

    def test_authenticated_forecast_checks_billing_access(self, client):
        params = {**JANUARY, "org_guid": ORG_GUID, "events": self._events(org_guid=ORG_GUID)}
        assert client.get("/forecast_events", params=params, headers=_auth(BILLING_TOKEN)).status_code == 200
        assert client.get("/forecast_events", params=params, headers=_auth(OUTSIDER_TOKEN)).status_code == 401

    def test_events_param_is_required(self, client):
        resp = client.get("/forecast_events", params=JANUARY)
        assert resp.status_code == 400
        assert resp.json() == {"error": "events param is required"}

    def test_malformed_events(self, client):
        resp = client.get("/forecast_events", params={**JANUARY, "events": "[{\"event_start\": \"soon\"}]"})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("events param is not a valid list of usage events")

    def test_unknown_plan_is_a_server_error(self, client):
        resp = client.get("/forecast_events", params={**JANUARY, "events": self._events(plan_guid="no-such-plan")})
        assert resp.status_code == 500
        assert resp.json() == {"error": "internal server error"}
