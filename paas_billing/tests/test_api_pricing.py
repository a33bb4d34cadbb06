"""Admin endpoints exposing the installed configuration and totals."""

from decimal import Decimal

import pytest

from paas_billing.tests.mocks import ADMIN_TOKEN, BILLING_TOKEN, COMPUTE_PLAN_GUID, T0, app_event, minutes

JANUARY = {"range_start": "2018-01-01", "range_stop": "2018-02-01"}
ADMIN = {"Authorization": f"bearer {ADMIN_TOKEN}"}


@pytest.mark.parametrize("path", ["/pricing_plans", "/vat_rates", "/currency_rates", "/totals"])
def test_admin_only(client, path):
    assert client.get(path, params=JANUARY).status_code == 401
    resp = client.get(path, params=JANUARY, headers={"Authorization": f"bearer {BILLING_TOKEN}"})
    assert resp.status_code == 401
    assert resp.json() == {"error": "you need to be an administrator to retrieve this data"}


def test_filter_is_validated_before_authorization(client):
    resp = client.get("/pricing_plans", params={"range_start": "2018-01-01"})
    assert resp.status_code == 400


def test_pricing_plans(client):
    resp = client.get("/pricing_plans", params=JANUARY, headers=ADMIN)
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "application/json; charset=utf-8"
    plans = resp.json()
    assert [p["name"] for p in plans if p["plan_guid"] == COMPUTE_PLAN_GUID] == ["app"]
    assert plans[0]["components"][0]["formula"]


def test_rates(client):
    vat = {r["code"]: Decimal(r["rate"]) for r in client.get("/vat_rates", params=JANUARY, headers=ADMIN).json()}
    assert vat == {"Standard": Decimal("0.2"), "Reduced": Decimal("0.05"), "Zero": Decimal("0")}

    currencies = {r["code"] for r in client.get("/currency_rates", params=JANUARY, headers=ADMIN).json()}
    assert currencies == {"GBP", "USD"}


def test_totals(configured, client):
    configured.store.store_events([
        app_event("a1", T0, "STARTED"),
        app_event("a2", T0 + minutes(30), "STOPPED"),
    ])
    resp = client.get("/totals", params=JANUARY, headers=ADMIN)
    [row] = resp.json()
    assert row["plan_guid"] == COMPUTE_PLAN_GUID
    assert Decimal(row["cost"]) == Decimal("7200")
