import paas_billing.api.health as health_api


def test_root_and_healthz(client):
    assert client.get("/").json() == {"ok": True}
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json().get("status") == "ok"


def test_readyz_ok(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_handles_db_down(client, monkeypatch):
    monkeypatch.setattr(health_api, "check_connection", lambda engine: False)

    resp = client.get("/readyz")
    body = resp.json()
    assert resp.status_code == 503
    assert body.get("status") == "error"
    assert "database" in body.get("detail", "")


def test_readyz_reports_missing_tables(client, monkeypatch):
    class FakeInspector:
        def has_table(self, name):
            return name != "consolidation_history"

    monkeypatch.setattr(health_api, "inspect", lambda engine: FakeInspector())

    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert resp.json()["detail"] == "missing tables: consolidation_history"
