from sqlalchemy import text

from tokenbank.core.database import get_engine


def test_health_ok(client):
    resp = client.get("/api/health", params={"now": "2026-03-10T12:00:00+00:00"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["db"]["connected"] is True
    assert body["db"]["tables_missing"] == []
    assert body["db"]["latency_ms"] is None
    assert body["computed_at"] == "2026-03-10T12:00:00+00:00"


def test_health_reports_missing_table(client):
    with get_engine().begin() as conn:
        conn.execute(text("DROP TABLE admin_audit"))
    resp = client.get("/api/health")
    assert resp.status_code == 503
    body = resp.json()
    assert body["ok"] is False
    assert body["db"]["tables_missing"] == ["admin_audit"]
