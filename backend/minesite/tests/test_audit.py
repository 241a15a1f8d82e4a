from datetime import date

from minesite import audit, models


def _create_shift(client, site, headers):
    return client.post(
        "/api/site-admin/validated/create-shift",
        json={"site": site.name, "date": "2024-08-01", "dn": "DS", "operator": "op@mine.example"},
        headers=headers,
    ).json()


def test_audit_log_shift_creation(client, site, headers):
    admin = headers(role="admin")
    shift = _create_shift(client, site, admin)
    logs = client.get("/api/audit/", params={"actor_email": admin["X-Actor"]}, headers=admin)
    assert logs.status_code == 200
    data = logs.json()
    assert any(l["action"] == "shift.create" and l["target_id"] == shift["shift_id"] for l in data)


def test_audit_report(client, site, headers):
    admin = headers(role="admin")
    _create_shift(client, site, admin)
    client.post("/api/site-admin/validate", json={"site": site.name, "date": "2024-08-01"}, headers=admin)
    params = {
        "start": "2000-01-01T00:00:00",
        "end": "2100-01-01T00:00:00",
        "actor_email": admin["X-Actor"],
    }
    resp = client.get("/api/audit/report", headers=admin, params=params)
    assert resp.status_code == 200
    data = {r["action"]: r["count"] for r in resp.json()}
    assert data == {"shift.create": 1, "day.validate": 1}


def test_audit_requires_validator(client, headers):
    resp = client.get("/api/audit/", headers=headers(role="operator"))
    assert resp.status_code == 403


def test_log_action_joins_caller_transaction(db, site):
    entry = audit.log_action(
        db,
        "v@mine.example",
        "day.unvalidate",
        "validated_day",
        site.id,
        {"date": date(2024, 1, 1).isoformat()},
    )
    assert entry.target_id == str(site.id)
    db.rollback()
    assert db.query(models.AuditLog).filter_by(actor="v@mine.example", action="day.unvalidate").count() == 0
