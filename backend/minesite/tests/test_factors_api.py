import pytest

BASE = "/api/site-admin"
MONTH = "2024-07"


def _add(client, site, admin, values, sub, activity="Loading", dn="DS"):
    resp = client.post(
        f"{BASE}/validated/add-activity",
        json={
            "site": site.name,
            "date": "2024-07-09",
            "dn": dn,
            "operator": "op@mine.example",
            "payload": {"activity": activity, "sub_activity": sub, "values": values},
        },
        headers=admin,
    )
    assert resp.status_code == 200


def _reconcile(client, site, admin, key, total):
    resp = client.post(
        f"{BASE}/reconciliation/upsert",
        json={"site": site.name, "month_ym": MONTH, "metric_key": key, "reconciled_total": total},
        headers=admin,
    )
    assert resp.status_code == 200


@pytest.fixture
def loaders(client, site, headers):
    admin = headers(role="admin")
    _add(client, site, admin, {"Equipment": "LoaderA", "Material": "Ore", "Stope to Truck": 100}, "Production")
    _add(client, site, admin, {"Equipment": "LoaderA", "Material": "Ore", "Heading to Truck": 20}, "Development")
    _add(client, site, admin, {"Equipment": "LoaderB", "Material": "Ore", "Stope to Truck": 50}, "Production", dn="NS")
    _add(client, site, admin, {"Equipment": "LoaderB", "Material": "Ore", "Heading to Truck": 80}, "Development", dn="NS")
    return admin


def test_solve_without_targets(client, site, loaders):
    resp = client.post(f"{BASE}/bucket-factors/solve", json={"site": site.name, "month_ym": MONTH}, headers=loaders)
    assert resp.status_code == 400
    assert "missing reconciled ore tonnes" in resp.json()["detail"]


def test_preview_then_save(client, site, loaders):
    _reconcile(client, site, loaders, "hauling|production_ore_tonnes_hauled", 1500)
    _reconcile(client, site, loaders, "hauling|development_ore_tonnes_hauled", 1000)

    preview = client.post(
        f"{BASE}/bucket-factors/solve",
        json={
            "site": site.name,
            "month_ym": MONTH,
            "configs": {"LoaderA": {"estimate": 10, "min": 5, "max": 15}, "LoaderB": {"estimate": 10}},
        },
        headers=loaders,
    )
    assert preview.status_code == 200
    body = preview.json()
    assert body["saved"] is False
    assert body["reconciled"] == {"prod": 1500.0, "dev": 1000.0}
    assert {row["config_code"]: row["factor"] for row in body["configs"]} == {
        "LoaderA": pytest.approx(10.0, abs=1e-6),
        "LoaderB": pytest.approx(10.0, abs=1e-6),
    }

    month = client.get(f"{BASE}/bucket-factors/month", params={"site": site.name, "month_ym": MONTH}, headers=loaders)
    assert month.json()["saved"] == []
    assert month.json()["configs"] == []

    saved = client.post(
        f"{BASE}/bucket-factors/solve",
        json={"site": site.name, "month_ym": MONTH, "save": True, "configs": {"LoaderA": {"estimate": 10}}},
        headers=loaders,
    )
    assert saved.status_code == 200
    assert saved.json()["saved"] is True

    month = client.get(f"{BASE}/bucket-factors/month", params={"site": site.name, "month_ym": MONTH}, headers=loaders).json()
    assert [row["unit_id"] for row in month["saved"]] == ["LoaderA", "LoaderB"]
    assert [row["config_code"] for row in month["configs"]] == ["LoaderA"]
    assert month["assignment"] == {"LoaderA": "LoaderA", "LoaderB": "LoaderB"}

    logs = client.get("/api/audit/", params={"action": "factors.save", "actor_email": loaders["X-Actor"]}, headers=loaders)
    assert len(logs.json()) == 1

    trucks = client.get(f"{BASE}/truck-factors/month", params={"site": site.name, "month_ym": MONTH}, headers=loaders).json()
    assert trucks["equipment_kind"] == "truck"
    assert trucks["units"] == []
    assert trucks["saved"] == []


def test_save_rejected_when_reconciliation_locked(client, site, loaders):
    _reconcile(client, site, loaders, "hauling|production_ore_tonnes_hauled", 1500)
    _reconcile(client, site, loaders, "hauling|development_ore_tonnes_hauled", 1000)
    client.post(
        f"{BASE}/reconciliation/lock",
        json={"site": site.name, "month_ym": MONTH, "metric_key": "hauling|production_ore_tonnes_hauled"},
        headers=loaders,
    )
    resp = client.post(
        f"{BASE}/bucket-factors/solve",
        json={"site": site.name, "month_ym": MONTH, "save": True},
        headers=loaders,
    )
    assert resp.status_code == 409
    month = client.get(f"{BASE}/bucket-factors/month", params={"site": site.name, "month_ym": MONTH}, headers=loaders)
    assert month.json()["saved"] == []


def test_invalid_bounds_and_request_shape(client, site, loaders):
    _reconcile(client, site, loaders, "hauling|production_ore_tonnes_hauled", 1500)
    _reconcile(client, site, loaders, "hauling|development_ore_tonnes_hauled", 1000)
    bounds = client.post(
        f"{BASE}/bucket-factors/solve",
        json={"site": site.name, "month_ym": MONTH, "configs": {"LoaderA": {"min": 9, "max": 3}}},
        headers=loaders,
    )
    assert bounds.status_code == 400
    bad_month = client.post(f"{BASE}/truck-factors/solve", json={"site": site.name, "month_ym": "2024-7"}, headers=loaders)
    assert bad_month.status_code == 422


def test_truck_solve_without_hauling(client, site, loaders):
    _reconcile(client, site, loaders, "hauling|production_ore_tonnes_hauled", 1500)
    _reconcile(client, site, loaders, "hauling|development_ore_tonnes_hauled", 1000)
    resp = client.post(f"{BASE}/truck-factors/solve", json={"site": site.name, "month_ym": MONTH}, headers=loaders)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "no hauling trucks found for this month (cannot solve)"
