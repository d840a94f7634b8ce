"""Tests for the asset inventory, groups and import/export."""
import io
import json

import openpyxl


def _asset(c, name, **extra):
    body = {"name": name, "type": "hardware"}
    body.update(extra)
    r = c.post("/api/assets", json=body)
    assert r.status_code == 201, r.json
    return r.json


def test_asset_crud_and_filters(owner_client):
    r = owner_client.post("/api/assets", json={"name": "", "type": "spaceship"})
    assert r.status_code == 400
    assert len(r.json["errors"]) == 2

    r = owner_client.post(
        "/api/assets",
        json={"name": "db-01", "type": "hardware", "primary_contact_email": "not-an-email"},
    )
    assert r.status_code == 400

    db = _asset(owner_client, "db-01", criticality="critical", location="Rack 4", must_contact=True)
    _asset(owner_client, "Payroll SaaS", type="service", vendor="Paycorp")

    r = owner_client.get("/api/assets?criticality=critical")
    assert [a["name"] for a in r.json["assets"]] == ["db-01"]
    r = owner_client.get("/api/assets?q=paycorp")
    assert [a["name"] for a in r.json["assets"]] == ["Payroll SaaS"]
    r = owner_client.get("/api/assets?must_contact=true")
    assert r.json["totalCount"] == 1

    r = owner_client.put(f"/api/assets/{db['id']}", json={"location": "Rack 7"})
    assert r.status_code == 200
    assert r.json["location"] == "Rack 7"

    stats = owner_client.get("/api/assets/statistics").json
    assert stats["total"] == 2
    assert stats["byType"] == {"hardware": 1, "service": 1}
    assert stats["mustContact"] == 1

    # Soft delete hides the asset
    assert owner_client.delete(f"/api/assets/{db['id']}").status_code == 200
    assert owner_client.get(f"/api/assets/{db['id']}").status_code == 404
    assert owner_client.get("/api/assets").json["totalCount"] == 1


def test_bulk_operations_need_professional(owner_client):
    a = _asset(owner_client, "laptop-1")
    r = owner_client.post("/api/assets/bulk/delete", json={"asset_ids": [a["id"]]})
    assert r.status_code == 403
    assert r.json["feature"] == "bulkOperations"


def test_bulk_tag_group_delete(pro_client):
    a = _asset(pro_client, "laptop-1")
    b = _asset(pro_client, "laptop-2")
    tag = pro_client.post("/api/tags", json={"name": "Production", "category": "custom"}).json

    r = pro_client.post("/api/assets/bulk/tag", json={"asset_ids": [a["id"], b["id"]], "tag_ids": [tag["id"]]})
    assert r.json["added"] == 2
    r = pro_client.post("/api/assets/bulk/tag", json={"asset_ids": [a["id"]], "tag_ids": [tag["id"]]})
    assert r.json["added"] == 0
    assert pro_client.get("/api/assets?tag=production").json["totalCount"] == 2

    group = pro_client.post("/api/assets/groups", json={"name": "Laptops", "type": "logical"}).json
    r = pro_client.post("/api/assets/bulk/group", json={"asset_ids": [a["id"], b["id"]], "group_id": group["id"]})
    assert r.json["added"] == 2

    r = pro_client.post("/api/assets/bulk/delete", json={"asset_ids": [a["id"], 99999]})
    assert r.status_code == 404

    r = pro_client.post("/api/assets/bulk/delete", json={"asset_ids": [a["id"]]})
    assert r.json["deleted"] == 1
    assert pro_client.get(f"/api/assets/groups/{group['id']}").json["memberCount"] == 1


def test_group_hierarchy(owner_client):
    root = owner_client.post("/api/assets/groups", json={"name": "HQ", "type": "location"}).json
    floor = owner_client.post("/api/assets/groups", json={"name": "Floor 2", "parent_group_id": root["id"]}).json
    room = owner_client.post("/api/assets/groups", json={"name": "Server Room", "parent_group_id": floor["id"]}).json

    r = owner_client.post("/api/assets/groups", json={"name": "hq"})
    assert r.status_code == 409

    path = owner_client.get(f"/api/assets/groups/{room['id']}/path").json["path"]
    assert [g["name"] for g in path] == ["HQ", "Floor 2", "Server Room"]

    # No cycles
    r = owner_client.put(f"/api/assets/groups/{root['id']}", json={"parent_group_id": room["id"]})
    assert r.status_code == 400

    tree = owner_client.get("/api/assets/groups").json["groups"]
    assert tree[0]["name"] == "HQ"
    assert tree[0]["children"][0]["children"][0]["name"] == "Server Room"

    # Deleting the middle group lifts its children
    assert owner_client.delete(f"/api/assets/groups/{floor['id']}").status_code == 200
    r = owner_client.get(f"/api/assets/groups/{room['id']}")
    assert r.json["parentGroupId"] == root["id"]


def test_move_assets_between_groups(owner_client):
    a = _asset(owner_client, "printer")
    g1 = owner_client.post("/api/assets/groups", json={"name": "Office A"}).json
    g2 = owner_client.post("/api/assets/groups", json={"name": "Office B"}).json
    owner_client.post("/api/assets/groups/move", json={"asset_ids": [a["id"]], "to_group_id": g1["id"]})

    r = owner_client.post(
        "/api/assets/groups/move",
        json={"asset_ids": [a["id"]], "from_group_id": g1["id"], "to_group_id": g2["id"]},
    )
    assert r.json["moved"] == 1
    detail = owner_client.get(f"/api/assets/{a['id']}").json
    assert [g["name"] for g in detail["groups"]] == ["Office B"]


def test_dynamic_group_rules(owner_client):
    _asset(owner_client, "core-switch", criticality="critical")
    _asset(owner_client, "kiosk", criticality="low")
    group = owner_client.post(
        "/api/assets/groups",
        json={"name": "Crown Jewels", "type": "dynamic", "rules": {"criticality": "critical"}},
    ).json
    assert group["isDynamic"] is True
    assert group["memberCount"] == 1

    _asset(owner_client, "hsm", criticality="critical")
    r = owner_client.post(f"/api/assets/groups/{group['id']}/apply-rules")
    assert r.json["members"] == 2

    static = owner_client.post("/api/assets/groups", json={"name": "Static"}).json
    assert owner_client.post(f"/api/assets/groups/{static['id']}/apply-rules").status_code == 409


def test_dynamic_rule_must_contact_string(owner_client):
    _asset(owner_client, "payroll-saas", must_contact=True)
    _asset(owner_client, "lab-printer", must_contact=False)
    r = owner_client.post(
        "/api/assets/groups",
        json={"name": "Quiet", "type": "dynamic", "rules": {"must_contact": "false"}},
    )
    assert r.status_code == 201, r.json
    assert r.json["rules"] == {"must_contact": False}
    assert r.json["memberCount"] == 1

    r = owner_client.post(
        "/api/assets/groups",
        json={"name": "Unclear", "type": "dynamic", "rules": {"must_contact": "sometimes"}},
    )
    assert r.status_code == 400
    assert "rules.must_contact must be true or false." in r.json["errors"]


def test_import_and_export(owner_client):
    csv_body = "Name,Type,Criticality,Location\nfw-01,hardware,high,DC1\n,software,low,\nvpn,service,medium,Cloud\n"
    r = owner_client.post(
        "/api/assets/import",
        data={"file": (io.BytesIO(csv_body.encode()), "assets.csv")},
        content_type="multipart/form-data",
    )
    assert r.status_code == 201
    assert r.json["created"] == 2
    assert r.json["errors"][0]["row"] == 2

    r = owner_client.post("/api/assets/import", json={"rows": [{"name": "crm", "type": "SERVICE"}]})
    assert r.json["created"] == 1

    r = owner_client.get("/api/assets/export?format=csv")
    assert r.status_code == 200
    lines = r.get_data(as_text=True).splitlines()
    assert lines[0].startswith("Name,Type")
    assert len(lines) == 4

    r = owner_client.get("/api/assets/export?format=json")
    assert {a["name"] for a in json.loads(r.data)} == {"fw-01", "vpn", "crm"}

    r = owner_client.get("/api/assets/export?format=xlsx")
    ws = openpyxl.load_workbook(io.BytesIO(r.data)).active
    assert ws.cell(row=1, column=1).value == "Name"
    assert ws.max_row == 4

    assert owner_client.get("/api/assets/export?format=pdf").status_code == 400
