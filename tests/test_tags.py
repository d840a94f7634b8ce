from app.irdesk.db import session_scope
from app.irdesk.modules.content.models import DefaultTagSet
from app.irdesk.modules.tags.models import Tag


def _tag(c, name, category="custom", **extra):
    body = {"name": name, "category": category}
    body.update(extra)
    r = c.post("/api/tags", json=body)
    assert r.status_code == 201, r.json
    return r.json


def test_tag_crud(owner_client):
    assert owner_client.post("/api/tags", json={"name": "x", "color": "red"}).status_code == 400
    pci = _tag(owner_client, "PCI", "compliance", color="#FF0000")
    assert owner_client.post("/api/tags", json={"name": "pci"}).status_code == 409

    r = owner_client.get("/api/tags?category=compliance")
    assert [t["name"] for t in r.json["tags"]] == ["PCI"]
    assert "compliance" in r.json["byCategory"]

    r = owner_client.put(f"/api/tags/{pci['id']}", json={"name": "PCI-DSS"})
    assert r.json["name"] == "PCI-DSS"
    assert owner_client.delete(f"/api/tags/{pci['id']}").status_code == 200
    assert owner_client.get("/api/tags").json["tags"] == []


def test_entity_tagging_and_usage(owner_client):
    asset = owner_client.post("/api/assets", json={"name": "web-01", "type": "hardware"}).json
    prod = _tag(owner_client, "production")

    r = owner_client.post(f"/api/tags/entity/asset/{asset['id']}", json={"tag_id": prod["id"]})
    assert r.json["added"] is True
    r = owner_client.post(f"/api/tags/entity/asset/{asset['id']}", json={"tag_id": prod["id"]})
    assert r.json["added"] is False

    assert owner_client.get("/api/tags/popular").json["tags"][0]["usageCount"] == 1
    stats = owner_client.get("/api/tags/statistics").json
    assert stats["totalTaggings"] == 1
    assert stats["byEntityType"] == [{"entityType": "asset", "count": 1}]

    r = owner_client.delete(f"/api/tags/entity/asset/{asset['id']}/{prod['id']}")
    assert r.json["removed"] is True
    assert owner_client.get(f"/api/tags/entity/asset/{asset['id']}").json["tags"] == []

    assert owner_client.get("/api/tags/entity/spaceship/1").status_code == 400
    assert owner_client.get("/api/tags/entity/asset/4242").status_code == 404


def test_merge_tags(owner_client):
    asset = owner_client.post("/api/assets", json={"name": "web-01", "type": "hardware"}).json
    prod = _tag(owner_client, "prod")
    production = _tag(owner_client, "production")
    owner_client.put(f"/api/tags/entity/asset/{asset['id']}", json={"tag_ids": [prod["id"], production["id"]]})

    r = owner_client.post("/api/tags/merge", json={"target_id": production["id"], "source_ids": [prod["id"]]})
    assert r.status_code == 200
    assert r.json["usageCount"] == 1
    names = [t["name"] for t in owner_client.get("/api/tags").json["tags"]]
    assert names == ["production"]

    r = owner_client.post("/api/tags/merge", json={"target_id": production["id"], "source_ids": [production["id"]]})
    assert r.status_code == 400

    for bad in ([None, production["id"]], ["", production["id"]], "nope"):
        r = owner_client.post("/api/tags/merge", json={"target_id": production["id"], "source_ids": bad})
        assert r.status_code == 400
        assert r.json["error"] == "VALIDATION_ERROR"


def test_policy_compliance(owner_client):
    incident = owner_client.post(
        "/api/incidents", json={"title": "Lost laptop", "classification": "other", "severity": "low"}
    ).json
    r = owner_client.post("/api/tags/policies", json={"entity_type": "incident", "required_tags": ["location"]})
    assert r.status_code == 201

    r = owner_client.get(f"/api/tags/compliance/incident/{incident['id']}")
    assert r.json == {"compliant": False, "requiredCategories": ["location"], "missingCategories": ["location"]}

    berlin = _tag(owner_client, "Berlin", "location")
    owner_client.post(f"/api/tags/entity/incident/{incident['id']}", json={"tag_id": berlin["id"]})
    assert owner_client.get(f"/api/tags/compliance/incident/{incident['id']}").json["compliant"] is True

    assert owner_client.post("/api/tags/policies", json={"entity_type": "incident", "required_tags": ["flavour"]}).status_code == 400


def test_default_tags_are_provisioned_as_system_tags(app, make_org, login):
    with session_scope(app) as s:
        s.add(
            DefaultTagSet(
                name="Baseline",
                tag_set=[{"name": "Crown Jewel", "category": "criticality", "color": "#DC2626"}],
                entity_types=["asset"],
                is_required=True,
                is_active=True,
            )
        )
    org_id, _ = make_org()
    c = login("owner@acme.test")
    tags = c.get("/api/tags").json["tags"]
    assert [(t["name"], t["isSystem"]) for t in tags] == [("Crown Jewel", True)]
    tag_id = tags[0]["id"]
    assert c.delete(f"/api/tags/{tag_id}").status_code == 409
    assert c.put(f"/api/tags/{tag_id}", json={"name": "Renamed"}).status_code == 409
    with session_scope(app) as s:
        assert s.query(Tag).filter(Tag.organization_id == org_id).count() == 1


def test_effective_tags_include_suggestions(app, owner_client):
    with session_scope(app) as s:
        s.add(
            DefaultTagSet(
                name="Suggestions",
                tag_set=[{"name": "Vendor Managed", "category": "custom"}],
                entity_types=["asset"],
                is_required=False,
                is_active=True,
            )
        )
    _tag(owner_client, "production")
    tags = owner_client.get("/api/tags/effective?entity_type=asset").json["tags"]
    assert {(t["name"], t["source"]) for t in tags} == {
        ("production", "organization"),
        ("Vendor Managed", "default:Suggestions"),
    }
    assert owner_client.get("/api/tags/effective?entity_type=incident").json["tags"][0]["name"] == "production"
