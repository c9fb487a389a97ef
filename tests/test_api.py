"""
Tests for the REST API (FastAPI TestClient against a temporary store).

Run: python -m pytest tests/ -v
"""

from __future__ import annotations

import pytest


RULES_TEXT = (
    "COMBAT SKILLS\n\n"
    "1: Weapon Master - +1 to hit\n2: Parry\n3: Riposte\n4: Counter\n5: Brutal\n6: Berserk\n\n"
    "Equipment\nSword 10gc\nShield 5gc\nHelm 8gc"
)


@pytest.fixture
def store(tmp_path):
    from rules_index.ingestion.store import RulesStore

    s = RulesStore(tmp_path / "api.db")
    s.create_schema()
    return s


@pytest.fixture
def client(store):
    from fastapi.testclient import TestClient

    from rules_index.ingestion.pipeline import get_store
    from rules_index.main import app

    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client, **overrides) -> dict:
    body = {"campaign_id": "camp-1", "title": "House Rules", "text": RULES_TEXT, "tags": ["house"]}
    body.update(overrides)
    response = client.post("/api/sources", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestSourcesApi:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "sources": 0}

    def test_create_get_list(self, client):
        created = _create(client)
        assert created["index_status"] == "not_indexed"
        assert created["type"] == "pasted_text"

        fetched = client.get(f"/api/sources/{created['id']}").json()
        assert fetched["title"] == "House Rules"

        _create(client, campaign_id="camp-2", title="Other")
        listed = client.get("/api/sources", params={"campaign_id": "camp-1"}).json()
        assert [s["id"] for s in listed] == [created["id"]]

    def test_patch(self, client):
        created = _create(client)
        response = client.patch(f"/api/sources/{created['id']}", json={"tags": ["house", "v2"]})
        assert response.status_code == 200
        assert response.json()["tags"] == ["house", "v2"]
        assert response.json()["title"] == "House Rules"

    def test_unknown_source_404(self, client):
        assert client.get("/api/sources/missing").status_code == 404
        assert client.post("/api/sources/missing/index").status_code == 404
        assert client.get("/api/sources/missing/tables").status_code == 404
        assert client.delete("/api/sources/missing").status_code == 404

    def test_pdf_type_rejected(self, client):
        response = client.post(
            "/api/sources", json={"campaign_id": "c", "title": "Book", "type": "pdf"}
        )
        assert response.status_code == 422

    def test_bad_json_payload_rejected(self, client):
        response = client.post(
            "/api/sources",
            json={"campaign_id": "c", "title": "Dump", "type": "external_json", "payload": {"nope": 1}},
        )
        assert response.status_code == 422

    def test_bad_page_numbers_rejected(self, client):
        for pages in (
            [{"pageNumber": "one", "text": "abc"}],
            [{"pageNumber": 1, "text": "a"}, {"pageNumber": 1, "text": "b"}],
        ):
            response = client.post(
                "/api/sources",
                json={"campaign_id": "c", "title": "Dump", "type": "external_json", "payload": {"pages": pages}},
            )
            assert response.status_code == 422
        assert client.get("/api/sources").json() == []

    def test_put_input_requires_content(self, client):
        created = _create(client)
        assert client.put(f"/api/sources/{created['id']}/input", json={}).status_code == 422


class TestIndexingApi:
    def test_index_and_read_back(self, client):
        created = _create(client)
        source_id = created["id"]

        response = client.post(f"/api/sources/{source_id}/index")
        assert response.status_code == 200
        result = response.json()
        assert result["success"] is True
        assert result["stats"]["tablesHigh"] == 1
        assert result["stats"]["tablesMedium"] == 1

        source = client.get(f"/api/sources/{source_id}").json()
        assert source["index_status"] == "indexed"
        assert source["index_stats"]["datasetRows"] == result["stats"]["datasetRows"]

        pages = client.get(f"/api/sources/{source_id}/pages").json()
        assert len(pages) == 1
        chunks = client.get(f"/api/sources/{source_id}/chunks").json()
        assert [c["order_index"] for c in chunks] == list(range(len(chunks)))
        assert "hasRollRanges" in chunks[0]["score_hints"]
        sections = client.get(f"/api/sources/{source_id}/sections").json()
        assert sections[0]["title"] == "COMBAT SKILLS"

        tables = client.get(f"/api/sources/{source_id}/tables").json()
        kinds = sorted(t["kind"] for t in tables)
        assert kinds == ["equipment", "roll_table"]

        roll = next(t for t in tables if t["kind"] == "roll_table")
        content = client.get(f"/api/tables/{roll['id']}/content").json()
        assert content["type"] == "roll_table"
        assert content["columns"] == ["Roll", "Result"]
        assert len(content["rows"]) == 6

        datasets = client.get(f"/api/sources/{source_id}/datasets").json()
        equipment = next(d for d in datasets if d["name"] == "Equipment")
        rows = client.get(f"/api/datasets/{equipment['id']}/rows").json()
        assert [r["data"]["Name"] for r in rows] == ["Sword", "Shield", "Helm"]

    def test_index_conflict_409(self, client, store):
        created = _create(client)
        store.begin_indexing(created["id"])
        response = client.post(f"/api/sources/{created['id']}/index")
        assert response.status_code == 409

    def test_failed_run_reported(self, client):
        response = client.post(
            "/api/sources", json={"campaign_id": "c", "title": "Empty", "type": "external_json"}
        )
        source_id = response.json()["id"]

        result = client.post(f"/api/sources/{source_id}/index").json()
        assert result["success"] is False
        assert result["error"]["stage"] == "empty"

        source = client.get(f"/api/sources/{source_id}").json()
        assert source["index_status"] == "failed"
        assert source["index_error"]["message"] == "No pages found to index"

    def test_replace_input_then_reindex(self, client):
        created = _create(client)
        source_id = created["id"]
        client.post(f"/api/sources/{source_id}/index")

        pages = ["Loot\n1: Gold\n2: Silver\n3: Copper", "Events\n1: Storm\n2: Fog\n3: Ambush"]
        response = client.put(f"/api/sources/{source_id}/input", json={"pages": pages})
        assert response.status_code == 200

        client.post(f"/api/sources/{source_id}/index")
        tables = client.get(f"/api/sources/{source_id}/tables").json()
        assert [t["title_guess"] for t in tables] == ["Loot", "Events"]

    def test_delete_source(self, client):
        created = _create(client)
        source_id = created["id"]
        client.post(f"/api/sources/{source_id}/index")

        assert client.delete(f"/api/sources/{source_id}").status_code == 204
        assert client.get(f"/api/sources/{source_id}").status_code == 404

    def test_unknown_table_and_dataset(self, client):
        assert client.get("/api/tables/missing/content").status_code == 404
        assert client.get("/api/datasets/missing/rows").status_code == 404
