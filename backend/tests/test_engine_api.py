"""HTTP API tests: envelopes, status codes and an end-to-end exploration flow."""
import os
import tempfile
import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from backend.app.db.migrate import apply_schema

SESSION = "sess-api"


class EngineApiTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.tmp.close()
        self.db_path = self.tmp.name
        apply_schema(self.db_path)
        self.patcher = patch("backend.app.config.DEFAULT_DB_PATH", self.db_path)
        self.patcher.start()
        from backend.main import app
        self.client = TestClient(app)

    def tearDown(self):
        self.patcher.stop()
        if os.path.exists(self.db_path):
            os.unlink(self.db_path)

    def _add(self, entity_type, category, entity, **extra):
        body = {"entity_type": entity_type, "category": category, "entity": entity,
                "campaign_id": "camp-api", "theme_id": "harbor"}
        body.update(extra)
        r = self.client.post(f"/entity-pool/{SESSION}/entity", json=body)
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()["data"]

    def _map(self, *records):
        r = self.client.post(
            "/location-entity-mapping/create-mappings",
            json={"session_id": SESSION, "mappings": list(records)},
        )
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()["data"]["mappings"]

    def _seed_harbor(self):
        self._add("core", "npc", {"id": "ent-captain", "name": "Captain Vale",
                                  "milestone_id": "ms-harbor", "progress_contribution": 50})
        self._add("core", "items", {"id": "ent-manifest", "name": "Cargo Manifest",
                                    "milestone_id": "ms-harbor", "progress_contribution": 50})
        self._add("bonus", "trophy", {"id": "ent-bell", "name": "Ship Bell"})
        return self._map(
            {"location_id": "loc-harbor", "entity_id": "ent-captain", "entity_type": "core", "entity_category": "npc"},
            {"location_id": "loc-harbor", "entity_id": "ent-manifest", "entity_type": "core", "entity_category": "item"},
            {"location_id": "loc-harbor", "entity_id": "ent-bell", "entity_type": "bonus", "entity_category": "trophy"},
        )


class TestEnvelopes(EngineApiTestCase):
    def test_health_uses_success_envelope(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"], {"status": "healthy"})
        self.assertIn("timestamp", body)

    def test_missing_pool_is_404(self):
        r = self.client.get("/entity-pool/sess-none")
        self.assertEqual(r.status_code, 404)
        body = r.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"]["error_code"], "NOT_FOUND")
        self.assertEqual(body["error"]["node"], "entity_pool")

    def test_malformed_body_is_400_with_field_details(self):
        r = self.client.post(
            f"/entity-pool/{SESSION}/entity",
            json={"entity_type": "legendary", "category": "enemies", "entity": {"name": "X"}},
        )
        self.assertEqual(r.status_code, 400)
        error = r.json()["error"]
        self.assertEqual(error["error_code"], "VALIDATION_ERROR")
        self.assertIn("body.entity_type", error["details"])

    def test_bad_mapping_batch_is_rejected_whole(self):
        r = self.client.post(
            "/location-entity-mapping/create-mappings",
            json={"session_id": SESSION, "mappings": [
                {"location_id": "loc-a", "entity_id": "ent-a", "entity_type": "core", "entity_category": "npc"},
                {"location_id": "loc-a", "entity_id": "ent-b", "entity_type": "core", "entity_category": "ghost"},
            ]},
        )
        self.assertEqual(r.status_code, 400)
        self.assertIn("mappings[1].entity_category", r.json()["error"]["details"])
        r = self.client.get(f"/location-entity-mapping/session/{SESSION}/all-mappings")
        self.assertEqual(r.json()["data"], [])

    def test_stale_expected_version_is_409(self):
        self._add("core", "enemies", {"name": "Rat"})
        r = self.client.post(
            f"/entity-pool/{SESSION}/entity",
            json={"entity_type": "core", "category": "enemies", "entity": {"name": "Crab"}, "expected_version": 0},
        )
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error"]["error_code"], "CONCURRENT_MODIFICATION")


class TestEntityPoolApi(EngineApiTestCase):
    def test_add_read_update_and_remove(self):
        saved = self._add("core", "enemies", {"id": "ent-eel", "name": "Giant Eel"})
        self.assertEqual(saved["category"], "enemy")

        r = self.client.put(f"/entity-pool/{SESSION}/entity", json={
            "entity_type": "core", "category": "enemies", "entity_id": "ent-eel",
            "updates": {"description": "Lurks under the pier"},
        })
        self.assertEqual(r.status_code, 200, r.text)

        r = self.client.get(f"/entity-pool/{SESSION}")
        pool = r.json()["data"]
        self.assertEqual(pool["campaign_id"], "camp-api")
        self.assertEqual(pool["version"], 2)
        self.assertEqual(pool["core_entities"]["enemies"][0]["description"], "Lurks under the pier")

        r = self.client.get(f"/entity-pool/{SESSION}", params={"entity_type": "core"})
        self.assertEqual([e["collection"] for e in r.json()["data"]], ["enemies"])

        r = self.client.request("DELETE", f"/entity-pool/{SESSION}/entity", json={
            "entity_type": "core", "category": "enemies", "entity_id": "ent-eel",
        })
        self.assertEqual(r.status_code, 200, r.text)
        r = self.client.request("DELETE", f"/entity-pool/{SESSION}/entity", json={
            "entity_type": "core", "category": "enemies", "entity_id": "ent-eel",
        })
        self.assertEqual(r.status_code, 404)

    def test_bulk_remove_counts_only_existing(self):
        self._add("core", "enemies", {"id": "ent-eel", "name": "Giant Eel"})
        r = self.client.request("DELETE", f"/entity-pool/{SESSION}/entities/bulk", json={"entity_ids": [
            {"entity_type": "core", "collection": "enemies", "entity_id": "ent-eel"},
            {"entity_type": "core", "collection": "enemies", "entity_id": "ent-kraken"},
        ]})
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual(data["deleted_count"], 1)
        self.assertEqual(data["deleted_entities"][0]["name"], "Giant Eel")


class TestExplorationFlowApi(EngineApiTestCase):
    def test_explore_location_and_status(self):
        self._seed_harbor()
        r = self.client.post("/location-entity-mapping/location/loc-harbor/explore", json={
            "character_id": "char-1", "session_id": SESSION, "exploration_intensity": "light",
        })
        self.assertEqual(r.status_code, 200, r.text)
        result = r.json()["data"]
        self.assertEqual([d["entity"]["id"] for d in result["discovered_entities"]], ["ent-captain"])
        self.assertEqual(result["exploration_level"], 33)

        r = self.client.get("/location-entity-mapping/location/loc-harbor/exploration-status",
                            params={"session_id": SESSION})
        status = r.json()["data"]
        self.assertEqual(status["discovered_entities"], 1)
        self.assertEqual(status["hidden_entities"], 2)

        r = self.client.get("/milestones/campaign/camp-api/ms-harbor")
        self.assertEqual(r.json()["data"]["progress"], 50)

    def test_session_milestones_list_completions(self):
        self._seed_harbor()
        r = self.client.post("/location-entity-mapping/location/loc-harbor/explore", json={
            "character_id": "char-1", "session_id": SESSION, "exploration_intensity": "exhaustive",
        })
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["completed_milestones"], ["ms-harbor"])

        r = self.client.get(f"/milestones/session/{SESSION}")
        self.assertEqual(r.status_code, 200, r.text)
        data = r.json()["data"]
        self.assertEqual([m["progress"] for m in data["milestones"]], [100])
        self.assertEqual(len(data["completions"]), 1)
        self.assertEqual(data["completions"][0]["milestone_id"], "ms-harbor")
        self.assertEqual(data["completions"][0]["completed_by"], "char-1")

    def test_action_flow_rejects_out_of_order_input(self):
        self._seed_harbor()
        r = self.client.post("/exploration/start", json={
            "session_id": SESSION, "character_id": "char-1",
            "target_entity_id": "ent-captain", "action_type": "interact",
        })
        self.assertEqual(r.status_code, 200, r.text)
        execution = r.json()["data"]
        self.assertEqual(execution["phase"], "awaiting_input")

        r = self.client.post("/exploration/user-input", json={
            "execution_id": execution["id"], "character_id": "char-1", "user_approach": "wave",
        })
        self.assertEqual(r.status_code, 200, r.text)
        self.assertFalse(r.json()["data"]["judgment_triggered"])

        r = self.client.post("/exploration/user-input", json={
            "execution_id": execution["id"], "character_id": "char-1", "user_approach": "wave again",
        })
        self.assertEqual(r.status_code, 409)
        self.assertEqual(r.json()["error"]["error_code"], "INVALID_STATE")

        r = self.client.post("/exploration/skill-check", json={
            "execution_id": execution["id"], "character_id": "char-1",
        })
        self.assertEqual(r.status_code, 200, r.text)
        self.assertEqual(r.json()["data"]["execution"]["phase"], "resolved")

        r = self.client.get(f"/exploration/history/{SESSION}")
        self.assertEqual([e["id"] for e in r.json()["data"]], [execution["id"]])

    def test_masked_progress_hides_milestones(self):
        mappings = self._seed_harbor()
        r = self.client.patch(f"/location-entity-mapping/{mappings[0]['id']}/discover")
        self.assertEqual(r.status_code, 200, r.text)

        r = self.client.get(f"/player-experience/session/{SESSION}/masked-progress")
        self.assertEqual(r.status_code, 200, r.text)
        self.assertNotIn("ms-harbor", r.text)
        self.assertNotIn("progress_contribution", r.text)
        data = r.json()["data"]
        self.assertEqual(data["exploration_progress"], 50)
        self.assertEqual([e["name"] for e in data["discovered_elements"]], ["Captain Vale"])

    def test_unknown_execution_is_404(self):
        r = self.client.get("/exploration/executions/missing")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["error"]["node"], "exploration")


if __name__ == "__main__":
    unittest.main()
