"""DB migration smoke test."""
import os
import sqlite3
import tempfile
import unittest

from backend.app.db.migrate import apply_schema


class TestMigrate(unittest.TestCase):
    def test_apply_schema_idempotent(self):
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            path = f.name
        try:
            first = apply_schema(path)
            second = apply_schema(path)
            self.assertEqual(
                first,
                [
                    "0001_entity_pools",
                    "0002_location_entity_mappings",
                    "0003_exploration_executions",
                    "0004_milestone_completions",
                ],
            )
            self.assertEqual(second, [])
            conn = sqlite3.connect(path)
            cur = conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name IN "
                "('entity_pools', 'location_entity_mappings', 'exploration_executions',"
                " 'milestone_completions', 'schema_migrations')"
            )
            tables = {r[0] for r in cur.fetchall()}
            conn.close()
            self.assertEqual(
                tables,
                {
                    "entity_pools",
                    "location_entity_mappings",
                    "exploration_executions",
                    "milestone_completions",
                    "schema_migrations",
                },
            )
        finally:
            if os.path.exists(path):
                os.unlink(path)

    def test_entity_type_is_constrained(self):
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            path = f.name
        try:
            apply_schema(path)
            conn = sqlite3.connect(path)
            with self.assertRaises(sqlite3.IntegrityError):
                conn.execute(
                    """INSERT INTO location_entity_mappings
                       (id, session_id, location_id, entity_id, entity_type, entity_category, created_at)
                       VALUES ('m-x', 's', 'l', 'e', 'legendary', 'item', '2026-01-01T00:00:00+00:00')"""
                )
            conn.close()
        finally:
            if os.path.exists(path):
                os.unlink(path)
