"""Exploration action catalog loading and defaults."""
from __future__ import annotations

import tempfile
from pathlib import Path

import pytest
from pydantic import ValidationError

from backend.app.config import EXPLORATION_ACTIONS_PATH
from backend.app.core.action_catalog import DEFAULT_TARGET_NUMBER, load_action_catalog
from backend.app.models.entity_pool import EntityCategory
from backend.app.models.exploration import ExplorationActionType


def test_bundled_catalog_covers_every_action_and_category() -> None:
    catalog = load_action_catalog(EXPLORATION_ACTIONS_PATH)
    assert set(catalog.action_types) == set(ExplorationActionType)
    assert set(catalog.categories) == set(EntityCategory)
    assert catalog.action(ExplorationActionType.SEARCH).requires_input is False
    assert catalog.action(ExplorationActionType.INVESTIGATE).skill == "investigation"
    assert catalog.target_number("easy") == 10
    assert catalog.base_actions


def test_missing_entries_fall_back_to_defaults() -> None:
    with tempfile.TemporaryDirectory() as td:
        path = Path(td) / "actions.yaml"
        path.write_text("action_types:\n  search:\n    label: Poke around\n    requires_input: false\n", encoding="utf-8")
        catalog = load_action_catalog(path)

    assert catalog.action(ExplorationActionType.SEARCH).label == "Poke around"
    fallback = catalog.action(ExplorationActionType.USE_SKILL)
    assert fallback.label == "Use Skill"
    assert fallback.requires_input is True
    assert catalog.target_number("legendary") == DEFAULT_TARGET_NUMBER
    assert catalog.category(EntityCategory.NPC).hints == []


def test_invalid_catalog_is_rejected() -> None:
    with tempfile.TemporaryDirectory() as td:
        path = Path(td) / "actions.yaml"
        path.write_text("action_types:\n  search:\n    label: Poke\n    skill: juggling\n", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_action_catalog(path)
