"""Exploration action catalog: load and validate exploration_actions.yaml.

The catalog supplies the defaults the state machine resolves with (whether an
action needs free-text input, which skill, how hard) and the player-safe
action labels and hints the masking layer shows.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from backend.app.models.entity_pool import EntityCategory
from backend.app.models.exploration import Difficulty, ExplorationActionType, SkillType

logger = logging.getLogger(__name__)

DEFAULT_TARGET_NUMBER = 15


class ActionTypeDefinition(BaseModel):
    label: str
    requires_input: bool = True
    skill: SkillType = "perception"
    difficulty: Difficulty = "normal"


class CategoryDefinition(BaseModel):
    actions: list[str] = Field(default_factory=list)
    hints: list[str] = Field(default_factory=list)


class ActionCatalog(BaseModel):
    difficulty_targets: dict[str, int] = Field(default_factory=dict)
    action_types: dict[ExplorationActionType, ActionTypeDefinition] = Field(default_factory=dict)
    base_actions: list[str] = Field(default_factory=list)
    categories: dict[EntityCategory, CategoryDefinition] = Field(default_factory=dict)

    def action(self, action_type: ExplorationActionType) -> ActionTypeDefinition:
        definition = self.action_types.get(action_type)
        if definition is None:
            return ActionTypeDefinition(label=action_type.value.replace("_", " ").title())
        return definition

    def category(self, category: EntityCategory) -> CategoryDefinition:
        return self.categories.get(category) or CategoryDefinition()

    def target_number(self, difficulty: str | None) -> int:
        if not difficulty:
            return DEFAULT_TARGET_NUMBER
        return int(self.difficulty_targets.get(difficulty, DEFAULT_TARGET_NUMBER))


def load_action_catalog(path: str | Path) -> ActionCatalog:
    """Load and validate an action catalog YAML file."""
    catalog_path = Path(path)
    with catalog_path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    try:
        catalog = ActionCatalog.model_validate(data)
    except ValidationError as e:
        logger.error("Invalid exploration action catalog %s: %s", catalog_path, e)
        raise
    missing = [t.value for t in ExplorationActionType if t not in catalog.action_types]
    if missing:
        logger.warning("Action catalog %s has no entry for: %s (defaults apply)", catalog_path, ", ".join(missing))
    return catalog


@lru_cache(maxsize=1)
def get_action_catalog() -> ActionCatalog:
    """Return the configured catalog (cached for the process)."""
    from backend.app.config import EXPLORATION_ACTIONS_PATH

    return load_action_catalog(EXPLORATION_ACTIONS_PATH)
