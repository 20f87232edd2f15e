"""Exploration action execution: phases, action types, skill checks and results."""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class ExplorationPhase(str, Enum):
    STARTED = "started"
    AWAITING_INPUT = "awaiting_input"
    SKILL_CHECK_PENDING = "skill_check_pending"
    RESOLVED = "resolved"


class ExplorationActionType(str, Enum):
    INVESTIGATE = "investigate"
    INTERACT = "interact"
    ATTACK = "attack"
    AVOID = "avoid"
    SEARCH = "search"
    OBSERVE = "observe"
    USE_SKILL = "use_skill"
    NEGOTIATE = "negotiate"
    STEALTH = "stealth"
    CUSTOM = "custom"


SkillType = Literal[
    "perception", "investigation", "insight", "persuasion", "deception", "intimidation",
    "stealth", "sleight_of_hand", "athletics", "acrobatics", "arcana", "history",
    "nature", "religion", "medicine", "survival",
]
Difficulty = Literal["easy", "normal", "hard", "expert"]
OutcomeType = Literal["critical_success", "success", "partial_success", "failure", "critical_failure"]


class SkillModifier(BaseModel):
    name: str
    value: int
    reason: str = ""


class SkillCheck(BaseModel):
    skill_type: SkillType
    target_number: int = Field(..., ge=1)
    difficulty: Difficulty | None = None
    modifiers: list[SkillModifier] = Field(default_factory=list)


class DiceRoll(BaseModel):
    dice_type: str = "d20"
    result: int = Field(..., ge=1, le=20)
    modifier: int = 0
    total: int
    purpose: str = ""
    rolled_at: str


class ExplorationOutcome(BaseModel):
    outcome: OutcomeType
    success: bool
    narration: str = ""
    discoveries: list[str] = Field(default_factory=list)


class ExplorationExecution(BaseModel):
    id: str
    session_id: str
    character_id: str
    target_entity_id: str
    target_entity_name: str
    mapping_id: str | None = None
    action_type: ExplorationActionType
    action_description: str = ""
    requires_input: bool = True
    phase: ExplorationPhase = ExplorationPhase.STARTED
    user_approach: str | None = None
    initial_description: str | None = None
    skill_check: SkillCheck | None = None
    dice_roll: DiceRoll | None = None
    result: ExplorationOutcome | None = None
    initiated_at: str
    user_input_at: str | None = None
    resolved_at: str | None = None
    updated_at: str


class SkillCheckOutcome(BaseModel):
    execution: ExplorationExecution
    dice_roll: DiceRoll
    result: ExplorationOutcome
    result_message: str


class UserInputOutcome(BaseModel):
    execution: ExplorationExecution
    judgment_triggered: bool
    skill_check: SkillCheckOutcome | None = None


class PendingUserInput(BaseModel):
    execution_id: str
    character_id: str
    expires_at: str
    prompt_message: str = ""


class RecentDiscovery(BaseModel):
    entity_id: str
    entity_name: str
    discovered_at: str
    discovered_by: str


class ExplorationFlowState(BaseModel):
    session_id: str
    active_explorations: list[ExplorationExecution] = Field(default_factory=list)
    pending_user_inputs: list[PendingUserInput] = Field(default_factory=list)
    recent_discoveries: list[RecentDiscovery] = Field(default_factory=list)
    execution_ttl_seconds: int
    last_updated: str
