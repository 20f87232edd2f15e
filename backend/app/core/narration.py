"""Narrative text for exploration: template-based, with optional LLM narration.

Templates are always available. When an LLMClient is supplied the narrator
asks it for the action-facing prose (initial description, resolution) and
falls back to the template on LLMClientError.
"""
from __future__ import annotations

import logging
from functools import lru_cache

from backend.app.models.entity_pool import EntityCategory
from backend.app.models.exploration import ExplorationActionType, ExplorationExecution, OutcomeType
from backend.app.models.location_mapping import ExplorationIntensity
from backend.llm_client import LLMClient, LLMClientError

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = (
    "You are the narrator of a tabletop RPG session. Write two or three vivid sentences "
    "in second person. Never reveal game statistics, milestone names or hidden objects."
)

_ACTION_PHRASES: dict[ExplorationActionType, str] = {
    ExplorationActionType.INVESTIGATE: "investigates",
    ExplorationActionType.INTERACT: "approaches",
    ExplorationActionType.ATTACK: "moves to attack",
    ExplorationActionType.AVOID: "tries to slip past",
    ExplorationActionType.SEARCH: "searches around",
    ExplorationActionType.OBSERVE: "watches",
    ExplorationActionType.USE_SKILL: "brings a special skill to bear on",
    ExplorationActionType.NEGOTIATE: "opens negotiations with",
    ExplorationActionType.STEALTH: "creeps toward",
    ExplorationActionType.CUSTOM: "acts on",
}

_SUCCESS_DETAIL: dict[ExplorationActionType, str] = {
    ExplorationActionType.INVESTIGATE: "New clues come to light.",
    ExplorationActionType.INTERACT: "The response is a welcome one.",
    ExplorationActionType.SEARCH: "Something of value turns up.",
    ExplorationActionType.OBSERVE: "No important detail slips by.",
}

_DISCOVERY_MESSAGES: dict[EntityCategory, str] = {
    EntityCategory.ITEM: "You found {name}!",
    EntityCategory.NPC: "You met {name}.",
    EntityCategory.EVENT: "Something interesting is happening: {name}",
    EntityCategory.QUEST: "A new task presents itself: {name}",
    EntityCategory.ENEMY: "A dangerous presence: {name}",
    EntityCategory.PRACTICAL: "A practical reward: {name}",
    EntityCategory.TROPHY: "A precious trophy: {name}",
    EntityCategory.MYSTERY: "Something mysterious: {name}",
}

_INTENSITY_PHRASES: dict[ExplorationIntensity, str] = {
    ExplorationIntensity.LIGHT: "You take a quick look around",
    ExplorationIntensity.THOROUGH: "You search the area carefully",
    ExplorationIntensity.EXHAUSTIVE: "You comb through every corner",
}


class ExplorationNarrator:
    """Produces player-facing prose for exploration actions and location sweeps."""

    def __init__(self, llm: LLMClient | None = None) -> None:
        self.llm = llm

    def _try_llm(self, prompt: str) -> str | None:
        if self.llm is None:
            return None
        try:
            return self.llm.generate(prompt, system_prompt=_SYSTEM_PROMPT)
        except LLMClientError as e:
            logger.warning("Narration LLM unavailable, using template: %s", e)
            return None

    # --- Exploration actions ---

    def initial_description(
        self,
        execution: ExplorationExecution,
        action_label: str,
    ) -> str:
        phrase = _ACTION_PHRASES.get(execution.action_type, "acts on")
        prompt = (
            f"{execution.character_id} {phrase} {execution.target_entity_name}. "
            f"Action: {action_label}. {execution.action_description}"
        ).strip()
        generated = self._try_llm(f"Set the scene for this action. {prompt}")
        if generated:
            return generated
        text = f"{execution.character_id} {phrase} {execution.target_entity_name}... {action_label}."
        if execution.requires_input:
            text += " How do you approach this? Describe what you do."
        return text

    def resolution(
        self,
        execution: ExplorationExecution,
        outcome: OutcomeType,
        success: bool,
    ) -> str:
        approach = execution.user_approach or execution.action_description
        generated = self._try_llm(
            f"{execution.character_id} tried to {approach!s} against {execution.target_entity_name}. "
            f"The outcome was {outcome.replace('_', ' ')}. Describe what happens."
        )
        if generated:
            return generated
        if success:
            base = f"{execution.character_id}'s approach pays off."
            if outcome == "critical_success":
                base = f"{execution.character_id} succeeds brilliantly."
            detail = _SUCCESS_DETAIL.get(execution.action_type, "The goal is within reach.")
        else:
            base = f"{execution.character_id}'s attempt does not go as planned."
            if outcome == "critical_failure":
                base = f"{execution.character_id}'s attempt goes badly wrong."
            detail = "Perhaps another approach would work better."
        return f"{base} {detail}"

    # --- Location sweeps ---

    def discovery_message(self, name: str, category: EntityCategory) -> str:
        template = _DISCOVERY_MESSAGES.get(category)
        if template is None:
            return f"You discovered {name}."
        return template.format(name=name)

    def exploration_narrative(self, intensity: ExplorationIntensity, discovered_count: int) -> str:
        lead = _INTENSITY_PHRASES[intensity]
        if discovered_count == 0:
            return f"{lead}, but nothing stands out."
        noun = "thing" if discovered_count == 1 else "things"
        return f"{lead} and come across {discovered_count} interesting {noun}."

    def exploration_hints(self, remaining_hidden: int) -> list[str]:
        if remaining_hidden > 0:
            return [
                "There may still be something you have not found.",
                "A different time of day or a new lead might reveal more.",
            ]
        return ["This place seems to have been explored thoroughly."]


@lru_cache(maxsize=1)
def get_default_narrator() -> ExplorationNarrator:
    """Narrator wired from config: LLM-backed only when narration is enabled."""
    from backend.app.config import NARRATION_LLM_ENABLED, NARRATION_MODEL, OLLAMA_BASE_URL

    if not NARRATION_LLM_ENABLED:
        return ExplorationNarrator()
    return ExplorationNarrator(LLMClient(base_url=OLLAMA_BASE_URL, model=NARRATION_MODEL))
