"""Player-facing view of exploration progress.

Everything returned here is safe to relay to players: coarse progress, vague
hints and the names of things already found. Milestone ids, contributions,
availability flags and unavailable entities never leave this module.
"""
from __future__ import annotations

import logging
import math
from typing import Any

from backend.app.core.action_catalog import ActionCatalog, get_action_catalog
from backend.app.core.entity_pool_store import get_entity_pool
from backend.app.core.error_handling import NotFoundError, require_fields
from backend.app.core.location_entities import list_session_mappings, to_entity_reference
from backend.app.core.milestone_progress import compute_session_milestones
from backend.app.models.entity_pool import EntityCategory
from backend.app.models.progress import DiscoveredElement, ExplorationPhaseLabel, MaskedProgressInfo

logger = logging.getLogger(__name__)

# Keys that may pass through filter_player_visible_content; everything else is dropped.
PLAYER_SAFE_KEYS = frozenset({
    "name",
    "title",
    "description",
    "category",
    "message",
    "text",
    "content",
    "narration",
    "narrative_description",
    "discovery_message",
    "result_message",
    "discovered_at",
    "discovered_entities",
    "discovered_elements",
    "entity",
    "rarity",
    "hints",
    "ambiguous_hints",
    "available_actions",
    "atmosphere_description",
    "exploration_phase",
    "exploration_progress",
    "time_spent",
    "reward",
})

_ATMOSPHERE_BY_PHASE: dict[ExplorationPhaseLabel, str] = {
    "beginning": "A quiet tension hangs over the place, as if something is waiting to be noticed.",
    "exploring": "The mystery is slowly unravelling; you sense you are getting closer to its heart.",
    "discovering": "The pieces are starting to fit together and the bigger picture is coming into view.",
    "concluding": "Everything is building to a climax. An important choice is not far off.",
}

_GENERAL_HINTS: dict[ExplorationPhaseLabel, list[str]] = {
    "beginning": ["This place seems to be hiding a secret...", "The locals look like they are keeping something to themselves."],
    "exploring": ["The clues so far seem to connect.", "You feel you are getting closer to the truth."],
    "discovering": ["The clues so far seem to connect.", "You feel you are getting closer to the truth."],
    "concluding": ["The answers are coming into view.", "The time for an important decision is near."],
}


def bucket_progress(percent: float) -> int:
    """Round to the nearest 0/25/50/75/100 step."""
    clamped = max(0.0, min(100.0, float(percent)))
    return int(math.floor(clamped / 25 + 0.5)) * 25


def exploration_phase(fraction: float) -> ExplorationPhaseLabel:
    if fraction < 0.25:
        return "beginning"
    if fraction < 0.5:
        return "exploring"
    if fraction < 0.8:
        return "discovering"
    return "concluding"


def generate_subtle_hints(progress: int) -> list[str]:
    """Milestone-agnostic nudges for a progress value (0..100)."""
    if progress <= 0:
        return ["You have a feeling you are missing something...", "It may be worth looking around here more closely."]
    if progress < 50:
        return ["You have found a lead. Keep going.", "There may be more related information out there."]
    if progress < 100:
        return ["You are close to the truth. One last step.", "Putting your discoveries together, an answer starts to emerge."]
    return []


def _reward_item(item: Any) -> tuple[str, str]:
    if isinstance(item, dict):
        return str(item.get("name") or "something"), str(item.get("category") or "")
    return str(item), ""


def create_ambiguous_reward_message(reward: Any) -> str:
    """Describe a reward without exposing its mechanics."""
    if not isinstance(reward, dict):
        return "You seem to have found something, though the details are unclear."
    items = reward.get("items") or []
    if items:
        name, category = _reward_item(items[0])
        if category == EntityCategory.TROPHY.value:
            return f'You found something interesting: "{name}". It would make a fine memento of your adventures.'
        if category in (EntityCategory.MYSTERY.value, "mystery_item"):
            return f'You obtained something mysterious: "{name}". Its purpose is unclear, but it may prove useful one day.'
        return f'You found something useful: "{name}". It should help on your journey.'
    if reward.get("information"):
        return "You learned something new. The story feels a little clearer."
    experience = reward.get("experience") or reward.get("experience_points") or 0
    if isinstance(experience, (int, float)) and experience > 0:
        return "You learned a great deal from this experience and feel yourself growing."
    return "You gained something from this, one way or another."


def filter_player_visible_content(content: Any) -> Any:
    """Recursive allow-list projection over arbitrary dicts/lists."""
    if isinstance(content, dict):
        filtered: dict[str, Any] = {}
        for key, value in content.items():
            if key not in PLAYER_SAFE_KEYS:
                continue
            if key == "reward":
                filtered[key] = create_ambiguous_reward_message(value)
            else:
                filtered[key] = filter_player_visible_content(value)
        return filtered
    if isinstance(content, (list, tuple)):
        return [filter_player_visible_content(v) for v in content]
    return content


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def get_masked_progress_info(
    conn: Any,
    session_id: str,
    catalog: ActionCatalog | None = None,
) -> MaskedProgressInfo:
    require_fields({"session_id": session_id})
    catalog = catalog or get_action_catalog()
    pool = get_entity_pool(conn, session_id)
    if pool is None:
        raise NotFoundError(f"Entity pool not found for session {session_id}", {"session_id": session_id})

    mappings = list_session_mappings(conn, session_id)
    milestones = compute_session_milestones(conn, session_id)
    if milestones:
        percent = sum(m.progress for m in milestones) / len(milestones)
    elif mappings:
        percent = 100 * sum(1 for m in mappings if m.discovered_at) / len(mappings)
    else:
        percent = 0.0
    phase = exploration_phase(percent / 100)

    open_categories = _dedupe([
        m.entity_category.value for m in mappings if m.is_available and m.discovered_at is None
    ])
    actions = list(catalog.base_actions)
    hints: list[str] = []
    for value in open_categories:
        definition = catalog.category(EntityCategory(value))
        actions.extend(definition.actions)
        hints.extend(definition.hints[:1])
    hints.extend(_GENERAL_HINTS[phase])

    discovered: list[DiscoveredElement] = []
    seen_entities: set[str] = set()
    for mapping in sorted((m for m in mappings if m.discovered_at), key=lambda m: m.discovered_at or ""):
        if mapping.entity_id in seen_entities:
            continue
        seen_entities.add(mapping.entity_id)
        reference = to_entity_reference(mapping, pool)
        discovered.append(
            DiscoveredElement(name=reference.name, category=reference.category, discovered_at=mapping.discovered_at)
        )

    info = MaskedProgressInfo(
        exploration_progress=bucket_progress(percent),
        exploration_phase=phase,
        available_actions=_dedupe(actions),
        ambiguous_hints=_dedupe(hints),
        atmosphere_description=_ATMOSPHERE_BY_PHASE[phase],
        discovered_elements=discovered,
    )
    logger.info(
        "Masked progress for session %s: %s (%d actions, %d hints, %d discovered)",
        session_id, phase, len(info.available_actions), len(info.ambiguous_hints), len(discovered),
    )
    return info
