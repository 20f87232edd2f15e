"""Location-entity mappings: availability gating, discovery and location sweeps.

A mapping ties one pool entity to one location within a session. Availability
is recomputed from time conditions and prerequisite discoveries; discovery is
recorded once and never retracted.
"""
from __future__ import annotations

import json
import logging
import math
import sqlite3
import uuid
from datetime import datetime
from typing import Any, Iterable

from pydantic import ValidationError as PydanticValidationError

from backend.app.core.entity_pool_store import get_entity_pool
from backend.app.core.error_handling import (
    DatabaseError,
    NotFoundError,
    ValidationError,
    require_fields,
    utc_now_iso,
)
from backend.app.core.milestone_progress import record_milestone_completions
from backend.app.core.narration import ExplorationNarrator
from backend.app.models.entity_pool import (
    COLLECTION_BY_CATEGORY,
    ENTITY_TYPE_BY_COLLECTION,
    EntityCategory,
    EntityPool,
    EntityType,
)
from backend.app.models.location_mapping import (
    TIME_CONDITIONS,
    DiscoveredEntity,
    DiscoveredEntitySummary,
    EntityReference,
    ExplorationIntensity,
    ExplorationResult,
    LocationEntityMapping,
    LocationEntityMappingCreate,
    LocationExplorationStatus,
    PrerequisiteResult,
    Rarity,
    TimeConditionResult,
)

logger = logging.getLogger(__name__)

# Per-intensity discovery cap (None = everything remaining), simulated minutes, encounter chance.
INTENSITY_SETTINGS: dict[ExplorationIntensity, tuple[int | None, int, float]] = {
    ExplorationIntensity.LIGHT: (1, 15, 0.10),
    ExplorationIntensity.THOROUGH: (3, 45, 0.20),
    ExplorationIntensity.EXHAUSTIVE: (None, 90, 0.35),
}

_SELECT_COLUMNS = """id, session_id, location_id, entity_id, entity_type, entity_category,
    time_conditions, prerequisite_entities, is_available, discovered_at, created_at"""


def _row_to_mapping(row: Any) -> LocationEntityMapping:
    return LocationEntityMapping(
        id=row["id"],
        session_id=row["session_id"],
        location_id=row["location_id"],
        entity_id=row["entity_id"],
        entity_type=row["entity_type"],
        entity_category=row["entity_category"],
        time_conditions=json.loads(row["time_conditions"] or "[]"),
        prerequisite_entities=json.loads(row["prerequisite_entities"] or "[]"),
        is_available=bool(row["is_available"]),
        discovered_at=row["discovered_at"],
        created_at=row["created_at"],
    )


def _query(conn: Any, where: str, params: tuple, operation: str) -> list[LocationEntityMapping]:
    try:
        rows = conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM location_entity_mappings WHERE {where} ORDER BY seq ASC",
            params,
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to {operation}", cause=e) from e
    return [_row_to_mapping(r) for r in rows]


def _percent(part: int, whole: int) -> int:
    """Rounded percentage (half up); an empty location counts as fully explored."""
    if whole <= 0:
        return 100
    return int(math.floor(part * 100 / whole + 0.5))


# ── Creation ──


def _validate_batch(mappings: Any) -> list[LocationEntityMappingCreate]:
    if not isinstance(mappings, list) or not mappings:
        raise ValidationError("mappings must be a non-empty list", details={"mappings": "required"})

    validated: list[LocationEntityMappingCreate] = []
    errors: dict[str, str] = {}
    for i, raw in enumerate(mappings):
        try:
            item = raw if isinstance(raw, LocationEntityMappingCreate) else LocationEntityMappingCreate.model_validate(raw)
        except PydanticValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err.get("loc", ())) or "record"
                errors[f"mappings[{i}].{loc}"] = err.get("msg", "invalid")
            continue
        unknown = [c for c in item.time_conditions if c not in TIME_CONDITIONS]
        if unknown:
            errors[f"mappings[{i}].time_conditions"] = f"unknown condition(s): {', '.join(unknown)}"
            continue
        owner = ENTITY_TYPE_BY_COLLECTION[COLLECTION_BY_CATEGORY[item.entity_category]]
        if owner is not item.entity_type:
            errors[f"mappings[{i}].entity_category"] = (
                f"'{item.entity_category.value}' is not a {item.entity_type.value} category"
            )
            continue
        validated.append(item)
    if errors:
        raise ValidationError(
            f"{len(errors)} invalid field(s) in mapping batch; nothing was created",
            details=errors,
        )
    return validated


def create_mappings(
    conn: Any,
    session_id: str,
    mappings: list[dict[str, Any] | LocationEntityMappingCreate],
) -> list[LocationEntityMapping]:
    """Validate the whole batch, then insert it in one transaction (all or nothing)."""
    require_fields({"session_id": session_id})
    validated = _validate_batch(mappings)

    now = utc_now_iso()
    ids: list[str] = []
    try:
        for item in validated:
            mapping_id = str(uuid.uuid4())
            conn.execute(
                """INSERT INTO location_entity_mappings
                   (id, session_id, location_id, entity_id, entity_type, entity_category,
                    time_conditions, prerequisite_entities, is_available, discovered_at, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?)""",
                (
                    mapping_id,
                    session_id,
                    item.location_id,
                    item.entity_id,
                    item.entity_type.value,
                    item.entity_category.value,
                    json.dumps(item.time_conditions),
                    json.dumps(item.prerequisite_entities),
                    1 if item.is_available else 0,
                    now,
                ),
            )
            ids.append(mapping_id)
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise DatabaseError("Failed to create location mappings", {"session_id": session_id}, cause=e) from e

    logger.info("Created %d location mappings for session %s", len(ids), session_id)
    placeholders = ",".join("?" for _ in ids)
    return _query(conn, f"id IN ({placeholders})", tuple(ids), "load created mappings")


# ── Reads ──


def get_mapping(conn: Any, mapping_id: str) -> LocationEntityMapping | None:
    found = _query(conn, "id = ?", (mapping_id,), "load mapping")
    return found[0] if found else None


def _require_mapping(conn: Any, mapping_id: str) -> LocationEntityMapping:
    require_fields({"mapping_id": mapping_id})
    mapping = get_mapping(conn, mapping_id)
    if mapping is None:
        raise NotFoundError(f"Mapping {mapping_id} not found", {"mapping_id": mapping_id})
    return mapping


def list_session_mappings(conn: Any, session_id: str) -> list[LocationEntityMapping]:
    return _query(conn, "session_id = ?", (session_id,), "list session mappings")


def get_mappings_by_location(conn: Any, location_id: str, session_id: str) -> list[LocationEntityMapping]:
    return _query(
        conn, "location_id = ? AND session_id = ?", (location_id, session_id), "list location mappings"
    )


def get_mappings_by_entity(conn: Any, session_id: str, entity_id: str) -> list[LocationEntityMapping]:
    return _query(conn, "session_id = ? AND entity_id = ?", (session_id, entity_id), "list entity mappings")


def discovered_entity_ids(conn: Any, session_id: str) -> dict[str, str]:
    """entity_id -> earliest discovered_at across the session's mappings."""
    try:
        rows = conn.execute(
            """SELECT entity_id, MIN(discovered_at) AS discovered_at
               FROM location_entity_mappings
               WHERE session_id = ? AND discovered_at IS NOT NULL
               GROUP BY entity_id""",
            (session_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError("Failed to load discovered entities", {"session_id": session_id}, cause=e) from e
    return {r["entity_id"]: r["discovered_at"] for r in rows}


def fallback_entity_name(category: EntityCategory, entity_id: str) -> str:
    """Display name for a mapped entity that is missing from the pool."""
    return f"{category.value}_{entity_id[:8]}"


def to_entity_reference(mapping: LocationEntityMapping, pool: EntityPool | None) -> EntityReference:
    """Join a mapping with the pool's name/description for its entity."""
    found = pool.find_entity(mapping.entity_id) if pool is not None else None
    if found is not None:
        entity = found[2]
        name, description = entity.name, entity.description
    else:
        name = fallback_entity_name(mapping.entity_category, mapping.entity_id)
        description = ""
    return EntityReference(
        mapping_id=mapping.id,
        id=mapping.entity_id,
        name=name,
        type=mapping.entity_type,
        category=mapping.entity_category,
        description=description,
        is_available=mapping.is_available,
        time_conditions=mapping.time_conditions,
        prerequisite_entities=mapping.prerequisite_entities,
        discovered_at=mapping.discovered_at,
    )


def get_available_entities_for_location(
    conn: Any, location_id: str, session_id: str
) -> list[EntityReference]:
    """All mappings at a location with entity metadata and availability/discovery flags."""
    require_fields({"location_id": location_id, "session_id": session_id})
    mappings = get_mappings_by_location(conn, location_id, session_id)
    pool = get_entity_pool(conn, session_id)
    return [to_entity_reference(m, pool) for m in mappings]


# ── Availability & discovery ──


def update_availability(conn: Any, mapping_id: str, is_available: bool) -> LocationEntityMapping:
    """GM override of availability. A discovered mapping stays available."""
    if not isinstance(is_available, bool):
        raise ValidationError("is_available must be a boolean", details={"is_available": "must be a boolean"})
    mapping = _require_mapping(conn, mapping_id)
    if mapping.discovered_at is not None:
        if not is_available:
            logger.info("Mapping %s already discovered; keeping it available", mapping_id)
        return mapping
    try:
        conn.execute(
            "UPDATE location_entity_mappings SET is_available = ? WHERE id = ?",
            (1 if is_available else 0, mapping_id),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise DatabaseError("Failed to update availability", {"mapping_id": mapping_id}, cause=e) from e
    logger.info("Mapping %s availability -> %s", mapping_id, is_available)
    return mapping.model_copy(update={"is_available": is_available})


def mark_discovered(conn: Any, mapping_id: str) -> LocationEntityMapping:
    """Record discovery once; later calls keep the first timestamp."""
    require_fields({"mapping_id": mapping_id})
    try:
        cur = conn.execute(
            """UPDATE location_entity_mappings
               SET discovered_at = COALESCE(discovered_at, ?), is_available = 1
               WHERE id = ?""",
            (utc_now_iso(), mapping_id),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise DatabaseError("Failed to mark mapping discovered", {"mapping_id": mapping_id}, cause=e) from e
    if getattr(cur, "rowcount", 0) == 0:
        raise NotFoundError(f"Mapping {mapping_id} not found", {"mapping_id": mapping_id})
    mapping = _require_mapping(conn, mapping_id)
    logger.info("Mapping %s discovered at %s", mapping_id, mapping.discovered_at)
    return mapping


def check_time_conditions(conditions: Iterable[str] | None, now: datetime | None = None) -> TimeConditionResult:
    """Valid when no conditions are set or any one of them matches the current hour."""
    conditions = list(conditions or [])
    if not conditions:
        return TimeConditionResult(is_valid=True)
    hour = (now or datetime.now()).hour
    for condition in conditions:
        if condition == "any":
            return TimeConditionResult(is_valid=True)
        if condition == "day_time" and 6 <= hour < 18:
            return TimeConditionResult(is_valid=True)
        if condition == "night_only" and (hour < 6 or hour >= 18):
            return TimeConditionResult(is_valid=True)
        if condition == "morning_only" and 6 <= hour < 12:
            return TimeConditionResult(is_valid=True)
        if condition == "afternoon_only" and 12 <= hour < 18:
            return TimeConditionResult(is_valid=True)
        if condition not in TIME_CONDITIONS:
            logger.warning("Unknown time condition: %s", condition)
    return TimeConditionResult(
        is_valid=False,
        reason=f"Time conditions not met at hour {hour}: {', '.join(conditions)}",
    )


def check_prerequisites(
    conn: Any,
    session_id: str,
    prerequisites: Iterable[str] | None,
    discovered: dict[str, str] | None = None,
) -> PrerequisiteResult:
    prerequisites = list(prerequisites or [])
    if not prerequisites:
        return PrerequisiteResult(is_valid=True)
    if discovered is None:
        discovered = discovered_entity_ids(conn, session_id)
    completed = [p for p in prerequisites if p in discovered]
    missing = [p for p in prerequisites if p not in discovered]
    return PrerequisiteResult(is_valid=not missing, missing_entities=missing, completed_entities=completed)


def update_dynamic_availability(conn: Any, session_id: str, now: datetime | None = None) -> int:
    """Recompute availability of undiscovered mappings; returns how many changed."""
    require_fields({"session_id": session_id})
    now = now or datetime.now()
    mappings = list_session_mappings(conn, session_id)
    discovered = discovered_entity_ids(conn, session_id)

    changes: list[tuple[int, str]] = []
    for mapping in mappings:
        if mapping.discovered_at is not None:
            continue
        time_ok = check_time_conditions(mapping.time_conditions, now).is_valid
        prereq_ok = check_prerequisites(conn, session_id, mapping.prerequisite_entities, discovered).is_valid
        available = time_ok and prereq_ok
        if available != mapping.is_available:
            changes.append((1 if available else 0, mapping.id))
            logger.debug(
                "Mapping %s availability %s -> %s (time=%s prereq=%s)",
                mapping.id, mapping.is_available, available, time_ok, prereq_ok,
            )

    if changes:
        try:
            conn.executemany(
                "UPDATE location_entity_mappings SET is_available = ? WHERE id = ? AND discovered_at IS NULL",
                changes,
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError("Failed to update dynamic availability", {"session_id": session_id}, cause=e) from e
    logger.info("Dynamic availability for session %s: %d of %d mappings changed", session_id, len(changes), len(mappings))
    return len(changes)


# ── Exploration ──


def determine_rarity(reference: EntityReference) -> Rarity:
    if reference.category is EntityCategory.MYSTERY:
        return "epic"
    if reference.category is EntityCategory.TROPHY:
        return "rare"
    if reference.type is EntityType.BONUS:
        return "uncommon"
    return "common"


def parse_intensity(value: Any) -> ExplorationIntensity:
    try:
        return ExplorationIntensity(value.value if isinstance(value, ExplorationIntensity) else str(value))
    except ValueError:
        raise ValidationError(
            f"Invalid exploration intensity: {value!r}",
            details={"exploration_intensity": "must be one of: light, thorough, exhaustive"},
        ) from None


def explore_location(
    conn: Any,
    location_id: str,
    character_id: str,
    session_id: str,
    intensity: ExplorationIntensity | str,
    now: datetime | None = None,
    narrator: ExplorationNarrator | None = None,
) -> ExplorationResult:
    """Discover available, undiscovered entities at a location (core first, then insertion order)."""
    require_fields({"location_id": location_id, "character_id": character_id, "session_id": session_id})
    level_intensity = parse_intensity(intensity)
    cap, time_spent, encounter_chance = INTENSITY_SETTINGS[level_intensity]
    narrator = narrator or ExplorationNarrator()

    mappings = get_mappings_by_location(conn, location_id, session_id)
    total = len(mappings)
    previous_discovered = sum(1 for m in mappings if m.discovered_at is not None)
    previous_level = _percent(previous_discovered, total)

    candidates = [m for m in mappings if m.is_available and m.discovered_at is None]
    # sorted() is stable, so insertion order holds within each group
    candidates = sorted(candidates, key=lambda m: 0 if m.entity_type is EntityType.CORE else 1)
    if cap is not None:
        candidates = candidates[:cap]

    pool = get_entity_pool(conn, session_id)
    discoveries: list[DiscoveredEntity] = []
    affected: set[str] = set()
    for mapping in candidates:
        updated = mark_discovered(conn, mapping.id)
        reference = to_entity_reference(updated, pool)
        discoveries.append(
            DiscoveredEntity(
                entity=reference,
                discovery_message=narrator.discovery_message(reference.name, reference.category),
                rarity=determine_rarity(reference),
            )
        )
        found = pool.find_entity(mapping.entity_id) if pool is not None else None
        if found is not None and found[0] is EntityType.CORE and found[2].milestone_id:
            affected.add(found[2].milestone_id)

    discovered_now = previous_discovered + len(discoveries)
    level = _percent(discovered_now, total)
    hidden_remaining = total - discovered_now

    completed = record_milestone_completions(conn, session_id, affected, character_id)

    logger.info(
        "Explored location %s (session=%s character=%s intensity=%s): %d discovered, level %d -> %d",
        location_id, session_id, character_id, level_intensity.value, len(discoveries), previous_level, level,
    )
    return ExplorationResult(
        success=True,
        location_id=location_id,
        character_id=character_id,
        intensity=level_intensity,
        previous_exploration_level=previous_level,
        exploration_level=level,
        discovered_entities=discoveries,
        time_spent=time_spent,
        encounter_chance=encounter_chance,
        narrative_description=narrator.exploration_narrative(level_intensity, len(discoveries)),
        hints=narrator.exploration_hints(hidden_remaining),
        hidden_entities_remaining=hidden_remaining,
        is_fully_explored=level >= 100 and hidden_remaining == 0,
        affected_milestones=sorted(affected),
        completed_milestones=[c.milestone_id for c in completed],
    )


def get_location_exploration_status(
    conn: Any,
    location_id: str,
    session_id: str,
    narrator: ExplorationNarrator | None = None,
) -> LocationExplorationStatus:
    require_fields({"location_id": location_id, "session_id": session_id})
    narrator = narrator or ExplorationNarrator()
    references = get_available_entities_for_location(conn, location_id, session_id)
    discovered = [r for r in references if r.discovered_at is not None]
    total = len(references)
    hidden = total - len(discovered)
    level = _percent(len(discovered), total)
    return LocationExplorationStatus(
        location_id=location_id,
        session_id=session_id,
        exploration_level=level,
        is_fully_explored=level >= 100 and hidden == 0,
        total_entities=total,
        discovered_entities=len(discovered),
        hidden_entities=hidden,
        discovered_entity_list=[
            DiscoveredEntitySummary(id=r.id, name=r.name, category=r.category, discovered_at=r.discovered_at)
            for r in discovered
        ],
        exploration_hints=narrator.exploration_hints(hidden),
    )
