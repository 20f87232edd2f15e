"""Location mappings: batch creation, availability gating, discovery and location sweeps."""
from __future__ import annotations

from datetime import datetime

import pytest

from backend.app.core.entity_pool_store import create_entity_pool_if_absent, upsert_entity
from backend.app.core.error_handling import NotFoundError, ValidationError
from backend.app.core.location_entities import (
    check_prerequisites,
    check_time_conditions,
    create_mappings,
    explore_location,
    get_available_entities_for_location,
    get_location_exploration_status,
    get_mappings_by_location,
    list_session_mappings,
    mark_discovered,
    update_availability,
    update_dynamic_availability,
)
from backend.app.core.milestone_progress import list_milestone_completions

SESSION = "sess-loc"
CAVE = "loc-cave"


def _seed_cave(conn) -> list:
    """Two core and two bonus entities at the cave, bonus mapped first."""
    create_entity_pool_if_absent(conn, SESSION, "camp-1", "theme-1")
    upsert_entity(conn, SESSION, "core", "enemies", {
        "id": "ent-goblin", "name": "Goblin", "milestone_id": "ms-cave", "progress_contribution": 50,
    })
    upsert_entity(conn, SESSION, "core", "items", {
        "id": "ent-map", "name": "Old Map", "milestone_id": "ms-cave", "progress_contribution": 50,
    })
    upsert_entity(conn, SESSION, "bonus", "trophy_items", {"id": "ent-crown", "name": "Crown"})
    upsert_entity(conn, SESSION, "bonus", "practical_rewards", {"id": "ent-rope", "name": "Rope"})
    return create_mappings(conn, SESSION, [
        {"location_id": CAVE, "entity_id": "ent-crown", "entity_type": "bonus", "entity_category": "trophy"},
        {"location_id": CAVE, "entity_id": "ent-goblin", "entity_type": "core", "entity_category": "enemy"},
        {"location_id": CAVE, "entity_id": "ent-rope", "entity_type": "bonus", "entity_category": "practical"},
        {"location_id": CAVE, "entity_id": "ent-map", "entity_type": "core", "entity_category": "item"},
    ])


# --- Creation ---


def test_create_mappings_keeps_batch_order_and_defaults(conn) -> None:
    created = _seed_cave(conn)
    assert [m.entity_id for m in created] == ["ent-crown", "ent-goblin", "ent-rope", "ent-map"]
    assert all(m.is_available and m.discovered_at is None for m in created)
    assert len({m.id for m in created}) == 4


def test_create_mappings_rejects_whole_batch_on_one_bad_record(conn) -> None:
    batch = [
        {"location_id": CAVE, "entity_id": f"ent-{i}", "entity_type": "core", "entity_category": "npc"}
        for i in range(5)
    ]
    batch[3]["entity_category"] = "dragon"

    with pytest.raises(ValidationError) as exc:
        create_mappings(conn, SESSION, batch)

    assert list(exc.value.details) == ["mappings[3].entity_category"]
    assert list_session_mappings(conn, SESSION) == []


def test_create_mappings_rejects_category_owned_by_the_other_type(conn) -> None:
    batch = [
        {"location_id": CAVE, "entity_id": f"ent-{i}", "entity_type": "core", "entity_category": "npc"}
        for i in range(4)
    ]
    batch.append({"location_id": CAVE, "entity_id": "ent-crown", "entity_type": "core", "entity_category": "trophy"})
    batch.append({"location_id": CAVE, "entity_id": "ent-wolf", "entity_type": "bonus", "entity_category": "enemy"})

    with pytest.raises(ValidationError) as exc:
        create_mappings(conn, SESSION, batch)

    assert list(exc.value.details) == ["mappings[4].entity_category", "mappings[5].entity_category"]
    assert list_session_mappings(conn, SESSION) == []


def test_create_mappings_rejects_unknown_time_condition_and_empty_batch(conn) -> None:
    with pytest.raises(ValidationError) as exc:
        create_mappings(conn, SESSION, [{
            "location_id": CAVE, "entity_id": "ent-owl", "entity_type": "core",
            "entity_category": "npc", "time_conditions": ["full_moon"],
        }])
    assert "mappings[0].time_conditions" in exc.value.details
    with pytest.raises(ValidationError):
        create_mappings(conn, SESSION, [])


# --- Reads ---


def test_available_entities_join_pool_metadata_with_fallback_name(conn) -> None:
    _seed_cave(conn)
    create_mappings(conn, SESSION, [{
        "location_id": CAVE, "entity_id": "unknown-entity-123", "entity_type": "core", "entity_category": "npc",
    }])
    refs = get_available_entities_for_location(conn, CAVE, SESSION)
    names = [r.name for r in refs]
    assert names[:4] == ["Crown", "Goblin", "Rope", "Old Map"]
    assert names[4] == "npc_unknown-"
    assert get_available_entities_for_location(conn, "loc-nowhere", SESSION) == []


# --- Availability & discovery ---


def test_mark_discovered_is_idempotent_and_forces_availability(conn) -> None:
    created = _seed_cave(conn)
    target = created[1]
    update_availability(conn, target.id, False)

    first = mark_discovered(conn, target.id)
    second = mark_discovered(conn, target.id)

    assert first.discovered_at is not None
    assert second.discovered_at == first.discovered_at
    assert second.is_available is True
    with pytest.raises(NotFoundError):
        mark_discovered(conn, "missing-mapping")


def test_update_availability_cannot_hide_discovered_mapping(conn) -> None:
    created = _seed_cave(conn)
    mark_discovered(conn, created[0].id)

    kept = update_availability(conn, created[0].id, False)
    hidden = update_availability(conn, created[1].id, False)

    assert kept.is_available is True
    assert hidden.is_available is False
    stored = {m.id: m.is_available for m in get_mappings_by_location(conn, CAVE, SESSION)}
    assert stored[created[0].id] is True
    assert stored[created[1].id] is False
    with pytest.raises(ValidationError):
        update_availability(conn, created[1].id, "yes")
    with pytest.raises(NotFoundError):
        update_availability(conn, "missing-mapping", True)


@pytest.mark.parametrize(
    "conditions, hour, expected",
    [
        ([], 3, True),
        (["any"], 3, True),
        (["day_time"], 6, True),
        (["day_time"], 18, False),
        (["night_only"], 18, True),
        (["night_only"], 5, True),
        (["night_only"], 12, False),
        (["morning_only"], 11, True),
        (["morning_only"], 12, False),
        (["afternoon_only"], 12, True),
        (["morning_only", "night_only"], 22, True),
    ],
)
def test_check_time_conditions(conditions, hour, expected) -> None:
    result = check_time_conditions(conditions, datetime(2026, 5, 1, hour, 30))
    assert result.is_valid is expected
    assert (result.reason is None) is expected


def test_check_prerequisites_reports_missing_and_completed(conn) -> None:
    created = _seed_cave(conn)
    mark_discovered(conn, created[1].id)

    result = check_prerequisites(conn, SESSION, ["ent-goblin", "ent-map"])

    assert result.is_valid is False
    assert result.completed_entities == ["ent-goblin"]
    assert result.missing_entities == ["ent-map"]
    assert check_prerequisites(conn, SESSION, []).is_valid is True


def test_dynamic_availability_follows_time_and_prerequisites(conn) -> None:
    created_pool = create_entity_pool_if_absent(conn, SESSION, "camp-1", "theme-1")
    assert created_pool.session_id == SESSION
    created = create_mappings(conn, SESSION, [
        {"location_id": CAVE, "entity_id": "ent-key", "entity_type": "core", "entity_category": "item"},
        {"location_id": CAVE, "entity_id": "ent-door", "entity_type": "core", "entity_category": "event",
         "prerequisite_entities": ["ent-key"]},
        {"location_id": "loc-yard", "entity_id": "ent-owl", "entity_type": "core", "entity_category": "npc",
         "time_conditions": ["night_only"]},
    ])
    noon = datetime(2026, 5, 1, 12, 0)
    midnight = datetime(2026, 5, 1, 23, 0)

    assert update_dynamic_availability(conn, SESSION, now=noon) == 2
    availability = {m.entity_id: m.is_available for m in list_session_mappings(conn, SESSION)}
    assert availability == {"ent-key": True, "ent-door": False, "ent-owl": False}

    mark_discovered(conn, created[0].id)
    assert update_dynamic_availability(conn, SESSION, now=midnight) == 2
    availability = {m.entity_id: m.is_available for m in list_session_mappings(conn, SESSION)}
    assert availability == {"ent-key": True, "ent-door": True, "ent-owl": True}

    # nothing changes on a second pass
    assert update_dynamic_availability(conn, SESSION, now=midnight) == 0


# --- Exploration ---


def test_thorough_exploration_discovers_core_first_up_to_cap(conn) -> None:
    _seed_cave(conn)

    result = explore_location(conn, CAVE, "char-1", SESSION, "thorough")

    assert [d.entity.id for d in result.discovered_entities] == ["ent-goblin", "ent-map", "ent-crown"]
    assert [d.rarity for d in result.discovered_entities] == ["common", "common", "rare"]
    assert result.discovered_entities[1].discovery_message == "You found Old Map!"
    assert result.previous_exploration_level == 0
    assert result.exploration_level == 75
    assert result.hidden_entities_remaining == 1
    assert result.is_fully_explored is False
    assert result.time_spent == 45
    assert result.encounter_chance == 0.2
    assert result.affected_milestones == ["ms-cave"]
    assert result.completed_milestones == ["ms-cave"]


def test_exhaustive_exploration_reaches_full_exploration(conn) -> None:
    _seed_cave(conn)

    result = explore_location(conn, CAVE, "char-1", SESSION, "exhaustive")

    assert len(result.discovered_entities) == 4
    assert result.exploration_level == 100
    assert result.hidden_entities_remaining == 0
    assert result.is_fully_explored is True
    assert result.hints == ["This place seems to have been explored thoroughly."]


def test_milestone_completion_is_reported_only_when_reached(conn) -> None:
    _seed_cave(conn)

    first = explore_location(conn, CAVE, "char-1", SESSION, "light")
    second = explore_location(conn, CAVE, "char-2", SESSION, "light")
    third = explore_location(conn, CAVE, "char-3", SESSION, "exhaustive")

    assert (first.affected_milestones, first.completed_milestones) == (["ms-cave"], [])
    assert second.completed_milestones == ["ms-cave"]
    assert third.completed_milestones == []
    assert [(c.milestone_id, c.completed_by) for c in list_milestone_completions(conn, SESSION)] == [
        ("ms-cave", "char-2"),
    ]


def test_exploration_level_never_decreases_and_light_finds_one(conn) -> None:
    _seed_cave(conn)

    levels = []
    for _ in range(5):
        result = explore_location(conn, CAVE, "char-1", SESSION, "light")
        assert len(result.discovered_entities) <= 1
        assert result.exploration_level >= result.previous_exploration_level
        levels.append(result.exploration_level)

    assert levels == [25, 50, 75, 100, 100]
    assert result.discovered_entities == []


def test_unavailable_mappings_are_not_discovered(conn) -> None:
    created = _seed_cave(conn)
    for mapping in created:
        update_availability(conn, mapping.id, False)

    result = explore_location(conn, CAVE, "char-1", SESSION, "exhaustive")

    assert result.discovered_entities == []
    assert result.exploration_level == 0
    assert result.hidden_entities_remaining == 4
    assert result.narrative_description.endswith("nothing stands out.")


def test_empty_location_counts_as_fully_explored(conn) -> None:
    create_entity_pool_if_absent(conn, SESSION, "camp-1", "theme-1")
    result = explore_location(conn, "loc-empty", "char-1", SESSION, "light")
    assert result.exploration_level == 100
    assert result.is_fully_explored is True


def test_explore_rejects_unknown_intensity(conn) -> None:
    with pytest.raises(ValidationError) as exc:
        explore_location(conn, CAVE, "char-1", SESSION, "frantic")
    assert "exploration_intensity" in exc.value.details


def test_location_status_summarises_discoveries(conn) -> None:
    created = _seed_cave(conn)
    mark_discovered(conn, created[2].id)

    status = get_location_exploration_status(conn, CAVE, SESSION)

    assert status.total_entities == 4
    assert status.discovered_entities == 1
    assert status.hidden_entities == 3
    assert status.exploration_level == 25
    assert [e.name for e in status.discovered_entity_list] == ["Rope"]
    assert status.is_fully_explored is False
