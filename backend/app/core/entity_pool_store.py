"""Entity pool store for the entity_pools table. Uses sqlite3 only (no ORM).

Each session owns one pool, stored as a whole JSON document. Every mutation is
read-modify-write of the full document guarded by the `version` column:

- the UPDATE only succeeds when the version it read is still current;
- a writer that loses the race re-reads and re-applies its mutation, so
  concurrent upserts on the same session do not lose each other's changes;
- a caller that passes `expected_version` gets the stale write rejected with
  ConcurrencyError instead.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from typing import Any, Callable, Iterable, TypeVar

from pydantic import ValidationError as PydanticValidationError

from backend.app.core.error_handling import (
    ConcurrencyError,
    DatabaseError,
    NotFoundError,
    ValidationError,
    require_fields,
    utc_now_iso,
)
from backend.app.models.entity_pool import (
    CATEGORY_BY_COLLECTION,
    ENTITY_TYPE_BY_COLLECTION,
    EntityPool,
    EntityRef,
    EntityType,
    PoolCollection,
    PoolEntity,
    parse_collection,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ── Validation helpers ──


def parse_entity_type(value: Any) -> EntityType:
    try:
        return EntityType(value.value if isinstance(value, EntityType) else str(value))
    except ValueError:
        raise ValidationError(
            f"Invalid entity type: {value!r}",
            details={"entity_type": "must be one of: core, bonus"},
        ) from None


def resolve_collection(entity_type: Any, name: Any) -> tuple[EntityType, PoolCollection]:
    """Resolve (entity_type, collection-or-category) to a collection owned by that type."""
    etype = parse_entity_type(entity_type)
    collection = name if isinstance(name, PoolCollection) else parse_collection(str(name or ""))
    if collection is None:
        raise ValidationError(
            f"Unknown entity collection: {name!r}",
            details={"collection": f"unknown collection or category {name!r}"},
        )
    if ENTITY_TYPE_BY_COLLECTION[collection] is not etype:
        raise ValidationError(
            f"Collection '{collection.value}' does not hold {etype.value} entities",
            details={"collection": f"'{collection.value}' is not a {etype.value} collection"},
        )
    return etype, collection


def _pydantic_details(exc: PydanticValidationError) -> dict[str, str]:
    details: dict[str, str] = {}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "entity"
        details[loc] = err.get("msg", "invalid")
    return details


def _build_entity(collection: PoolCollection, data: dict[str, Any]) -> PoolEntity:
    """Validate merged entity data against the collection it will live in."""
    expected_category = CATEGORY_BY_COLLECTION[collection]
    payload = dict(data)
    payload.setdefault("category", expected_category.value)
    try:
        entity = PoolEntity.model_validate(payload)
    except PydanticValidationError as e:
        raise ValidationError("Invalid entity data", details=_pydantic_details(e)) from None
    if entity.category is not expected_category:
        raise ValidationError(
            f"Entity category '{entity.category.value}' does not belong in '{collection.value}'",
            details={"category": f"expected '{expected_category.value}'"},
        )
    if ENTITY_TYPE_BY_COLLECTION[collection] is EntityType.BONUS:
        if entity.milestone_id or entity.progress_contribution:
            raise ValidationError(
                "Bonus entities cannot contribute to milestones",
                details={"milestone_id": "core entities only", "progress_contribution": "core entities only"},
            )
    return entity


def _entity_payload(entity: dict[str, Any] | PoolEntity) -> dict[str, Any]:
    if isinstance(entity, PoolEntity):
        return entity.model_dump(mode="json", exclude_unset=True)
    if not isinstance(entity, dict):
        raise ValidationError("Entity data must be an object", details={"entity": "must be an object"})
    return dict(entity)


def _find_index(entities: list[PoolEntity], entity_id: str) -> int:
    for idx, existing in enumerate(entities):
        if existing.matches(entity_id):
            return idx
    return -1


def _ensure_unique(entities: list[PoolEntity], entity: PoolEntity, coll: PoolCollection, skip: int = -1) -> None:
    for idx, existing in enumerate(entities):
        if idx != skip and existing.matches(entity.identity):
            raise ValidationError(
                f"Entity {entity.identity} already exists in {coll.value}",
                details={"id": f"already used in {coll.value}"},
            )


# ── Persistence ──


def _row_to_pool(row: Any) -> EntityPool:
    data = json.loads(row["pool_json"]) if row["pool_json"] else {}
    data["version"] = int(row["version"] or 0)
    return EntityPool.model_validate(data)


def _pool_json(pool: EntityPool) -> str:
    return json.dumps(pool.model_dump(mode="json", exclude={"version"}))


def get_entity_pool(conn: Any, session_id: str) -> EntityPool | None:
    """Return the session's pool, or None if it has not been created."""
    try:
        row = conn.execute(
            "SELECT pool_json, version FROM entity_pools WHERE session_id = ?",
            (session_id,),
        ).fetchone()
    except sqlite3.Error as e:
        raise DatabaseError("Failed to load entity pool", {"session_id": session_id}, cause=e) from e
    return _row_to_pool(row) if row else None


def list_pool_entities(
    pool: EntityPool, entity_type: EntityType | str | None = None
) -> list[dict[str, Any]]:
    """Flatten a pool into rows tagged with entity_type and collection (GM listing)."""
    etype = parse_entity_type(entity_type) if entity_type else None
    rows: list[dict[str, Any]] = []
    for owner, collection, entity in pool.iter_entities(etype):
        row = entity.model_dump(mode="json")
        row["entity_type"] = owner.value
        row["collection"] = collection.value
        rows.append(row)
    return rows


def list_campaign_pools(conn: Any, campaign_id: str) -> list[EntityPool]:
    """Return every session pool that belongs to a campaign, oldest first."""
    try:
        rows = conn.execute(
            """SELECT pool_json, version FROM entity_pools
               WHERE campaign_id = ?
               ORDER BY generated_at ASC, session_id ASC""",
            (campaign_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError("Failed to load campaign pools", {"campaign_id": campaign_id}, cause=e) from e
    return [_row_to_pool(r) for r in rows]


def create_entity_pool_if_absent(
    conn: Any,
    session_id: str,
    campaign_id: str,
    theme_id: str,
) -> EntityPool:
    """Create an empty pool for the session; return the existing one unchanged if present."""
    require_fields({"session_id": session_id, "campaign_id": campaign_id, "theme_id": theme_id})
    existing = get_entity_pool(conn, session_id)
    if existing is not None:
        return existing

    now = utc_now_iso()
    pool = EntityPool(
        id=f"pool_{session_id}_{uuid.uuid4().hex[:8]}",
        session_id=session_id,
        campaign_id=campaign_id,
        theme_id=theme_id,
        generated_at=now,
        last_updated=now,
    )
    try:
        conn.execute(
            """INSERT OR IGNORE INTO entity_pools
               (session_id, pool_id, campaign_id, theme_id, pool_json, version, generated_at, last_updated)
               VALUES (?, ?, ?, ?, ?, 0, ?, ?)""",
            (session_id, pool.id, campaign_id, theme_id, _pool_json(pool), now, now),
        )
        conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise DatabaseError("Failed to create entity pool", {"session_id": session_id}, cause=e) from e

    created = get_entity_pool(conn, session_id)
    if created is None:
        raise DatabaseError("Entity pool vanished after creation", {"session_id": session_id})
    logger.info("Created entity pool %s for session %s (campaign=%s)", created.id, session_id, campaign_id)
    return created


def _write_pool(conn: Any, pool: EntityPool, read_version: int) -> bool:
    cur = conn.execute(
        """UPDATE entity_pools
           SET pool_json = ?, version = version + 1, last_updated = ?
           WHERE session_id = ? AND version = ?""",
        (_pool_json(pool), pool.last_updated, pool.session_id, read_version),
    )
    return getattr(cur, "rowcount", 0) == 1


def _mutate_pool(
    conn: Any,
    session_id: str,
    mutate: Callable[[EntityPool], T],
    *,
    expected_version: int | None = None,
    create_with: tuple[str, str] | None = None,
    max_retries: int | None = None,
) -> tuple[T, EntityPool]:
    """Apply `mutate` to a fresh copy of the pool and write it back with a version check.

    `mutate` runs before any write and may raise to abort without side effects.
    """
    if max_retries is None:
        from backend.app.config import ENTITY_POOL_MAX_WRITE_RETRIES
        max_retries = ENTITY_POOL_MAX_WRITE_RETRIES
    max_retries = max(1, max_retries)

    for attempt in range(max_retries):
        pool = get_entity_pool(conn, session_id)
        if pool is None:
            if create_with is None:
                raise NotFoundError(f"Entity pool not found for session {session_id}", {"session_id": session_id})
            pool = create_entity_pool_if_absent(conn, session_id, *create_with)
        if expected_version is not None and pool.version != expected_version:
            raise ConcurrencyError(
                "Entity pool was modified by another writer",
                {"session_id": session_id, "expected_version": expected_version, "current_version": pool.version},
            )

        read_version = pool.version
        result = mutate(pool)
        pool.last_updated = utc_now_iso()

        try:
            written = _write_pool(conn, pool, read_version)
        except sqlite3.OperationalError as e:
            conn.rollback()
            if "locked" in str(e).lower():
                logger.debug("Entity pool %s locked (attempt %d), retrying", session_id, attempt + 1)
                time.sleep(0.005 * (attempt + 1))
                continue
            raise DatabaseError("Failed to save entity pool", {"session_id": session_id}, cause=e) from e
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError("Failed to save entity pool", {"session_id": session_id}, cause=e) from e

        if written:
            conn.commit()
            pool.version = read_version + 1
            return result, pool

        conn.rollback()
        if expected_version is not None:
            raise ConcurrencyError(
                "Entity pool was modified by another writer",
                {"session_id": session_id, "expected_version": expected_version},
            )
        logger.info("Entity pool %s version conflict at v%d (attempt %d), re-applying", session_id, read_version, attempt + 1)

    raise ConcurrencyError(
        f"Failed to save entity pool for session {session_id} after {max_retries} attempts",
        {"session_id": session_id},
    )


# ── Mutations ──


def upsert_entity(
    conn: Any,
    session_id: str,
    entity_type: EntityType | str,
    collection: PoolCollection | str,
    entity: dict[str, Any] | PoolEntity,
    *,
    create_if_missing: bool = False,
    campaign_id: str | None = None,
    theme_id: str | None = None,
    expected_version: int | None = None,
) -> PoolEntity:
    """Insert the entity, or shallow-merge it (incoming wins) into the one with the same id/name."""
    require_fields({"session_id": session_id})
    _, coll = resolve_collection(entity_type, collection)
    incoming = _entity_payload(entity)
    identity = incoming.get("id") or incoming.get("name")
    if not identity:
        raise ValidationError("Entity needs an id or a name", details={"id": "id or name required"})

    create_with = None
    if create_if_missing:
        create_with = (campaign_id or "default-campaign", theme_id or "default-theme")

    # Validate the insert shape up front so nothing is created for a bad payload.
    if create_with is not None and get_entity_pool(conn, session_id) is None:
        _build_entity(coll, {**incoming, "id": incoming.get("id") or f"{coll.value}_new"})

    def _apply(pool: EntityPool) -> PoolEntity:
        entities = pool.collection(coll)
        idx = _find_index(entities, str(identity))
        now = utc_now_iso()
        if idx == -1:
            data = dict(incoming)
            data.setdefault("id", f"{coll.value}_{uuid.uuid4().hex[:8]}")
            data["created_at"] = data.get("created_at") or now
            data["updated_at"] = now
            new_entity = _build_entity(coll, data)
            _ensure_unique(entities, new_entity, coll)
            entities.append(new_entity)
            return new_entity
        merged = {**entities[idx].model_dump(mode="json"), **incoming, "updated_at": now}
        updated = _build_entity(coll, merged)
        _ensure_unique(entities, updated, coll, skip=idx)
        entities[idx] = updated
        return updated

    saved, pool = _mutate_pool(
        conn, session_id, _apply, expected_version=expected_version, create_with=create_with
    )
    logger.info("Upserted %s.%s in session %s (pool v%d)", coll.value, saved.identity, session_id, pool.version)
    return saved


def update_entity(
    conn: Any,
    session_id: str,
    entity_type: EntityType | str,
    collection: PoolCollection | str,
    entity_id: str,
    updates: dict[str, Any],
    *,
    expected_version: int | None = None,
) -> PoolEntity:
    """Shallow-merge `updates` into an existing entity. NotFoundError if it is absent."""
    require_fields({"session_id": session_id, "entity_id": entity_id})
    _, coll = resolve_collection(entity_type, collection)
    if not isinstance(updates, dict) or not updates:
        raise ValidationError("Updates must be a non-empty object", details={"updates": "required"})

    def _apply(pool: EntityPool) -> PoolEntity:
        entities = pool.collection(coll)
        idx = _find_index(entities, entity_id)
        if idx == -1:
            raise NotFoundError(
                f"Entity {entity_id} not found in {coll.value}",
                {"session_id": session_id, "collection": coll.value, "entity_id": entity_id},
            )
        merged = {**entities[idx].model_dump(mode="json"), **updates, "updated_at": utc_now_iso()}
        updated = _build_entity(coll, merged)
        _ensure_unique(entities, updated, coll, skip=idx)
        entities[idx] = updated
        return updated

    saved, _ = _mutate_pool(conn, session_id, _apply, expected_version=expected_version)
    logger.info("Updated %s.%s in session %s", coll.value, entity_id, session_id)
    return saved


def remove_entity(
    conn: Any,
    session_id: str,
    entity_type: EntityType | str,
    collection: PoolCollection | str,
    entity_id: str,
    *,
    expected_version: int | None = None,
) -> PoolEntity:
    """Remove and return one entity. NotFoundError if the pool or entity is absent."""
    require_fields({"session_id": session_id, "entity_id": entity_id})
    _, coll = resolve_collection(entity_type, collection)

    def _apply(pool: EntityPool) -> PoolEntity:
        entities = pool.collection(coll)
        idx = _find_index(entities, entity_id)
        if idx == -1:
            raise NotFoundError(
                f"Entity {entity_id} not found in {coll.value}",
                {"session_id": session_id, "collection": coll.value, "entity_id": entity_id},
            )
        return entities.pop(idx)

    removed, _ = _mutate_pool(conn, session_id, _apply, expected_version=expected_version)
    logger.info("Removed %s.%s from session %s", coll.value, entity_id, session_id)
    return removed


def bulk_remove_entities(
    conn: Any,
    session_id: str,
    refs: Iterable[EntityRef | dict[str, Any]],
) -> list[PoolEntity]:
    """Remove every referenced entity that exists; absent ones are skipped.

    Malformed references (unknown type or collection) reject the whole call
    before anything is removed.
    """
    require_fields({"session_id": session_id})
    resolved: list[tuple[PoolCollection, str]] = []
    errors: dict[str, str] = {}
    for i, raw in enumerate(refs):
        try:
            ref = raw if isinstance(raw, EntityRef) else EntityRef.model_validate(raw)
            _, coll = resolve_collection(ref.entity_type, ref.collection)
        except PydanticValidationError as e:
            for key, msg in _pydantic_details(e).items():
                errors[f"entity_ids[{i}].{key}"] = msg
            continue
        except ValidationError as e:
            for key, msg in e.details.items():
                errors[f"entity_ids[{i}].{key}"] = msg
            continue
        resolved.append((coll, ref.entity_id))
    if errors:
        raise ValidationError("Invalid entity references", details=errors)
    if not resolved:
        raise ValidationError("At least one entity reference is required", details={"entity_ids": "required"})

    pool = get_entity_pool(conn, session_id)
    if pool is None:
        raise NotFoundError(f"Entity pool not found for session {session_id}", {"session_id": session_id})
    if not any(_find_index(pool.collection(c), eid) != -1 for c, eid in resolved):
        logger.info("Bulk remove in session %s: nothing to remove", session_id)
        return []

    def _apply(fresh: EntityPool) -> list[PoolEntity]:
        removed: list[PoolEntity] = []
        for coll, entity_id in resolved:
            entities = fresh.collection(coll)
            idx = _find_index(entities, entity_id)
            if idx != -1:
                removed.append(entities.pop(idx))
        return removed

    removed, _ = _mutate_pool(conn, session_id, _apply)
    logger.info("Bulk removed %d of %d entities from session %s", len(removed), len(resolved), session_id)
    return removed
