"""
FastAPI endpoints for per-session entity pools.
Supports reading the pool and adding, updating and removing entities.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.app.core.entity_pool_store import (
    bulk_remove_entities,
    get_entity_pool,
    list_pool_entities,
    remove_entity,
    update_entity,
    upsert_entity,
)
from backend.app.core.error_handling import NotFoundError, create_success_response
from backend.app.db.connection import get_db
from backend.app.models.entity_pool import BulkRemoveResult, EntityRef, EntityType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/entity-pool", tags=["entity-pool"])


class AddEntityRequest(BaseModel):
    entity_type: EntityType
    category: str = Field(..., min_length=1, description="Collection ('enemies') or category ('enemy')")
    entity: dict[str, Any]
    campaign_id: Optional[str] = None
    theme_id: Optional[str] = None
    expected_version: Optional[int] = None


class UpdateEntityRequest(BaseModel):
    entity_type: EntityType
    category: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    updates: dict[str, Any]
    expected_version: Optional[int] = None


class RemoveEntityRequest(BaseModel):
    entity_type: EntityType
    category: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    expected_version: Optional[int] = None


class BulkRemoveRequest(BaseModel):
    entity_ids: list[dict[str, Any]]


@router.get("/{session_id}")
def get_pool(
    session_id: str,
    entity_type: Optional[EntityType] = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    """Return the session's pool; with ?entity_type= a flat list of that type's entities."""
    pool = get_entity_pool(conn, session_id)
    if pool is None:
        raise NotFoundError(f"Entity pool not found for session {session_id}", {"session_id": session_id})
    if entity_type is not None:
        return create_success_response(list_pool_entities(pool, entity_type))
    return create_success_response(pool.model_dump(mode="json"))


@router.post("/{session_id}/entity")
def add_entity(session_id: str, req: AddEntityRequest, conn: sqlite3.Connection = Depends(get_db)):
    """Add an entity (or merge into the existing one); creates the pool on first use."""
    saved = upsert_entity(
        conn,
        session_id,
        req.entity_type,
        req.category,
        req.entity,
        create_if_missing=True,
        campaign_id=req.campaign_id,
        theme_id=req.theme_id,
        expected_version=req.expected_version,
    )
    return create_success_response(saved.model_dump(mode="json"))


@router.put("/{session_id}/entity")
def put_entity(session_id: str, req: UpdateEntityRequest, conn: sqlite3.Connection = Depends(get_db)):
    saved = update_entity(
        conn,
        session_id,
        req.entity_type,
        req.category,
        req.entity_id,
        req.updates,
        expected_version=req.expected_version,
    )
    return create_success_response(saved.model_dump(mode="json"))


@router.delete("/{session_id}/entity")
def delete_entity(session_id: str, req: RemoveEntityRequest, conn: sqlite3.Connection = Depends(get_db)):
    removed = remove_entity(
        conn,
        session_id,
        req.entity_type,
        req.category,
        req.entity_id,
        expected_version=req.expected_version,
    )
    return create_success_response(removed.model_dump(mode="json"))


@router.delete("/{session_id}/entities/bulk")
def delete_entities_bulk(session_id: str, req: BulkRemoveRequest, conn: sqlite3.Connection = Depends(get_db)):
    """Best-effort removal; references to absent entities are skipped."""
    removed = bulk_remove_entities(conn, session_id, req.entity_ids)
    result = BulkRemoveResult(
        deleted_count=len(removed),
        deleted_entities=[e.model_dump(mode="json") for e in removed],
    )
    return create_success_response(result.model_dump(mode="json"))
