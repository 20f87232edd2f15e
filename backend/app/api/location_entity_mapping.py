"""
FastAPI endpoints for location-entity mappings.
Covers batch creation, availability overrides, discovery and location exploration.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.app.core.error_handling import create_success_response
from backend.app.core.location_entities import (
    create_mappings,
    explore_location,
    get_available_entities_for_location,
    get_location_exploration_status,
    list_session_mappings,
    mark_discovered,
    update_availability,
    update_dynamic_availability,
)
from backend.app.db.connection import get_db
from backend.app.models.entity_pool import EntityType
from backend.app.models.location_mapping import ExplorationIntensity

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/location-entity-mapping", tags=["location-entity-mapping"])


class CreateMappingsRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    # Records are validated together by the service so one bad record rejects the batch
    mappings: list[dict[str, Any]]


class AvailabilityRequest(BaseModel):
    is_available: bool


class ExploreRequest(BaseModel):
    character_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    exploration_intensity: ExplorationIntensity = ExplorationIntensity.THOROUGH


@router.get("/location/{location_id}/entities")
def get_location_entities(
    location_id: str,
    session_id: str = Query(..., min_length=1),
    conn: sqlite3.Connection = Depends(get_db),
):
    references = get_available_entities_for_location(conn, location_id, session_id)
    return create_success_response([r.model_dump(mode="json") for r in references])


@router.get("/location/{location_id}/exploration-status")
def get_exploration_status(
    location_id: str,
    session_id: str = Query(..., min_length=1),
    conn: sqlite3.Connection = Depends(get_db),
):
    status = get_location_exploration_status(conn, location_id, session_id)
    return create_success_response(status.model_dump(mode="json"))


@router.post("/create-mappings")
def post_create_mappings(req: CreateMappingsRequest, conn: sqlite3.Connection = Depends(get_db)):
    created = create_mappings(conn, req.session_id, req.mappings)
    return create_success_response({
        "created_count": len(created),
        "mappings": [m.model_dump(mode="json") for m in created],
    })


@router.get("/session/{session_id}/all-mappings")
def get_all_mappings(
    session_id: str,
    location_id: Optional[str] = None,
    entity_type: Optional[EntityType] = None,
    is_available: Optional[bool] = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    """All mappings of a session, optionally filtered (GM view)."""
    mappings = list_session_mappings(conn, session_id)
    if location_id:
        mappings = [m for m in mappings if m.location_id == location_id]
    if entity_type is not None:
        mappings = [m for m in mappings if m.entity_type is entity_type]
    if is_available is not None:
        mappings = [m for m in mappings if m.is_available == is_available]
    return create_success_response([m.model_dump(mode="json") for m in mappings])


@router.patch("/{mapping_id}/availability")
def patch_availability(mapping_id: str, req: AvailabilityRequest, conn: sqlite3.Connection = Depends(get_db)):
    mapping = update_availability(conn, mapping_id, req.is_available)
    return create_success_response(mapping.model_dump(mode="json"))


@router.patch("/{mapping_id}/discover")
def patch_discover(mapping_id: str, conn: sqlite3.Connection = Depends(get_db)):
    """Idempotent: repeating the call keeps the original discovery time."""
    mapping = mark_discovered(conn, mapping_id)
    return create_success_response(mapping.model_dump(mode="json"))


@router.put("/session/{session_id}/update-dynamic-availability")
def put_dynamic_availability(session_id: str, conn: sqlite3.Connection = Depends(get_db)):
    changed = update_dynamic_availability(conn, session_id)
    return create_success_response({"session_id": session_id, "updated_count": changed})


@router.post("/location/{location_id}/explore")
def post_explore(location_id: str, req: ExploreRequest, conn: sqlite3.Connection = Depends(get_db)):
    result = explore_location(
        conn,
        location_id,
        req.character_id,
        req.session_id,
        req.exploration_intensity,
    )
    return create_success_response(result.model_dump(mode="json"))
