"""
FastAPI endpoints for milestone progress (GM-facing).
Players get the masked view from /player-experience instead.
"""
from __future__ import annotations

import sqlite3

from fastapi import APIRouter, Depends

from backend.app.core.error_handling import create_success_response
from backend.app.core.milestone_progress import (
    compute_campaign_completion,
    compute_campaign_milestones,
    compute_milestone,
    compute_session_milestones,
    list_milestone_completions,
)
from backend.app.db.connection import get_db

router = APIRouter(prefix="/milestones", tags=["milestones"])


@router.get("/campaign/{campaign_id}/progress")
def get_campaign_progress(campaign_id: str, conn: sqlite3.Connection = Depends(get_db)):
    milestones = compute_campaign_milestones(conn, campaign_id)
    return create_success_response([m.model_dump(mode="json") for m in milestones])


@router.get("/campaign/{campaign_id}/completion")
def get_campaign_completion(campaign_id: str, conn: sqlite3.Connection = Depends(get_db)):
    return create_success_response(compute_campaign_completion(conn, campaign_id).model_dump(mode="json"))


@router.get("/campaign/{campaign_id}/{milestone_id}")
def get_milestone_progress(campaign_id: str, milestone_id: str, conn: sqlite3.Connection = Depends(get_db)):
    return create_success_response(compute_milestone(conn, campaign_id, milestone_id).model_dump(mode="json"))


@router.get("/session/{session_id}")
def get_session_milestones(session_id: str, conn: sqlite3.Connection = Depends(get_db)):
    milestones = compute_session_milestones(conn, session_id)
    completions = list_milestone_completions(conn, session_id)
    return create_success_response({
        "milestones": [m.model_dump(mode="json") for m in milestones],
        "completions": [c.model_dump(mode="json") for c in completions],
    })
