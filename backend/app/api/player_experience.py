"""
FastAPI endpoints for the player-facing (masked) view of progress.
"""
from __future__ import annotations

import sqlite3
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.app.core.error_handling import create_success_response
from backend.app.core.player_experience import (
    create_ambiguous_reward_message,
    filter_player_visible_content,
    get_masked_progress_info,
)
from backend.app.db.connection import get_db

router = APIRouter(prefix="/player-experience", tags=["player-experience"])


class FilterContentRequest(BaseModel):
    content: Any


class RewardMessageRequest(BaseModel):
    reward: dict[str, Any]


@router.get("/session/{session_id}/masked-progress")
def get_masked_progress(session_id: str, conn: sqlite3.Connection = Depends(get_db)):
    return create_success_response(get_masked_progress_info(conn, session_id).model_dump(mode="json"))


@router.post("/filter-content")
def post_filter_content(req: FilterContentRequest):
    return create_success_response(filter_player_visible_content(req.content))


@router.post("/reward-message")
def post_reward_message(req: RewardMessageRequest):
    return create_success_response({"message": create_ambiguous_reward_message(req.reward)})
