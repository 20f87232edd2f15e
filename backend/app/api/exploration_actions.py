"""
FastAPI endpoints that drive exploration action executions.
start -> user-input -> skill-check, plus read-only views and TTL reaping.
"""
from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from backend.app.core.error_handling import create_success_response
from backend.app.core.exploration_actions import ExplorationActionService, reap_expired_executions
from backend.app.db.connection import get_db
from backend.app.models.exploration import ExplorationActionType, SkillModifier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/exploration", tags=["exploration"])


def get_exploration_service(conn: sqlite3.Connection = Depends(get_db)) -> ExplorationActionService:
    return ExplorationActionService(conn)


class StartExplorationRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    character_id: str = Field(..., min_length=1)
    target_entity_id: str = Field(..., min_length=1)
    action_type: ExplorationActionType
    custom_description: Optional[str] = None


class UserInputRequest(BaseModel):
    execution_id: str = Field(..., min_length=1)
    character_id: str = Field(..., min_length=1)
    user_approach: str = Field(..., min_length=1)


class SkillCheckRequest(BaseModel):
    execution_id: str = Field(..., min_length=1)
    character_id: str = Field(..., min_length=1)
    skill_type: Optional[str] = None
    target_number: Optional[int] = Field(None, ge=1)
    modifiers: Optional[list[SkillModifier]] = None


class ReapRequest(BaseModel):
    ttl_seconds: Optional[int] = Field(None, ge=0)


@router.post("/start")
def start_exploration(req: StartExplorationRequest, service: ExplorationActionService = Depends(get_exploration_service)):
    """Start an action and present it; the execution comes back awaiting input or ready for the check."""
    execution = service.start_exploration_action(
        req.session_id,
        req.character_id,
        req.target_entity_id,
        req.action_type,
        req.custom_description,
    )
    presented = service.present_exploration_action(execution.id)
    return create_success_response(presented.model_dump(mode="json"))


@router.post("/user-input")
def provide_user_input(req: UserInputRequest, service: ExplorationActionService = Depends(get_exploration_service)):
    outcome = service.provide_user_input(req.execution_id, req.character_id, req.user_approach)
    return create_success_response(outcome.model_dump(mode="json"))


@router.post("/skill-check")
def execute_skill_check(req: SkillCheckRequest, service: ExplorationActionService = Depends(get_exploration_service)):
    outcome = service.execute_skill_check(
        req.execution_id,
        req.character_id,
        skill_type=req.skill_type,
        target_number=req.target_number,
        modifiers=req.modifiers,
    )
    return create_success_response(outcome.model_dump(mode="json"))


@router.post("/reap")
def reap_executions(req: Optional[ReapRequest] = None, conn: sqlite3.Connection = Depends(get_db)):
    """Delete unresolved executions idle longer than the TTL (config default when omitted)."""
    ttl = req.ttl_seconds if req is not None else None
    removed = reap_expired_executions(conn, ttl)
    return create_success_response({"reaped_count": removed})


@router.get("/executions/{execution_id}")
def get_execution(execution_id: str, service: ExplorationActionService = Depends(get_exploration_service)):
    return create_success_response(service.get_execution(execution_id).model_dump(mode="json"))


@router.get("/active/{session_id}")
def list_active(session_id: str, service: ExplorationActionService = Depends(get_exploration_service)):
    executions = service.list_active_executions(session_id)
    return create_success_response([e.model_dump(mode="json") for e in executions])


@router.get("/history/{session_id}")
def list_history(
    session_id: str,
    character_id: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    service: ExplorationActionService = Depends(get_exploration_service),
):
    executions = service.list_execution_history(session_id, character_id=character_id, limit=limit)
    return create_success_response([e.model_dump(mode="json") for e in executions])


@router.get("/flow-state/{session_id}")
def get_flow_state(session_id: str, service: ExplorationActionService = Depends(get_exploration_service)):
    return create_success_response(service.get_flow_state(session_id).model_dump(mode="json"))
