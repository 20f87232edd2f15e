"""Exploration action state machine: start -> (player approach) -> skill check -> resolved.

Phases only move forward. TRANSITIONS is the single source of truth for what
each operation may do; every phase change is written with a compare-and-swap
on the phase column, so a stale or repeated call fails with InvalidStateError
instead of resolving an execution twice.
"""
from __future__ import annotations

import json
import logging
import random
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from backend.app.core.action_catalog import ActionCatalog, get_action_catalog
from backend.app.core.entity_pool_store import get_entity_pool
from backend.app.core.error_handling import (
    DatabaseError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    require_fields,
    utc_now_iso,
)
from backend.app.core.location_entities import fallback_entity_name, get_mappings_by_entity, mark_discovered
from backend.app.core.mechanics_resolver import CheckConfig, resolve_check
from backend.app.core.milestone_progress import record_milestone_completions
from backend.app.core.narration import ExplorationNarrator, get_default_narrator
from backend.app.models.entity_pool import EntityType
from backend.app.models.exploration import (
    DiceRoll,
    ExplorationActionType,
    ExplorationExecution,
    ExplorationFlowState,
    ExplorationOutcome,
    ExplorationPhase,
    PendingUserInput,
    RecentDiscovery,
    SkillCheck,
    SkillCheckOutcome,
    SkillModifier,
    UserInputOutcome,
)

logger = logging.getLogger(__name__)

# operation -> (required source phase, allowed target phases)
TRANSITIONS: dict[str, tuple[ExplorationPhase, frozenset[ExplorationPhase]]] = {
    "present": (
        ExplorationPhase.STARTED,
        frozenset({ExplorationPhase.AWAITING_INPUT, ExplorationPhase.SKILL_CHECK_PENDING}),
    ),
    "provide_user_input": (
        ExplorationPhase.AWAITING_INPUT,
        frozenset({ExplorationPhase.SKILL_CHECK_PENDING}),
    ),
    "execute_skill_check": (
        ExplorationPhase.SKILL_CHECK_PENDING,
        frozenset({ExplorationPhase.RESOLVED}),
    ),
}

RECENT_DISCOVERY_LIMIT = 10


def check_transition(
    execution: ExplorationExecution, operation: str, target: ExplorationPhase
) -> ExplorationPhase:
    """Return the source phase the write must match, or raise InvalidStateError."""
    source, targets = TRANSITIONS[operation]
    if execution.phase is not source or target not in targets:
        raise InvalidStateError(
            f"Cannot {operation.replace('_', ' ')} while execution is {execution.phase.value}",
            {
                "execution_id": execution.id,
                "phase": execution.phase.value,
                "expected_phase": source.value,
                "operation": operation,
            },
        )
    return source


def parse_action_type(value: Any) -> ExplorationActionType:
    try:
        return ExplorationActionType(value.value if isinstance(value, ExplorationActionType) else str(value))
    except ValueError:
        allowed = ", ".join(t.value for t in ExplorationActionType)
        raise ValidationError(
            f"Invalid action type: {value!r}",
            details={"action_type": f"must be one of: {allowed}"},
        ) from None


def _dump(model: Any) -> str | None:
    return json.dumps(model.model_dump(mode="json")) if model is not None else None


def _row_to_execution(row: Any) -> ExplorationExecution:
    def _load(col: str) -> Any:
        raw = row[col]
        return json.loads(raw) if raw else None

    return ExplorationExecution(
        id=row["id"],
        session_id=row["session_id"],
        character_id=row["character_id"],
        target_entity_id=row["target_entity_id"],
        target_entity_name=row["target_entity_name"],
        mapping_id=row["mapping_id"],
        action_type=row["action_type"],
        action_description=row["action_description"],
        requires_input=bool(row["requires_input"]),
        phase=row["phase"],
        user_approach=row["user_approach"],
        initial_description=row["initial_description"],
        skill_check=_load("skill_check_json"),
        dice_roll=_load("dice_roll_json"),
        result=_load("result_json"),
        initiated_at=row["initiated_at"],
        user_input_at=row["user_input_at"],
        resolved_at=row["resolved_at"],
        updated_at=row["updated_at"],
    )


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class ExplorationActionService:
    """Drives exploration executions for one database connection."""

    def __init__(
        self,
        conn: Any,
        narrator: ExplorationNarrator | None = None,
        rng: random.Random | None = None,
        catalog: ActionCatalog | None = None,
        min_approach_words: int | None = None,
    ) -> None:
        from backend.app.config import EXPLORATION_MIN_APPROACH_WORDS

        self.conn = conn
        self.narrator = narrator or get_default_narrator()
        self.rng = rng
        self.catalog = catalog or get_action_catalog()
        self.min_approach_words = (
            EXPLORATION_MIN_APPROACH_WORDS if min_approach_words is None else min_approach_words
        )

    # ── Persistence ──

    def _insert(self, execution: ExplorationExecution) -> None:
        try:
            self.conn.execute(
                """INSERT INTO exploration_executions
                   (id, session_id, character_id, target_entity_id, target_entity_name, mapping_id,
                    action_type, action_description, requires_input, phase, user_approach,
                    initial_description, skill_check_json, dice_roll_json, result_json,
                    initiated_at, user_input_at, resolved_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    execution.id,
                    execution.session_id,
                    execution.character_id,
                    execution.target_entity_id,
                    execution.target_entity_name,
                    execution.mapping_id,
                    execution.action_type.value,
                    execution.action_description,
                    1 if execution.requires_input else 0,
                    execution.phase.value,
                    execution.user_approach,
                    execution.initial_description,
                    _dump(execution.skill_check),
                    _dump(execution.dice_roll),
                    _dump(execution.result),
                    execution.initiated_at,
                    execution.user_input_at,
                    execution.resolved_at,
                    execution.updated_at,
                ),
            )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise DatabaseError("Failed to save exploration execution", {"execution_id": execution.id}, cause=e) from e

    def _save_transition(self, execution: ExplorationExecution, from_phase: ExplorationPhase) -> None:
        try:
            cur = self.conn.execute(
                """UPDATE exploration_executions
                   SET phase = ?, user_approach = ?, initial_description = ?, skill_check_json = ?,
                       dice_roll_json = ?, result_json = ?, user_input_at = ?, resolved_at = ?, updated_at = ?
                   WHERE id = ? AND phase = ?""",
                (
                    execution.phase.value,
                    execution.user_approach,
                    execution.initial_description,
                    _dump(execution.skill_check),
                    _dump(execution.dice_roll),
                    _dump(execution.result),
                    execution.user_input_at,
                    execution.resolved_at,
                    execution.updated_at,
                    execution.id,
                    from_phase.value,
                ),
            )
            if getattr(cur, "rowcount", 0) != 1:
                self.conn.rollback()
                raise InvalidStateError(
                    f"Execution {execution.id} changed phase concurrently",
                    {"execution_id": execution.id, "expected_phase": from_phase.value},
                )
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise DatabaseError("Failed to update exploration execution", {"execution_id": execution.id}, cause=e) from e

    def _select(self, where: str, params: tuple, order: str, limit: int | None = None) -> list[ExplorationExecution]:
        sql = f"SELECT * FROM exploration_executions WHERE {where} ORDER BY {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params = params + (int(limit),)
        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise DatabaseError("Failed to load exploration executions", cause=e) from e
        return [_row_to_execution(r) for r in rows]

    # ── Reads ──

    def get_execution(self, execution_id: str) -> ExplorationExecution:
        require_fields({"execution_id": execution_id})
        found = self._select("id = ?", (execution_id,), "initiated_at")
        if not found:
            raise NotFoundError(f"Exploration execution {execution_id} not found", {"execution_id": execution_id})
        return found[0]

    def list_active_executions(self, session_id: str) -> list[ExplorationExecution]:
        require_fields({"session_id": session_id})
        return self._select(
            "session_id = ? AND phase != ?", (session_id, ExplorationPhase.RESOLVED.value), "initiated_at ASC"
        )

    def list_execution_history(
        self, session_id: str, character_id: str | None = None, limit: int = 20
    ) -> list[ExplorationExecution]:
        require_fields({"session_id": session_id})
        where = "session_id = ? AND phase = ?"
        params: tuple = (session_id, ExplorationPhase.RESOLVED.value)
        if character_id:
            where += " AND character_id = ?"
            params += (character_id,)
        return self._select(where, params, "resolved_at DESC", limit=max(1, limit))

    def get_flow_state(self, session_id: str) -> ExplorationFlowState:
        """Snapshot of a session's explorations: in progress, waiting on players, recent finds."""
        from backend.app.config import EXPLORATION_EXECUTION_TTL_SECONDS

        active = self.list_active_executions(session_id)
        pending: list[PendingUserInput] = []
        for execution in active:
            if execution.phase is not ExplorationPhase.AWAITING_INPUT:
                continue
            updated = _parse_ts(execution.updated_at) or datetime.now(timezone.utc)
            pending.append(
                PendingUserInput(
                    execution_id=execution.id,
                    character_id=execution.character_id,
                    expires_at=(updated + timedelta(seconds=EXPLORATION_EXECUTION_TTL_SECONDS)).isoformat(),
                    prompt_message=execution.initial_description or "",
                )
            )

        recent: list[RecentDiscovery] = []
        for execution in self.list_execution_history(session_id, limit=RECENT_DISCOVERY_LIMIT):
            if execution.result is None or not execution.result.success:
                continue
            recent.append(
                RecentDiscovery(
                    entity_id=execution.target_entity_id,
                    entity_name=execution.target_entity_name,
                    discovered_at=execution.resolved_at or execution.updated_at,
                    discovered_by=execution.character_id,
                )
            )

        return ExplorationFlowState(
            session_id=session_id,
            active_explorations=active,
            pending_user_inputs=pending,
            recent_discoveries=recent,
            execution_ttl_seconds=EXPLORATION_EXECUTION_TTL_SECONDS,
            last_updated=utc_now_iso(),
        )

    # ── Transitions ──

    def _require_character(self, execution: ExplorationExecution, character_id: str) -> None:
        if execution.character_id != character_id:
            raise ValidationError(
                "Character does not own this exploration action",
                details={"character_id": f"execution belongs to {execution.character_id}"},
            )

    def _default_skill_check(self, execution: ExplorationExecution) -> SkillCheck:
        definition = self.catalog.action(execution.action_type)
        return SkillCheck(
            skill_type=definition.skill,
            target_number=self.catalog.target_number(definition.difficulty),
            difficulty=definition.difficulty,
        )

    def start_exploration_action(
        self,
        session_id: str,
        character_id: str,
        target_entity_id: str,
        action_type: ExplorationActionType | str,
        custom_description: str | None = None,
    ) -> ExplorationExecution:
        require_fields({
            "session_id": session_id,
            "character_id": character_id,
            "target_entity_id": target_entity_id,
            "action_type": action_type,
        })
        kind = parse_action_type(action_type)

        pool = get_entity_pool(self.conn, session_id)
        found = pool.find_entity(target_entity_id) if pool is not None else None
        mappings = get_mappings_by_entity(self.conn, session_id, target_entity_id)
        if found is None and not mappings:
            raise NotFoundError(
                f"Entity {target_entity_id} is not part of session {session_id}",
                {"session_id": session_id, "target_entity_id": target_entity_id},
            )
        mapping = next((m for m in mappings if m.discovered_at is None and m.is_available), None)
        if mappings and mapping is None:
            mapping = next((m for m in mappings if m.discovered_at is not None), None)
            if mapping is None:
                raise ValidationError(
                    f"Entity {target_entity_id} is not currently available",
                    details={"target_entity_id": "not currently available"},
                )

        if found is not None:
            target_name = found[2].name
        else:
            target_name = fallback_entity_name(mapping.entity_category, target_entity_id)

        definition = self.catalog.action(kind)
        now = utc_now_iso()
        execution = ExplorationExecution(
            id=str(uuid.uuid4()),
            session_id=session_id,
            character_id=character_id,
            target_entity_id=target_entity_id,
            target_entity_name=target_name,
            mapping_id=mapping.id if mapping is not None else None,
            action_type=kind,
            action_description=(custom_description or "").strip() or definition.label,
            requires_input=definition.requires_input,
            phase=ExplorationPhase.STARTED,
            initiated_at=now,
            updated_at=now,
        )
        self._insert(execution)
        logger.info(
            "Exploration %s started: %s %s -> %s (session=%s)",
            execution.id, character_id, kind.value, target_entity_id, session_id,
        )
        return execution

    def present_exploration_action(self, execution_id: str) -> ExplorationExecution:
        """Describe the situation and move to awaiting_input, or straight to the skill check."""
        execution = self.get_execution(execution_id)
        target = (
            ExplorationPhase.AWAITING_INPUT if execution.requires_input else ExplorationPhase.SKILL_CHECK_PENDING
        )
        source = check_transition(execution, "present", target)

        label = self.catalog.action(execution.action_type).label
        updates: dict[str, Any] = {
            "phase": target,
            "initial_description": self.narrator.initial_description(execution, label),
            "updated_at": utc_now_iso(),
        }
        if target is ExplorationPhase.SKILL_CHECK_PENDING:
            updates["skill_check"] = self._default_skill_check(execution)
        presented = execution.model_copy(update=updates)
        self._save_transition(presented, source)
        logger.info("Exploration %s presented -> %s", execution_id, target.value)
        return presented

    def provide_user_input(self, execution_id: str, character_id: str, user_approach: str) -> UserInputOutcome:
        require_fields({"execution_id": execution_id, "character_id": character_id, "user_approach": user_approach})
        execution = self.get_execution(execution_id)
        self._require_character(execution, character_id)
        source = check_transition(execution, "provide_user_input", ExplorationPhase.SKILL_CHECK_PENDING)

        approach = user_approach.strip()
        now = utc_now_iso()
        updated = execution.model_copy(update={
            "phase": ExplorationPhase.SKILL_CHECK_PENDING,
            "user_approach": approach,
            "user_input_at": now,
            "skill_check": self._default_skill_check(execution),
            "updated_at": now,
        })
        self._save_transition(updated, source)

        judgment = len(approach.split()) >= self.min_approach_words
        logger.info("Exploration %s received approach (%d words, auto judgment=%s)", execution_id, len(approach.split()), judgment)
        if not judgment:
            return UserInputOutcome(execution=updated, judgment_triggered=False)
        outcome = self.execute_skill_check(execution_id, character_id)
        return UserInputOutcome(execution=outcome.execution, judgment_triggered=True, skill_check=outcome)

    def execute_skill_check(
        self,
        execution_id: str,
        character_id: str,
        skill_type: str | None = None,
        target_number: int | None = None,
        modifiers: list[SkillModifier | dict[str, Any]] | None = None,
    ) -> SkillCheckOutcome:
        require_fields({"execution_id": execution_id, "character_id": character_id})
        execution = self.get_execution(execution_id)
        self._require_character(execution, character_id)
        source = check_transition(execution, "execute_skill_check", ExplorationPhase.RESOLVED)

        default = execution.skill_check or self._default_skill_check(execution)
        try:
            check = SkillCheck(
                skill_type=skill_type or default.skill_type,
                target_number=target_number if target_number is not None else default.target_number,
                difficulty=default.difficulty if target_number is None else None,
                modifiers=[
                    m if isinstance(m, SkillModifier) else SkillModifier.model_validate(m)
                    for m in (modifiers if modifiers is not None else default.modifiers)
                ],
            )
        except PydanticValidationError as e:
            details = {".".join(str(p) for p in err.get("loc", ())): err.get("msg", "invalid") for err in e.errors()}
            raise ValidationError("Invalid skill check", details=details) from None

        resolved = resolve_check(
            CheckConfig(skill=check.skill_type, dc=check.target_number, modifiers=tuple(check.modifiers)),
            self.rng,
        )
        roll: DiceRoll = resolved.roll
        discoveries = [execution.target_entity_id] if resolved.success and execution.mapping_id else []
        narration = self.narrator.resolution(execution, resolved.outcome, resolved.success)

        now = utc_now_iso()
        final = execution.model_copy(update={
            "phase": ExplorationPhase.RESOLVED,
            "skill_check": check,
            "dice_roll": roll,
            "result": ExplorationOutcome(
                outcome=resolved.outcome,
                success=resolved.success,
                narration=narration,
                discoveries=discoveries,
            ),
            "resolved_at": now,
            "updated_at": now,
        })
        self._save_transition(final, source)

        if discoveries:
            mark_discovered(self.conn, execution.mapping_id)
            pool = get_entity_pool(self.conn, execution.session_id)
            found = pool.find_entity(execution.target_entity_id) if pool is not None else None
            if found is not None and found[0] is EntityType.CORE and found[2].milestone_id:
                record_milestone_completions(
                    self.conn, execution.session_id, [found[2].milestone_id], execution.character_id
                )

        sign = f"+{roll.modifier}" if roll.modifier > 0 else (str(roll.modifier) if roll.modifier else "")
        message = (
            f"{check.skill_type} check: {roll.result}{sign} = {roll.total} "
            f"(target {check.target_number}) -> {'success' if resolved.success else 'failure'}"
        )
        logger.info("Exploration %s resolved: %s", execution_id, message)
        return SkillCheckOutcome(execution=final, dice_roll=roll, result=final.result, result_message=message)


def reap_expired_executions(conn: Any, ttl_seconds: int | None = None, now: datetime | None = None) -> int:
    """Delete unresolved executions idle longer than the TTL; returns how many were removed."""
    if ttl_seconds is None:
        from backend.app.config import EXPLORATION_EXECUTION_TTL_SECONDS
        ttl_seconds = EXPLORATION_EXECUTION_TTL_SECONDS
    if ttl_seconds < 0:
        raise ValidationError("ttl_seconds must not be negative", details={"ttl_seconds": "must be >= 0"})
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(seconds=ttl_seconds)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)

    try:
        rows = conn.execute(
            "SELECT id, updated_at FROM exploration_executions WHERE phase != ?",
            (ExplorationPhase.RESOLVED.value,),
        ).fetchall()
        expired = [(r["id"],) for r in rows if (_parse_ts(r["updated_at"]) or cutoff) < cutoff]
        if expired:
            conn.executemany(
                "DELETE FROM exploration_executions WHERE id = ? AND phase != 'resolved'",
                expired,
            )
            conn.commit()
    except sqlite3.Error as e:
        conn.rollback()
        raise DatabaseError("Failed to reap exploration executions", cause=e) from e

    if expired:
        logger.info("Reaped %d exploration execution(s) idle for more than %ds", len(expired), ttl_seconds)
    return len(expired)
