"""Milestone progress derived from entity pools and discovery state.

Progress is never stored: it is recomputed from the core entities tagged
with a milestone and whether any of their mappings in the pool's session has
been discovered. Results are clamped to 0..100 so an authoring mistake
(contributions summing past 100) cannot leak into the player-facing signal.

The one thing written is a milestone_completions row, once per session, when a
discovery brings a milestone to 100%.
"""
from __future__ import annotations

import logging
import math
import sqlite3
from typing import Any, Iterable

from backend.app.core.entity_pool_store import get_entity_pool, list_campaign_pools
from backend.app.core.error_handling import DatabaseError, NotFoundError, require_fields, utc_now_iso
from backend.app.models.entity_pool import EntityPool, EntityType
from backend.app.models.progress import CampaignCompletion, MilestoneCompletion, MilestoneProgress

logger = logging.getLogger(__name__)


def _clamp(value: int) -> int:
    return max(0, min(100, int(value)))


def _discovered_ids(conn: Any, session_id: str) -> set[str]:
    try:
        rows = conn.execute(
            """SELECT DISTINCT entity_id FROM location_entity_mappings
               WHERE session_id = ? AND discovered_at IS NOT NULL""",
            (session_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError("Failed to load discovery state", {"session_id": session_id}, cause=e) from e
    return {r["entity_id"] for r in rows}


def _accumulate(
    conn: Any,
    pools: list[EntityPool],
    only_milestone: str | None = None,
) -> dict[str, dict[str, Any]]:
    """milestone_id -> {raw, contributing, discovered} summed over the given pools."""
    totals: dict[str, dict[str, Any]] = {}
    for pool in pools:
        discovered = _discovered_ids(conn, pool.session_id)
        for _, _, entity in pool.iter_entities(EntityType.CORE):
            mid = entity.milestone_id
            if not mid or (only_milestone is not None and mid != only_milestone):
                continue
            bucket = totals.setdefault(mid, {"raw": 0, "contributing": [], "discovered": []})
            bucket["contributing"].append(entity.identity)
            if entity.identity in discovered or (entity.id and entity.name in discovered):
                bucket["raw"] += entity.progress_contribution
                bucket["discovered"].append(entity.identity)
    return totals


def _to_progress(milestone_id: str, bucket: dict[str, Any]) -> MilestoneProgress:
    progress = _clamp(bucket["raw"])
    if bucket["raw"] > 100:
        logger.warning("Milestone %s contributions reached %d%%; clamped to 100", milestone_id, bucket["raw"])
    return MilestoneProgress(
        milestone_id=milestone_id,
        progress=progress,
        contributing_entities=bucket["contributing"],
        discovered_entities=bucket["discovered"],
        is_complete=progress == 100,
    )


def compute_progress(conn: Any, campaign_id: str, milestone_id: str) -> int:
    """Sum of contributions of discovered core entities tagged with the milestone, clamped."""
    require_fields({"campaign_id": campaign_id, "milestone_id": milestone_id})
    totals = _accumulate(conn, list_campaign_pools(conn, campaign_id), only_milestone=milestone_id)
    bucket = totals.get(milestone_id)
    return _clamp(bucket["raw"]) if bucket else 0


def compute_milestone(conn: Any, campaign_id: str, milestone_id: str) -> MilestoneProgress:
    require_fields({"campaign_id": campaign_id, "milestone_id": milestone_id})
    totals = _accumulate(conn, list_campaign_pools(conn, campaign_id), only_milestone=milestone_id)
    if milestone_id not in totals:
        raise NotFoundError(
            f"Milestone {milestone_id} has no entities in campaign {campaign_id}",
            {"campaign_id": campaign_id, "milestone_id": milestone_id},
        )
    return _to_progress(milestone_id, totals[milestone_id])


def compute_campaign_milestones(conn: Any, campaign_id: str) -> list[MilestoneProgress]:
    require_fields({"campaign_id": campaign_id})
    totals = _accumulate(conn, list_campaign_pools(conn, campaign_id))
    return [_to_progress(mid, totals[mid]) for mid in sorted(totals)]


def compute_session_milestones(conn: Any, session_id: str) -> list[MilestoneProgress]:
    """Per-milestone progress counting only this session's pool."""
    require_fields({"session_id": session_id})
    pool = get_entity_pool(conn, session_id)
    if pool is None:
        raise NotFoundError(f"Entity pool not found for session {session_id}", {"session_id": session_id})
    totals = _accumulate(conn, [pool])
    return [_to_progress(mid, totals[mid]) for mid in sorted(totals)]


def find_contribution_mismatches(pool: EntityPool) -> dict[str, int]:
    """Milestones whose core contributions do not add up to exactly 100."""
    sums: dict[str, int] = {}
    for _, _, entity in pool.iter_entities(EntityType.CORE):
        if entity.milestone_id:
            sums[entity.milestone_id] = sums.get(entity.milestone_id, 0) + entity.progress_contribution
    return {mid: total for mid, total in sorted(sums.items()) if total != 100}


def compute_campaign_completion(conn: Any, campaign_id: str) -> CampaignCompletion:
    require_fields({"campaign_id": campaign_id})
    pools = list_campaign_pools(conn, campaign_id)
    totals = _accumulate(conn, pools)
    milestones = [_to_progress(mid, totals[mid]) for mid in sorted(totals)]

    warnings: list[str] = []
    for pool in pools:
        for mid, total in find_contribution_mismatches(pool).items():
            warnings.append(f"Milestone {mid} contributions in session {pool.session_id} sum to {total}, expected 100")

    overall = 0
    if milestones:
        overall = int(math.floor(sum(m.progress for m in milestones) / len(milestones) + 0.5))
    return CampaignCompletion(
        campaign_id=campaign_id,
        total_milestones=len(milestones),
        completed_milestones=sum(1 for m in milestones if m.is_complete),
        overall_percent=_clamp(overall),
        milestones=milestones,
        warnings=warnings,
    )


def _row_to_completion(row: Any) -> MilestoneCompletion:
    return MilestoneCompletion(
        session_id=row["session_id"],
        milestone_id=row["milestone_id"],
        campaign_id=row["campaign_id"],
        completed_by=row["completed_by"],
        completed_at=row["completed_at"],
    )


def record_milestone_completions(
    conn: Any,
    session_id: str,
    milestone_ids: Iterable[str],
    character_id: str | None = None,
) -> list[MilestoneCompletion]:
    """Record each milestone now at 100% for the session; returns only the newly recorded ones."""
    require_fields({"session_id": session_id})
    wanted = sorted({mid for mid in milestone_ids if mid})
    if not wanted:
        return []
    pool = get_entity_pool(conn, session_id)
    if pool is None:
        return []

    recorded: list[MilestoneCompletion] = []
    for milestone_id in wanted:
        progress = compute_progress(conn, pool.campaign_id, milestone_id)
        if progress < 100:
            logger.info("Milestone %s of campaign %s now at %d%%", milestone_id, pool.campaign_id, progress)
            continue
        completion = MilestoneCompletion(
            session_id=session_id,
            milestone_id=milestone_id,
            campaign_id=pool.campaign_id,
            completed_by=character_id,
            completed_at=utc_now_iso(),
        )
        try:
            cur = conn.execute(
                """INSERT OR IGNORE INTO milestone_completions
                   (session_id, milestone_id, campaign_id, completed_by, completed_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (session_id, milestone_id, pool.campaign_id, character_id, completion.completed_at),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise DatabaseError(
                "Failed to record milestone completion",
                {"session_id": session_id, "milestone_id": milestone_id},
                cause=e,
            ) from e
        if getattr(cur, "rowcount", 0) == 1:
            logger.info("Milestone %s completed in session %s by %s", milestone_id, session_id, character_id)
            recorded.append(completion)
    return recorded


def list_milestone_completions(conn: Any, session_id: str) -> list[MilestoneCompletion]:
    require_fields({"session_id": session_id})
    try:
        rows = conn.execute(
            """SELECT session_id, milestone_id, campaign_id, completed_by, completed_at
               FROM milestone_completions WHERE session_id = ?
               ORDER BY completed_at ASC, milestone_id ASC""",
            (session_id,),
        ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError("Failed to load milestone completions", {"session_id": session_id}, cause=e) from e
    return [_row_to_completion(r) for r in rows]
