"""Milestone progress (GM-facing) and masked progress (player-facing) read models.

The player-facing models carry only fields that are safe to show. Nothing in
them can hold a milestone id, a contribution or an availability flag.
"""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from backend.app.models.entity_pool import EntityCategory


# --- GM-facing ---


class MilestoneProgress(BaseModel):
    milestone_id: str
    progress: int = Field(..., ge=0, le=100)
    contributing_entities: list[str] = Field(default_factory=list)
    discovered_entities: list[str] = Field(default_factory=list)
    is_complete: bool = False


class MilestoneCompletion(BaseModel):
    """A milestone that reached 100% in a session, recorded once."""
    session_id: str
    milestone_id: str
    campaign_id: str
    completed_by: str | None = None
    completed_at: str


class CampaignCompletion(BaseModel):
    campaign_id: str
    total_milestones: int
    completed_milestones: int
    overall_percent: int = Field(..., ge=0, le=100)
    milestones: list[MilestoneProgress] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


# --- Player-facing ---

ExplorationPhaseLabel = Literal["beginning", "exploring", "discovering", "concluding"]


class DiscoveredElement(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    category: EntityCategory
    discovered_at: str


class MaskedProgressInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    exploration_progress: int = Field(..., ge=0, le=100, description="Coarse bucket: 0/25/50/75/100")
    exploration_phase: ExplorationPhaseLabel
    available_actions: list[str] = Field(default_factory=list)
    ambiguous_hints: list[str] = Field(default_factory=list)
    atmosphere_description: str = ""
    discovered_elements: list[DiscoveredElement] = Field(default_factory=list)
