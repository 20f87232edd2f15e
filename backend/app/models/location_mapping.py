"""Location-entity mapping models and exploration results."""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from backend.app.models.entity_pool import EntityCategory, EntityType


TIME_CONDITIONS = ("any", "day_time", "night_only", "morning_only", "afternoon_only")

Rarity = Literal["common", "uncommon", "rare", "epic"]


class ExplorationIntensity(str, Enum):
    LIGHT = "light"
    THOROUGH = "thorough"
    EXHAUSTIVE = "exhaustive"


class LocationEntityMappingCreate(BaseModel):
    """One record in a create-mappings batch."""
    model_config = ConfigDict(extra="forbid")

    location_id: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    entity_type: EntityType
    entity_category: EntityCategory
    time_conditions: list[str] = Field(default_factory=list)
    prerequisite_entities: list[str] = Field(default_factory=list)
    is_available: bool = True


class LocationEntityMapping(BaseModel):
    id: str
    session_id: str
    location_id: str
    entity_id: str
    entity_type: EntityType
    entity_category: EntityCategory
    time_conditions: list[str] = Field(default_factory=list)
    prerequisite_entities: list[str] = Field(default_factory=list)
    is_available: bool = True
    discovered_at: str | None = None
    created_at: str


class EntityReference(BaseModel):
    """Mapping joined with entity metadata from the session's pool."""
    mapping_id: str
    id: str
    name: str
    type: EntityType
    category: EntityCategory
    description: str = ""
    is_available: bool
    time_conditions: list[str] = Field(default_factory=list)
    prerequisite_entities: list[str] = Field(default_factory=list)
    discovered_at: str | None = None


class TimeConditionResult(BaseModel):
    is_valid: bool
    reason: str | None = None


class PrerequisiteResult(BaseModel):
    is_valid: bool
    missing_entities: list[str] = Field(default_factory=list)
    completed_entities: list[str] = Field(default_factory=list)


class DiscoveredEntity(BaseModel):
    entity: EntityReference
    discovery_message: str
    rarity: Rarity


class ExplorationResult(BaseModel):
    success: bool = True
    location_id: str
    character_id: str
    intensity: ExplorationIntensity
    previous_exploration_level: int = Field(ge=0, le=100)
    exploration_level: int = Field(ge=0, le=100)
    discovered_entities: list[DiscoveredEntity] = Field(default_factory=list)
    time_spent: int = Field(..., description="Simulated minutes")
    encounter_chance: float = Field(..., ge=0.0, le=1.0)
    narrative_description: str = ""
    hints: list[str] = Field(default_factory=list)
    hidden_entities_remaining: int = 0
    is_fully_explored: bool = False
    # GM-only bookkeeping; the masking layer never relays this
    affected_milestones: list[str] = Field(default_factory=list)
    completed_milestones: list[str] = Field(default_factory=list)


class DiscoveredEntitySummary(BaseModel):
    id: str
    name: str
    category: EntityCategory
    discovered_at: str | None = None


class LocationExplorationStatus(BaseModel):
    location_id: str
    session_id: str
    exploration_level: int
    is_fully_explored: bool
    total_entities: int
    discovered_entities: int
    hidden_entities: int
    discovered_entity_list: list[DiscoveredEntitySummary] = Field(default_factory=list)
    exploration_hints: list[str] = Field(default_factory=list)
