"""Application models (entity pools, location mappings, exploration executions, progress views)."""
from .entity_pool import (
    EntityCategory,
    EntityPool,
    EntityType,
    PoolCollection,
    PoolEntity,
)
from .exploration import (
    ExplorationActionType,
    ExplorationExecution,
    ExplorationPhase,
)
from .location_mapping import (
    ExplorationIntensity,
    ExplorationResult,
    LocationEntityMapping,
)
from .progress import (
    CampaignCompletion,
    MaskedProgressInfo,
    MilestoneProgress,
)

__all__ = [
    "EntityCategory",
    "EntityPool",
    "EntityType",
    "PoolCollection",
    "PoolEntity",
    "ExplorationActionType",
    "ExplorationExecution",
    "ExplorationPhase",
    "ExplorationIntensity",
    "ExplorationResult",
    "LocationEntityMapping",
    "CampaignCompletion",
    "MaskedProgressInfo",
    "MilestoneProgress",
]
