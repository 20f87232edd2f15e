"""Core engine: entity pool store, location mappings, exploration state machine, progress and masking."""
from .entity_pool_store import get_entity_pool, create_entity_pool_if_absent, upsert_entity, remove_entity, bulk_remove_entities
from .location_entities import create_mappings, mark_discovered, update_dynamic_availability, explore_location
from .exploration_actions import ExplorationActionService, reap_expired_executions
from .milestone_progress import compute_progress, compute_campaign_completion
from .player_experience import get_masked_progress_info, filter_player_visible_content

__all__ = [
    "get_entity_pool",
    "create_entity_pool_if_absent",
    "upsert_entity",
    "remove_entity",
    "bulk_remove_entities",
    "create_mappings",
    "mark_discovered",
    "update_dynamic_availability",
    "explore_location",
    "ExplorationActionService",
    "reap_expired_executions",
    "compute_progress",
    "compute_campaign_completion",
    "get_masked_progress_info",
    "filter_player_visible_content",
]
