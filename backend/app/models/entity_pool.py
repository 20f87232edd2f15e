"""Entity pool models: core/bonus entities grouped into typed collections.

Collections and categories are enums; the two dispatch tables below are the
only place that maps one to the other.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Iterator

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    CORE = "core"
    BONUS = "bonus"


class EntityCategory(str, Enum):
    ENEMY = "enemy"
    EVENT = "event"
    NPC = "npc"
    ITEM = "item"
    QUEST = "quest"
    PRACTICAL = "practical"
    TROPHY = "trophy"
    MYSTERY = "mystery"


class PoolCollection(str, Enum):
    ENEMIES = "enemies"
    EVENTS = "events"
    NPCS = "npcs"
    ITEMS = "items"
    QUESTS = "quests"
    PRACTICAL_REWARDS = "practical_rewards"
    TROPHY_ITEMS = "trophy_items"
    MYSTERY_ITEMS = "mystery_items"


COLLECTION_BY_CATEGORY: dict[EntityCategory, PoolCollection] = {
    EntityCategory.ENEMY: PoolCollection.ENEMIES,
    EntityCategory.EVENT: PoolCollection.EVENTS,
    EntityCategory.NPC: PoolCollection.NPCS,
    EntityCategory.ITEM: PoolCollection.ITEMS,
    EntityCategory.QUEST: PoolCollection.QUESTS,
    EntityCategory.PRACTICAL: PoolCollection.PRACTICAL_REWARDS,
    EntityCategory.TROPHY: PoolCollection.TROPHY_ITEMS,
    EntityCategory.MYSTERY: PoolCollection.MYSTERY_ITEMS,
}

CATEGORY_BY_COLLECTION: dict[PoolCollection, EntityCategory] = {
    collection: category for category, collection in COLLECTION_BY_CATEGORY.items()
}

ENTITY_TYPE_BY_COLLECTION: dict[PoolCollection, EntityType] = {
    PoolCollection.ENEMIES: EntityType.CORE,
    PoolCollection.EVENTS: EntityType.CORE,
    PoolCollection.NPCS: EntityType.CORE,
    PoolCollection.ITEMS: EntityType.CORE,
    PoolCollection.QUESTS: EntityType.CORE,
    PoolCollection.PRACTICAL_REWARDS: EntityType.BONUS,
    PoolCollection.TROPHY_ITEMS: EntityType.BONUS,
    PoolCollection.MYSTERY_ITEMS: EntityType.BONUS,
}

# camelCase spellings used by older frontends
_COLLECTION_ALIASES = {
    "practicalRewards": PoolCollection.PRACTICAL_REWARDS,
    "trophyItems": PoolCollection.TROPHY_ITEMS,
    "mysteryItems": PoolCollection.MYSTERY_ITEMS,
    "mystery_item": PoolCollection.MYSTERY_ITEMS,
}


def parse_collection(name: str) -> PoolCollection | None:
    """Map a collection name ("enemies") or category ("enemy") to its collection."""
    if not name:
        return None
    key = str(name).strip()
    if key in _COLLECTION_ALIASES:
        return _COLLECTION_ALIASES[key]
    for collection in PoolCollection:
        if collection.value == key:
            return collection
    for category in EntityCategory:
        if category.value == key:
            return COLLECTION_BY_CATEGORY[category]
    return None


class EntityRewards(BaseModel):
    experience: int = Field(default=0, ge=0)
    items: list[str] = Field(default_factory=list)
    information: list[str] = Field(default_factory=list)


class PoolEntity(BaseModel):
    """One discoverable unit of content. Extra authored fields are kept as-is."""
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    name: str
    category: EntityCategory
    description: str = ""
    milestone_id: str | None = Field(None, description="Core entities only")
    progress_contribution: int = Field(0, ge=0, le=100, description="Core entities only; percent toward milestone")
    rewards: EntityRewards = Field(default_factory=EntityRewards)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def identity(self) -> str:
        return self.id or self.name

    def matches(self, entity_id: str) -> bool:
        return entity_id == self.id or entity_id == self.name


class CoreEntities(BaseModel):
    enemies: list[PoolEntity] = Field(default_factory=list)
    events: list[PoolEntity] = Field(default_factory=list)
    npcs: list[PoolEntity] = Field(default_factory=list)
    items: list[PoolEntity] = Field(default_factory=list)
    quests: list[PoolEntity] = Field(default_factory=list)


class BonusEntities(BaseModel):
    practical_rewards: list[PoolEntity] = Field(default_factory=list)
    trophy_items: list[PoolEntity] = Field(default_factory=list)
    mystery_items: list[PoolEntity] = Field(default_factory=list)


class EntityPool(BaseModel):
    """Per-session entity pool; persisted as one document."""
    id: str
    session_id: str
    campaign_id: str
    theme_id: str
    core_entities: CoreEntities = Field(default_factory=CoreEntities)
    bonus_entities: BonusEntities = Field(default_factory=BonusEntities)
    version: int = 0
    generated_at: str
    last_updated: str

    def collection(self, collection: PoolCollection) -> list[PoolEntity]:
        """Return the live list backing a collection (mutations stick)."""
        owner = ENTITY_TYPE_BY_COLLECTION[collection]
        if owner is EntityType.CORE:
            return getattr(self.core_entities, collection.value)
        return getattr(self.bonus_entities, collection.value)

    def iter_entities(
        self, entity_type: EntityType | None = None
    ) -> Iterator[tuple[EntityType, PoolCollection, PoolEntity]]:
        for collection in PoolCollection:
            owner = ENTITY_TYPE_BY_COLLECTION[collection]
            if entity_type is not None and owner is not entity_type:
                continue
            for entity in self.collection(collection):
                yield owner, collection, entity

    def find_entity(self, entity_id: str) -> tuple[EntityType, PoolCollection, PoolEntity] | None:
        for owner, collection, entity in self.iter_entities():
            if entity.matches(entity_id):
                return owner, collection, entity
        return None


class EntityRef(BaseModel):
    """Address of one entity inside a pool (bulk-remove item)."""
    entity_type: EntityType
    collection: str = Field(..., validation_alias=AliasChoices("collection", "category", "entity_category"))
    entity_id: str


class BulkRemoveResult(BaseModel):
    deleted_count: int
    deleted_entities: list[dict[str, Any]] = Field(default_factory=list)
