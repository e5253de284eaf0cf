"""Data models for t9s."""

from .schemas import (
    CACHE_SCHEMA_VERSION,
    ENTITY_TYPES,
    Build,
    BuildConfiguration,
    BuildStatus,
    CacheEntry,
    CacheMeta,
    CacheRecord,
    Entity,
    EntityKind,
    Freshness,
    Project,
    ScopeRecord,
    utcnow,
)

__all__ = [
    "CACHE_SCHEMA_VERSION",
    "ENTITY_TYPES",
    "Build",
    "BuildConfiguration",
    "BuildStatus",
    "CacheEntry",
    "CacheMeta",
    "CacheRecord",
    "Entity",
    "EntityKind",
    "Freshness",
    "Project",
    "ScopeRecord",
    "utcnow",
]
