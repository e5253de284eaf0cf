"""Entity and cache schemas for t9s.

Entities are immutable pydantic models: the cache owns them and everything
else refers to them by id. Unknown fields are ignored when decoding so that
a cache written by a newer version still loads.

The ``CacheRecord``/``ScopeRecord``/``CacheMeta`` tables are the durable
layout of the cache file.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict
from sqlmodel import Field, SQLModel


# Bump when the payload of an entity changes incompatibly; a mismatch
# triggers a cold start instead of a decode error.
CACHE_SCHEMA_VERSION = 1


def utcnow() -> datetime:
    """Get current UTC time."""
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    """Kinds of entity held in the cache."""

    PROJECT = "project"
    BUILD_CONFIG = "build_config"
    BUILD = "build"


class BuildStatus(str, Enum):
    """Status of a single build."""

    SUCCESS = "success"
    FAILURE = "failure"
    RUNNING = "running"
    QUEUED = "queued"
    UNKNOWN = "unknown"

    @property
    def is_failed(self) -> bool:
        """Failed and unknown builds are highlighted in lists."""
        return self in (BuildStatus.FAILURE, BuildStatus.UNKNOWN)


class Freshness(str, Enum):
    """Freshness of a cached entry or scope."""

    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


class _Entity(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str


class Project(_Entity):
    """A TeamCity project, a node in the project tree."""

    name: str
    parent_id: Optional[str] = None
    child_project_ids: tuple[str, ...] = ()
    build_config_ids: tuple[str, ...] = ()
    description: Optional[str] = None
    web_url: Optional[str] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class BuildConfiguration(_Entity):
    """A build configuration ("build type" in TeamCity terms)."""

    name: str
    project_id: str
    project_name: Optional[str] = None
    description: Optional[str] = None
    web_url: Optional[str] = None


class Build(_Entity):
    """One execution of a build configuration."""

    build_config_id: str
    status: BuildStatus = BuildStatus.UNKNOWN
    web_url: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    log_available: bool = False
    number: Optional[str] = None
    branch_name: Optional[str] = None
    status_text: Optional[str] = None


Entity = Union[Project, BuildConfiguration, Build]

ENTITY_TYPES: dict[EntityKind, type[BaseModel]] = {
    EntityKind.PROJECT: Project,
    EntityKind.BUILD_CONFIG: BuildConfiguration,
    EntityKind.BUILD: Build,
}


@dataclass(frozen=True)
class CacheEntry:
    """An entity together with the time it was fetched."""

    entity: Entity
    fetched_at: datetime
    ttl_hint: float

    def age(self, now: Optional[datetime] = None) -> float:
        """Age of the entry in seconds."""
        now = now or utcnow()
        return (now - self.fetched_at).total_seconds()

    def freshness(self, now: Optional[datetime] = None) -> Freshness:
        """Stale entries are still served, just refreshed in the background."""
        if self.age(now) > self.ttl_hint:
            return Freshness.STALE
        return Freshness.FRESH

    @property
    def is_stale(self) -> bool:
        return self.freshness() is Freshness.STALE


class CacheRecord(SQLModel, table=True):
    """One persisted entity."""

    __tablename__ = "cache_record"

    kind: str = Field(primary_key=True)
    entity_id: str = Field(primary_key=True)
    payload: str  # JSON-encoded entity
    fetched_at: float  # unix timestamp
    ttl: float


class ScopeRecord(SQLModel, table=True):
    """Ordered id list of a listing, e.g. the builds of one configuration."""

    __tablename__ = "scope_record"

    kind: str = Field(primary_key=True)
    scope: str = Field(primary_key=True)  # "" for the top-level project list
    ids: str  # JSON array
    fetched_at: float


class CacheMeta(SQLModel, table=True):
    """Key/value metadata of the cache file."""

    __tablename__ = "cache_meta"

    key: str = Field(primary_key=True)
    value: str
