"""Persistent entity cache for t9s.

The cache is the only owner of entity data. The UI thread reads from it,
fetch workers read and write; a re-entrant lock guards the in-memory maps so
a read never observes a half-applied write.

On disk the cache is a SQLite file written through SQLModel. ``flush()``
always writes a complete new file next to the old one and renames it into
place, so a crash mid-write leaves the previous file intact.
"""

import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine, select

from t9s.errors import CacheCorruption
from t9s.models import (
    CACHE_SCHEMA_VERSION,
    ENTITY_TYPES,
    CacheEntry,
    CacheMeta,
    CacheRecord,
    Entity,
    EntityKind,
    Freshness,
    ScopeRecord,
    utcnow,
)


logger = logging.getLogger(__name__)

TABLES = [CacheRecord.__table__, ScopeRecord.__table__, CacheMeta.__table__]

DEFAULT_TTL = 3600.0

# Scope key used for the top-level project list
ROOT_SCOPE = ""

# (kind, scope id); ``None`` as the whole argument means everything
Scope = tuple[EntityKind, str]


def _to_timestamp(value: datetime) -> float:
    return value.timestamp()


def _from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _engine_for(path: Path):
    return create_engine(f"sqlite:///{path}", echo=False)


class CacheStore:
    """Entity cache keyed by ``(kind, id)`` with ordered per-scope listings."""

    def __init__(
        self,
        path: Optional[Path] = None,
        ttls: Optional[dict[EntityKind, float]] = None,
        default_ttl: float = DEFAULT_TTL,
    ) -> None:
        """Create an empty store.

        Args:
            path: Cache file; None keeps the store in memory only.
            ttls: Per-kind staleness TTL in seconds.
            default_ttl: TTL for kinds missing from ``ttls``.
        """
        self.path = Path(path) if path else None
        self.default_ttl = default_ttl
        self.ttls = dict(ttls or {})
        self._entries: dict[tuple[EntityKind, str], CacheEntry] = {}
        self._scopes: dict[Scope, tuple[tuple[str, ...], datetime]] = {}
        self._lock = threading.RLock()
        self._flush_lock = threading.Lock()
        self.cold_start = True

    @classmethod
    def load(
        cls,
        path: Path,
        ttls: Optional[dict[EntityKind, float]] = None,
        default_ttl: float = DEFAULT_TTL,
    ) -> "CacheStore":
        """Load a store from disk.

        A missing, unreadable or incompatible file yields an empty store;
        the problem is logged and never raised.
        """
        store = cls(path, ttls=ttls, default_ttl=default_ttl)
        path = Path(path)
        if not path.exists():
            logger.info("No cache at %s, cold start", path)
            return store

        engine = _engine_for(path)
        try:
            with Session(engine) as session:
                meta = {m.key: m.value for m in session.exec(select(CacheMeta)).all()}
                version = int(meta.get("schema_version", "-1"))
                if version != CACHE_SCHEMA_VERSION:
                    logger.info(
                        "Cache schema %s != %s, cold start", version, CACHE_SCHEMA_VERSION
                    )
                    return store
                entries = {}
                for record in session.exec(select(CacheRecord)).all():
                    kind = EntityKind(record.kind)
                    entity = ENTITY_TYPES[kind].model_validate_json(record.payload)
                    entries[(kind, record.entity_id)] = CacheEntry(
                        entity=entity,
                        fetched_at=_from_timestamp(record.fetched_at),
                        ttl_hint=record.ttl,
                    )
                scopes = {}
                for record in session.exec(select(ScopeRecord)).all():
                    ids = json.loads(record.ids)
                    if not isinstance(ids, list):
                        raise CacheCorruption(f"Bad scope list for {record.kind}:{record.scope}")
                    scopes[(EntityKind(record.kind), record.scope)] = (
                        tuple(str(i) for i in ids),
                        _from_timestamp(record.fetched_at),
                    )
        except (SQLAlchemyError, CacheCorruption, ValueError, KeyError, TypeError) as e:
            logger.warning("Cache at %s is corrupt (%s), cold start", path, e)
            return store
        finally:
            engine.dispose()

        store._entries = entries
        store._scopes = scopes
        store.cold_start = False
        logger.info("Loaded %d cached entities from %s", len(entries), path)
        return store

    def ttl_for(self, kind: EntityKind) -> float:
        return self.ttls.get(kind, self.default_ttl)

    def get(self, kind: EntityKind, entity_id: str) -> Optional[CacheEntry]:
        """Return the cached entry or None."""
        with self._lock:
            return self._entries.get((kind, entity_id))

    def get_entity(self, kind: EntityKind, entity_id: str) -> Optional[Entity]:
        entry = self.get(kind, entity_id)
        return entry.entity if entry else None

    def put(
        self,
        kind: EntityKind,
        entity_id: str,
        entity: Entity,
        fetched_at: Optional[datetime] = None,
    ) -> CacheEntry:
        """Insert or replace an entity (last write wins)."""
        expected = ENTITY_TYPES[kind]
        if not isinstance(entity, expected):
            raise TypeError(f"Expected {expected.__name__} for {kind.value}, got {type(entity).__name__}")
        if entity.id != entity_id:
            raise ValueError(f"Entity id {entity.id!r} does not match key {entity_id!r}")
        entry = CacheEntry(
            entity=entity,
            fetched_at=fetched_at or utcnow(),
            ttl_hint=self.ttl_for(kind),
        )
        with self._lock:
            self._entries[(kind, entity_id)] = entry
        return entry

    def put_many(
        self,
        kind: EntityKind,
        entities: Iterable[Entity],
        fetched_at: Optional[datetime] = None,
    ) -> None:
        fetched_at = fetched_at or utcnow()
        with self._lock:
            for entity in entities:
                self.put(kind, entity.id, entity, fetched_at)

    def remove(self, kind: EntityKind, entity_id: str) -> bool:
        """Prune an entity, its listing memberships and its child listing."""
        with self._lock:
            removed = self._entries.pop((kind, entity_id), None) is not None
            for key, (ids, fetched_at) in list(self._scopes.items()):
                if key[0] is kind and entity_id in ids:
                    self._scopes[key] = (tuple(i for i in ids if i != entity_id), fetched_at)
            child = _child_scope(kind, entity_id)
            if child is not None:
                self._clear_scope(child)
        return removed

    def list_ids(self, kind: EntityKind, scope: Optional[str] = None) -> tuple[str, ...]:
        """Ordered ids of a listing, skipping ids whose entity is gone."""
        with self._lock:
            listed = self._scopes.get((kind, scope or ROOT_SCOPE))
            if listed is None:
                return ()
            return tuple(i for i in listed[0] if (kind, i) in self._entries)

    def set_scope(
        self,
        kind: EntityKind,
        scope: Optional[str],
        ids: Iterable[str],
        fetched_at: Optional[datetime] = None,
        prune: bool = False,
    ) -> None:
        """Replace the ordered listing of a scope.

        With ``prune``, entities that dropped out of the listing and are
        not listed by any other scope are evicted.
        """
        key = (kind, scope or ROOT_SCOPE)
        listed = tuple(dict.fromkeys(ids))
        with self._lock:
            previous = self._scopes.get(key, ((), None))[0]
            self._scopes[key] = (listed, fetched_at or utcnow())
            if not prune:
                return
            evicted = 0
            for entity_id in set(previous) - set(listed):
                if self._is_listed(kind, entity_id):
                    continue
                if self._entries.pop((kind, entity_id), None) is not None:
                    evicted += 1
                child = _child_scope(kind, entity_id)
                if child is not None:
                    self._clear_scope(child)
            if evicted:
                logger.debug("Evicted %d unlisted %s entities", evicted, kind.value)

    def _is_listed(self, kind: EntityKind, entity_id: str) -> bool:
        return any(k[0] is kind and entity_id in ids for k, (ids, _) in self._scopes.items())

    def extend_scope(
        self,
        kind: EntityKind,
        scope: Optional[str],
        ids: Iterable[str],
        fetched_at: Optional[datetime] = None,
    ) -> None:
        """Append ids to a scope listing, keeping existing order."""
        key = (kind, scope or ROOT_SCOPE)
        with self._lock:
            current = self._scopes.get(key, ((), None))[0]
            self._scopes[key] = (
                tuple(dict.fromkeys([*current, *ids])),
                fetched_at or utcnow(),
            )

    def has_scope(self, kind: EntityKind, scope: Optional[str] = None) -> bool:
        with self._lock:
            return (kind, scope or ROOT_SCOPE) in self._scopes

    def freshness(
        self,
        kind: EntityKind,
        scope: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Freshness:
        """Freshness of a listing: drives opportunistic background refresh."""
        with self._lock:
            listed = self._scopes.get((kind, scope or ROOT_SCOPE))
        if listed is None:
            return Freshness.MISSING
        age = ((now or utcnow()) - listed[1]).total_seconds()
        if age > self.ttl_for(kind):
            return Freshness.STALE
        return Freshness.FRESH

    def clear(self, scope: Optional[Scope] = None) -> None:
        """Drop everything, or one listing together with its entities."""
        with self._lock:
            if scope is None:
                self._entries.clear()
                self._scopes.clear()
                return
            self._clear_scope(scope)

    def _clear_scope(self, scope: Scope) -> None:
        kind, scope_id = scope
        listed = self._scopes.pop((kind, scope_id), None)
        if listed is None:
            return
        for entity_id in listed[0]:
            self._entries.pop((kind, entity_id), None)
            child = _child_scope(kind, entity_id)
            if child is not None:
                self._clear_scope(child)

    def flush(self, wait: bool = True) -> bool:
        """Persist the store atomically.

        Args:
            wait: Block behind a flush already running on another thread.
                When False, such a flush is left to finish on its own.

        Returns:
            True when the file was written, False on failure (logged) or
            when skipped.
        """
        if self.path is None:
            return True
        if not self._flush_lock.acquire(blocking=wait):
            logger.debug("Flush already running, skipped")
            return False
        try:
            with self._lock:
                entries = list(self._entries.items())
                scopes = list(self._scopes.items())
            try:
                self._write(entries, scopes)
            except (SQLAlchemyError, OSError) as e:
                logger.warning("Failed to save cache to %s: %s", self.path, e)
                return False
        finally:
            self._flush_lock.release()
        logger.debug("Flushed %d entities to %s", len(entries), self.path)
        return True

    def _write(self, entries, scopes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        os.close(fd)
        tmp_path = Path(tmp_name)
        engine = _engine_for(tmp_path)
        try:
            SQLModel.metadata.create_all(engine, tables=TABLES)
            with Session(engine) as session:
                session.add(CacheMeta(key="schema_version", value=str(CACHE_SCHEMA_VERSION)))
                for (kind, entity_id), entry in entries:
                    session.add(
                        CacheRecord(
                            kind=kind.value,
                            entity_id=entity_id,
                            payload=entry.entity.model_dump_json(),
                            fetched_at=_to_timestamp(entry.fetched_at),
                            ttl=entry.ttl_hint,
                        )
                    )
                for (kind, scope_id), (ids, fetched_at) in scopes:
                    session.add(
                        ScopeRecord(
                            kind=kind.value,
                            scope=scope_id,
                            ids=json.dumps(list(ids)),
                            fetched_at=_to_timestamp(fetched_at),
                        )
                    )
                session.commit()
            engine.dispose()
            os.replace(tmp_path, self.path)
        except BaseException:
            engine.dispose()
            tmp_path.unlink(missing_ok=True)
            raise

    def stats(self) -> dict[str, Any]:
        """Entity counts per kind and file size, for ``t9s cache info``."""
        with self._lock:
            counts = {kind.value: 0 for kind in EntityKind}
            for kind, _ in self._entries:
                counts[kind.value] += 1
            scope_count = len(self._scopes)
        size = self.path.stat().st_size if self.path and self.path.exists() else 0
        return {
            "path": str(self.path) if self.path else None,
            "entities": counts,
            "scopes": scope_count,
            "size": size,
        }

    def snapshot(self) -> dict[str, Any]:
        """Plain-data copy of the whole cache, for ``t9s cache dump``."""
        with self._lock:
            entries = list(self._entries.items())
            scopes = list(self._scopes.items())
        data: dict[str, Any] = {kind.value: [] for kind in EntityKind}
        for (kind, _), entry in entries:
            item = entry.entity.model_dump(mode="json")
            item["fetched_at"] = entry.fetched_at.isoformat()
            item["stale"] = entry.is_stale
            data[kind.value].append(item)
        data["scopes"] = [
            {"kind": kind.value, "scope": scope_id, "ids": list(ids)}
            for (kind, scope_id), (ids, _) in scopes
        ]
        return data


def _child_scope(kind: EntityKind, entity_id: str) -> Optional[Scope]:
    """The listing owned by an entity: a project's configs, a config's builds."""
    if kind is EntityKind.PROJECT:
        return (EntityKind.BUILD_CONFIG, entity_id)
    if kind is EntityKind.BUILD_CONFIG:
        return (EntityKind.BUILD, entity_id)
    return None
