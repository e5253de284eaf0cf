"""Tests for the t9s cache store."""

import os
from datetime import timedelta

import pytest
from sqlmodel import Session, create_engine

from t9s.cache import CacheStore
from t9s.models import CacheMeta, EntityKind, Freshness, utcnow

from conftest import make_build, make_config, make_project


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "cache.db"


@pytest.fixture
def populated(cache_path) -> CacheStore:
    """A disk-backed store holding one project, config and build."""
    store = CacheStore(cache_path)
    store.put(EntityKind.PROJECT, "P1", make_project("P1", "Alpha"))
    store.set_scope(EntityKind.PROJECT, None, ["P1"])
    store.put(EntityKind.BUILD_CONFIG, "P1_Build", make_config("P1_Build", "Build", "P1"))
    store.set_scope(EntityKind.BUILD_CONFIG, "P1", ["P1_Build"])
    store.put(EntityKind.BUILD, "7", make_build("7", "P1_Build"))
    store.set_scope(EntityKind.BUILD, "P1_Build", ["7"])
    return store


class TestPutGet:
    """Tests for entity reads and writes."""

    def test_get_missing(self, cache: CacheStore) -> None:
        """Test reading an unknown key returns None."""
        assert cache.get(EntityKind.PROJECT, "nope") is None

    def test_last_write_wins(self, cache: CacheStore) -> None:
        """Test a second put replaces the whole entity."""
        cache.put(EntityKind.PROJECT, "P1", make_project("P1", "Alpha"))
        cache.put(EntityKind.PROJECT, "P1", make_project("P1", "Alpha 2"))
        assert cache.get_entity(EntityKind.PROJECT, "P1").name == "Alpha 2"

    def test_put_rejects_wrong_type(self, cache: CacheStore) -> None:
        """Test entities must match their kind."""
        with pytest.raises(TypeError):
            cache.put(EntityKind.BUILD, "P1", make_project("P1", "Alpha"))

    def test_put_rejects_mismatched_id(self, cache: CacheStore) -> None:
        """Test the key must equal the entity id."""
        with pytest.raises(ValueError):
            cache.put(EntityKind.PROJECT, "P2", make_project("P1", "Alpha"))

    def test_ttl_per_kind(self) -> None:
        """Test entries carry the TTL of their kind."""
        store = CacheStore(ttls={EntityKind.BUILD: 60.0}, default_ttl=3600.0)
        entry = store.put(EntityKind.BUILD, "1", make_build("1", "C"))
        assert entry.ttl_hint == 60.0
        assert store.ttl_for(EntityKind.PROJECT) == 3600.0


class TestScopes:
    """Tests for ordered listings."""

    def test_list_ids_keeps_order(self, cache: CacheStore) -> None:
        """Test listings come back in the stored order."""
        for pid, name in (("P2", "Beta"), ("P1", "Alpha")):
            cache.put(EntityKind.PROJECT, pid, make_project(pid, name))
        cache.set_scope(EntityKind.PROJECT, None, ["P2", "P1"])
        assert cache.list_ids(EntityKind.PROJECT) == ("P2", "P1")

    def test_list_ids_skips_missing_entities(self, cache: CacheStore) -> None:
        """Test ids without a cached entity are not listed."""
        cache.put(EntityKind.PROJECT, "P1", make_project("P1", "Alpha"))
        cache.set_scope(EntityKind.PROJECT, None, ["P1", "ghost"])
        assert cache.list_ids(EntityKind.PROJECT) == ("P1",)

    def test_extend_scope_dedups(self, cache: CacheStore) -> None:
        """Test appending a page never duplicates ids."""
        for bid in ("3", "2", "1"):
            cache.put(EntityKind.BUILD, bid, make_build(bid, "C"))
        cache.set_scope(EntityKind.BUILD, "C", ["3", "2"])
        cache.extend_scope(EntityKind.BUILD, "C", ["2", "1"])
        assert cache.list_ids(EntityKind.BUILD, "C") == ("3", "2", "1")

    def test_freshness(self, cache: CacheStore) -> None:
        """Test listings go from missing to fresh to stale."""
        assert cache.freshness(EntityKind.PROJECT) is Freshness.MISSING
        now = utcnow()
        cache.set_scope(EntityKind.PROJECT, None, [], now)
        assert cache.freshness(EntityKind.PROJECT, now=now) is Freshness.FRESH
        later = now + timedelta(seconds=cache.ttl_for(EntityKind.PROJECT) + 1)
        assert cache.freshness(EntityKind.PROJECT, now=later) is Freshness.STALE

    def test_remove_prunes_listings_and_children(self, populated: CacheStore) -> None:
        """Test removing a project drops it and its configuration listing."""
        assert populated.remove(EntityKind.PROJECT, "P1") is True
        assert populated.list_ids(EntityKind.PROJECT) == ()
        assert not populated.has_scope(EntityKind.BUILD_CONFIG, "P1")
        assert populated.get(EntityKind.BUILD_CONFIG, "P1_Build") is None
        assert not populated.has_scope(EntityKind.BUILD, "P1_Build")

    def test_set_scope_keeps_dropped_entities(self, cache: CacheStore) -> None:
        """Test a plain listing replacement leaves entities in place."""
        cache.put(EntityKind.BUILD, "1", make_build("1", "C"))
        cache.set_scope(EntityKind.BUILD, "C", ["1"])
        cache.set_scope(EntityKind.BUILD, "C", [])
        assert cache.get(EntityKind.BUILD, "1") is not None

    def test_set_scope_prune(self, populated: CacheStore) -> None:
        """Test pruning evicts dropped entities and the listings they own."""
        populated.set_scope(EntityKind.BUILD_CONFIG, "P1", [], prune=True)
        assert populated.get(EntityKind.BUILD_CONFIG, "P1_Build") is None
        assert not populated.has_scope(EntityKind.BUILD, "P1_Build")
        assert populated.get(EntityKind.BUILD, "7") is None
        assert populated.list_ids(EntityKind.PROJECT) == ("P1",)

    def test_set_scope_prune_keeps_entities_listed_elsewhere(self, populated: CacheStore) -> None:
        """Test an entity still listed by another scope survives pruning."""
        populated.set_scope(EntityKind.BUILD_CONFIG, "P1_Sub", ["P1_Build"])
        populated.set_scope(EntityKind.BUILD_CONFIG, "P1", [], prune=True)
        assert populated.list_ids(EntityKind.BUILD_CONFIG, "P1_Sub") == ("P1_Build",)
        assert populated.list_ids(EntityKind.BUILD, "P1_Build") == ("7",)

    def test_clear_all(self, populated: CacheStore) -> None:
        """Test clearing without a scope empties the store."""
        populated.clear()
        assert populated.stats()["entities"] == {"project": 0, "build_config": 0, "build": 0}
        assert not populated.has_scope(EntityKind.PROJECT)

    def test_clear_scope(self, populated: CacheStore) -> None:
        """Test clearing one listing leaves its parents alone."""
        populated.clear((EntityKind.BUILD_CONFIG, "P1"))
        assert populated.list_ids(EntityKind.PROJECT) == ("P1",)
        assert populated.get(EntityKind.BUILD_CONFIG, "P1_Build") is None
        assert populated.get(EntityKind.BUILD, "7") is None


class TestPersistence:
    """Tests for flush and load."""

    def test_round_trip_is_byte_identical(self, populated: CacheStore, cache_path) -> None:
        """Test entities survive a flush/load cycle unchanged."""
        assert populated.flush() is True
        loaded = CacheStore.load(cache_path)

        assert loaded.cold_start is False
        for kind, entity_id in (
            (EntityKind.PROJECT, "P1"),
            (EntityKind.BUILD_CONFIG, "P1_Build"),
            (EntityKind.BUILD, "7"),
        ):
            before = populated.get(kind, entity_id)
            after = loaded.get(kind, entity_id)
            assert after.entity.model_dump_json() == before.entity.model_dump_json()
            assert after.fetched_at == before.fetched_at
        assert loaded.list_ids(EntityKind.BUILD, "P1_Build") == ("7",)

    def test_missing_file_is_cold_start(self, cache_path) -> None:
        """Test loading a nonexistent file yields an empty store."""
        store = CacheStore.load(cache_path)
        assert store.cold_start is True
        assert store.list_ids(EntityKind.PROJECT) == ()

    def test_corrupt_file_is_cold_start(self, cache_path) -> None:
        """Test garbage on disk is treated as an empty cache."""
        cache_path.write_bytes(b"this is not a sqlite database" * 100)
        store = CacheStore.load(cache_path)
        assert store.cold_start is True
        assert store.list_ids(EntityKind.PROJECT) == ()

    def test_schema_mismatch_is_cold_start(self, populated: CacheStore, cache_path) -> None:
        """Test a cache written by another schema version is ignored."""
        populated.flush()
        engine = create_engine(f"sqlite:///{cache_path}")
        with Session(engine) as session:
            meta = session.get(CacheMeta, "schema_version")
            meta.value = "999"
            session.add(meta)
            session.commit()
        engine.dispose()

        store = CacheStore.load(cache_path)
        assert store.cold_start is True
        assert store.get(EntityKind.PROJECT, "P1") is None

    def test_flush_leaves_no_temp_files(self, populated: CacheStore, cache_path) -> None:
        """Test the temporary file is renamed into place."""
        populated.flush()
        populated.flush()
        assert sorted(os.listdir(cache_path.parent)) == ["cache.db"]

    def test_failed_flush_keeps_previous_file(self, populated: CacheStore, cache_path, monkeypatch) -> None:
        """Test a failure mid-write leaves the old cache intact."""
        populated.flush()
        before = cache_path.read_bytes()

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("t9s.cache.os.replace", broken_replace)
        populated.put(EntityKind.PROJECT, "P9", make_project("P9", "Late"))
        assert populated.flush() is False
        assert cache_path.read_bytes() == before
        assert sorted(os.listdir(cache_path.parent)) == ["cache.db"]

    def test_flush_without_wait_skips_running_flush(self, populated: CacheStore, cache_path) -> None:
        """Test a non-waiting flush returns at once while another is writing."""
        populated._flush_lock.acquire()
        try:
            assert populated.flush(wait=False) is False
        finally:
            populated._flush_lock.release()
        assert not cache_path.exists()
        assert populated.flush(wait=False) is True
        assert cache_path.exists()

    def test_memory_store_flush_is_noop(self, cache: CacheStore) -> None:
        """Test a store without a path reports success."""
        assert cache.flush() is True


class TestInspection:
    """Tests for stats and snapshot."""

    def test_stats(self, populated: CacheStore, cache_path) -> None:
        """Test stats count entities per kind."""
        populated.flush()
        stats = populated.stats()
        assert stats["entities"] == {"project": 1, "build_config": 1, "build": 1}
        assert stats["scopes"] == 3
        assert stats["size"] > 0
        assert stats["path"] == str(cache_path)

    def test_snapshot(self, populated: CacheStore) -> None:
        """Test snapshot returns plain data for every kind."""
        data = populated.snapshot()
        assert [p["name"] for p in data["project"]] == ["Alpha"]
        assert data["build"][0]["status"] == "success"
        assert {"kind": "project", "scope": "", "ids": ["P1"]} in data["scopes"]
