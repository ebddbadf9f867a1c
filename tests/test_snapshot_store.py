"""Tests for the snapshot cache and regeneration lock."""

from datetime import timedelta

import pytest

from decision_orchestrator.cache.snapshot_store import (
    LockStatus,
    SnapshotStatus,
    SnapshotStore,
    extract_topic_id,
    hash_inputs,
    is_default_input,
)
from decision_orchestrator.storage.kv import KeyValueStore, StoreUnavailable
from decision_orchestrator.timeutil import utcnow

from factories import make_envelope

RESPONSE = {"decision_id": "dec_1", "output": {"type": "decision"}, "metadata": {"cached": False}}


@pytest.fixture
def store():
    return SnapshotStore(KeyValueStore(), snapshot_ttl_hours=24, lock_ttl_seconds=30, stale_grace_hours=24)


class _BrokenStore(KeyValueStore):
    def get(self, table, key):
        raise StoreUnavailable("backend down")

    def update(self, *args, **kwargs):
        raise StoreUnavailable("backend down")


class TestHelpers:
    def test_default_input(self):
        assert is_default_input(make_envelope(default_inputs=True))
        assert not is_default_input(make_envelope())

    def test_topic_id_from_scope(self):
        assert extract_topic_id(make_envelope(topic_id="bw-okavango")) == "bw-okavango"

    def test_topic_id_normalized_to_slug(self):
        for raw in ("TZ-Feb", "tz_feb", "tz-feb"):
            assert extract_topic_id(make_envelope(topic_id=raw)) == "tz-feb"

    def test_topic_id_fallback_is_stable_hash(self):
        first = extract_topic_id(make_envelope(request__scope="general"))
        second = extract_topic_id(make_envelope(request__scope="general"))
        assert first == second
        assert len(first) == 12

    def test_hash_ignores_tracking(self):
        a = make_envelope(default_inputs=True)
        b = make_envelope(default_inputs=True, tracking={"session_id": "other"})
        assert hash_inputs(a) == hash_inputs(b)

    def test_hash_changes_with_question(self):
        a = make_envelope(default_inputs=True)
        b = make_envelope(default_inputs=True, request__question="Is March too wet?")
        assert hash_inputs(a) != hash_inputs(b)


class TestSnapshots:
    def test_miss_when_empty(self, store):
        assert store.get_snapshot("tz-feb", "h1").status == SnapshotStatus.MISS

    def test_store_then_hit(self, store):
        lock = store.acquire_lock("tz-feb")
        assert store.store_snapshot("tz-feb", RESPONSE, "h1", lock.lock_id)

        result = store.get_snapshot("tz-feb", "h1")
        assert result.status == SnapshotStatus.HIT
        assert result.response == RESPONSE
        assert result.age_seconds == 0

    def test_hash_mismatch_is_miss(self, store):
        lock = store.acquire_lock("tz-feb")
        store.store_snapshot("tz-feb", RESPONSE, "h1", lock.lock_id)
        assert store.get_snapshot("tz-feb", "h2").status == SnapshotStatus.MISS

    def test_expired_snapshot_is_stale(self, store):
        created = utcnow() - timedelta(hours=25)
        lock = store.acquire_lock("tz-feb", now=created)
        store.store_snapshot("tz-feb", RESPONSE, "h1", lock.lock_id, now=created)

        result = store.get_snapshot("tz-feb", "h1")
        assert result.status == SnapshotStatus.STALE
        assert result.age_seconds >= 25 * 3600

    def test_locked_topic(self, store):
        store.acquire_lock("tz-feb")
        result = store.get_snapshot("tz-feb", "h1")
        assert result.status == SnapshotStatus.LOCKED
        assert 0 < result.retry_after_seconds <= 30

    def test_read_failure_is_miss(self):
        store = SnapshotStore(_BrokenStore())
        assert store.get_snapshot("tz-feb", "h1").status == SnapshotStatus.MISS

    def test_invalidate(self, store):
        lock = store.acquire_lock("tz-feb")
        store.store_snapshot("tz-feb", RESPONSE, "h1", lock.lock_id)
        assert store.invalidate_snapshot("tz-feb") is True
        assert store.get_snapshot("tz-feb", "h1").status == SnapshotStatus.MISS


class TestLocks:
    def test_second_acquire_is_locked(self, store):
        assert store.acquire_lock("tz-feb").status == LockStatus.ACQUIRED
        assert store.acquire_lock("tz-feb").status == LockStatus.LOCKED

    def test_expired_lock_can_be_taken(self, store):
        store.acquire_lock("tz-feb", now=utcnow() - timedelta(seconds=31))
        assert store.acquire_lock("tz-feb").status == LockStatus.ACQUIRED

    def test_release_only_own_lock(self, store):
        lock = store.acquire_lock("tz-feb")
        assert store.release_lock("tz-feb", "lock_other") is False
        assert store.release_lock("tz-feb", lock.lock_id) is True
        assert store.acquire_lock("tz-feb").status == LockStatus.ACQUIRED

    def test_store_requires_own_lock(self, store):
        store.acquire_lock("tz-feb", now=utcnow() - timedelta(seconds=31))
        current = store.acquire_lock("tz-feb")
        assert store.store_snapshot("tz-feb", RESPONSE, "h1", "lock_stale") is False
        assert store.store_snapshot("tz-feb", RESPONSE, "h1", current.lock_id) is True

    def test_release_keeps_stale_snapshot(self, store):
        created = utcnow() - timedelta(hours=25)
        lock = store.acquire_lock("tz-feb", now=created)
        store.store_snapshot("tz-feb", RESPONSE, "h1", lock.lock_id, now=created)

        refresh = store.acquire_lock("tz-feb")
        store.release_lock("tz-feb", refresh.lock_id)
        assert store.get_snapshot("tz-feb", "h1").status == SnapshotStatus.STALE

    def test_backend_failure_is_unavailable(self):
        store = SnapshotStore(_BrokenStore())
        assert store.acquire_lock("tz-feb").status == LockStatus.UNAVAILABLE


class TestLease:
    def test_lease_releases_on_exit(self, store):
        with store.lease("tz-feb") as lease:
            assert lease.held
            assert store.acquire_lock("tz-feb").status == LockStatus.LOCKED
        assert not lease.held
        assert store.acquire_lock("tz-feb").status == LockStatus.ACQUIRED

    def test_lease_releases_on_exception(self, store):
        with pytest.raises(RuntimeError):
            with store.lease("tz-feb"):
                raise RuntimeError("pipeline failed")
        assert store.acquire_lock("tz-feb").status == LockStatus.ACQUIRED

    def test_commit_stores_and_frees(self, store):
        with store.lease("tz-feb") as lease:
            assert lease.commit(RESPONSE, "h1")
            assert lease.release() is False
        assert store.get_snapshot("tz-feb", "h1").status == SnapshotStatus.HIT

    def test_contended_lease_not_held(self, store):
        store.acquire_lock("tz-feb")
        with store.lease("tz-feb") as lease:
            assert lease.status == LockStatus.LOCKED
            assert not lease.held
            assert lease.commit(RESPONSE, "h1") is False
