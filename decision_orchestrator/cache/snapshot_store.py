"""
Snapshot Cache & Lock — shared responses for topics evaluated with default
inputs, plus a short-lived regeneration lock per topic.

Behavioral Contract:
- Only default-input requests read or write snapshots.
- get_snapshot: a live lock wins (locked), a hash mismatch is a miss, an
  expired snapshot is stale, otherwise hit. Read errors degrade to miss.
- acquire_lock succeeds only when no live lock exists. Backend failures
  other than the condition report `unavailable` so the caller proceeds
  uncached.
- store_snapshot and release_lock are conditioned on our lock id. Their
  failures are logged and never raised.
- A lease pairs every successful acquire with exactly one store or release.
"""

import hashlib
import json
import logging
import math
import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel

from decision_orchestrator.models.envelope import (
    BudgetBand,
    DateType,
    StandardInputEnvelope,
    TravelerType,
)
from decision_orchestrator.models.records import SnapshotRecord
from decision_orchestrator.storage.kv import (
    ConditionalCheckFailed,
    KeyValueStore,
    StoreUnavailable,
)
from decision_orchestrator.timeutil import isoformat, parse_iso, utcnow

logger = logging.getLogger(__name__)

TABLE = "snapshots"

_TOPIC_ID_PATTERN = re.compile(r"topic_id=([A-Za-z0-9_-]+)")

DEFAULT_TRAVELER_TYPES = {TravelerType.UNKNOWN, TravelerType.FIRST_TIME}
DEFAULT_BUDGET_BANDS = {BudgetBand.UNKNOWN, BudgetBand.FAIR_VALUE}
DEFAULT_DATE_TYPES = {DateType.UNKNOWN, DateType.FLEXIBLE}


class SnapshotStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    LOCKED = "locked"
    STALE = "stale"


class LockStatus(str, Enum):
    ACQUIRED = "acquired"
    LOCKED = "locked"
    UNAVAILABLE = "unavailable"


class SnapshotResult(BaseModel):
    status: SnapshotStatus
    response: Optional[Dict[str, Any]] = None
    age_seconds: Optional[int] = None
    created_at: Optional[str] = None
    retry_after_seconds: Optional[int] = None


class LockResult(BaseModel):
    status: LockStatus
    lock_id: Optional[str] = None


def is_default_input(envelope: StandardInputEnvelope) -> bool:
    """True when the envelope carries the canonical non-personalized defaults."""
    ctx = envelope.user_context
    return (
        ctx.traveler_type in DEFAULT_TRAVELER_TYPES
        and ctx.budget_band in DEFAULT_BUDGET_BANDS
        and ctx.dates.type in DEFAULT_DATE_TYPES
    )


def extract_topic_id(envelope: StandardInputEnvelope) -> str:
    match = _TOPIC_ID_PATTERN.search(envelope.request.scope)
    if match:
        # Topic ids are lowercase slugs; TZ-Feb and tz_feb share one cache key.
        return match.group(1).lower().replace("_", "-")
    digest = hashlib.sha256(
        f"{envelope.request.question}:{envelope.request.scope}".encode()
    ).hexdigest()
    return digest[:12]


def hash_inputs(envelope: StandardInputEnvelope) -> str:
    payload = {
        "task": envelope.task.value,
        "user_context": envelope.user_context.model_dump(mode="json"),
        "request": {
            "question": envelope.request.question,
            "scope": envelope.request.scope,
            "destinations_considered": list(envelope.request.destinations_considered),
        },
        "facts": envelope.facts.model_dump(mode="json"),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()[:16]


class SnapshotStore:
    def __init__(
        self,
        kv: KeyValueStore,
        snapshot_ttl_hours: int = 24,
        lock_ttl_seconds: int = 30,
        stale_grace_hours: int = 24,
    ):
        self.kv = kv
        self.snapshot_ttl = timedelta(hours=snapshot_ttl_hours)
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self.stale_grace = timedelta(hours=stale_grace_hours)

    def get_snapshot(
        self, topic_id: str, inputs_hash: str, now: Optional[datetime] = None
    ) -> SnapshotResult:
        now = now or utcnow()
        try:
            item = self.kv.get(TABLE, topic_id)
        except StoreUnavailable:
            logger.warning("Snapshot read failed, treating as miss", extra={"topic_id": topic_id}, exc_info=True)
            return SnapshotResult(status=SnapshotStatus.MISS)

        if item is None:
            return SnapshotResult(status=SnapshotStatus.MISS)
        record = SnapshotRecord.model_validate(item)

        if record.lock_until and parse_iso(record.lock_until) > now:
            remaining = (parse_iso(record.lock_until) - now).total_seconds()
            return SnapshotResult(
                status=SnapshotStatus.LOCKED,
                retry_after_seconds=max(1, math.ceil(remaining)),
            )

        if not record.decision_response or record.inputs_hash != inputs_hash:
            return SnapshotResult(status=SnapshotStatus.MISS)

        created_at = parse_iso(record.created_at)
        age_seconds = max(0, int((now - created_at).total_seconds()))
        status = SnapshotStatus.HIT
        if now > parse_iso(record.expires_at):
            status = SnapshotStatus.STALE
        return SnapshotResult(
            status=status,
            response=record.decision_response,
            age_seconds=age_seconds,
            created_at=record.created_at,
        )

    def acquire_lock(self, topic_id: str, now: Optional[datetime] = None) -> LockResult:
        now = now or utcnow()
        lock_id = f"lock_{uuid4().hex[:12]}"
        lock_until = now + self.lock_ttl

        def lock_is_free(item) -> bool:
            if item is None or not item.get("lock_until"):
                return True
            return parse_iso(item["lock_until"]) <= now

        try:
            self.kv.update(
                TABLE,
                topic_id,
                set_fields={
                    "topic_id": topic_id,
                    "lock_id": lock_id,
                    "lock_until": isoformat(lock_until),
                },
                defaults={"ttl_epoch": int((lock_until + self.stale_grace).timestamp())},
                condition=lock_is_free,
            )
        except ConditionalCheckFailed:
            return LockResult(status=LockStatus.LOCKED)
        except StoreUnavailable:
            logger.warning("Snapshot lock unavailable", extra={"topic_id": topic_id}, exc_info=True)
            return LockResult(status=LockStatus.UNAVAILABLE)
        return LockResult(status=LockStatus.ACQUIRED, lock_id=lock_id)

    def store_snapshot(
        self,
        topic_id: str,
        response: Dict[str, Any],
        inputs_hash: str,
        lock_id: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Write the snapshot and clear our lock in one conditional put."""
        now = now or utcnow()
        expires_at = now + self.snapshot_ttl
        item = {
            "topic_id": topic_id,
            "decision_response": response,
            "inputs_hash": inputs_hash,
            "created_at": isoformat(now),
            "expires_at": isoformat(expires_at),
            "ttl_epoch": int((expires_at + self.stale_grace).timestamp()),
        }
        try:
            self.kv.put(
                TABLE,
                topic_id,
                item,
                condition=lambda current: current is None or current.get("lock_id") == lock_id,
            )
        except ConditionalCheckFailed:
            logger.warning("Snapshot lock lost before store", extra={"topic_id": topic_id, "lock_id": lock_id})
            return False
        except StoreUnavailable:
            logger.warning("Snapshot store failed", extra={"topic_id": topic_id}, exc_info=True)
            return False
        logger.info("Snapshot stored", extra={"topic_id": topic_id, "inputs_hash": inputs_hash})
        return True

    def release_lock(self, topic_id: str, lock_id: str) -> bool:
        try:
            self.kv.update(
                TABLE,
                topic_id,
                remove_fields=("lock_id", "lock_until"),
                condition=lambda current: current is not None and current.get("lock_id") == lock_id,
            )
        except ConditionalCheckFailed:
            logger.info("Snapshot lock already gone", extra={"topic_id": topic_id, "lock_id": lock_id})
            return False
        except StoreUnavailable:
            logger.warning("Snapshot lock release failed", extra={"topic_id": topic_id}, exc_info=True)
            return False
        return True

    def invalidate_snapshot(self, topic_id: str) -> bool:
        """Operator action: drop the cached response (and any lock) for a topic."""
        removed = self.kv.delete(TABLE, topic_id)
        logger.info("Snapshot invalidated", extra={"topic_id": topic_id, "removed": removed})
        return removed

    def lease(self, topic_id: str) -> "SnapshotLease":
        return SnapshotLease(self, topic_id)


class SnapshotLease:
    """
    Scoped regeneration lock for one topic.

    Entering tries to acquire the lock. Exiting releases it unless commit()
    already stored a snapshot, so a held lock is given back exactly once on
    every path, including exceptions.
    """

    def __init__(self, store: SnapshotStore, topic_id: str):
        self.store = store
        self.topic_id = topic_id
        self.status: Optional[LockStatus] = None
        self.lock_id: Optional[str] = None
        self._closed = False

    def __enter__(self) -> "SnapshotLease":
        result = self.store.acquire_lock(self.topic_id)
        self.status = result.status
        self.lock_id = result.lock_id
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release()
        return False

    @property
    def held(self) -> bool:
        return self.status == LockStatus.ACQUIRED and not self._closed

    def commit(self, response: Dict[str, Any], inputs_hash: str) -> bool:
        if not self.held:
            return False
        self._closed = True
        return self.store.store_snapshot(self.topic_id, response, inputs_hash, self.lock_id)

    def release(self) -> bool:
        if not self.held:
            return False
        self._closed = True
        return self.store.release_lock(self.topic_id, self.lock_id)
