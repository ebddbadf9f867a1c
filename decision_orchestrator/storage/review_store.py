"""
Review Store — decisions and topics queued for human review.

Reviews are created pending and only change through update_status(), which
records the reviewer, notes and time.
"""

from typing import Any, Dict, List, Optional
from uuid import uuid4

from decision_orchestrator.models.records import ReviewReasonCode, ReviewRecord, ReviewStatus
from decision_orchestrator.storage.kv import KeyValueStore, attribute_not_exists
from decision_orchestrator.timeutil import isoformat

TABLE = "reviews"
_OPEN_STATUSES = (ReviewStatus.PENDING.value, ReviewStatus.REVIEWED.value)


def _is_open(item) -> bool:
    return item is not None and item.get("status") in _OPEN_STATUSES


class ReviewStore:
    def __init__(self, kv: KeyValueStore):
        self.kv = kv
        for field in ("status", "topic_id", "decision_id"):
            kv.create_index(TABLE, field)

    def create(
        self,
        topic_id: str,
        reason_code: ReviewReasonCode,
        reason_details: str,
        decision_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReviewRecord:
        review = ReviewRecord(
            review_id=f"rev_{uuid4().hex[:12]}",
            created_at=isoformat(),
            topic_id=topic_id,
            decision_id=decision_id,
            reason_code=reason_code,
            reason_details=reason_details,
            metadata=metadata or {},
        )
        self.kv.put(TABLE, review.review_id, review.model_dump(mode="json"), condition=attribute_not_exists)
        return review

    def get(self, review_id: str) -> Optional[ReviewRecord]:
        item = self.kv.get(TABLE, review_id)
        return ReviewRecord.model_validate(item) if item else None

    def get_pending(self, limit: int = 50) -> List[ReviewRecord]:
        items = self.kv.query(TABLE, "status", ReviewStatus.PENDING.value, limit=limit)
        return [ReviewRecord.model_validate(i) for i in items]

    def get_by_topic(self, topic_id: str, limit: int = 20) -> List[ReviewRecord]:
        items = self.kv.query(TABLE, "topic_id", topic_id, limit=limit)
        return [ReviewRecord.model_validate(i) for i in items]

    def count_pending(self) -> int:
        return len(self.kv.query(TABLE, "status", ReviewStatus.PENDING.value))

    def has_pending(self, topic_id: str, reason_code: ReviewReasonCode) -> bool:
        return any(
            r.status == ReviewStatus.PENDING and r.reason_code == reason_code
            for r in self.get_by_topic(topic_id, limit=100)
        )

    def update_status(
        self,
        review_id: str,
        status: ReviewStatus,
        reviewer_id: str,
        resolution_notes: Optional[str] = None,
    ) -> ReviewRecord:
        """Raises ConditionalCheckFailed if the review is missing or already closed."""
        item = self.kv.update(
            TABLE,
            review_id,
            set_fields={
                "status": status.value,
                "reviewer_id": reviewer_id,
                "reviewed_at": isoformat(),
                "resolution_notes": resolution_notes,
            },
            condition=_is_open,
        )
        return ReviewRecord.model_validate(item)
