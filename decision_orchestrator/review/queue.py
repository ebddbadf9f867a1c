"""
Review Queue — human review of decisions and topics.

Flagging creates a pending review and mirrors it onto the linked decision's
`review` sub-record. Status updates record who reviewed, when and why, and
clear the decision's needs_review flag once the review is closed.
"""

import logging
from typing import Any, Dict, List, Optional

from decision_orchestrator.models.records import (
    ReviewReasonCode,
    ReviewRecord,
    ReviewStatus,
)
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.storage.decision_store import DecisionStore
from decision_orchestrator.storage.kv import ConditionalCheckFailed
from decision_orchestrator.storage.review_store import ReviewStore

logger = logging.getLogger(__name__)

CLOSED_STATUSES = {ReviewStatus.RESOLVED, ReviewStatus.DISMISSED}


class ReviewQueue:
    def __init__(
        self,
        review_store: ReviewStore,
        decision_store: DecisionStore,
        health: Optional[HealthSignals] = None,
    ):
        self.review_store = review_store
        self.decision_store = decision_store
        self.health = health

    def flag(
        self,
        topic_id: str,
        reason_code: ReviewReasonCode,
        reason_details: str,
        decision_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ReviewRecord:
        review = self.review_store.create(
            topic_id=topic_id,
            reason_code=reason_code,
            reason_details=reason_details,
            decision_id=decision_id,
            metadata=metadata,
        )
        if decision_id:
            try:
                self.decision_store.update_review(
                    decision_id,
                    needs_review=True,
                    reason=reason_code.value,
                    status=ReviewStatus.PENDING,
                )
            except ConditionalCheckFailed:
                logger.warning(
                    "Review references unknown decision",
                    extra={"review_id": review.review_id, "decision_id": decision_id},
                )
        if self.health:
            self.health.record_review_created()
        logger.info(
            "Review created",
            extra={
                "review_id": review.review_id,
                "topic_id": topic_id,
                "reason_code": reason_code.value,
                "decision_id": decision_id,
            },
        )
        return review

    def update_status(
        self,
        review_id: str,
        status: ReviewStatus,
        reviewer_id: str,
        resolution_notes: Optional[str] = None,
    ) -> Optional[ReviewRecord]:
        """Human moves a review forward. Returns None if missing or already closed."""
        if status in (ReviewStatus.NONE, ReviewStatus.PENDING):
            raise ValueError(f"Cannot move a review to {status.value}")

        try:
            review = self.review_store.update_status(review_id, status, reviewer_id, resolution_notes)
        except ConditionalCheckFailed:
            return None

        if review.decision_id:
            closed = status in CLOSED_STATUSES
            try:
                self.decision_store.update_review(
                    review.decision_id,
                    needs_review=not closed,
                    reason=review.reason_code.value,
                    status=status,
                )
            except ConditionalCheckFailed:
                logger.warning(
                    "Reviewed decision no longer exists",
                    extra={"review_id": review_id, "decision_id": review.decision_id},
                )

        if status in CLOSED_STATUSES and self.health:
            self.health.record_review_resolved()
        return review

    def pending(self, limit: int = 50) -> List[ReviewRecord]:
        return self.review_store.get_pending(limit)

    def pending_count(self) -> int:
        return self.review_store.count_pending()
