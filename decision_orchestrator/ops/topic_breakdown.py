"""
Topic breakdown for the operator health endpoint.

Aggregates the last week of DECISION_ISSUED / DECISION_REFUSED events per
known topic. The scan has a hard item cutoff: past it the breakdown is
skipped rather than reported from partial data.
"""

import logging
from collections import Counter
from datetime import timedelta
from typing import Dict, Iterable, List

from decision_orchestrator.models.health import (
    RefusalReasonCount,
    TopicBreakdownResult,
    TopicCounter,
)
from decision_orchestrator.models.output import RefusalCode
from decision_orchestrator.models.records import EventRecord, EventType
from decision_orchestrator.storage.event_store import EventStore
from decision_orchestrator.storage.kv import StoreUnavailable
from decision_orchestrator.timeutil import isoformat, utcnow

logger = logging.getLogger(__name__)

TOP_REFUSAL_REASONS = 5
REASON_MAX_LENGTH = 100

SKIP_TOO_MANY_EVENTS = "too_many_events"
SKIP_QUERY_ERROR = "query_error"


class TopicBreakdown:
    def __init__(
        self,
        event_store: EventStore,
        known_topic_ids: Iterable[str],
        max_items: int = 5000,
        window_days: int = 7,
    ):
        self.event_store = event_store
        self.known_topic_ids = list(known_topic_ids)
        self.max_items = max_items
        self.window_days = window_days

    def fetch(self) -> TopicBreakdownResult:
        since = isoformat(utcnow() - timedelta(days=self.window_days))
        try:
            issued = self.event_store.query_by_type(EventType.DECISION_ISSUED, since=since, limit=self.max_items)
            refused = self.event_store.query_by_type(EventType.DECISION_REFUSED, since=since, limit=self.max_items)
        except StoreUnavailable:
            logger.warning("Topic breakdown query failed", exc_info=True)
            return TopicBreakdownResult(skipped=True, skip_reason=SKIP_QUERY_ERROR)

        if len(issued) >= self.max_items or len(refused) >= self.max_items:
            logger.info(
                "Topic breakdown skipped",
                extra={"issued": len(issued), "refused": len(refused), "max_items": self.max_items},
            )
            return TopicBreakdownResult(skipped=True, skip_reason=SKIP_TOO_MANY_EVENTS)

        return TopicBreakdownResult(
            topic_counters=self._count(issued, refused),
            top_refusal_reasons=self._top_reasons(refused),
        )

    def _count(self, issued: List[EventRecord], refused: List[EventRecord]) -> Dict[str, TopicCounter]:
        counters = {t: TopicCounter(topic_id=t) for t in self.known_topic_ids}

        for event in issued:
            counter = counters.get(event.payload.get("topic_id"))
            if counter is not None:
                counter.issued += 1

        for event in refused:
            counter = counters.get(event.payload.get("topic_id"))
            if counter is None:
                continue
            counter.refused += 1
            if event.payload.get("refusal_code") == RefusalCode.QUALITY_GATE_FAILED.value:
                counter.quality_gate_failed += 1

        for counter in counters.values():
            total = counter.issued + counter.refused
            counter.refusal_rate = counter.refused / total if total else 0.0
        return counters

    def _top_reasons(self, refused: List[EventRecord]) -> List[RefusalReasonCount]:
        reasons = Counter(
            (event.payload.get("reason") or "unknown")[:REASON_MAX_LENGTH] for event in refused
        )
        return [
            RefusalReasonCount(reason=reason, count=count)
            for reason, count in reasons.most_common(TOP_REFUSAL_REASONS)
        ]
