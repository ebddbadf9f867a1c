"""
Decision Orchestrator API — FastAPI endpoints.

Exposes the orchestrator via a REST API for:
- Decision evaluation
- Paid assurance artifacts
- Operator health, guardrail and cache control
- Decision lookup
- Human review queue
"""

import json
import logging
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from decision_orchestrator.assurance.service import AssuranceError, AssuranceService
from decision_orchestrator.cache.snapshot_store import SnapshotStore
from decision_orchestrator.config import OrchestratorConfig
from decision_orchestrator.generation.bedrock import BedrockTextEngine
from decision_orchestrator.generation.gateway import GenerationGateway, TextGenerationEngine
from decision_orchestrator.logging_config import setup_logging
from decision_orchestrator.metrics.truth_metrics import TruthMetrics
from decision_orchestrator.models.assurance import PaymentStatus
from decision_orchestrator.models.records import ReviewStatus
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.ops.topic_breakdown import TopicBreakdown
from decision_orchestrator.orchestrator.handler import DecisionOrchestrator
from decision_orchestrator.review.queue import ReviewQueue
from decision_orchestrator.review.triggers import ReviewTriggers
from decision_orchestrator.storage.assurance_store import AssuranceStore
from decision_orchestrator.storage.decision_store import DecisionStore
from decision_orchestrator.storage.event_store import EventStore
from decision_orchestrator.storage.kv import KeyValueStore, StoreUnavailable
from decision_orchestrator.storage.review_store import ReviewStore

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class AssuranceGenerateRequest(BaseModel):
    decision_id: str
    session_id: str
    traveler_id: Optional[str] = None


class PaymentUpdateRequest(BaseModel):
    payment_id: str
    payment_status: PaymentStatus


class GuardrailResetRequest(BaseModel):
    circuit: str = "all"  # generation | assurance | all


class ManualFlagRequest(BaseModel):
    topic_id: str
    reason_details: str
    decision_id: Optional[str] = None
    flagged_by: Optional[str] = None


class ReviewStatusRequest(BaseModel):
    status: ReviewStatus
    reviewer_id: str
    resolution_notes: Optional[str] = None


def _assurance_http_error(exc: AssuranceError) -> HTTPException:
    headers = None
    if exc.retry_after_seconds:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return HTTPException(
        exc.status_code,
        detail={"code": exc.code.value, "message": exc.message},
        headers=headers,
    )


# --- Application Factory ---

def create_app(
    config: Optional[OrchestratorConfig] = None,
    engine: Optional[TextGenerationEngine] = None,
    kv: Optional[KeyValueStore] = None,
    guardrails: Optional[GuardrailTracker] = None,
    health: Optional[HealthSignals] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    cfg = config or OrchestratorConfig()

    app = FastAPI(
        title="Decision Orchestrator API",
        description="Governed safari decisions — validate, generate, enforce, persist",
        version="1.0.0",
    )

    # Initialize components
    store = kv or KeyValueStore(cfg.db_path)
    hs = health or HealthSignals()
    gt = guardrails or GuardrailTracker(cfg.guardrails, hs)
    gateway = GenerationGateway(
        engine or BedrockTextEngine(cfg.model_id, region_name=cfg.bedrock_region),
        timeout_seconds=cfg.generation_timeout_seconds,
    )

    decision_store = DecisionStore(store, cfg.logic_version, cfg.prompt_version)
    event_store = EventStore(store)
    review_store = ReviewStore(store)
    assurance_store = AssuranceStore(store)
    snapshot_store = SnapshotStore(
        store,
        snapshot_ttl_hours=cfg.snapshot_ttl_hours,
        lock_ttl_seconds=cfg.lock_ttl_seconds,
        stale_grace_hours=cfg.snapshot_stale_grace_hours,
    )

    review_queue = ReviewQueue(review_store, decision_store, hs)
    triggers = ReviewTriggers(review_queue, decision_store, gt, cfg.review_triggers)
    orchestrator = DecisionOrchestrator(
        gateway=gateway,
        decision_store=decision_store,
        snapshot_store=snapshot_store,
        event_store=event_store,
        guardrails=gt,
        health=hs,
        triggers=triggers,
        config=cfg,
    )
    assurance = AssuranceService(decision_store, assurance_store, event_store, gt, hs, cfg)
    breakdown_source = TopicBreakdown(
        event_store,
        cfg.known_topic_ids,
        max_items=cfg.topic_breakdown_max_items,
        window_days=cfg.topic_breakdown_window_days,
    )
    truth_metrics = TruthMetrics(decision_store)

    # Store components on app state for access in endpoints
    app.state.config = cfg
    app.state.kv = store
    app.state.health = hs
    app.state.guardrails = gt
    app.state.gateway = gateway
    app.state.decision_store = decision_store
    app.state.event_store = event_store
    app.state.review_store = review_store
    app.state.assurance_store = assurance_store
    app.state.snapshot_store = snapshot_store
    app.state.review_queue = review_queue
    app.state.triggers = triggers
    app.state.orchestrator = orchestrator
    app.state.assurance = assurance

    def require_ops_key(x_ops_key: Optional[str] = Header(default=None)):
        if cfg.ops_api_key and x_ops_key != cfg.ops_api_key:
            raise HTTPException(401, "Invalid operator key")

    ops_only = [Depends(require_ops_key)]

    # === EVALUATION ===

    @app.post("/decision/evaluate")
    async def evaluate_decision(request: Request):
        """Run one envelope through the orchestrator."""
        raw_body = await request.body()
        try:
            payload = json.loads(raw_body)
        except ValueError:
            return JSONResponse(
                status_code=400,
                content={"error": "Invalid JSON", "details": []},
            )

        result = await run_in_threadpool(orchestrator.evaluate, payload)
        headers = {}
        if result.status_code == 200:
            headers = {
                "X-Decision-Id": result.body["decision_id"],
                "X-Logic-Version": cfg.logic_version,
                "X-Retry-Count": str(result.body["metadata"]["retry_count"]),
            }
        return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)

    # === ASSURANCE ===

    @app.post("/assurance/generate")
    def generate_assurance(req: AssuranceGenerateRequest):
        """Create a pending-payment assurance for an issued decision."""
        try:
            record = assurance.generate(req.decision_id, req.session_id, req.traveler_id)
        except AssuranceError as exc:
            raise _assurance_http_error(exc)
        return {
            "assurance_id": record.assurance_id,
            "decision_id": record.decision_id,
            "status": record.status.value,
            "payment_status": record.payment_status.value,
            "amount_cents": record.amount_cents,
            "currency": record.currency,
        }

    @app.get("/assurance/{assurance_id}")
    def get_assurance(assurance_id: str):
        """Download a paid assurance artifact."""
        try:
            record = assurance.get(assurance_id)
        except AssuranceError as exc:
            raise _assurance_http_error(exc)
        return record.model_dump(mode="json")

    @app.post("/assurance/{assurance_id}/payment")
    def update_assurance_payment(assurance_id: str, req: PaymentUpdateRequest):
        """Payment provider webhook."""
        try:
            result = assurance.update_payment(assurance_id, req.payment_id, req.payment_status)
        except AssuranceError as exc:
            raise _assurance_http_error(exc)
        return result.model_dump(mode="json")

    # === OPERATIONS ===

    @app.get("/ops/health", dependencies=ops_only)
    def get_health(topic_breakdown: bool = False):
        """Health signals, guardrail state and rolling counters."""
        try:
            pending_reviews = review_queue.pending_count()
        except StoreUnavailable:
            logger.warning("Pending review count unavailable", exc_info=True)
            pending_reviews = None

        body = {
            "health": hs.snapshot().model_dump(mode="json"),
            "guardrails": gt.evaluate_guardrails(pending_reviews or 0).model_dump(mode="json"),
            "counters": hs.counters().model_dump(mode="json"),
            "tracked_topics": gt.tracked_topic_count(),
            "pending_reviews": pending_reviews,
        }
        if topic_breakdown:
            breakdown = breakdown_source.fetch()
            if breakdown.skipped:
                body["topic_breakdown_skipped"] = True
                body["topic_breakdown_skip_reason"] = breakdown.skip_reason
            else:
                body["topic_breakdown"] = breakdown.model_dump(
                    mode="json", include={"topic_counters", "top_refusal_reasons"}
                )
        return body

    @app.post("/ops/guardrails/reset", dependencies=ops_only)
    def reset_guardrails(req: GuardrailResetRequest):
        """Close one or both circuits (operator action only)."""
        if req.circuit == "generation":
            gt.reset_generation_circuit()
        elif req.circuit == "assurance":
            gt.reset_assurance_circuit()
        elif req.circuit == "all":
            gt.reset_all()
        else:
            raise HTTPException(400, f"Unknown circuit: {req.circuit}")
        logger.info("Guardrails reset", extra={"circuit": req.circuit})
        return gt.evaluate_guardrails().model_dump(mode="json")

    @app.post("/ops/snapshots/{topic_id}/invalidate", dependencies=ops_only)
    def invalidate_snapshot(topic_id: str):
        """Drop a topic's cached snapshot."""
        return {"topic_id": topic_id, "invalidated": snapshot_store.invalidate_snapshot(topic_id)}

    @app.get("/ops/topics/{topic_id}/metrics", dependencies=ops_only)
    def get_topic_metrics(topic_id: str, baseline: Optional[float] = None):
        """Truth metrics for a topic, with drift against an optional baseline."""
        body = {"metrics": truth_metrics.topic_metrics(topic_id).model_dump(mode="json")}
        if baseline is not None:
            drift = truth_metrics.detect_confidence_drift(
                topic_id, baseline, cfg.review_triggers.confidence_drift_threshold
            )
            body["drift"] = drift.model_dump(mode="json")
            if drift.drifted:
                review = triggers.check_confidence_drift(topic_id, drift.current_avg, baseline)
                body["review_id"] = review.review_id if review else None
        return body

    # === DECISIONS ===

    @app.get("/decisions/{decision_id}")
    def get_decision(decision_id: str):
        """Get a stored decision or refusal."""
        record = decision_store.get(decision_id)
        if record is None:
            raise HTTPException(404, "Decision not found")
        return record.model_dump(mode="json")

    @app.get("/decisions")
    def list_decisions(
        traveler_id: Optional[str] = None,
        lead_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 20,
    ):
        """List decisions for exactly one requester, newest first."""
        requesters = {
            kind: value
            for kind, value in (("traveler", traveler_id), ("lead", lead_id), ("session", session_id))
            if value
        }
        if len(requesters) != 1:
            raise HTTPException(400, "Provide exactly one of traveler_id, lead_id or session_id")
        kind, requester_id = next(iter(requesters.items()))
        records = decision_store.list_by_requester(requester_id, kind=kind, limit=limit)
        return [r.model_dump(mode="json") for r in records]

    # === REVIEWS ===

    @app.get("/reviews/pending", dependencies=ops_only)
    def list_pending_reviews(limit: int = 50):
        """List reviews awaiting a human."""
        return [r.model_dump(mode="json") for r in review_queue.pending(limit)]

    @app.get("/reviews/decisions", dependencies=ops_only)
    def list_flagged_decisions(limit: int = 50):
        """List decisions currently flagged for review."""
        return [r.model_dump(mode="json") for r in decision_store.list_needing_review(limit)]

    @app.post("/reviews", dependencies=ops_only)
    def flag_for_review(req: ManualFlagRequest):
        """Manually flag a topic or decision."""
        review = triggers.manual_flag(req.topic_id, req.reason_details, req.decision_id, req.flagged_by)
        return review.model_dump(mode="json")

    @app.post("/reviews/{review_id}/status", dependencies=ops_only)
    def update_review_status(review_id: str, req: ReviewStatusRequest):
        """Move a review to reviewed, resolved or dismissed."""
        try:
            review = review_queue.update_status(
                review_id, req.status, req.reviewer_id, req.resolution_notes
            )
        except ValueError as exc:
            raise HTTPException(400, str(exc))
        if review is None:
            if review_store.get(review_id) is None:
                raise HTTPException(404, "Review not found")
            raise HTTPException(409, "Review is already closed")
        return review.model_dump(mode="json")

    return app


def _default_app() -> FastAPI:
    config = OrchestratorConfig()
    setup_logging(config.log_level, config.log_format)
    return create_app(config)


# Default app instance
app = _default_app()
