"""
Decision Orchestrator — the single entry point for evaluations.

State machine:

  RECEIVED → VALIDATED ─┬─ IMMEDIATE_REFUSAL ───────────────────────────┐
                        └─ CACHE_CHECK ─ [LOCK_CHECK] ─ GENERATING ─ ENFORCING
                                                           ↑            │ invalid
                                                           └── RETRY ←──┤
                                                                        │ valid / ceiling
                                               PERSISTED ←──────────────┘
                                                   ↓
                                               RESPONDED

  Cache hits, capacity refusals and circuit-open refusals respond directly.
  Any unexpected failure after validation ends in ERROR_RESPONDED with a
  governed fallback refusal.

Behavioral Contract:
- Every call ends in exactly one response. Nothing raises out of evaluate().
- Malformed input is the only non-200 outcome.
- Generated text reaches the caller only after the output enforcer accepts it.
- The generation loop is bounded by max_generation_attempts.
- A snapshot lock acquired here is stored or released exactly once.
- Refusals are never written to the snapshot cache.
"""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from decision_orchestrator.cache.snapshot_store import (
    LockStatus,
    SnapshotLease,
    SnapshotResult,
    SnapshotStatus,
    SnapshotStore,
    extract_topic_id,
    hash_inputs,
    is_default_input,
)
from decision_orchestrator.config import OrchestratorConfig
from decision_orchestrator.generation.gateway import GenerationError, GenerationGateway
from decision_orchestrator.governance.input_validator import (
    FieldError,
    InputValidationResult,
    must_refuse,
    validate_input,
)
from decision_orchestrator.governance.output_enforcer import OutputEnforcer, generate_retry_prompt
from decision_orchestrator.models.envelope import StandardInputEnvelope
from decision_orchestrator.models.output import (
    AIOutput,
    DecisionOutput,
    RefusalOutput,
)
from decision_orchestrator.models.records import DecisionState
from decision_orchestrator.models.responses import DecisionResponse, ResponseMetadata
from decision_orchestrator.ops.guardrails import GuardrailTracker
from decision_orchestrator.ops.health_signals import HealthSignals
from decision_orchestrator.orchestrator.refusals import (
    CAPACITY_PREFIX,
    FALLBACK_PREFIX,
    capacity_refusal,
    fallback_refusal,
    immediate_refusal,
    quality_refusal,
    response_id,
    service_degraded_refusal,
)
from decision_orchestrator.review.triggers import ReviewTriggers
from decision_orchestrator.storage.decision_store import DecisionStore
from decision_orchestrator.storage.event_store import EventStore

logger = logging.getLogger(__name__)

class OrchestratorState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    IMMEDIATE_REFUSAL = "IMMEDIATE_REFUSAL"
    CACHE_CHECK = "CACHE_CHECK"
    LOCK_CHECK = "LOCK_CHECK"
    GENERATING = "GENERATING"
    ENFORCING = "ENFORCING"
    RETRY = "RETRY"
    PERSISTED = "PERSISTED"
    RESPONDED = "RESPONDED"
    ERROR_RESPONDED = "ERROR_RESPONDED"


class EvaluationResult(BaseModel):
    status_code: int
    body: Dict[str, Any]
    trace: List[OrchestratorState]

    @property
    def decision_id(self) -> Optional[str]:
        return self.body.get("decision_id")


class GenerationOutcome:
    """Result of the bounded generate → enforce loop."""

    def __init__(
        self,
        output: AIOutput,
        retry_count: int,
        ai_used: bool,
        errors: Optional[List[FieldError]] = None,
        quality_gate_failed: bool = False,
    ):
        self.output = output
        self.retry_count = retry_count
        self.ai_used = ai_used
        self.errors = errors or []
        self.quality_gate_failed = quality_gate_failed


class DecisionOrchestrator:
    def __init__(
        self,
        gateway: GenerationGateway,
        decision_store: DecisionStore,
        snapshot_store: SnapshotStore,
        event_store: EventStore,
        guardrails: GuardrailTracker,
        health: HealthSignals,
        triggers: ReviewTriggers,
        enforcer: Optional[OutputEnforcer] = None,
        config: Optional[OrchestratorConfig] = None,
    ):
        self.gateway = gateway
        self.decisions = decision_store
        self.snapshots = snapshot_store
        self.events = event_store
        self.guardrails = guardrails
        self.health = health
        self.triggers = triggers
        self.enforcer = enforcer or OutputEnforcer()
        self.config = config or OrchestratorConfig()

    def evaluate(self, raw: Any) -> EvaluationResult:
        trace = [OrchestratorState.RECEIVED]

        validation = validate_input(raw)
        if not validation.valid:
            logger.info("Rejected malformed input", extra={"error_count": len(validation.errors)})
            return EvaluationResult(
                status_code=400,
                body={
                    "error": "Invalid input structure",
                    "details": [e.model_dump() for e in validation.errors],
                },
                trace=trace,
            )
        trace.append(OrchestratorState.VALIDATED)

        try:
            return self._evaluate(validation, trace)
        except Exception:
            logger.exception("Evaluation failed, returning fallback refusal")
            self.health.record_decision_failed()
            trace.append(OrchestratorState.ERROR_RESPONDED)
            body = self._response(
                response_id(FALLBACK_PREFIX),
                fallback_refusal(),
                ai_used=False,
                retry_count=0,
                persisted=False,
            )
            return EvaluationResult(status_code=200, body=body, trace=trace)

    # --- Flow ---

    def _evaluate(self, validation: InputValidationResult, trace: List[OrchestratorState]) -> EvaluationResult:
        envelope = validation.envelope
        topic_id = extract_topic_id(envelope)

        refuse_for = must_refuse(validation)
        if refuse_for:
            trace.append(OrchestratorState.IMMEDIATE_REFUSAL)
            logger.info("Immediate refusal", extra={"topic_id": topic_id, "conflicts": refuse_for})
            output = immediate_refusal(refuse_for, envelope)
            decision_id, body = self._persist(envelope, topic_id, output, trace, ai_used=False, retry_count=0)
            self._after_response(envelope, topic_id, output, decision_id)
            trace.append(OrchestratorState.RESPONDED)
            return EvaluationResult(status_code=200, body=body, trace=trace)

        trace.append(OrchestratorState.CACHE_CHECK)
        if not is_default_input(envelope):
            return self._generate_and_respond(envelope, topic_id, trace)

        inputs_hash = hash_inputs(envelope)
        cached = self.snapshots.get_snapshot(topic_id, inputs_hash)
        if cached.status == SnapshotStatus.HIT:
            return self._serve_snapshot(topic_id, cached, trace, stale=False)
        if cached.status == SnapshotStatus.LOCKED:
            return self._capacity(topic_id, cached.retry_after_seconds, trace)
        stale = cached if cached.status == SnapshotStatus.STALE else None

        trace.append(OrchestratorState.LOCK_CHECK)
        with self.snapshots.lease(topic_id) as lease:
            if lease.status == LockStatus.LOCKED:
                if stale is not None:
                    return self._serve_snapshot(topic_id, stale, trace, stale=True)
                return self._capacity(topic_id, self.config.lock_ttl_seconds, trace)
            if lease.status == LockStatus.UNAVAILABLE:
                logger.warning("Snapshot lock unavailable, generating uncached", extra={"topic_id": topic_id})
            return self._generate_and_respond(
                envelope, topic_id, trace, lease=lease, inputs_hash=inputs_hash, stale=stale
            )

    def _generate_and_respond(
        self,
        envelope: StandardInputEnvelope,
        topic_id: str,
        trace: List[OrchestratorState],
        lease: Optional[SnapshotLease] = None,
        inputs_hash: Optional[str] = None,
        stale: Optional[SnapshotResult] = None,
    ) -> EvaluationResult:
        if self.guardrails.is_generation_circuit_open():
            if stale is not None:
                return self._serve_snapshot(topic_id, stale, trace, stale=True)
            logger.warning("Generation circuit open, refusing", extra={"topic_id": topic_id})
            body = self._response(
                response_id(CAPACITY_PREFIX),
                service_degraded_refusal(self.config.circuit_open_retry_after_seconds),
                ai_used=False,
                retry_count=0,
                persisted=False,
            )
            trace.append(OrchestratorState.RESPONDED)
            return EvaluationResult(status_code=200, body=body, trace=trace)

        generated = self._generate(envelope, trace)
        output = generated.output
        decision_id, body = self._persist(
            envelope, topic_id, output, trace,
            ai_used=generated.ai_used, retry_count=generated.retry_count,
        )

        if generated.quality_gate_failed:
            self.triggers.quality_gate_failed(
                topic_id, decision_id, [f"{e.field}: {e.message}" for e in generated.errors]
            )

        if lease is not None and lease.held and isinstance(output, DecisionOutput):
            if lease.commit(body, inputs_hash) and stale is not None:
                self._check_outcome_change(topic_id, stale, output, decision_id)

        self._after_response(envelope, topic_id, output, decision_id)
        trace.append(OrchestratorState.RESPONDED)
        return EvaluationResult(status_code=200, body=body, trace=trace)

    def _generate(self, envelope: StandardInputEnvelope, trace: List[OrchestratorState]) -> GenerationOutcome:
        """Bounded generate → enforce loop with corrective retries."""
        max_attempts = self.config.max_generation_attempts
        corrective_prompt = None
        errors: List[FieldError] = []
        completions = 0
        attempt = 0

        while attempt < max_attempts:
            if attempt > 0:
                if self.guardrails.is_generation_circuit_open():
                    break
                trace.append(OrchestratorState.RETRY)
            attempt += 1

            trace.append(OrchestratorState.GENERATING)
            try:
                raw = self.gateway.invoke(envelope, corrective_prompt, attempt=attempt - 1)
            except GenerationError as exc:
                self.guardrails.track_generation_result(False)
                self.health.record_generation_call(False)
                logger.warning("Generation attempt failed", extra={"attempt": attempt, "error": str(exc)})
                continue
            self.guardrails.track_generation_result(True)
            self.health.record_generation_call(True)
            completions += 1

            trace.append(OrchestratorState.ENFORCING)
            check = self.enforcer.validate(
                raw, task=envelope.task, forbidden_phrases=envelope.policy.forbidden_phrases
            )
            if check.valid:
                return GenerationOutcome(check.output, retry_count=attempt - 1, ai_used=True)

            self.guardrails.track_schema_violation()
            errors = check.errors
            corrective_prompt = generate_retry_prompt(errors)
            logger.warning(
                "Generated output rejected",
                extra={"attempt": attempt, "errors": [f"{e.field}: {e.message}" for e in errors]},
            )

        retry_count = max(0, attempt - 1)
        if errors:
            logger.error("Quality ceiling reached", extra={"attempts": attempt})
            return GenerationOutcome(
                quality_refusal(), retry_count, ai_used=True, errors=errors, quality_gate_failed=True
            )
        logger.error("Generation engine unavailable", extra={"attempts": attempt})
        return GenerationOutcome(service_degraded_refusal(), retry_count, ai_used=completions > 0)

    # --- Persistence and side effects ---

    def _persist(
        self,
        envelope: StandardInputEnvelope,
        topic_id: str,
        output: AIOutput,
        trace: List[OrchestratorState],
        ai_used: bool,
        retry_count: int,
    ) -> Tuple[str, Dict[str, Any]]:
        decision_id, record = self.decisions.store(
            envelope,
            output,
            topic_id=topic_id,
            ai_used=ai_used,
            model_id=self.gateway.model_id if ai_used else None,
        )
        if record.state == DecisionState.ISSUED:
            self.events.log_decision_issued(record)
        elif record.state == DecisionState.REFUSED:
            refusal = output.refusal
            self.events.log_decision_refused(
                record,
                missing_inputs_count=len(refusal.missing_or_conflicting_inputs),
                refusal_code=refusal.code.value if refusal.code else None,
            )
        trace.append(OrchestratorState.PERSISTED)

        body = self._response(decision_id, output, ai_used=ai_used, retry_count=retry_count, persisted=True)
        logger.info(
            "Evaluation complete",
            extra={
                "decision_id": decision_id,
                "topic_id": topic_id,
                "output_type": output.type,
                "retry_count": retry_count,
                "state": record.state.value,
            },
        )
        return decision_id, body

    def _after_response(
        self, envelope: StandardInputEnvelope, topic_id: str, output: AIOutput, decision_id: str
    ) -> None:
        refused = isinstance(output, RefusalOutput)
        if refused:
            self.health.record_decision_refused()
        else:
            self.health.record_decision_issued()
        self.guardrails.track_topic_decision(topic_id, refused)
        self.triggers.check_refusal_rate(topic_id)
        self.triggers.check_repeated_visits(topic_id, envelope.session_id, decision_id)

    def _check_outcome_change(
        self, topic_id: str, previous: SnapshotResult, output: DecisionOutput, decision_id: str
    ) -> None:
        previous_output = (previous.response or {}).get("output") or {}
        if previous_output.get("type") != "decision":
            return
        self.triggers.check_outcome_change(
            topic_id,
            previous_outcome=previous_output["decision"].get("outcome"),
            new_outcome=output.decision.outcome.value,
            hours_since_previous=(previous.age_seconds or 0) / 3600,
            decision_id=decision_id,
        )

    # --- Direct responses ---

    def _serve_snapshot(
        self, topic_id: str, snapshot: SnapshotResult, trace: List[OrchestratorState], stale: bool
    ) -> EvaluationResult:
        body = dict(snapshot.response)
        metadata = dict(body.get("metadata") or {})
        metadata["cached"] = True
        metadata["cache_age_seconds"] = snapshot.age_seconds
        if stale:
            metadata["stale"] = True
        body["metadata"] = metadata
        logger.info(
            "Served snapshot",
            extra={"topic_id": topic_id, "stale": stale, "cache_age_seconds": snapshot.age_seconds},
        )
        trace.append(OrchestratorState.RESPONDED)
        return EvaluationResult(status_code=200, body=body, trace=trace)

    def _capacity(
        self, topic_id: str, retry_after_seconds: Optional[int], trace: List[OrchestratorState]
    ) -> EvaluationResult:
        retry_after = retry_after_seconds or self.config.lock_ttl_seconds
        logger.info("Capacity refusal", extra={"topic_id": topic_id, "retry_after_seconds": retry_after})
        body = self._response(
            response_id(CAPACITY_PREFIX),
            capacity_refusal(retry_after),
            ai_used=False,
            retry_count=0,
            persisted=False,
        )
        trace.append(OrchestratorState.RESPONDED)
        return EvaluationResult(status_code=200, body=body, trace=trace)

    def _response(
        self, decision_id: str, output: AIOutput, ai_used: bool, retry_count: int, persisted: bool
    ) -> Dict[str, Any]:
        response = DecisionResponse(
            decision_id=decision_id,
            output=output,
            metadata=ResponseMetadata(
                logic_version=self.config.logic_version,
                ai_used=ai_used,
                retry_count=retry_count,
                persisted=persisted,
            ),
        )
        return response.model_dump(mode="json", exclude_none=True)
