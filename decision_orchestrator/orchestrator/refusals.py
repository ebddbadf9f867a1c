"""
Synthesized refusals. Every path that cannot produce a generated output
still answers with a valid `refusal` object built here.
"""

from typing import List, Optional
from uuid import uuid4

from decision_orchestrator.governance.input_validator import (
    GUARANTEE_REQUESTED,
    INPUTS_CONFLICT_UNBOUNDED,
    MISSING_MATERIAL_INPUTS,
)
from decision_orchestrator.models.envelope import BudgetBand, DateType, StandardInputEnvelope
from decision_orchestrator.models.output import RefusalBody, RefusalCode, RefusalOutput

MAX_REFUSAL_INPUTS = 5

CONFLICT_MESSAGES = {
    GUARANTEE_REQUESTED: "Safari experiences involve natural wildlife and cannot guarantee specific sightings.",
    INPUTS_CONFLICT_UNBOUNDED: "Your budget range conflicts with the comfort level or coverage selected.",
    MISSING_MATERIAL_INPUTS: "Key information (dates, preferences, or budget) is missing, preventing a reliable recommendation.",
}

CONFLICT_CODES = {
    GUARANTEE_REQUESTED: RefusalCode.GUARANTEE_REQUESTED,
    INPUTS_CONFLICT_UNBOUNDED: RefusalCode.CONFLICTING_INPUTS,
    MISSING_MATERIAL_INPUTS: RefusalCode.MISSING_INPUTS,
}

DATES_MISSING = "Travel dates are not specified, which significantly affects availability and pricing."
BUDGET_MISSING = "Budget range is not specified, which determines the tier of accommodations available."

CAPACITY_PREFIX = "cap"
FALLBACK_PREFIX = "err"


def response_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


def immediate_refusal(conflicts: List[str], envelope: StandardInputEnvelope) -> RefusalOutput:
    """Refusal for inputs the envelope's policy says cannot be decided on."""
    inputs = [CONFLICT_MESSAGES[c] for c in conflicts if c in CONFLICT_MESSAGES]
    if envelope.user_context.dates.type == DateType.UNKNOWN:
        inputs.append(DATES_MISSING)
    if envelope.user_context.budget_band == BudgetBand.UNKNOWN:
        inputs.append(BUDGET_MISSING)
    if len(inputs) < 2:
        inputs.append("Any fixed constraints (dates, budget, group) that the recommendation must respect.")

    code = next((CONFLICT_CODES[c] for c in conflicts if c in CONFLICT_CODES), None)
    return RefusalOutput(refusal=RefusalBody(
        code=code,
        reason=(
            "A reliable recommendation is not possible because the constraints conflict "
            "or key information is missing."
        ),
        missing_or_conflicting_inputs=inputs[:MAX_REFUSAL_INPUTS],
        safe_next_step=(
            "Clarify your priorities or provide the missing information, "
            "then request a new recommendation."
        ),
    ))


def quality_refusal() -> RefusalOutput:
    """Generation kept failing validation up to the attempt ceiling."""
    return RefusalOutput(refusal=RefusalBody(
        code=RefusalCode.QUALITY_GATE_FAILED,
        reason="A reliable recommendation could not be generated that meets our quality standards.",
        missing_or_conflicting_inputs=[
            "Internal validation constraints were not satisfied",
            "The generated output did not meet the required decision structure",
        ],
        safe_next_step="Please try again with more specific inputs, or contact support if the issue persists.",
    ))


def service_degraded_refusal(retry_after_seconds: Optional[int] = None) -> RefusalOutput:
    """The generation engine could not be reached or kept failing."""
    return RefusalOutput(refusal=RefusalBody(
        code=RefusalCode.SERVICE_DEGRADED,
        reason="The decision service is temporarily unable to process your request.",
        missing_or_conflicting_inputs=[
            "Service capacity constraints are currently active",
            "Please wait a moment before trying again",
        ],
        safe_next_step="Wait a few seconds and refresh the page, or try again later.",
        retry_after_seconds=retry_after_seconds,
    ))


def capacity_refusal(retry_after_seconds: int) -> RefusalOutput:
    """Another request is already generating this topic."""
    return RefusalOutput(refusal=RefusalBody(
        code=RefusalCode.SERVICE_DEGRADED,
        reason="This topic is being refreshed by another request right now.",
        missing_or_conflicting_inputs=[
            "A recommendation for this topic is currently being generated",
            f"It should be available in about {retry_after_seconds} seconds",
        ],
        safe_next_step="Wait a few seconds and try again.",
        retry_after_seconds=max(1, retry_after_seconds),
    ))


def fallback_refusal() -> RefusalOutput:
    """Unexpected failure inside the orchestrator."""
    return RefusalOutput(refusal=RefusalBody(
        code=RefusalCode.SERVICE_DEGRADED,
        reason="The decision service encountered an internal problem and could not complete this request.",
        missing_or_conflicting_inputs=[
            "No recommendation was produced for this request",
            "Your inputs were not the cause of this problem",
        ],
        safe_next_step="Try again in a minute. If the problem continues, contact support.",
        retry_after_seconds=60,
    ))
