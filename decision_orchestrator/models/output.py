"""
Generated output union.

Every evaluation ends in exactly one of these variants, discriminated by the
``type`` field: decision, refusal, clarification, tradeoff_explanation or
revision.
"""

from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class DecisionOutcome(str, Enum):
    BOOK = "book"
    WAIT = "wait"
    SWITCH = "switch"
    DISCARD = "discard"


class RefusalCode(str, Enum):
    SERVICE_DEGRADED = "SERVICE_DEGRADED"
    MISSING_INPUTS = "MISSING_INPUTS"
    CONFLICTING_INPUTS = "CONFLICTING_INPUTS"
    GUARANTEE_REQUESTED = "GUARANTEE_REQUESTED"
    QUALITY_GATE_FAILED = "QUALITY_GATE_FAILED"


class Assumption(BaseModel):
    id: str = Field(min_length=1)
    text: str = Field(min_length=1)
    confidence: float = Field(ge=0.0, le=1.0)


class Tradeoffs(BaseModel):
    gains: List[str] = Field(min_length=1, max_length=5)
    losses: List[str] = Field(min_length=1, max_length=5)


class DecisionBody(BaseModel):
    outcome: DecisionOutcome
    headline: str = Field(min_length=1, max_length=90)
    summary: str = Field(min_length=1)
    assumptions: List[Assumption] = Field(min_length=2, max_length=5)
    tradeoffs: Tradeoffs
    change_conditions: List[str] = Field(min_length=2, max_length=4)
    confidence: float = Field(ge=0.0, le=1.0)


class RefusalBody(BaseModel):
    code: Optional[RefusalCode] = None
    reason: str = Field(min_length=1)
    missing_or_conflicting_inputs: List[str] = Field(min_length=2, max_length=5)
    safe_next_step: str = Field(min_length=1)
    retry_after_seconds: Optional[int] = Field(default=None, gt=0)


class ClarificationQuestion(BaseModel):
    id: str = Field(min_length=1)
    question: str = Field(min_length=1)
    why_it_matters: str = Field(min_length=1)


class ClarificationBody(BaseModel):
    questions: List[ClarificationQuestion] = Field(min_length=1, max_length=3)


class ExplanationBody(BaseModel):
    text: str = Field(min_length=1)
    next_step: str = Field(min_length=1)


class RevisionBody(BaseModel):
    what_changed: str = Field(min_length=1)
    decision: DecisionBody


class DecisionOutput(BaseModel):
    type: Literal["decision"] = "decision"
    decision: DecisionBody


class RefusalOutput(BaseModel):
    type: Literal["refusal"] = "refusal"
    refusal: RefusalBody


class ClarificationOutput(BaseModel):
    type: Literal["clarification"] = "clarification"
    clarification: ClarificationBody


class TradeoffExplanationOutput(BaseModel):
    type: Literal["tradeoff_explanation"] = "tradeoff_explanation"
    explanation: ExplanationBody


class RevisionOutput(BaseModel):
    type: Literal["revision"] = "revision"
    revision: RevisionBody


AIOutput = Annotated[
    Union[
        DecisionOutput,
        RefusalOutput,
        ClarificationOutput,
        TradeoffExplanationOutput,
        RevisionOutput,
    ],
    Field(discriminator="type"),
]

AI_OUTPUT_ADAPTER = TypeAdapter(AIOutput)

OUTPUT_TYPES = ("decision", "refusal", "clarification", "tradeoff_explanation", "revision")


def decision_body_of(output) -> Optional[DecisionBody]:
    """The decision carried by an output, if any (revisions carry one too)."""
    if isinstance(output, DecisionOutput):
        return output.decision
    if isinstance(output, RevisionOutput):
        return output.revision.decision
    return None
