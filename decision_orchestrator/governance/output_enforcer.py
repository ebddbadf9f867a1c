"""
Output Enforcer — the only path by which generated text becomes a response.

Checks, in order:
1. Shape: the object parses as one variant of the output union, and that
   variant is allowed for the requested task.
2. Completeness: decisions carry 2-5 assumptions, gains and losses, 2-4
   change conditions and a confidence in [0, 1]; the other variants carry
   their required parts. Field bounds live on the output models.
3. Content policy: no promotional language, no guarantees, no AI
   self-reference, no emojis or exclamation marks in headline and summary.
"""

import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from decision_orchestrator.governance.input_validator import FieldError
from decision_orchestrator.generation.prompts import RETRY_PREAMBLE
from decision_orchestrator.models.envelope import TaskType
from decision_orchestrator.models.output import (
    AI_OUTPUT_ADAPTER,
    OUTPUT_TYPES,
    AIOutput,
    DecisionBody,
    DecisionOutput,
    RevisionOutput,
    TradeoffExplanationOutput,
)

FORBIDDEN_PHRASES = [
    "unforgettable",
    "magical",
    "once-in-a-lifetime",
    "breathtaking",
    "seamless",
    "curated",
    "unlock",
    "elevate",
    "world-class",
    "hidden gem",
    "bucket list",
    "ai-powered",
    "you'll love",
    "perfect for",
    "ideal choice",
    "great option",
]

GUARANTEE_PATTERNS = [
    re.compile(r"you will see", re.IGNORECASE),
    re.compile(r"guaranteed sightings?", re.IGNORECASE),
    re.compile(r"you are guaranteed", re.IGNORECASE),
    re.compile(r"promise you", re.IGNORECASE),
    re.compile(r"certainly will", re.IGNORECASE),
    re.compile(r"definitely will", re.IGNORECASE),
]

SELF_REFERENCE_PATTERNS = [
    re.compile(r"as an ai", re.IGNORECASE),
    re.compile(r"i am an ai", re.IGNORECASE),
    re.compile(r"as a language model", re.IGNORECASE),
]

EMOJI_PATTERN = re.compile(
    "[\U0001F300-\U0001FAFF\U00002600-\U000027BF\U0001F1E6-\U0001F1FF\U00002B50\U00002B55]"
)

ALLOWED_TYPES = {
    TaskType.DECISION: {"decision", "refusal"},
    TaskType.REFUSAL: {"refusal"},
    TaskType.REVISION: {"revision", "refusal"},
    TaskType.CLARIFICATION: {"clarification", "refusal"},
    TaskType.TRADEOFF_EXPLANATION: {"tradeoff_explanation", "refusal"},
}


class OutputValidationResult(BaseModel):
    valid: bool
    errors: List[FieldError] = Field(default_factory=list)
    output: Optional[AIOutput] = None


def _schema_errors(exc: ValidationError, tag: Optional[str]) -> List[FieldError]:
    errors = []
    for err in exc.errors():
        loc = list(err["loc"])
        if tag is not None and loc and loc[0] == tag:
            loc = loc[1:]
        if err["type"] in ("union_tag_not_found", "union_tag_invalid"):
            field = "type"
        else:
            field = ".".join(f"[{p}]" if isinstance(p, int) else str(p) for p in loc).replace(".[", "[")
        errors.append(FieldError(field=field or "root", message=err["msg"]))
    return errors


def _decision_texts(prefix: str, decision: DecisionBody) -> List[Tuple[str, str]]:
    texts = [
        (f"{prefix}.headline", decision.headline),
        (f"{prefix}.summary", decision.summary),
    ]
    texts += [(f"{prefix}.assumptions[{i}].text", a.text) for i, a in enumerate(decision.assumptions)]
    texts += [(f"{prefix}.tradeoffs.gains[{i}]", g) for i, g in enumerate(decision.tradeoffs.gains)]
    texts += [(f"{prefix}.tradeoffs.losses[{i}]", g) for i, g in enumerate(decision.tradeoffs.losses)]
    texts += [(f"{prefix}.change_conditions[{i}]", c) for i, c in enumerate(decision.change_conditions)]
    return texts


def _policed_texts(output: AIOutput) -> Tuple[List[Tuple[str, str]], List[Tuple[str, str]]]:
    """(all text subject to language rules, headline-level text subject to tone rules)"""
    if isinstance(output, DecisionOutput):
        texts = _decision_texts("decision", output.decision)
        return texts, texts[:2]
    if isinstance(output, RevisionOutput):
        texts = _decision_texts("revision.decision", output.revision.decision)
        texts.append(("revision.what_changed", output.revision.what_changed))
        return texts, texts[:2]
    if isinstance(output, TradeoffExplanationOutput):
        texts = [
            ("explanation.text", output.explanation.text),
            ("explanation.next_step", output.explanation.next_step),
        ]
        return texts, []
    return [], []


def check_content_policy(
    output: AIOutput, forbidden_phrases: Iterable[str] = ()
) -> List[FieldError]:
    errors: List[FieldError] = []
    phrases = [p.lower() for p in FORBIDDEN_PHRASES]
    phrases += [p.lower() for p in forbidden_phrases if p and p.lower() not in phrases]

    texts, tone_texts = _policed_texts(output)
    for field, text in texts:
        lowered = text.lower()
        for phrase in phrases:
            if phrase in lowered:
                errors.append(FieldError(field=field, message=f"Contains forbidden phrase: '{phrase}'"))
        for pattern in GUARANTEE_PATTERNS:
            if pattern.search(text):
                errors.append(FieldError(field=field, message="Contains guarantee language"))
                break
        for pattern in SELF_REFERENCE_PATTERNS:
            if pattern.search(text):
                errors.append(FieldError(field=field, message="Contains AI self-reference"))
                break

    for field, text in tone_texts:
        if EMOJI_PATTERN.search(text):
            errors.append(FieldError(field=field, message="Contains emoji"))
        if "!" in text:
            errors.append(FieldError(field=field, message="Contains exclamation mark"))
    return errors


class OutputEnforcer:
    """Validates generated objects against the output contract."""

    def __init__(self, extra_forbidden_phrases: Sequence[str] = ()):
        self.extra_forbidden_phrases = list(extra_forbidden_phrases)

    def validate(
        self,
        raw: Any,
        task: Optional[TaskType] = None,
        forbidden_phrases: Iterable[str] = (),
    ) -> OutputValidationResult:
        if not isinstance(raw, dict):
            return OutputValidationResult(
                valid=False,
                errors=[FieldError(field="root", message="Output must be a JSON object")],
            )

        tag = raw.get("type")
        if task is not None and tag in OUTPUT_TYPES and tag not in ALLOWED_TYPES[task]:
            return OutputValidationResult(
                valid=False,
                errors=[FieldError(
                    field="type",
                    message=f"Output type '{tag}' is not allowed for task {task.value}",
                )],
            )

        try:
            output = AI_OUTPUT_ADAPTER.validate_python(raw)
        except ValidationError as exc:
            return OutputValidationResult(
                valid=False,
                errors=_schema_errors(exc, tag if isinstance(tag, str) else None),
            )

        errors = check_content_policy(
            output, list(self.extra_forbidden_phrases) + list(forbidden_phrases)
        )
        if errors:
            return OutputValidationResult(valid=False, errors=errors)
        return OutputValidationResult(valid=True, output=output)


def generate_retry_prompt(errors: Sequence[FieldError]) -> str:
    """Corrective instruction prepended to the next generation attempt."""
    lines = [RETRY_PREAMBLE, "", "Specific violations:"]
    lines += [f"- {e.field}: {e.message}" for e in errors]
    return "\n".join(lines)
