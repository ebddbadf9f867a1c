"""
Input Validator — structural and policy checks on the request envelope.

Behavioral Contract:
- Pure. No side effects, no I/O.
- Structural problems come back as {field, message} errors; the envelope
  is only built when the input is structurally valid.
- Conflict codes are computed from the raw input regardless of validity,
  so a partially broken envelope still reports what it asks for.
- Refusal is mandatory only for conflicts named in policy.must_refuse_if;
  that decision belongs to the orchestrator.
"""

import re
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from decision_orchestrator.models.envelope import StandardInputEnvelope

GUARANTEE_REQUESTED = "guarantee_requested"
INPUTS_CONFLICT_UNBOUNDED = "inputs_conflict_unbounded"
MISSING_MATERIAL_INPUTS = "missing_material_inputs"

_GUARANTEE_PATTERNS = [
    re.compile(r"guarantee", re.IGNORECASE),
    re.compile(r"promise", re.IGNORECASE),
    re.compile(r"will i see", re.IGNORECASE),
    re.compile(r"guaranteed sightings", re.IGNORECASE),
    re.compile(r"certain to", re.IGNORECASE),
]


class FieldError(BaseModel):
    field: str
    message: str


class InputValidationResult(BaseModel):
    valid: bool
    errors: List[FieldError] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    envelope: Optional[StandardInputEnvelope] = None


def _format_loc(loc) -> str:
    parts = []
    for part in loc:
        if isinstance(part, int):
            parts.append(f"[{part}]")
        else:
            parts.append(("." if parts else "") + str(part))
    return "".join(parts) or "root"


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name)
    return value if isinstance(value, dict) else {}


def _conflict_guarantee(raw: Dict[str, Any]) -> bool:
    question = _section(raw, "request").get("question")
    if not isinstance(question, str):
        return False
    return any(p.search(question) for p in _GUARANTEE_PATTERNS)


def _conflict_unbounded(raw: Dict[str, Any]) -> bool:
    budget = _section(raw, "user_context").get("budget_band")
    constraints = _section(raw, "request").get("constraints")
    comfort = constraints.get("comfort_level") if isinstance(constraints, dict) else None
    return budget == "budget" and comfort == "luxury"


def _conflict_missing_material(raw: Dict[str, Any]) -> bool:
    ctx = _section(raw, "user_context")
    dates = ctx.get("dates") if isinstance(ctx.get("dates"), dict) else {}
    return dates.get("type") == "unknown" or ctx.get("budget_band") == "unknown"


# Rule registry: conflict code → detector over the raw input
CONFLICT_RULES: Dict[str, Callable[[Dict[str, Any]], bool]] = {
    GUARANTEE_REQUESTED: _conflict_guarantee,
    INPUTS_CONFLICT_UNBOUNDED: _conflict_unbounded,
    MISSING_MATERIAL_INPUTS: _conflict_missing_material,
}


def detect_input_conflicts(raw: Any) -> List[str]:
    """Conflict codes present in the input, in registry order."""
    if not isinstance(raw, dict):
        return []
    return [code for code, rule in CONFLICT_RULES.items() if rule(raw)]


def validate_input(raw: Any) -> InputValidationResult:
    """Validate an evaluation request body."""
    conflicts = detect_input_conflicts(raw)

    if not isinstance(raw, dict):
        return InputValidationResult(
            valid=False,
            errors=[FieldError(field="root", message="Input must be a JSON object")],
            conflicts=conflicts,
        )

    try:
        envelope = StandardInputEnvelope.model_validate(raw)
    except ValidationError as exc:
        errors = [
            FieldError(field=_format_loc(err["loc"]), message=err["msg"])
            for err in exc.errors()
        ]
        return InputValidationResult(valid=False, errors=errors, conflicts=conflicts)

    return InputValidationResult(valid=True, conflicts=conflicts, envelope=envelope)


def must_refuse(result: InputValidationResult) -> List[str]:
    """Conflicts that the envelope's own policy says must end in refusal."""
    if result.envelope is None:
        return []
    required = set(result.envelope.policy.must_refuse_if)
    return [c for c in result.conflicts if c in required]
