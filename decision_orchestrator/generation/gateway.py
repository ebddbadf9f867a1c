"""
Generation Gateway — one bounded call to the text-generation engine.

The gateway builds the prompt, enforces the timeout and parses the
completion into a JSON object. It never decides to refuse: every failure
(engine error, timeout, unparseable text) is raised as GenerationError and
the orchestrator decides what happens next.
"""

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Dict, Optional, Protocol

from decision_orchestrator.generation.prompts import SYSTEM_PROMPT, build_user_prompt
from decision_orchestrator.models.envelope import StandardInputEnvelope

logger = logging.getLogger(__name__)

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}", re.DOTALL)

FIRST_ATTEMPT_TEMPERATURE = 0.3
CORRECTIVE_TEMPERATURE = 0.2


class GenerationError(Exception):
    """The engine failed, timed out, or returned something other than a JSON object."""


class TextGenerationEngine(Protocol):
    """Protocol for text generation — pluggable backend."""

    model_id: str

    def complete(self, system_prompt: str, user_prompt: str, temperature: float) -> str: ...


def parse_completion(text: str) -> Dict[str, Any]:
    """Parse a completion as a JSON object, tolerating prose around it."""
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        match = _JSON_OBJECT_PATTERN.search(text or "")
        if not match:
            raise GenerationError("Completion contained no JSON object")
        try:
            parsed = json.loads(match.group(0))
        except ValueError as exc:
            raise GenerationError(f"Completion JSON could not be parsed: {exc}") from exc
    if not isinstance(parsed, dict):
        raise GenerationError("Completion JSON was not an object")
    return parsed


class GenerationGateway:
    def __init__(
        self,
        engine: TextGenerationEngine,
        timeout_seconds: float = 30.0,
        max_workers: int = 8,
    ):
        self.engine = engine
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="generation")

    @property
    def model_id(self) -> str:
        return getattr(self.engine, "model_id", "unknown")

    def invoke(
        self,
        envelope: StandardInputEnvelope,
        corrective_prompt: Optional[str] = None,
        attempt: int = 0,
    ) -> Dict[str, Any]:
        """
        Single generation attempt. Returns the parsed JSON object.
        `attempt` is the zero-based position in the caller's retry loop and
        only tags the log records. Raises GenerationError on any failure.
        """
        user_prompt = build_user_prompt(envelope, corrective_prompt)
        temperature = CORRECTIVE_TEMPERATURE if corrective_prompt else FIRST_ATTEMPT_TEMPERATURE

        started = time.monotonic()
        future = self._executor.submit(self.engine.complete, SYSTEM_PROMPT, user_prompt, temperature)
        try:
            text = future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            future.cancel()
            logger.warning(
                "Generation timed out",
                extra={"model_id": self.model_id, "attempt": attempt, "timeout_seconds": self.timeout_seconds},
            )
            raise GenerationError(f"Generation timed out after {self.timeout_seconds}s") from exc
        except GenerationError:
            raise
        except Exception as exc:
            logger.warning(
                "Generation engine failed",
                extra={"model_id": self.model_id, "attempt": attempt, "error_type": type(exc).__name__},
            )
            raise GenerationError(f"Generation engine failed: {exc}") from exc

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Generation completed",
            extra={
                "model_id": self.model_id,
                "attempt": attempt,
                "duration_ms": duration_ms,
                "corrective": bool(corrective_prompt),
            },
        )
        return parse_completion(text)

    def close(self) -> None:
        self._executor.shutdown(wait=False)
