"""AWS Bedrock text-generation engine (Anthropic messages API)."""

import json
import logging
from typing import Any, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from decision_orchestrator.generation.gateway import GenerationError

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"


class BedrockTextEngine:
    """
    Calls `invoke_model` on bedrock-runtime. Retries are disabled at the
    client: the orchestrator owns the retry budget.
    """

    def __init__(
        self,
        model_id: str,
        region_name: str = "us-west-2",
        client: Optional[Any] = None,
        max_tokens: int = 4096,
        top_p: float = 0.9,
        read_timeout_seconds: int = 30,
    ):
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.top_p = top_p
        self.client = client or boto3.client(
            "bedrock-runtime",
            region_name=region_name,
            config=Config(read_timeout=read_timeout_seconds, retries={"max_attempts": 0}),
        )

    def complete(self, system_prompt: str, user_prompt: str, temperature: float) -> str:
        body = {
            "anthropic_version": ANTHROPIC_VERSION,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_prompt}],
            "temperature": temperature,
            "top_p": self.top_p,
        }
        try:
            response = self.client.invoke_model(
                modelId=self.model_id,
                contentType="application/json",
                accept="application/json",
                body=json.dumps(body),
            )
            payload = json.loads(response["body"].read())
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Bedrock invocation failed", extra={"model_id": self.model_id, "error_type": type(exc).__name__})
            raise GenerationError(f"Bedrock invocation failed: {exc}") from exc

        for block in payload.get("content", []):
            if block.get("type") == "text":
                return block.get("text", "")
        raise GenerationError("Bedrock response contained no text block")
