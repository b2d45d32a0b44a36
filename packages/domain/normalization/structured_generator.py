"""
Structured Generator - schema-constrained language-model calls

Interface used by the parsing cascade's tier 3:
    generate(prompt, schema, max_output_tokens) → GenerationResult(data, input_tokens, output_tokens)

Default implementation: Anthropic Messages API with a single forced tool whose
input_schema is the target JSON schema, so the model's answer arrives as the
tool input instead of free text.

Errors:
- QuotaExceededError: provider rate/quota rejection (HTTP 429)
- StructuredGenerationError: transport failure, timeout, malformed output
- GeneratorNotConfiguredError: no API key
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import anthropic
import structlog

from packages.common.config import Settings
from packages.common.errors import (
    GeneratorNotConfiguredError,
    QuotaExceededError,
    StructuredGenerationError,
)

logger = structlog.get_logger()

TOOL_NAME = "record_normalized_item"


@dataclass(frozen=True)
class GenerationResult:
    """Parsed model output plus actual token usage"""
    data: Dict[str, Any]
    input_tokens: int
    output_tokens: int


class StructuredGenerator(ABC):
    """Schema-constrained generation capability"""

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        schema: Dict[str, Any],
        max_output_tokens: int,
    ) -> GenerationResult:
        pass


class AnthropicStructuredGenerator(StructuredGenerator):
    """
    Structured generation via the Anthropic Messages API.

    Uses tool use with tool_choice forced to one tool, so the response is
    always a tool_use block validated against input_schema.
    """

    def __init__(self, settings: Settings, client: Optional[anthropic.AsyncAnthropic] = None):
        """
        Initialize generator.

        Args:
            settings: Model name, temperature, timeout and API key
            client: Pre-built client (tests); built from settings when omitted
        """
        self.model = settings.model_name
        self.temperature = settings.model_temperature

        if client is not None:
            self.client = client
        elif settings.anthropic_api_key:
            self.client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key,
                timeout=settings.model_timeout_seconds,
                max_retries=1,
            )
        else:
            logger.warning("anthropic_api_key_missing",
                           message="ANTHROPIC_API_KEY not set, model tier disabled")
            self.client = None

    async def generate(
        self,
        prompt: str,
        schema: Dict[str, Any],
        max_output_tokens: int,
    ) -> GenerationResult:
        if self.client is None:
            raise GeneratorNotConfiguredError("Structured generator has no API client")

        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=max_output_tokens,
                temperature=self.temperature,
                tools=[
                    {
                        "name": TOOL_NAME,
                        "description": "Record the normalized purchase line.",
                        "input_schema": schema,
                    }
                ],
                tool_choice={"type": "tool", "name": TOOL_NAME},
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError as e:
            retry_after = 3600
            headers = getattr(getattr(e, "response", None), "headers", None) or {}
            if headers.get("retry-after", "").isdigit():
                retry_after = int(headers["retry-after"])
            logger.warning("model_quota_exceeded", model=self.model, retry_after=retry_after)
            raise QuotaExceededError(
                "LLM quota exceeded. Request queued for batch processing.",
                retry_after_seconds=retry_after,
            ) from e
        except anthropic.APITimeoutError as e:
            logger.warning("model_timeout", model=self.model)
            raise StructuredGenerationError(f"Model call timed out: {e}") from e
        except anthropic.APIError as e:
            logger.error("model_api_error", model=self.model, error=str(e))
            raise StructuredGenerationError(f"Model API error: {e}") from e

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens

        data = self._extract_tool_input(response.content)
        if data is None:
            raw = " ".join(getattr(block, "text", "") for block in response.content)
            raise StructuredGenerationError(
                "Model returned no structured output",
                raw_response=raw,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )

        logger.info("model_generation_complete",
                    model=self.model,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens)

        return GenerationResult(data=data, input_tokens=input_tokens, output_tokens=output_tokens)

    @staticmethod
    def _extract_tool_input(content) -> Optional[Dict[str, Any]]:
        """Pull the tool_use input out of the response blocks"""
        for block in content:
            if getattr(block, "type", None) == "tool_use" and getattr(block, "name", None) == TOOL_NAME:
                payload = block.input
                if isinstance(payload, str):
                    try:
                        payload = json.loads(payload)
                    except json.JSONDecodeError:
                        return None
                return payload if isinstance(payload, dict) else None
        return None
