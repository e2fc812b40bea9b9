"""Claude reasoning service for diagnosis sessions.

Wraps one Messages API call with the repair tools attached. The Anthropic
client is synchronous, so each call runs in a worker thread and is bounded
by the configured request timeout. API failures surface as
ReasoningServiceError; the caller decides what that means for the session.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import anthropic

from rulefix.core.errors import ReasoningServiceError
from rulefix.core.logging import get_logger
from rulefix.diagnosis.tools import REPAIR_TOOLS

if TYPE_CHECKING:
    from rulefix.config_schema import AppConfig

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ToolCall:
    """One tool invocation proposed by the reasoning service."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ReasoningStep:
    """The outcome of a single reasoning round.

    Attributes:
        round: 1-based round number within the session
        text: Concatenated text blocks of the response
        tool_calls: Tool calls in the order they were proposed
        content: JSON-safe content blocks, replayed as the assistant turn
        model: Model that produced the response
        stop_reason: API stop reason ('end_turn', 'tool_use', ...)
        input_tokens: Prompt tokens billed for the round
        output_tokens: Completion tokens billed for the round
        duration_ms: Wall-clock duration of the request
    """

    round: int
    text: str
    tool_calls: tuple[ToolCall, ...] = ()
    content: tuple[dict[str, Any], ...] = field(default=(), repr=False)
    model: str | None = None
    stop_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None


class ClaudeReasoningService:
    """Runs reasoning rounds against the Anthropic Messages API."""

    def __init__(self, anthropic_client: anthropic.Anthropic, config: AppConfig) -> None:
        self._client = anthropic_client
        self._config = config

    @property
    def model(self) -> str:
        return self._config.models.diagnosis

    async def reason(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        round_number: int,
    ) -> ReasoningStep:
        """Send the transcript and return Claude's next step.

        Args:
            system_prompt: Session system prompt
            messages: Full transcript so far (not mutated)
            round_number: 1-based round number, recorded on the step

        Returns:
            ReasoningStep with any proposed tool calls

        Raises:
            ReasoningServiceError: API failure or request timeout
        """
        timeout = self._config.diagnosis.request_timeout_seconds
        start_time = time.monotonic()

        try:
            response = await asyncio.wait_for(
                asyncio.to_thread(
                    self._client.messages.create,
                    model=self.model,
                    system=system_prompt,
                    messages=list(messages),
                    tools=REPAIR_TOOLS,
                    max_tokens=self._config.diagnosis.max_tokens,
                    tool_choice={"type": "auto"},
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError) as e:
            logger.error("reasoning_timeout", round=round_number, timeout=timeout)
            raise ReasoningServiceError(
                f"Reasoning request timed out after {timeout:g}s"
            ) from e
        except anthropic.RateLimitError as e:
            logger.error("reasoning_rate_limited", round=round_number, error=str(e))
            raise ReasoningServiceError(
                "The AI service is temporarily busy. Please try again in a moment.",
                status_code=e.status_code,
            ) from e
        except anthropic.APIConnectionError as e:
            logger.error("reasoning_connection_error", round=round_number, error=str(e))
            raise ReasoningServiceError(
                "Could not connect to the AI service. Please check your connection."
            ) from e
        except anthropic.APIStatusError as e:
            logger.error(
                "reasoning_api_error",
                round=round_number,
                status_code=e.status_code,
                error=str(e),
            )
            raise ReasoningServiceError(
                f"AI service error (status {e.status_code}): {e.message}",
                status_code=e.status_code,
            ) from e
        except anthropic.APIError as e:
            logger.error(
                "reasoning_api_error",
                round=round_number,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ReasoningServiceError(f"AI service error: {e.message}") from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        step = _build_step(response, round_number, duration_ms)

        logger.info(
            "reasoning_round_completed",
            round=round_number,
            tool_calls=len(step.tool_calls),
            stop_reason=step.stop_reason,
            duration_ms=duration_ms,
        )
        return step


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def _build_step(response: Any, round_number: int, duration_ms: int) -> ReasoningStep:
    usage = getattr(response, "usage", None)
    return ReasoningStep(
        round=round_number,
        text=_extract_text(response),
        tool_calls=tuple(
            ToolCall(id=block.id, name=block.name, input=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ),
        content=tuple(_serialize_content_block(b) for b in response.content),
        model=getattr(response, "model", None),
        stop_reason=getattr(response, "stop_reason", None),
        input_tokens=getattr(usage, "input_tokens", None),
        output_tokens=getattr(usage, "output_tokens", None),
        duration_ms=duration_ms,
    )


def _extract_text(response: Any) -> str:
    """Extract text content from a Claude response."""
    parts = []
    for block in response.content:
        if block.type == "text":
            parts.append(block.text)
    return "\n".join(parts)


def _serialize_content_block(block: Any) -> dict[str, Any]:
    """Serialize an Anthropic content block to a JSON-safe dict.

    tool_use blocks must be sent back verbatim in the next round.
    """
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": block.input,
        }
    return {"type": block.type}
