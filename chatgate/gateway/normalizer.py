"""Response Normalizer — post-processes LLMResponses.

Applies final normalization steps after the provider adapter returns:
  - Maps provider finish reasons to uniform values
  - Estimates tokens_used if the provider didn't report usage
"""

from __future__ import annotations

import logging

from chatgate.gateway.tokens import estimate_tokens
from chatgate.gateway.types import ConversationContext, FinishReason, LLMResponse

logger = logging.getLogger(__name__)

# Provider-specific stop reasons → uniform values
_FINISH_REASONS: dict[str, FinishReason] = {
    # OpenAI
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "content_filter": FinishReason.CONTENT_FILTER,
    "tool_calls": FinishReason.TOOL_USE,
    "function_call": FinishReason.TOOL_USE,
    # Anthropic
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.LENGTH,
    "tool_use": FinishReason.TOOL_USE,
    "refusal": FinishReason.CONTENT_FILTER,
    "unknown": FinishReason.UNKNOWN,
}


def normalize_finish_reason(raw: str | None) -> str:
    if not raw:
        return FinishReason.STOP.value
    reason = _FINISH_REASONS.get(raw)
    if reason is None:
        logger.debug("Unmapped finish reason: %s", raw)
        return FinishReason.UNKNOWN.value
    return reason.value


def normalize_response(response: LLMResponse, context: ConversationContext | None = None) -> LLMResponse:
    """Apply normalization to a provider response.

    This is idempotent — can be called multiple times safely.
    """
    response.finish_reason = normalize_finish_reason(response.finish_reason)

    if response.tokens_used <= 0:
        prompt_tokens = context.estimated_tokens if context is not None else 0
        response.tokens_used = prompt_tokens + estimate_tokens(response.content)

    return response
