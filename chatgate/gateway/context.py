"""Context Manager — fits conversation history into a model's token budget.

Truncation is recency-first and whole-message: the preamble and the new
user message are always sent, history ``system`` messages are always kept,
and the rest of the history is taken newest to oldest until the next
message would overflow the budget. Kept messages stay in their original
order.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from chatgate.gateway.tokens import estimate_tokens
from chatgate.gateway.types import ConversationContext, Message, Role

logger = logging.getLogger(__name__)


class ContextManager:
    """Builds a ConversationContext for one turn. Stateless."""

    def build(
        self,
        history: Sequence[Message],
        new_user_text: str,
        budget_tokens: int,
        system_preamble: str = "",
    ) -> ConversationContext:
        new_message = Message.create(Role.USER, new_user_text)
        reserved = estimate_tokens(system_preamble) + new_message.approx_tokens

        if reserved > budget_tokens:
            # Sent as-is; the provider reports the length error
            logger.warning(
                "New message alone (%d tokens) exceeds context budget %d, sending without history",
                reserved,
                budget_tokens,
            )
            return ConversationContext(
                messages=[new_message],
                system_preamble=system_preamble,
                token_budget=budget_tokens,
                dropped_messages=len(history),
            )

        used = reserved
        keep: set[int] = set()

        for index, message in enumerate(history):
            if message.role == Role.SYSTEM:
                keep.add(index)
                used += self._tokens(message)

        for index in range(len(history) - 1, -1, -1):
            message = history[index]
            if message.role == Role.SYSTEM:
                continue
            cost = self._tokens(message)
            if used + cost > budget_tokens:
                break
            keep.add(index)
            used += cost

        messages = [m for i, m in enumerate(history) if i in keep]
        messages.append(new_message)
        dropped = len(history) - len(keep)

        if dropped:
            logger.debug("Context truncated: kept %d of %d history messages (%d/%d tokens)", len(keep), len(history), used, budget_tokens)

        return ConversationContext(
            messages=messages,
            system_preamble=system_preamble,
            token_budget=budget_tokens,
            dropped_messages=dropped,
        )

    @staticmethod
    def _tokens(message: Message) -> int:
        # Entries loaded from older logs may lack an estimate
        return message.approx_tokens or estimate_tokens(message.content)
