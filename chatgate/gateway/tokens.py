"""Token estimation.

A fast, deterministic, provider-agnostic approximation (~4 characters per
token). It only decides when to truncate history or how much a streamed
reply cost; it does not reproduce any provider's real tokenizer.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Approximate token count of a text span."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
