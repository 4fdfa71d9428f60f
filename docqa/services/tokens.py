# =============================================================================
# Token Counting — tiktoken
# =============================================================================
#
# Two ways of sizing text, used for different jobs:
#
#   count_tokens()     — exact BPE count via tiktoken (cl100k_base). Used for
#                        prompt scaffolding (instructions, question, context)
#                        when estimating a request against the admission
#                        controller's token budget.
#   estimate_tokens()  — characters / chars_per_token. Used for document
#                        chunks, which can be hundreds of thousands of
#                        characters; an exact encode there costs more than
#                        the precision is worth for budgeting.
#
# DESIGN DECISION: cl100k_base for every provider. Vendors tokenize
# differently, but the admission budget only needs a consistent estimate,
# not the vendor's billing count (actual usage is reported back by the
# provider and corrected in the rate window).
# =============================================================================

from __future__ import annotations

import math

import tiktoken

DEFAULT_CHARS_PER_TOKEN = 3.5

# ---------------------------------------------------------------------------
# Tiktoken Encoder — Cached
# ---------------------------------------------------------------------------
# Loading the encoder reads a ~1.7MB BPE file. Cache it per process.
# ---------------------------------------------------------------------------

_encoder: tiktoken.Encoding | None = None


def _get_encoder() -> tiktoken.Encoding:
    """Lazily initialize and cache the tiktoken encoder."""
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def count_tokens(text: str) -> int:
    """Exact cl100k_base token count of `text`."""
    if not text:
        return 0
    return len(_get_encoder().encode(text, disallowed_special=()))


def estimate_tokens(text: str, chars_per_token: float = DEFAULT_CHARS_PER_TOKEN) -> int:
    """Cheap size estimate for large bodies of text."""
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)
