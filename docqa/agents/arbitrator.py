# =============================================================================
# Arbitrator Agent — Tie-Breaking Between Disagreeing Providers
# =============================================================================
#
# When candidate answers disagree, a (usually stronger) model is shown the
# question, every candidate with its confidence, and a bounded document
# excerpt, and asked for a JSON verdict:
#   {"decision": "A" | "B" | "C" | "SYNTHESIZED", "correct_answer": ...,
#    "confidence": ..., "reasoning": ..., "discrepancy_analysis": ...}
#
# DESIGN DECISION: The arbitrator call goes through the arbitrator
# provider's admission controller at HIGH priority. It sits on the critical
# path of an evaluation that has already spent two or three provider calls,
# so it should not wait behind fresh low-value work.
#
# DESIGN DECISION: Tolerant JSON parsing.
# Models wrap JSON in prose or markdown fences, and truncated output is
# common when max_tokens is tight. The parser strips fences, finds the
# outermost object and closes unterminated strings and brackets before
# giving up. Anything that still fails is an ArbitrationFailure, which the
# consensus engine absorbs.
# =============================================================================

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from pydantic import ValidationError

from docqa.agents.prompts import (
    ARBITRATION_SYSTEM_PROMPT,
    build_arbitration_prompt,
)
from docqa.models.responses import ArbitrationVerdict
from docqa.services.admission import Priority
from docqa.services.consensus import ModelAnswer
from docqa.services.exceptions import ArbitrationFailure, DocQAError
from docqa.services.normalization import AnswerType
from docqa.services.tokens import count_tokens

if TYPE_CHECKING:
    from docqa.agents.evaluator import ProviderRef

logger = logging.getLogger(__name__)

# Room for the verdict JSON; reasoning is asked to be brief
ARBITRATION_MAX_TOKENS = 600


class ProviderArbitrator:
    """Arbitrates through one provider and its admission controller."""

    def __init__(
        self,
        ref: ProviderRef,
        *,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self._ref = ref
        self._count_tokens = token_counter

    @property
    def provider_id(self) -> str:
        return self._ref.provider_id

    async def arbitrate(
        self,
        question: str,
        expected_type: AnswerType,
        candidates: Sequence[ModelAnswer],
        excerpt: str,
    ) -> ArbitrationVerdict:
        """
        Ask the arbitrator model to pick or synthesize an answer.

        Raises:
            ArbitrationFailure: The call was refused or failed, or the
                output is not a valid verdict.
        """
        prompt = build_arbitration_prompt(
            question,
            expected_type,
            [(c.provider_id, c.raw_text, c.confidence) for c in candidates],
            excerpt,
        )
        params = {
            **self._ref.params,
            "system": ARBITRATION_SYSTEM_PROMPT,
            "temperature": 0.0,
            "max_tokens": ARBITRATION_MAX_TOKENS,
        }
        estimated = (
            self._count_tokens(ARBITRATION_SYSTEM_PROMPT)
            + self._count_tokens(prompt)
            + ARBITRATION_MAX_TOKENS
        )

        async def _call():
            return await self._ref.provider.call(self._ref.model, prompt, params)

        logger.info(
            "Arbitrating %d candidates via %s", len(candidates), self.provider_id,
        )
        try:
            response = await self._ref.controller.admit(
                _call,
                name=f"arbitrate:{self.provider_id}",
                priority=Priority.HIGH,
                estimated_tokens=estimated,
            )
        except DocQAError as e:
            raise ArbitrationFailure(f"Arbitrator call failed: {e}") from e

        return parse_verdict(response.text)


# ---------------------------------------------------------------------------
# Verdict Parsing
# ---------------------------------------------------------------------------


def parse_verdict(text: str) -> ArbitrationVerdict:
    """Parse and validate a verdict from raw model output."""
    json_str = extract_json(text)
    last_error: Exception | None = None

    # Try parsing as-is first, then try repairing truncated JSON
    for candidate in (json_str, repair_truncated_json(json_str)):
        if candidate is None:
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError as e:
            last_error = e
            continue
        if not isinstance(data, dict):
            last_error = ValueError("verdict is not a JSON object")
            continue
        try:
            return ArbitrationVerdict.model_validate(data)
        except ValidationError as e:
            last_error = e

    logger.warning("Unusable arbitration output: %s. Raw: %s", last_error, text[:300])
    raise ArbitrationFailure(f"Arbitration response parsing failed: {last_error}")


def extract_json(text: str) -> str:
    """Extract JSON from a response that might include markdown code blocks."""
    # Try to find JSON in ```json ... ``` blocks
    for fence in ("```json", "```"):
        if fence in text:
            start = text.index(fence) + len(fence)
            end = text.find("```", start)
            # Unclosed code block: take everything after the opening tag
            return text[start:].strip() if end == -1 else text[start:end].strip()

    # Outermost object, tracking strings so braces inside values don't count
    start = text.find("{")
    if start == -1:
        return text.strip()
    depth = 0
    in_string = False
    i = start
    while i < len(text):
        c = text[i]
        if in_string:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                in_string = False
        elif c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
        i += 1
    return text[start:].strip()


def repair_truncated_json(text: str) -> str | None:
    """
    Attempt to repair truncated JSON by closing unclosed strings,
    arrays, and objects. Returns None if the input is empty.
    """
    if not text or not text.strip():
        return None

    s = text.rstrip()
    stack: list[str] = []
    in_string = False
    i = 0
    while i < len(s):
        c = s[i]
        if in_string:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                in_string = False
        elif c == '"':
            in_string = True
        elif c in "{[":
            stack.append("}" if c == "{" else "]")
        elif c in "}]" and stack:
            stack.pop()
        i += 1

    if in_string:
        s += '"'
    s = s.rstrip().rstrip(",")
    return s + "".join(reversed(stack))
