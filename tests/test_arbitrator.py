# =============================================================================
# Unit Tests — Arbitrator & Verdict Parsing
# =============================================================================
#
# parse_verdict() is exercised with the messy outputs real models produce
# (prose around JSON, code fences, truncation). ProviderArbitrator runs
# against an AsyncMock provider behind a real admission controller.
# =============================================================================

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from docqa.agents.arbitrator import (
    ARBITRATION_MAX_TOKENS,
    ProviderArbitrator,
    extract_json,
    parse_verdict,
    repair_truncated_json,
)
from docqa.agents.evaluator import ProviderRef
from docqa.agents.prompts import ARBITRATION_SYSTEM_PROMPT, build_arbitration_prompt
from docqa.services.admission import AdmissionController, Priority
from docqa.services.consensus import ModelAnswer
from docqa.services.exceptions import ArbitrationFailure, FatalProviderError
from docqa.services.llm import ProviderResponse
from docqa.services.normalization import AnswerType


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Test: JSON Extraction & Repair
# ---------------------------------------------------------------------------


class TestParseVerdict:
    """Tests for parse_verdict()."""

    def test_plain_json(self):
        verdict = parse_verdict('{"decision": "A", "confidence": 0.9, "reasoning": "Page 4"}')
        assert verdict.decision == "A"
        assert verdict.confidence == 0.9
        assert verdict.reasoning == "Page 4"

    def test_json_inside_prose(self):
        text = (
            'After comparing both answers: {"decision": "B", "reasoning": '
            '"clause {3} applies"} Hope this helps.'
        )
        verdict = parse_verdict(text)
        assert verdict.decision == "B"
        assert verdict.reasoning == "clause {3} applies"

    def test_code_fence(self):
        text = '```json\n{"decision": "SYNTHESIZED", "correct_answer": "03-05-24"}\n```'
        verdict = parse_verdict(text)
        assert verdict.decision == "SYNTHESIZED"
        assert verdict.correct_answer == "03-05-24"

    def test_truncated_output_repaired(self):
        text = '{"decision": "A", "confidence": 0.8, "reasoning": "Both dates cl'
        verdict = parse_verdict(text)
        assert verdict.decision == "A"
        assert verdict.reasoning == "Both dates cl"

    def test_percentage_confidence(self):
        assert parse_verdict('{"decision": "A", "confidence": 92}').confidence == 0.92

    @pytest.mark.parametrize("text", [
        "",
        "I cannot decide between these answers.",
        '{"decision": "D"}',
        '["A", "B"]',
        '{"confidence": 0.9}',
    ])
    def test_unusable_output_raises(self, text):
        with pytest.raises(ArbitrationFailure):
            parse_verdict(text)


class TestJsonHelpers:
    """Tests for extract_json() and repair_truncated_json()."""

    def test_extract_unclosed_fence(self):
        assert extract_json('```json\n{"decision": "A"') == '{"decision": "A"'

    def test_extract_without_json(self):
        assert extract_json("  no json  ") == "no json"

    def test_repair_closes_nested(self):
        assert repair_truncated_json('{"a": [1, 2') == '{"a": [1, 2]}'

    def test_repair_drops_trailing_comma(self):
        assert repair_truncated_json('{"a": 1,') == '{"a": 1}'

    def test_repair_empty(self):
        assert repair_truncated_json("   ") is None


# ---------------------------------------------------------------------------
# Test: Arbitration Prompt
# ---------------------------------------------------------------------------


class TestArbitrationPrompt:
    """Tests for build_arbitration_prompt()."""

    def test_labels_every_candidate(self):
        prompt = build_arbitration_prompt(
            "Is it signed?",
            AnswerType.BOOLEAN,
            [("a", "YES", 0.9), ("b", "NO", 0.8), ("c", "NO", 0.7)],
            "Signature: ________",
        )
        assert "ANSWER A (a)" in prompt
        assert "ANSWER C (c)" in prompt
        assert "- Confidence: 0.70" in prompt
        assert '"A" or "B" or "C"' in prompt
        assert "Signature: ________" in prompt

    def test_missing_excerpt(self):
        prompt = build_arbitration_prompt("Q?", AnswerType.TEXT, [("a", "x", 0.5)], "")
        assert "(not available)" in prompt


# ---------------------------------------------------------------------------
# Test: ProviderArbitrator
# ---------------------------------------------------------------------------


def _ref(provider: AsyncMock) -> ProviderRef:
    controller = AdmissionController("arbiter")
    controller.admit = AsyncMock(wraps=controller.admit)
    return ProviderRef(
        provider_id="arbiter",
        provider=provider,
        controller=controller,
        model="arbiter-model",
        params={"temperature": 0.3, "max_tokens": 2048},
    )


def _candidates() -> list[ModelAnswer]:
    return [
        ModelAnswer.from_text("YES", AnswerType.BOOLEAN, "a", confidence=0.9),
        ModelAnswer.from_text("NO", AnswerType.BOOLEAN, "b", confidence=0.8),
    ]


class TestProviderArbitrator:
    """ProviderArbitrator goes through the admission controller."""

    def test_verdict_returned(self):
        provider = AsyncMock()
        provider.call.return_value = ProviderResponse(
            text='{"decision": "B", "confidence": 0.85, "reasoning": "Unsigned"}',
            model="arbiter-model", input_tokens=300, output_tokens=40,
        )
        ref = _ref(provider)
        arbitrator = ProviderArbitrator(ref, token_counter=len)

        verdict = _run(arbitrator.arbitrate(
            "Is it signed?", AnswerType.BOOLEAN, _candidates(), "Signature: ____",
        ))

        assert verdict.decision == "B"
        model, prompt, params = provider.call.await_args.args
        assert model == "arbiter-model"
        assert params["system"] == ARBITRATION_SYSTEM_PROMPT
        assert params["temperature"] == 0.0
        assert params["max_tokens"] == ARBITRATION_MAX_TOKENS

        kwargs = ref.controller.admit.await_args.kwargs
        assert kwargs["priority"] is Priority.HIGH
        assert kwargs["name"] == "arbitrate:arbiter"
        assert kwargs["estimated_tokens"] == (
            len(ARBITRATION_SYSTEM_PROMPT) + len(prompt) + ARBITRATION_MAX_TOKENS
        )
        assert ref.controller.get_stats().succeeded == 1

    def test_call_failure_becomes_arbitration_failure(self):
        provider = AsyncMock()
        provider.call.side_effect = FatalProviderError("model not found", provider_id="arbiter")
        arbitrator = ProviderArbitrator(_ref(provider), token_counter=len)

        with pytest.raises(ArbitrationFailure) as excinfo:
            _run(arbitrator.arbitrate("Q?", AnswerType.BOOLEAN, _candidates(), ""))
        assert isinstance(excinfo.value.__cause__, FatalProviderError)

    def test_unparseable_output(self):
        provider = AsyncMock()
        provider.call.return_value = ProviderResponse(
            text="Both answers look plausible.", model="m", input_tokens=1, output_tokens=1,
        )
        arbitrator = ProviderArbitrator(_ref(provider), token_counter=len)

        with pytest.raises(ArbitrationFailure):
            _run(arbitrator.arbitrate("Q?", AnswerType.BOOLEAN, _candidates(), ""))
