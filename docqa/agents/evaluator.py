# =============================================================================
# Evaluator — Multi-Provider Document QA
# =============================================================================
#
# Answers one (document, question, expected_type) request with two or three
# independent providers and reconciles them:
#
#   1. Chunk the document per provider (each has its own context budget).
#   2. Ask the best-scoring chunks, in score order, through the provider's
#      admission controller. Stop early on a high-confidence answer.
#   3. Fold the chunk answers into one ModelAnswer per provider.
#   4. Hand the usable answers to the consensus engine.
#
# DESIGN DECISION: Structured fan-out with asyncio.gather(...,
# return_exceptions=True).
# A failing provider branch never cancels its siblings; each branch ends as
# either an answer or an exception, and the fan-in step decides. Same shape
# as the multi-provider benchmark fan-out.
#
# DESIGN DECISION: ValidationStrategy is chosen once from the provider
# count. Lost providers degrade the decision (single-fallback) instead of
# re-entering evaluate() with a different strategy.
#
# DESIGN DECISION: Chunk calls inherit queue priority from chunk priority.
# A critical signature or policy-number section should not wait behind
# low-value boilerplate queued by another evaluation.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from docqa.agents.arbitrator import ProviderArbitrator
from docqa.agents.prompts import (
    EXTRACTION_SYSTEM_PROMPT,
    NOT_FOUND,
    build_extraction_prompt,
    extraction_scaffold,
)
from docqa.config import EvaluatorConfig, Settings, get_settings
from docqa.services.admission import AdmissionController, Priority
from docqa.services.chunker import ChunkingEngine, ChunkPriority, DocumentChunk
from docqa.services.consensus import (
    Arbitrator,
    ConsensusDecision,
    ConsensusEngine,
    ModelAnswer,
    ValidationStrategy,
)
from docqa.services.exceptions import (
    DocQAError,
    QueueTimeout,
    TransientProviderError,
)
from docqa.services.llm import Provider, create_provider_from_id, parse_provider_id
from docqa.services.normalization import AnswerType, answers_match
from docqa.services.tokens import count_tokens

logger = logging.getLogger(__name__)

_QUEUE_PRIORITY = {
    ChunkPriority.CRITICAL: Priority.HIGH,
    ChunkPriority.HIGH: Priority.HIGH,
    ChunkPriority.MEDIUM: Priority.NORMAL,
    ChunkPriority.LOW: Priority.LOW,
}

# Per-chunk failures that leave the provider usable for the next chunk.
# Fatal provider errors, an open circuit and a full queue end the branch.
_SKIPPABLE_CHUNK_ERRORS = (TransientProviderError, QueueTimeout)


# ---------------------------------------------------------------------------
# Provider References
# ---------------------------------------------------------------------------


@dataclass
class ProviderRef:
    """A provider together with the controller that guards it."""

    provider_id: str
    provider: Provider
    controller: AdmissionController
    model: str
    context_budget_tokens: int = 128_000
    params: dict[str, Any] = field(default_factory=dict)


def build_provider_ref(
    provider_id: str,
    settings: Settings | None = None,
    api_key: str | None = None,
) -> ProviderRef:
    """
    Wire a provider and a fresh admission controller from settings.

    Each call creates a new controller; controllers are never shared
    between providers.
    """
    settings = settings or get_settings()
    provider_type, model, _ = parse_provider_id(provider_id)
    if api_key is None:
        vendor_key = (
            settings.anthropic_api_key if provider_type == "anthropic"
            else settings.openai_api_key
        )
        api_key = settings.llm_api_key or vendor_key or None
    return ProviderRef(
        provider_id=provider_id,
        provider=create_provider_from_id(provider_id, api_key=api_key),
        controller=AdmissionController(provider_id, settings.admission_config()),
        model=model,
        context_budget_tokens=settings.provider_context_budget_tokens,
        params={
            "temperature": settings.llm_temperature,
            "max_tokens": settings.llm_max_tokens,
        },
    )


def queue_priority(chunk_priority: ChunkPriority) -> Priority:
    return _QUEUE_PRIORITY[chunk_priority]


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class Evaluator:
    """Runs one question against several providers and reconciles them."""

    def __init__(
        self,
        chunker: ChunkingEngine | None = None,
        consensus: ConsensusEngine | None = None,
        config: EvaluatorConfig | None = None,
        *,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self._chunker = chunker or ChunkingEngine()
        self._consensus = consensus or ConsensusEngine()
        self._config = config or EvaluatorConfig()
        self._count_tokens = token_counter

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> Evaluator:
        settings = settings or get_settings()
        return cls(
            chunker=ChunkingEngine(settings.chunking_config()),
            consensus=ConsensusEngine(settings.consensus_config()),
            config=settings.evaluator_config(),
        )

    @property
    def chunker(self) -> ChunkingEngine:
        return self._chunker

    async def evaluate(
        self,
        document: str | bytes,
        question: str,
        expected_type: AnswerType | str,
        providers: Sequence[ProviderRef],
        *,
        arbitrator: Arbitrator | None = None,
        additional_context: str | None = None,
    ) -> ConsensusDecision:
        """
        Answer a question about a document with 1 to 3 providers.

        Args:
            document: Full document text (bytes are decoded as UTF-8).
            question: The extraction question.
            expected_type: boolean, date, number, text or json.
            providers: Provider references, primary first.
            arbitrator: Tie-breaker; defaults to the first provider.
            additional_context: Extra instructions appended to every
                extraction prompt.

        Returns:
            ConsensusDecision with the final answer and confidence.

        Raises:
            ValueError: Wrong number of providers or an empty question.
            Exception: The first provider error, when no provider produced
                a usable answer (ChunkingFailure, QueueOverflow, ...).
        """
        expected_type = AnswerType(expected_type)
        providers = list(providers)
        strategy = ValidationStrategy.for_count(len(providers))
        if not question or not question.strip():
            raise ValueError("Question must not be empty")

        logger.info(
            "Evaluating with %s validation: providers=%s, type=%s",
            strategy.value,
            [ref.provider_id for ref in providers],
            expected_type.value,
        )

        outcomes = await asyncio.gather(
            *(
                self._ask_provider(ref, document, question, expected_type, additional_context)
                for ref in providers
            ),
            return_exceptions=True,
        )

        answers: list[ModelAnswer] = []
        excerpt = ""
        errors: list[Exception] = []
        for ref, outcome in zip(providers, outcomes):
            if isinstance(outcome, Exception):
                logger.warning("Provider %s failed: %s", ref.provider_id, outcome)
                errors.append(outcome)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            answer, chunk_excerpt = outcome
            answers.append(answer)
            excerpt = excerpt or chunk_excerpt

        if not answers:
            logger.error("No provider produced an answer (%d errors)", len(errors))
            raise errors[0]

        if arbitrator is None:
            arbitrator = ProviderArbitrator(providers[0], token_counter=self._count_tokens)

        decision = await self._consensus.resolve(
            question,
            expected_type,
            answers,
            excerpt=excerpt,
            arbitrator=arbitrator,
            strategy=strategy,
        )
        logger.info(
            "Evaluation resolved: source=%s, confidence=%.2f, agreement=%.2f",
            decision.selected_source.value,
            decision.final_confidence,
            decision.agreement_score,
        )
        return decision

    # -----------------------------------------------------------------------
    # Per-Provider Branch
    # -----------------------------------------------------------------------

    async def _ask_provider(
        self,
        ref: ProviderRef,
        document: str | bytes,
        question: str,
        expected_type: AnswerType,
        additional_context: str | None,
    ) -> tuple[ModelAnswer, str]:
        """One provider's answer plus the chunk text that backs it."""
        result = self._chunker.chunk(document, question, ref.context_budget_tokens)
        chunks = result.chunks[:self._config.max_chunks_per_provider]
        scaffold_tokens = self._count_tokens(
            extraction_scaffold(question, expected_type, additional_context)
        )
        params = {**ref.params, "system": EXTRACTION_SYSTEM_PROMPT}

        found: list[tuple[DocumentChunk, ModelAnswer]] = []
        errors: list[Exception] = []
        tokens_used = 0

        for number, chunk in enumerate(chunks, 1):
            prompt = build_extraction_prompt(
                question, expected_type, chunk, number, len(chunks), additional_context,
            )

            async def _call(prompt: str = prompt):
                return await ref.provider.call(ref.model, prompt, params)

            try:
                response = await ref.controller.admit(
                    _call,
                    name=f"{ref.provider_id}:chunk-{number}",
                    priority=queue_priority(chunk.priority),
                    estimated_tokens=chunk.estimated_tokens + scaffold_tokens,
                )
            except DocQAError as e:
                errors.append(e)
                if not isinstance(e, _SKIPPABLE_CHUNK_ERRORS):
                    logger.error(
                        "%s chunk %d/%d failed, abandoning remaining chunks: %s",
                        ref.provider_id, number, len(chunks), e,
                    )
                    break
                logger.warning(
                    "%s chunk %d/%d failed: %s", ref.provider_id, number, len(chunks), e,
                )
                continue

            tokens_used += response.tokens
            if NOT_FOUND in response.text.upper():
                logger.debug("%s chunk %d/%d: not found", ref.provider_id, number, len(chunks))
                continue

            answer = ModelAnswer.from_text(
                response.text, expected_type, ref.provider_id, response.tokens,
            )
            found.append((chunk, answer))
            if answer.confidence >= self._config.early_stop_confidence:
                logger.info(
                    "%s: confident answer in chunk %d/%d, stopping",
                    ref.provider_id, number, len(chunks),
                )
                break

        if not found:
            if errors:
                raise errors[-1]
            top = chunks[0].content if chunks else ""
            return ModelAnswer(
                raw_text=NOT_FOUND,
                normalized_text=NOT_FOUND,
                confidence=self._config.not_found_confidence,
                provider_id=ref.provider_id,
                tokens_used=tokens_used,
            ), top

        return self._combine(found, expected_type, ref.provider_id, tokens_used)

    def _combine(
        self,
        found: list[tuple[DocumentChunk, ModelAnswer]],
        expected_type: AnswerType,
        provider_id: str,
        tokens_used: int,
    ) -> tuple[ModelAnswer, str]:
        """Best chunk answer, preferring critical/high chunks, plus agreement bonus."""
        preferred = [
            pair for pair in found
            if pair[0].priority in (ChunkPriority.CRITICAL, ChunkPriority.HIGH)
        ] or found
        best_chunk, best = max(preferred, key=lambda pair: pair[1].confidence)

        tolerance = self._consensus.config.number_tolerance
        corroborated = any(
            other is not best
            and answers_match(other.raw_text, best.raw_text, expected_type, tolerance)
            for _, other in found
        )
        confidence = best.confidence
        if corroborated:
            confidence = min(1.0, confidence + self._config.chunk_agreement_bonus)

        return ModelAnswer(
            raw_text=best.raw_text,
            normalized_text=best.normalized_text,
            confidence=round(confidence, 4),
            provider_id=provider_id,
            tokens_used=tokens_used,
        ), best_chunk.content


def build_arbitrator(
    providers: Sequence[ProviderRef],
    settings: Settings | None = None,
) -> ProviderArbitrator:
    """Arbitrator from ARBITRATOR_PROVIDER, else the first provider."""
    settings = settings or get_settings()
    if settings.arbitrator_provider:
        return ProviderArbitrator(build_provider_ref(settings.arbitrator_provider, settings))
    return ProviderArbitrator(providers[0])
