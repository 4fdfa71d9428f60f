# =============================================================================
# Consensus & Arbitration Engine
# =============================================================================
#
# Turns two or three independent provider answers into one final answer
# with a calibrated confidence.
#
# STATE MACHINE (per evaluation):
#   PENDING → CONSENSUS   → RESOLVED   (answers agree)
#   PENDING → ARBITRATING → RESOLVED   (arbitrator decides, or fails and the
#                                       higher-confidence answer is used)
#   PENDING → RESOLVED                 (only one usable answer)
# Every path resolves; arbitration failures are never raised to the caller.
# Three-way consensus reports the answer with the highest summed pairwise
# agreement, so a lone outlier in the primary slot never wins.
#
# CONFIDENCE RULES:
#   consensus         min(max_consensus_confidence, mean + agreement_bonus)
#   arbitrated        the arbitrator's own confidence (default 0.85)
#   arbitration fails best candidate confidence × disagreement_penalty
#   single answer     its confidence × single_fallback_penalty
#
# DESIGN DECISION: Bonus and penalty values live in ConsensusConfig.
# Deployments tune them per document family; the defaults are +0.1 for
# agreement, ×0.85 after a failed arbitration and ×0.9 for a lone answer.
#
# DESIGN DECISION: A degraded decision is a normal return value.
# selected_source and final_confidence tell callers how much independent
# checking backs the answer; nothing is thrown.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from itertools import combinations
from typing import Protocol

from docqa.config import ConsensusConfig
from docqa.models.responses import ArbitrationVerdict
from docqa.services.exceptions import ArbitrationFailure
from docqa.services.normalization import (
    AnswerType,
    agreement_score,
    answers_match,
    extract_confidence,
    normalize_answer,
    strip_confidence_markers,
)

logger = logging.getLogger(__name__)

CANDIDATE_LABELS = ("A", "B", "C")


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class SelectedSource(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    ARBITRATED = "arbitrated"
    SINGLE_FALLBACK = "single-fallback"


class ValidationStrategy(StrEnum):
    """How many independent answers an evaluation asks for."""

    SINGLE = "single"
    DUAL = "dual"
    TRIPLE = "triple"

    @classmethod
    def for_count(cls, count: int) -> ValidationStrategy:
        try:
            return {1: cls.SINGLE, 2: cls.DUAL, 3: cls.TRIPLE}[count]
        except KeyError:
            raise ValueError(
                f"Consensus needs 1 to 3 independent answers, got {count}"
            ) from None


@dataclass(frozen=True)
class ModelAnswer:
    """One provider's answer. Never mutated after creation."""

    raw_text: str
    normalized_text: str
    confidence: float
    provider_id: str
    tokens_used: int = 0

    @classmethod
    def from_text(
        cls,
        raw_text: str,
        expected_type: AnswerType | str,
        provider_id: str,
        tokens_used: int = 0,
        confidence: float | None = None,
    ) -> ModelAnswer:
        """Build an answer, reading confidence from the text when not given."""
        if confidence is None:
            confidence = extract_confidence(raw_text)
        return cls(
            raw_text=raw_text,
            normalized_text=normalize_answer(raw_text, expected_type),
            confidence=min(max(confidence, 0.0), 1.0),
            provider_id=provider_id,
            tokens_used=tokens_used,
        )


@dataclass(frozen=True)
class ConsensusDecision:
    """Terminal output of one evaluation."""

    final_answer: str
    final_confidence: float
    selected_source: SelectedSource
    agreement_score: float
    reasoning: str
    strategy: ValidationStrategy
    candidates: tuple[ModelAnswer, ...] = ()
    arbitration_failed: bool = False

    @property
    def degraded(self) -> bool:
        """True when the answer lacks an independent check."""
        return self.arbitration_failed or (
            self.selected_source is SelectedSource.SINGLE_FALLBACK
        )


class Arbitrator(Protocol):
    """Anything that can break a tie between candidate answers."""

    async def arbitrate(
        self,
        question: str,
        expected_type: AnswerType,
        candidates: Sequence[ModelAnswer],
        excerpt: str,
    ) -> ArbitrationVerdict:
        ...


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class ConsensusEngine:
    """Stateless apart from its configuration; safe to share."""

    def __init__(self, config: ConsensusConfig | None = None) -> None:
        self._config = config or ConsensusConfig()

    @property
    def config(self) -> ConsensusConfig:
        return self._config

    async def resolve(
        self,
        question: str,
        expected_type: AnswerType | str,
        answers: Sequence[ModelAnswer],
        *,
        excerpt: str = "",
        arbitrator: Arbitrator | None = None,
        strategy: ValidationStrategy | None = None,
    ) -> ConsensusDecision:
        """
        Reconcile usable answers into one decision.

        Args:
            question: The question every provider answered.
            expected_type: Answer type used for normalization.
            answers: One to three answers, primary first.
            excerpt: Document text shown to the arbitrator (truncated to
                arbitration_excerpt_chars).
            arbitrator: Tie-breaker for disagreements. Without one, a
                disagreement resolves through the confidence fallback.
            strategy: Strategy chosen by the caller; defaults to the one
                implied by the number of answers.

        Returns:
            ConsensusDecision. Never raises for disagreement or arbitration
            problems.
        """
        expected_type = AnswerType(expected_type)
        answers = list(answers)
        strategy = strategy or ValidationStrategy.for_count(len(answers))
        if not 1 <= len(answers) <= 3:
            raise ValueError(
                f"Consensus needs 1 to 3 independent answers, got {len(answers)}"
            )

        if len(answers) == 1:
            return self._single_fallback(answers[0], expected_type, strategy)

        if len(answers) == 2:
            first, second = answers
            score = agreement_score(first.raw_text, second.raw_text, expected_type)
            if answers_match(
                first.raw_text, second.raw_text, expected_type,
                self._config.number_tolerance,
            ):
                return self._consensus(answers, expected_type, score, strategy)
        else:
            pairs = list(combinations(range(len(answers)), 2))
            pair_scores = [
                agreement_score(answers[i].raw_text, answers[j].raw_text, expected_type)
                for i, j in pairs
            ]
            score = sum(pair_scores) / len(pair_scores)
            if score >= self._config.agreement_high_threshold:
                return self._consensus(
                    answers, expected_type, score, strategy,
                    chosen=_medoid(answers, pairs, pair_scores),
                )

        return await self._arbitrate(
            question, expected_type, answers, score, excerpt, arbitrator, strategy,
        )

    # -----------------------------------------------------------------------
    # Resolution Paths
    # -----------------------------------------------------------------------

    def _consensus(
        self,
        answers: list[ModelAnswer],
        expected_type: AnswerType,
        score: float,
        strategy: ValidationStrategy,
        chosen: int = 0,
    ) -> ConsensusDecision:
        mean_confidence = sum(a.confidence for a in answers) / len(answers)
        confidence = min(
            self._config.max_consensus_confidence,
            mean_confidence + self._config.agreement_bonus,
        )
        logger.info(
            "Consensus across %d answers (agreement %.2f, confidence %.2f)",
            len(answers), score, confidence,
        )
        return ConsensusDecision(
            final_answer=final_text(answers[chosen], expected_type),
            final_confidence=round(confidence, 4),
            selected_source=(
                SelectedSource.PRIMARY if chosen == 0 else SelectedSource.SECONDARY
            ),
            agreement_score=round(score, 4),
            reasoning=f"{len(answers)} independent answers agree",
            strategy=strategy,
            candidates=tuple(answers),
        )

    async def _arbitrate(
        self,
        question: str,
        expected_type: AnswerType,
        answers: list[ModelAnswer],
        score: float,
        excerpt: str,
        arbitrator: Arbitrator | None,
        strategy: ValidationStrategy,
    ) -> ConsensusDecision:
        if score < self._config.agreement_low_threshold:
            logger.warning(
                "Strong disagreement (agreement %.2f) between %s",
                score, ", ".join(a.provider_id for a in answers),
            )
        else:
            logger.info("Answers disagree (agreement %.2f), arbitrating", score)

        if arbitrator is None:
            return self._arbitration_fallback(
                answers, expected_type, score, strategy, "no arbitrator configured",
            )

        try:
            verdict = await arbitrator.arbitrate(
                question,
                expected_type,
                answers,
                excerpt[:self._config.arbitration_excerpt_chars],
            )
            final_answer = self._apply_verdict(verdict, answers, expected_type)
        except Exception as e:
            logger.warning("Arbitration failed, using confidence fallback: %s", e)
            return self._arbitration_fallback(answers, expected_type, score, strategy, str(e))

        confidence = (
            verdict.confidence if verdict.confidence is not None
            else self._config.default_arbitration_confidence
        )
        logger.info(
            "Arbitrator chose %s (confidence %.2f)", verdict.decision, confidence,
        )
        return ConsensusDecision(
            final_answer=final_answer,
            final_confidence=round(confidence, 4),
            selected_source=SelectedSource.ARBITRATED,
            agreement_score=round(score, 4),
            reasoning=verdict.reasoning or f"Arbitrator decision: {verdict.decision}",
            strategy=strategy,
            candidates=tuple(answers),
        )

    def _apply_verdict(
        self,
        verdict: ArbitrationVerdict,
        answers: list[ModelAnswer],
        expected_type: AnswerType,
    ) -> str:
        if verdict.decision == "SYNTHESIZED":
            if not verdict.correct_answer or not verdict.correct_answer.strip():
                raise ArbitrationFailure("SYNTHESIZED verdict without an answer")
            synthesized = ModelAnswer.from_text(
                verdict.correct_answer, expected_type, "arbitrator",
            )
            return final_text(synthesized, expected_type)

        index = CANDIDATE_LABELS.index(verdict.decision)
        if index >= len(answers):
            raise ArbitrationFailure(
                f"Verdict '{verdict.decision}' names a missing candidate"
            )
        return final_text(answers[index], expected_type)

    def _arbitration_fallback(
        self,
        answers: list[ModelAnswer],
        expected_type: AnswerType,
        score: float,
        strategy: ValidationStrategy,
        reason: str,
    ) -> ConsensusDecision:
        # Ties go to the earlier (primary) answer
        best_index = max(
            range(len(answers)), key=lambda i: (answers[i].confidence, -i),
        )
        best = answers[best_index]
        return ConsensusDecision(
            final_answer=final_text(best, expected_type),
            final_confidence=round(best.confidence * self._config.disagreement_penalty, 4),
            selected_source=(
                SelectedSource.PRIMARY if best_index == 0 else SelectedSource.SECONDARY
            ),
            agreement_score=round(score, 4),
            reasoning=(
                f"Arbitration unavailable ({reason}); "
                f"used highest-confidence answer from {best.provider_id}"
            ),
            strategy=strategy,
            candidates=tuple(answers),
            arbitration_failed=True,
        )

    def _single_fallback(
        self,
        answer: ModelAnswer,
        expected_type: AnswerType,
        strategy: ValidationStrategy,
    ) -> ConsensusDecision:
        if strategy is not ValidationStrategy.SINGLE:
            logger.warning(
                "Only %s answered; %s validation degraded to single answer",
                answer.provider_id, strategy.value,
            )
        return ConsensusDecision(
            final_answer=final_text(answer, expected_type),
            final_confidence=round(
                answer.confidence * self._config.single_fallback_penalty, 4,
            ),
            selected_source=SelectedSource.SINGLE_FALLBACK,
            agreement_score=0.0,
            reasoning=f"Only {answer.provider_id} produced a usable answer",
            strategy=strategy,
            candidates=(answer,),
        )


def final_text(answer: ModelAnswer, expected_type: AnswerType) -> str:
    """Output form: canonical for typed answers, cleaned raw text otherwise."""
    if expected_type is AnswerType.TEXT:
        return strip_confidence_markers(answer.raw_text)
    return answer.normalized_text


def _medoid(
    answers: Sequence[ModelAnswer],
    pairs: Sequence[tuple[int, int]],
    pair_scores: Sequence[float],
) -> int:
    """Index of the answer closest to the others; ties go to confidence, then order."""
    totals = [0.0] * len(answers)
    for (i, j), score in zip(pairs, pair_scores):
        totals[i] += score
        totals[j] += score
    return max(
        range(len(answers)),
        key=lambda i: (round(totals[i], 6), answers[i].confidence, -i),
    )
