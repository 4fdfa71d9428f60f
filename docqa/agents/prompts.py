# =============================================================================
# Prompt Templates — Extraction & Arbitration
# =============================================================================
#
# Prompts are plain templates; the business rules (what counts as an
# answer, how disagreement is resolved) live in the evaluator and the
# consensus engine. Each template follows the same pattern:
# 1. Role definition
# 2. Grounding instruction (use ONLY the provided text)
# 3. Output format guidance, including the machine-readable markers
#    the core parses back out ([CONFIDENCE: x], NOT_FOUND_IN_CHUNK, JSON)
#
# DESIGN DECISION: Answer-type hints per expected type.
# Asking for "YES or NO" or "MM-DD-YY" up front makes normalization
# succeed far more often than parsing free-form prose afterwards.
# =============================================================================

from __future__ import annotations

from collections.abc import Sequence

from docqa.services.chunker import DocumentChunk
from docqa.services.normalization import AnswerType

NOT_FOUND_IN_CHUNK = "NOT_FOUND_IN_CHUNK"
NOT_FOUND = "NOT_FOUND"


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

EXTRACTION_SYSTEM_PROMPT = (
    "You are a meticulous document analyst. Answer the question using ONLY "
    "the provided document text.\n\n"
    "Rules:\n"
    "- Base your answer exclusively on the provided text\n"
    "- Copy names, figures and dates exactly as written; never estimate\n"
    "- Keep the answer short and directly responsive\n"
    "- End with a line of the form [CONFIDENCE: 0.0-1.0] rating how "
    "certain the text makes you"
)

ARBITRATION_SYSTEM_PROMPT = (
    "You are an expert arbitrator. Analyze the candidate answers against "
    "the document evidence and provide the most accurate answer. "
    "Respond only with valid JSON."
)

_ANSWER_FORMATS: dict[AnswerType, str] = {
    AnswerType.BOOLEAN: "Answer YES or NO, followed by one sentence of evidence.",
    AnswerType.DATE: "Answer with the date in MM-DD-YY format.",
    AnswerType.NUMBER: "Answer with the number only, including currency if any.",
    AnswerType.TEXT: "Answer in one or two sentences.",
    AnswerType.JSON: "Answer with a single valid JSON object and nothing else.",
}


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_extraction_prompt(
    question: str,
    expected_type: AnswerType,
    chunk: DocumentChunk,
    chunk_number: int,
    total_chunks: int,
    additional_context: str | None = None,
) -> str:
    """User message asking one provider about one chunk."""
    parts = [f"Question: {question}", _ANSWER_FORMATS[expected_type]]
    if additional_context:
        parts.append(f"Additional context:\n{additional_context}")
    if total_chunks > 1:
        parts.append(
            f"CONTEXT: This is chunk {chunk_number} of {total_chunks} from a "
            f"larger document. Priority: {chunk.priority.value.upper()}."
        )
        parts.append(
            "If the information is not found in this chunk, respond with "
            f'"{NOT_FOUND_IN_CHUNK}".'
        )
    parts.append(f"Document text:\n{chunk.content}")
    return "\n\n".join(parts)


def extraction_scaffold(
    question: str,
    expected_type: AnswerType,
    additional_context: str | None = None,
) -> str:
    """Prompt text without the chunk body, for token estimates."""
    return "\n\n".join(
        part for part in (
            EXTRACTION_SYSTEM_PROMPT,
            f"Question: {question}",
            _ANSWER_FORMATS[expected_type],
            additional_context or "",
        )
        if part
    )


def build_arbitration_prompt(
    question: str,
    expected_type: AnswerType,
    candidates: Sequence[tuple[str, str, float]],
    excerpt: str,
) -> str:
    """
    User message for the arbitrator.

    Args:
        question: The original question.
        expected_type: Expected answer type.
        candidates: (provider_id, raw answer, confidence) per candidate,
            labelled A, B, C in order.
        excerpt: Document text shown as evidence, already truncated.
    """
    labels = "ABC"[:len(candidates)]
    sections = []
    for label, (provider_id, answer, confidence) in zip(labels, candidates):
        sections.append(
            f"ANSWER {label} ({provider_id}):\n"
            f"- Response: {answer}\n"
            f"- Confidence: {confidence:.2f}"
        )

    choices = " or ".join(f'"{label}"' for label in labels)
    return (
        f"ORIGINAL QUESTION: {question}\n"
        f"Expected response type: {expected_type.value}\n\n"
        + "\n\n".join(sections)
        + f"\n\nDOCUMENT EXCERPT FOR REFERENCE:\n{excerpt or '(not available)'}\n\n"
        "Your task:\n"
        "1. Compare the answers critically\n"
        "2. Determine which is most accurate based on the document evidence\n"
        "3. If none is fully right, synthesize the correct answer\n\n"
        "Respond in this JSON format:\n"
        "{\n"
        f'  "decision": {choices} or "SYNTHESIZED",\n'
        '  "correct_answer": "the definitive answer",\n'
        '  "confidence": 0.0 to 1.0,\n'
        '  "reasoning": "brief explanation of your decision",\n'
        '  "discrepancy_analysis": "what the answers disagree on"\n'
        "}"
    )
