# =============================================================================
# Structured Outputs — Pydantic V2 Models
# =============================================================================
#
# Two kinds of structured data cross a trust boundary in the core:
#
#   ArbitrationVerdict — parsed from an arbitrator model's JSON output.
#       Model output is untrusted text, so it is validated field by field
#       before the consensus engine acts on it.
#   AdmissionStats     — snapshot returned by AdmissionController.get_stats()
#       for dashboards, logs and tests.
#
# DESIGN DECISION: Field(description=...) on every field so the models
# double as documentation and export a clean JSON schema.
# =============================================================================

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Arbitration
# ---------------------------------------------------------------------------

VerdictDecision = Literal["A", "B", "C", "SYNTHESIZED"]


class ArbitrationVerdict(BaseModel):
    """Decision returned by the arbitrator for a disagreement."""

    decision: VerdictDecision = Field(
        description="Which candidate is correct, or SYNTHESIZED for a new answer",
    )
    correct_answer: str | None = Field(
        default=None,
        description="The final answer text; required when decision is SYNTHESIZED",
    )
    confidence: float | None = Field(
        default=None,
        ge=0.0,
        le=1.0,
        description="Arbitrator's confidence in its decision",
    )
    reasoning: str = Field(
        default="",
        description="Short explanation of the decision",
    )
    discrepancy_analysis: str | None = Field(
        default=None,
        description="What caused the candidates to disagree",
    )

    @field_validator("decision", mode="before")
    @classmethod
    def _normalise_decision(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        cleaned = value.strip().upper()
        if cleaned in {"SYNTHESIZE", "SYNTHESISE", "SYNTHESISED", "COMBINED"}:
            return "SYNTHESIZED"
        return cleaned

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, value: object) -> object:
        # Arbitrators occasionally answer with a percentage
        if isinstance(value, (int, float)) and 1.0 < value <= 100.0:
            return value / 100.0
        return value


# ---------------------------------------------------------------------------
# Admission Controller Statistics
# ---------------------------------------------------------------------------


class AdmissionStats(BaseModel):
    """Point-in-time snapshot of one admission controller."""

    name: str = Field(description="Controller (provider) name")
    submitted: int = Field(description="Operations accepted into the queue")
    succeeded: int = Field(description="Operations that returned a result")
    failed: int = Field(description="Operations that failed after retries")
    retries: int = Field(description="Retry attempts across all operations")
    rejected_overflow: int = Field(description="Rejected with QueueOverflow")
    timed_out: int = Field(description="Dropped with QueueTimeout")
    rejected_circuit_open: int = Field(description="Failed fast with CircuitOpen")
    circuit_openings: int = Field(description="Times the circuit has opened")
    rate_limit_waits: int = Field(description="Times dispatch waited for budget")
    average_response_ms: float = Field(
        description="Exponential moving average of operation latency",
    )
    average_queue_wait_ms: float = Field(
        description="Mean queue wait over the last 100 dispatches",
    )
    queue_depth: int = Field(description="Operations currently waiting")
    queue_by_priority: dict[str, int] = Field(
        description="Waiting operations per priority",
    )
    requests_in_window: int = Field(description="Dispatches in the trailing 60s")
    tokens_in_window: int = Field(description="Tokens counted in the trailing 60s")
    circuit_open: bool = Field(description="Whether the circuit is open now")
    consecutive_failures: int = Field(description="Failures since last success")
