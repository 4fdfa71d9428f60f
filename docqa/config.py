# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# DESIGN DECISION: Two layers of configuration.
# 1. `Settings` (pydantic-settings) reads environment variables and .env
#    files. It is the only place that knows about the environment.
# 2. Plain pydantic models (AdmissionConfig, ChunkingConfig,
#    ConsensusConfig, EvaluatorConfig) are what the core components accept.
#    They carry no environment parsing, so tests construct them directly
#    with whatever limits they need.
#
# HOW IT WORKS:
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `ADMISSION_REQUESTS_PER_MINUTE=30`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from docqa.config import get_settings
#   controller = AdmissionController("openai", get_settings().admission_config())
# =============================================================================

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MEBIBYTE = 1024 * 1024


# ---------------------------------------------------------------------------
# Core Component Configuration
# ---------------------------------------------------------------------------


class AdmissionConfig(BaseModel):
    """Limits enforced by one provider's admission controller."""

    requests_per_minute: int = Field(default=60, ge=1)
    # None disables the token budget check
    token_budget_per_minute: int | None = Field(default=None, ge=1)
    max_queue_depth: int = Field(default=200, ge=1)
    max_queue_wait_ms: int = Field(default=120_000, ge=1)

    # Retry policy (transient errors only)
    max_retries: int = Field(default=3, ge=0)
    retry_base_delay_ms: int = Field(default=1_000, ge=0)
    retry_max_delay_ms: int = Field(default=60_000, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_jitter_ratio: float = Field(default=0.2, ge=0.0, le=1.0)

    # Circuit breaker
    failure_threshold: int = Field(default=5, ge=1)
    circuit_cooldown_ms: int = Field(default=60_000, ge=1)
    circuit_max_cooldown_ms: int = Field(default=300_000, ge=1)
    circuit_backoff_multiplier: float = Field(default=2.0, ge=1.0)


class ChunkingBand(BaseModel):
    """
    One size band of the chunking engine.

    A document falls into the first band whose `max_source_bytes` exceeds
    its UTF-8 size. The last band should leave `max_source_bytes` unset.
    """

    name: str
    max_source_bytes: int | None = None
    max_chunk_size: int = Field(default=800_000, ge=1)  # characters
    overlap_size: int = Field(default=15_000, ge=0)     # characters
    max_chunk_count: int = Field(default=40, ge=1)
    boundary_window: int = Field(default=1_000, ge=0)   # characters
    extract_critical: bool = True
    processing_ms_per_chunk: int = Field(default=4_000, ge=0)


def default_chunking_bands() -> list[ChunkingBand]:
    """Size bands tuned for 200K-1M token context providers."""
    return [
        ChunkingBand(
            name="none", max_source_bytes=5 * MEBIBYTE,
            max_chunk_size=5 * MEBIBYTE, overlap_size=0, max_chunk_count=1,
            boundary_window=0, extract_critical=False,
        ),
        ChunkingBand(
            name="smart", max_source_bytes=25 * MEBIBYTE,
            max_chunk_size=800_000, overlap_size=15_000, max_chunk_count=40,
            boundary_window=1_000, processing_ms_per_chunk=4_000,
        ),
        ChunkingBand(
            name="aggressive", max_source_bytes=60 * MEBIBYTE,
            max_chunk_size=600_000, overlap_size=10_000, max_chunk_count=120,
            boundary_window=1_000, processing_ms_per_chunk=6_000,
        ),
        ChunkingBand(
            name="semantic", max_source_bytes=100 * MEBIBYTE,
            max_chunk_size=1_000_000, overlap_size=5_000, max_chunk_count=150,
            boundary_window=20_000, processing_ms_per_chunk=8_000,
        ),
        ChunkingBand(
            name="emergency", max_source_bytes=None,
            max_chunk_size=400_000, overlap_size=20_000, max_chunk_count=300,
            boundary_window=0, extract_critical=False,
            processing_ms_per_chunk=10_000,
        ),
    ]


class ChunkingConfig(BaseModel):
    """Tuning for the adaptive chunking engine."""

    bands: list[ChunkingBand] = Field(default_factory=default_chunking_bands)
    chars_per_token: float = Field(default=3.5, gt=0)
    # Share of the provider's context budget a chunk may occupy; the rest
    # is left for instructions and the answer.
    context_fill_ratio: float = Field(default=0.85, gt=0, le=1)
    large_context_threshold_tokens: int = Field(default=200_000, ge=1)

    # Critical-section extraction
    critical_context_chars: int = Field(default=500, ge=0)
    critical_span_chars: int = Field(default=2_000, ge=0)

    # Relevance scoring
    keyword_weight: float = 2.0
    position_bonus: float = 3.0
    numbers_bonus: float = 1.0
    tables_bonus: float = 1.5
    critical_bonus: float = 10.0
    high_priority_score: float = 6.0
    medium_priority_score: float = 2.0

    cache_max_entries: int = Field(default=50, ge=1)


class ConsensusConfig(BaseModel):
    """Confidence calibration for the consensus engine."""

    agreement_high_threshold: float = Field(default=0.8, ge=0, le=1)
    agreement_low_threshold: float = Field(default=0.5, ge=0, le=1)
    agreement_bonus: float = Field(default=0.1, ge=0, le=1)
    max_consensus_confidence: float = Field(default=0.99, ge=0, le=1)
    disagreement_penalty: float = Field(default=0.85, gt=0, lt=1)
    single_fallback_penalty: float = Field(default=0.9, gt=0, lt=1)
    default_arbitration_confidence: float = Field(default=0.85, ge=0, le=1)
    arbitration_excerpt_chars: int = Field(default=3_000, ge=0)
    number_tolerance: float = Field(default=0.01, ge=0)


class EvaluatorConfig(BaseModel):
    """Per-provider chunk processing policy used by evaluate()."""

    max_chunks_per_provider: int = Field(default=3, ge=1)
    early_stop_confidence: float = Field(default=0.9, ge=0, le=1)
    chunk_agreement_bonus: float = Field(default=0.1, ge=0, le=1)
    not_found_confidence: float = Field(default=0.5, ge=0, le=1)


# ---------------------------------------------------------------------------
# Environment-Backed Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """
    Settings loaded from environment variables.

    Every core limit has a default that is safe for a single developer
    account. In production, override via environment variables or a .env
    file.
    """

    # -------------------------------------------------------------------------
    # API Keys — Provider Credentials
    # -------------------------------------------------------------------------
    # These MUST be set via environment variables or .env file.
    # LLM_API_KEY overrides the vendor-specific key when set.
    # -------------------------------------------------------------------------
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    llm_api_key: str | None = None
    llm_base_url: str | None = None

    # -------------------------------------------------------------------------
    # Provider Defaults
    # -------------------------------------------------------------------------
    # Provider ids use the "provider_type/model[@base_url]" format parsed by
    # docqa.services.llm.create_provider_from_id().
    # Leave the third provider empty to run dual validation.
    # -------------------------------------------------------------------------
    primary_provider: str = "openai_compatible/gpt-4o"
    secondary_provider: str = "anthropic/claude-sonnet-4-6"
    tertiary_provider: str | None = None
    arbitrator_provider: str | None = None
    llm_temperature: float = 0.1
    llm_max_tokens: int = 1024
    llm_timeout_seconds: float = 120.0
    provider_context_budget_tokens: int = 128_000

    # -------------------------------------------------------------------------
    # Admission Control — per provider
    # -------------------------------------------------------------------------
    admission_requests_per_minute: int = 60
    admission_token_budget_per_minute: int | None = None
    admission_max_queue_depth: int = 200
    admission_max_queue_wait_ms: int = 120_000
    admission_max_retries: int = 3
    admission_retry_base_delay_ms: int = 1_000
    admission_retry_max_delay_ms: int = 60_000
    admission_failure_threshold: int = 5
    admission_circuit_cooldown_ms: int = 60_000
    admission_circuit_max_cooldown_ms: int = 300_000

    # -------------------------------------------------------------------------
    # Chunking
    # -------------------------------------------------------------------------
    chunking_chars_per_token: float = 3.5
    chunking_large_context_threshold_tokens: int = 200_000
    chunking_cache_max_entries: int = 50

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------
    evaluator_max_chunks_per_provider: int = 3
    evaluator_early_stop_confidence: float = 0.9

    # -------------------------------------------------------------------------
    # Consensus
    # -------------------------------------------------------------------------
    # Confidence calibration. Penalties must stay strictly between 0 and 1.
    # -------------------------------------------------------------------------
    agreement_high_threshold: float = 0.8
    agreement_low_threshold: float = 0.5
    agreement_bonus: float = 0.1
    disagreement_penalty: float = 0.85
    single_fallback_penalty: float = 0.9

    # -------------------------------------------------------------------------
    # Pydantic Settings Configuration
    # -------------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def provider_ids(self) -> list[str]:
        """Configured provider ids in role order (primary first)."""
        ids = [self.primary_provider, self.secondary_provider]
        if self.tertiary_provider:
            ids.append(self.tertiary_provider)
        return ids

    def admission_config(self) -> AdmissionConfig:
        return AdmissionConfig(
            requests_per_minute=self.admission_requests_per_minute,
            token_budget_per_minute=self.admission_token_budget_per_minute,
            max_queue_depth=self.admission_max_queue_depth,
            max_queue_wait_ms=self.admission_max_queue_wait_ms,
            max_retries=self.admission_max_retries,
            retry_base_delay_ms=self.admission_retry_base_delay_ms,
            retry_max_delay_ms=self.admission_retry_max_delay_ms,
            failure_threshold=self.admission_failure_threshold,
            circuit_cooldown_ms=self.admission_circuit_cooldown_ms,
            circuit_max_cooldown_ms=self.admission_circuit_max_cooldown_ms,
        )

    def chunking_config(self) -> ChunkingConfig:
        return ChunkingConfig(
            chars_per_token=self.chunking_chars_per_token,
            large_context_threshold_tokens=(
                self.chunking_large_context_threshold_tokens
            ),
            cache_max_entries=self.chunking_cache_max_entries,
        )

    def consensus_config(self) -> ConsensusConfig:
        return ConsensusConfig(
            agreement_high_threshold=self.agreement_high_threshold,
            agreement_low_threshold=self.agreement_low_threshold,
            agreement_bonus=self.agreement_bonus,
            disagreement_penalty=self.disagreement_penalty,
            single_fallback_penalty=self.single_fallback_penalty,
        )

    def evaluator_config(self) -> EvaluatorConfig:
        return EvaluatorConfig(
            max_chunks_per_provider=self.evaluator_max_chunks_per_provider,
            early_stop_confidence=self.evaluator_early_stop_confidence,
        )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    Settings are read once per process. Tests that need different values
    build `Settings(...)` directly, or call `get_settings.cache_clear()`
    after changing the environment.
    """
    return Settings()
