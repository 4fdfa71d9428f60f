# =============================================================================
# Error Taxonomy — Typed Failures for the QA Core
# =============================================================================
#
# Every failure the core surfaces is a subclass of DocQAError so callers can
# catch the whole family with one clause, or react to a specific decision:
#
#   AdmissionError            — local scheduling decisions (retry later,
#   ├── QueueOverflow           lower the priority, shed load)
#   ├── QueueTimeout
#   └── CircuitOpen
#   ProviderError             — upstream provider failures
#   ├── TransientProviderError  (retried by the admission controller)
#   └── FatalProviderError      (surfaced immediately)
#   ChunkingFailure           — whole document fails atomically
#   ArbitrationFailure        — absorbed by the consensus engine
#
# DESIGN DECISION: A single classification function, is_transient_error(),
# decides what the admission controller retries. Provider adapters wrap
# SDK exceptions into Transient/FatalProviderError, but bare timeouts and
# connection errors raised by arbitrary operations are classified too.
# =============================================================================

from __future__ import annotations

import asyncio

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_TRANSIENT_MESSAGE_MARKERS = (
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection error",
    "econnreset",
    "etimedout",
    "service unavailable",
    "service_unavailable",
    "overloaded",
)


class DocQAError(Exception):
    """Base class for every error raised by the QA core."""


# ---------------------------------------------------------------------------
# Admission Errors
# ---------------------------------------------------------------------------


class AdmissionError(DocQAError):
    """The admission controller refused or dropped an operation."""


class QueueOverflow(AdmissionError):
    """Queue depth reached its maximum; the operation was never queued."""


class QueueTimeout(AdmissionError):
    """The operation waited longer than the maximum queue wait."""


class CircuitOpen(AdmissionError):
    """The provider's circuit is open; the operation was not invoked."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Provider Errors
# ---------------------------------------------------------------------------


class ProviderError(DocQAError):
    """A provider call failed."""

    def __init__(
        self,
        message: str,
        provider_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider_id = provider_id
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Retryable failure: rate limited, overloaded, timed out, reset."""

    def __init__(
        self,
        message: str,
        provider_id: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider_id=provider_id, status_code=status_code)
        self.retry_after = retry_after


class FatalProviderError(ProviderError):
    """Non-retryable failure: bad request, auth, unknown model."""


# ---------------------------------------------------------------------------
# Chunking / Arbitration Errors
# ---------------------------------------------------------------------------


class ChunkingFailure(DocQAError):
    """The document could not be chunked; no partial chunk set exists."""


class ArbitrationFailure(DocQAError):
    """The arbitrator call failed or returned an unusable verdict."""


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def is_transient_error(exc: BaseException) -> bool:
    """
    Decide whether an operation failure is worth retrying.

    Explicit provider errors win. Otherwise timeouts, connection errors,
    retryable HTTP status codes and well-known transient messages count
    as transient. Admission and chunking errors never do.
    """
    if isinstance(exc, TransientProviderError):
        return True
    if isinstance(exc, (FatalProviderError, AdmissionError, ChunkingFailure)):
        return False
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return status_code in RETRYABLE_STATUS_CODES

    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MESSAGE_MARKERS)


def retry_after_seconds(exc: BaseException) -> float | None:
    """Server-requested delay carried by a transient error, if any."""
    value = getattr(exc, "retry_after", None)
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None
