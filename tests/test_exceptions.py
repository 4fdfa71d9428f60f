# =============================================================================
# Unit Tests — Error Classification
# =============================================================================

import asyncio

import pytest

from docqa.services.exceptions import (
    ChunkingFailure,
    CircuitOpen,
    DocQAError,
    FatalProviderError,
    QueueOverflow,
    TransientProviderError,
    is_transient_error,
    retry_after_seconds,
)


class _StatusError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class TestIsTransientError:
    """Tests for is_transient_error()."""

    def test_explicit_provider_errors(self):
        assert is_transient_error(TransientProviderError("slow down"))
        assert not is_transient_error(FatalProviderError("rate limit text is ignored"))

    def test_admission_and_chunking_never_retried(self):
        assert not is_transient_error(QueueOverflow("queue full"))
        assert not is_transient_error(CircuitOpen("open", retry_after=3.0))
        assert not is_transient_error(ChunkingFailure("timeout while slicing"))

    def test_timeouts_and_connection_errors(self):
        assert is_transient_error(asyncio.TimeoutError())
        assert is_transient_error(ConnectionResetError())

    @pytest.mark.parametrize("status,expected", [
        (429, True), (500, True), (502, True), (503, True), (504, True),
        (400, False), (401, False), (404, False),
    ])
    def test_status_codes(self, status, expected):
        assert is_transient_error(_StatusError(status)) is expected

    def test_message_markers(self):
        assert is_transient_error(RuntimeError("Upstream overloaded, try again"))
        assert not is_transient_error(RuntimeError("invalid prompt"))


class TestRetryAfter:
    """Tests for retry_after_seconds()."""

    def test_reads_attribute(self):
        assert retry_after_seconds(TransientProviderError("x", retry_after=4)) == 4.0

    def test_missing_or_negative(self):
        assert retry_after_seconds(TransientProviderError("x")) is None
        assert retry_after_seconds(TransientProviderError("x", retry_after=-1)) is None
        assert retry_after_seconds(ValueError("x")) is None

    def test_hierarchy(self):
        assert issubclass(CircuitOpen, DocQAError)
        assert issubclass(TransientProviderError, DocQAError)
