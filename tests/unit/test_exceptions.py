"""Unit tests for the exception hierarchy and recovery hints."""

from __future__ import annotations

import pytest

from reposync.core.exceptions import (
    ArchiveFormatError,
    CacheCorruptError,
    CacheError,
    CacheWriteError,
    ConfigurationError,
    DecodeError,
    DownloadTimeoutError,
    HttpStatusError,
    IncrementalUnsupportedError,
    NetworkFailureError,
    QuotaExceededError,
    RepoSyncError,
    TransportError,
)
from reposync.core.models import CachedDerivedState


@pytest.mark.core
class TestHierarchy:
    """Every library error can be caught as RepoSyncError."""

    @pytest.mark.parametrize(
        "error",
        [
            NetworkFailureError("x", "h"),
            HttpStatusError("x", "h", 500),
            DownloadTimeoutError("x", "h", 1),
            IncrementalUnsupportedError("x", "h"),
        ],
    )
    def test_transport_errors(self, error: TransportError) -> None:
        assert isinstance(error, TransportError)
        assert isinstance(error, RepoSyncError)
        assert error.endpoint == "h"

    def test_timeout_is_also_a_timeout_error(self) -> None:
        assert isinstance(DownloadTimeoutError("x", "h", 1), TimeoutError)

    def test_cache_errors(self) -> None:
        for error in (
            CacheCorruptError("x", key="k"),
            QuotaExceededError("k", 10, 5),
            CacheWriteError("x", "did:plc:a", CachedDerivedState("did:plc:a")),
        ):
            assert isinstance(error, CacheError)

    def test_other_errors(self) -> None:
        assert isinstance(DecodeError("x"), RepoSyncError)
        assert isinstance(ArchiveFormatError("x"), RepoSyncError)
        assert isinstance(ConfigurationError("x"), RepoSyncError)


@pytest.mark.core
class TestRecoveryHints:
    """Tests for recovery_hint."""

    def test_base_has_no_hint(self) -> None:
        assert RepoSyncError("x").recovery_hint is None

    @pytest.mark.parametrize(
        ("status", "fragment"),
        [(429, "rate limiting"), (404, "Verify the DID"), (403, "refused"), (500, "HTTP 500")],
    )
    def test_http_status_hints(self, status: int, fragment: str) -> None:
        assert fragment in HttpStatusError("x", "https://h", status).recovery_hint

    def test_quota_message(self) -> None:
        error = QuotaExceededError("reposync.identities", 10, 5)
        assert str(error) == "Writing 'reposync.identities' (10 bytes) exceeds quota of 5 bytes"

    def test_write_error_keeps_pending_state(self) -> None:
        state = CachedDerivedState("did:plc:a")
        error = CacheWriteError("x", "did:plc:a", state)
        assert error.pending_state is state
        assert "prune" in error.recovery_hint

    def test_decode_error_context(self) -> None:
        cause = ValueError("bad")
        error = DecodeError("x", "app.bsky.graph.block", "1", cause)
        assert (error.collection, error.record_key, error.cause) == (
            "app.bsky.graph.block",
            "1",
            cause,
        )
