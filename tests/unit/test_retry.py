"""Unit tests for RetryPolicy and transient error classification."""

from __future__ import annotations

import pytest

from reposync.core.exceptions import (
    DownloadTimeoutError,
    HttpStatusError,
    IncrementalUnsupportedError,
    NetworkFailureError,
)
from reposync.core.retry import RetryPolicy, is_transient


ENDPOINT = "https://pds.test"


@pytest.mark.transport
class TestIsTransient:
    """Tests for is_transient()."""

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    def test_server_errors_and_rate_limits(self, status: int) -> None:
        assert is_transient(HttpStatusError("x", ENDPOINT, status))

    @pytest.mark.parametrize("status", [400, 401, 404])
    def test_client_errors(self, status: int) -> None:
        assert not is_transient(HttpStatusError("x", ENDPOINT, status))

    def test_network_failure(self) -> None:
        assert is_transient(NetworkFailureError("reset", ENDPOINT))

    def test_timeout_and_incremental_rejection(self) -> None:
        """Deadlines and rejected diffs are not retried."""
        assert not is_transient(DownloadTimeoutError("slow", ENDPOINT, 1_000))
        assert not is_transient(IncrementalUnsupportedError("no since", ENDPOINT))

    def test_unrelated_error(self) -> None:
        assert not is_transient(ValueError("bad"))


@pytest.mark.transport
class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError, match="max_attempts"):
            RetryPolicy(max_attempts=0)

    def test_delay_grows_and_is_capped(self) -> None:
        """Without jitter delays double up to max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self) -> None:
        """Jitter only shortens a delay, by at most the jitter fraction."""
        policy = RetryPolicy(base_delay=2.0, jitter=0.5)
        for _ in range(50):
            assert 1.0 <= policy.delay(1) <= 2.0

    async def test_retries_transient_then_succeeds(self) -> None:
        """Transient failures are retried until a call succeeds."""
        calls = []

        async def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise HttpStatusError("busy", ENDPOINT, 503)
            return "ok"

        result = await RetryPolicy(max_attempts=3, base_delay=0).call(flaky)

        assert result == "ok"
        assert len(calls) == 3

    async def test_gives_up_after_max_attempts(self) -> None:
        """The last error propagates once attempts run out."""
        calls = []

        async def down() -> None:
            calls.append(1)
            raise NetworkFailureError("reset", ENDPOINT)

        with pytest.raises(NetworkFailureError):
            await RetryPolicy(max_attempts=2, base_delay=0).call(down)
        assert len(calls) == 2

    async def test_permanent_error_is_not_retried(self) -> None:
        """A 404 propagates on the first attempt."""
        calls = []

        async def missing() -> None:
            calls.append(1)
            raise HttpStatusError("missing", ENDPOINT, 404)

        with pytest.raises(HttpStatusError):
            await RetryPolicy(max_attempts=5, base_delay=0).call(missing)
        assert len(calls) == 1
