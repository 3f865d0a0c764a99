"""Unit tests for core and CLI formatting utilities."""

from __future__ import annotations

import pytest

from reposync.core.formatting import decision_to_color, download_stage, format_bytes


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DecisionColor")
@pytest.mark.tier(0)
def test_decision_to_color_skip_returns_green() -> None:
    """Test that 'skip' maps to 'green'."""
    assert decision_to_color("skip") == "green"


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DecisionColor")
@pytest.mark.tier(0)
def test_decision_to_color_full_returns_yellow() -> None:
    """Test that 'full' maps to 'yellow'."""
    assert decision_to_color("full") == "yellow"


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DecisionColor")
@pytest.mark.tier(0)
def test_decision_to_color_failed_returns_red() -> None:
    """Test that 'failed' maps to 'red'."""
    assert decision_to_color("failed") == "red"


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DecisionColor")
@pytest.mark.tier(0)
def test_decision_to_color_invalid_returns_empty_string() -> None:
    """Test that an unknown decision returns empty string."""
    assert decision_to_color("invalid") == ""


@pytest.mark.core
@pytest.mark.tra("Domain.Format.Bytes")
@pytest.mark.tier(0)
@pytest.mark.parametrize(
    ("size", "expected"),
    [(0, "0 B"), (512, "512 B"), (1536, "1.5 KB"), (3 * 1024 * 1024, "3.0 MB")],
)
def test_format_bytes(size: int, expected: str) -> None:
    assert format_bytes(size) == expected


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DownloadStage")
@pytest.mark.tier(0)
def test_download_stage_with_known_total() -> None:
    """Known totals add a percentage."""
    assert download_stage(512, 1024) == "Downloading... 512 B / 1.0 KB (50%)"


@pytest.mark.core
@pytest.mark.tra("Domain.Format.DownloadStage")
@pytest.mark.tier(0)
def test_download_stage_with_unknown_total() -> None:
    """Unknown totals show cumulative bytes only."""
    assert download_stage(2048, None) == "Downloading... 2.0 KB"
    assert download_stage(2048, 0) == "Downloading... 2.0 KB"


@pytest.mark.cli
@pytest.mark.tier(0)
class TestCliFormatting:
    """Tests for CLI table helpers."""

    def test_format_timestamp(self) -> None:
        from reposync.cli.formatting import format_timestamp

        assert format_timestamp(1_717_243_200_000) == "2024-06-01 12:00:00"
        assert format_timestamp(0) == "-"

    def test_outcomes_table_marks_failures_and_fallbacks(self) -> None:
        from rich.console import Console

        from reposync.cli.formatting import outcomes_table
        from reposync.core.exceptions import NetworkFailureError
        from reposync.core.models import (
            BatchReport,
            CachedDerivedState,
            SyncDecision,
            SyncOutcome,
        )

        report = BatchReport(
            (
                SyncOutcome(
                    "did:plc:a",
                    SyncDecision.FULL,
                    CachedDerivedState("did:plc:a", direct_blocks=frozenset({"x", "y"})),
                    fell_back_to_full=True,
                ),
                SyncOutcome("did:plc:b", None, error=NetworkFailureError("down", "h")),
            )
        )
        console = Console(width=200, record=True)

        console.print(outcomes_table(report))
        text = console.export_text()

        assert "full (fallback)" in text
        assert "failed" in text
        assert "did:plc:b" in text

    def test_clusters_table_lists_names(self) -> None:
        from rich.console import Console

        from reposync.cli.formatting import clusters_table
        from reposync.core.models import GraphOperation, MassOperationCluster

        ops = tuple(
            GraphOperation("listitem", f"did:plc:{i}", str(i), 1_717_243_200_000, "at://l", "Mods")
            for i in range(3)
        )
        cluster = MassOperationCluster("cluster-1", "listitem", ops, ops[0].created_at_ms, 0)
        console = Console(width=200, record=True)

        console.print(clusters_table((cluster,)))

        assert "Mods" in console.export_text()
