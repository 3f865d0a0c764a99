"""Unit tests for RichProgressReporter adapter."""

import pytest


@pytest.mark.progress
class TestRichProgressReporter:
    """Tests for RichProgressReporter."""

    def test_rich_reporter_satisfies_protocol(self) -> None:
        """RichProgressReporter should implement ProgressReporter."""
        from reposync.core.ports import ProgressReporter
        from reposync.progress import RichProgressReporter

        reporter = RichProgressReporter()
        assert isinstance(reporter, ProgressReporter)

    def test_start_task_returns_callable(self) -> None:
        """start_task() should return a callable progress callback."""
        from reposync.progress import RichProgressReporter

        reporter = RichProgressReporter()
        callback = reporter.start_task("did:plc:a", 1000)

        assert callable(callback)
        callback(100, 1000)
        reporter.finish_task("did:plc:a")

    def test_unknown_total(self) -> None:
        """A total of 0 shows an indeterminate bar."""
        from reposync.progress import RichProgressReporter

        with RichProgressReporter() as reporter:
            callback = reporter.start_task("did:plc:a", 0)
            callback(4096, 0)
            reporter.finish_task("did:plc:a")

    def test_stage_and_download_share_a_line(self) -> None:
        """Stages and the download bar of one repository use one task."""
        from reposync.progress import RichProgressReporter

        with RichProgressReporter() as reporter:
            reporter.stage("did:plc:a", "Checking for updates...")
            reporter.start_task("did:plc:a", 100)
            reporter.stage("did:plc:b", "Checking for updates...")

            assert len(reporter._progress.tasks) == 2

    def test_finish_unknown_task_is_ignored(self) -> None:
        from reposync.progress import RichProgressReporter

        with RichProgressReporter() as reporter:
            reporter.finish_task("never-started")
