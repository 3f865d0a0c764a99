"""Progress reporting adapters."""

from reposync.progress.rich_progress import RichProgressReporter


__all__ = ["RichProgressReporter"]
