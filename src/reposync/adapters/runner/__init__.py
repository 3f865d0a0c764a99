"""Task runner adapters for concurrent syncs."""

from reposync.adapters.runner.runner import BoundedTaskRunner, SequentialTaskRunner


__all__ = ["BoundedTaskRunner", "SequentialTaskRunner"]
