"""Transport adapters for fetching repositories."""

from reposync.adapters.transport.http import HttpRepoTransport


__all__ = ["HttpRepoTransport"]
