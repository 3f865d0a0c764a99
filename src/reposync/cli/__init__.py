"""CLI for reposync."""

# Import commands to register them with the app
# These imports have side effects (registering commands with @app.command())
from reposync.cli.commands import cache as _cache_module  # noqa: F401
from reposync.cli.main import app, main


__all__ = ["app", "main"]
