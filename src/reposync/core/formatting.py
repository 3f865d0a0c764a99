"""Formatting utilities for domain logic."""


def format_bytes(size: int) -> str:
    """Format a byte count for progress messages.

    Args:
        size: Number of bytes.

    Returns:
        Human-readable size, e.g. "512 B", "1.5 KB", "3.2 MB".
    """
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


def download_stage(received: int, total: int | None) -> str:
    """Build the stage string reported while a download streams.

    Args:
        received: Bytes received so far.
        total: Expected total bytes, or None/0 when unknown.

    Returns:
        A message with cumulative size, plus percentage when total is known.
    """
    if total:
        percent = round(received / total * 100)
        return (
            f"Downloading... {format_bytes(received)} / {format_bytes(total)} "
            f"({percent}%)"
        )
    return f"Downloading... {format_bytes(received)}"


def decision_to_color(decision: str) -> str:
    """Map a sync decision value to a color name.

    Args:
        decision: SyncDecision value ("skip", "refresh_timestamp_only",
            "incremental", "full") or "failed".

    Returns:
        Color name string, or empty string for unknown values.
    """
    color_map = {
        "skip": "green",
        "refresh_timestamp_only": "green",
        "incremental": "cyan",
        "full": "yellow",
        "failed": "red",
    }
    return color_map.get(decision, "")
