"""Shared helper functions."""

from __future__ import annotations


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)


def truncate(text: str, limit: int, ellipsis: str = "...") -> str:
    """Cut *text* to *limit* characters, appending *ellipsis* when cut."""
    if len(text) <= limit:
        return text
    return text[:limit] + ellipsis
