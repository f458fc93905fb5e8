"""
Input size utilities for LLM prompts.

This module provides simple character-based helpers to keep prompts
within API limits: cell truncation for result previews and a hard
character limit check applied before every LLM call.
"""

from typing import Any, Optional


NULL_DISPLAY = "NULL"


def truncate_cell_value(value: Any, max_length: int) -> Any:
    """
    Truncate a result cell if it exceeds the maximum length.

    Only truncates string values. Other types (int, float, bool, None) are returned as-is.
    Binary values are replaced by a short size marker.

    Args:
        value: The cell value to potentially truncate
        max_length: Maximum allowed character length for strings

    Returns:
        Original value if not a string or within limit, truncated string with "..." if exceeded

    Example:
        >>> truncate_cell_value("short", max_length=100)
        'short'
        >>> truncate_cell_value("a" * 150, max_length=100)
        'aaaa...aaa'  # 94 chars + "..." + 3 chars
    """
    if value is None:
        return None

    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"<blob {len(bytes(value))} bytes>"

    if not isinstance(value, str):
        return value

    if len(value) <= max_length:
        return value

    if max_length <= 10:
        return value[:max_length - 3] + "..."

    # Keep a few trailing characters (IDs, suffixes) after the ellipsis
    prefix_len = max_length - 6
    suffix_len = 3
    return value[:prefix_len] + "..." + value[-suffix_len:]


def format_cell(value: Any, max_length: int) -> str:
    """Render a result cell for a prompt or summary (None becomes NULL)."""
    truncated = truncate_cell_value(value, max_length)
    if truncated is None:
        return NULL_DISPLAY
    return str(truncated)


class InputValidator:
    """
    Input validation utility for checking character limits.

    Uses simple character count checks against hard limits.
    """

    @staticmethod
    def validate_total_chars(
        prompt: str,
        system_prompt: Optional[str] = None,
        max_chars: int = 0
    ) -> None:
        """
        Validate total character count for an LLM request.

        Args:
            prompt: User prompt text
            system_prompt: Optional system prompt
            max_chars: Maximum allowed total characters

        Raises:
            ValueError: If total exceeds character limit
        """
        total_chars = len(prompt)
        if system_prompt:
            total_chars += len(system_prompt)

        if total_chars > max_chars:
            raise ValueError(
                f"Total input too large: {total_chars} characters, "
                f"maximum allowed: {max_chars}"
            )
