"""
Display formatting helpers.

Shared by the CLI renderer for costs, token counts and block countdowns.
"""

from datetime import date, timedelta
from typing import Optional, Union

DEFAULT_DECIMAL_PLACES = 2


def format_cost(cost: float, decimal_places: int = DEFAULT_DECIMAL_PLACES) -> str:
    """Format a USD cost, e.g. ``$1.23``.
    
    A decimal place setting of 0 means "unset" and falls back to 2.
    """
    places = decimal_places if decimal_places > 0 else DEFAULT_DECIMAL_PLACES
    return f"${cost:.{places}f}"


def format_token_count(count: int) -> str:
    """Abbreviate a token count: ``1.5M``, ``2.3K`` or the plain number."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}K"
    return str(count)


def format_time_remaining(remaining: Optional[Union[timedelta, float]]) -> str:
    """Format a block countdown as ``2h 5m left`` or ``42m left``."""
    if remaining is None:
        return "Expired"
    seconds = remaining.total_seconds() if isinstance(remaining, timedelta) else remaining
    if seconds <= 0:
        return "Expired"
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m left"
    return f"{minutes}m left"


def format_month(month: date) -> str:
    return month.strftime("%B %Y")
