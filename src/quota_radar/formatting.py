"""Formatting utilities for consistent output across CLI and console logs."""

import math
from datetime import datetime

# Countdown shown once the reset time has passed
RESTORED = "Restored"


def format_countdown(seconds: float) -> str:
    """Format time remaining until a quota reset (compact).

    Args:
        seconds: Seconds until reset; zero or negative means already reset

    Returns:
        Formatted countdown:
        - Past or due: "Restored"
        - Under an hour: "42m" (minutes rounded up)
        - Otherwise: "3h 5m"
    """
    if seconds <= 0:
        return RESTORED
    minutes = math.ceil(seconds / 60)
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


def format_reset_time(reset_time: datetime) -> str:
    """Format an absolute reset time in local time: "2026-01-31 14:05:00"."""
    if reset_time.tzinfo is not None:
        reset_time = reset_time.astimezone()
    return reset_time.strftime("%Y-%m-%d %H:%M:%S")


def format_percentage(percentage: float | None, digits: int = 2) -> str:
    """Format a remaining percentage, "N/A" when unknown."""
    if percentage is None:
        return "N/A"
    return f"{percentage:.{digits}f}%"


def format_credits(available: float, monthly: float) -> str:
    """Format a prompt credit balance: "450 / 500"."""
    return f"{available:,.0f} / {monthly:,.0f}"
