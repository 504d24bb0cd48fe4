# -*- coding: utf-8 -*-
"""
Formatting utilities for alert messages.
Handles timezone conversion, money and percentage formatting.
"""
from datetime import datetime, timezone
from typing import Optional

import pytz


def format_price(price: float) -> str:
    """
    Format a USD amount: $1,234.56

    Args:
        price: Amount (e.g., 7.5)

    Returns:
        Formatted string (e.g., "$7.50"); negative amounts as "-$1.20"
    """
    if price < 0:
        return f"-${abs(price):,.2f}"
    return f"${price:,.2f}"


def format_percent(value: float) -> str:
    """
    Format a percentage without noise: 22.0 -> "22%", 12.345 -> "12.3%"

    Args:
        value: Percentage value (22.0 means 22%)
    """
    rounded = round(value, 1)
    if rounded == int(rounded):
        return f"{int(rounded)}%"
    return f"{rounded:.1f}%"


def format_value(field: str, value) -> str:
    """Format a resolved field value for display."""
    if isinstance(value, str):
        return value
    if field in ("price", "arbitrageOpportunity"):
        return format_price(value)
    if field in ("priceDropPercent", "volumeChangePercent", "priceVsAverage"):
        return format_percent(value)
    return str(value)


def format_datetime(dt: Optional[datetime] = None, tz_name: str = "UTC") -> str:
    """
    Format datetime in the recipient's timezone: 2025-11-11 11:30 UTC

    Args:
        dt: datetime object (if None, uses current time; naive is taken as UTC)
        tz_name: IANA timezone name

    Returns:
        Formatted string (e.g., "2025-11-11 08:30 -03")
    """
    if dt is None:
        dt = datetime.now(timezone.utc)
    elif dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)

    try:
        tz = pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        tz = pytz.UTC

    local = dt.astimezone(tz)
    return local.strftime("%Y-%m-%d %H:%M %Z")
