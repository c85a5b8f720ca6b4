"""
Small conversion helpers shared by processors, services and the API.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

WEI_PER_ETHER = Decimal(10) ** 18


def normalize_address(address: Optional[str]) -> Optional[str]:
    """Lower-case an address; None and empty strings pass through as None."""
    if not address:
        return None
    return address.strip().lower()


def utc_now() -> datetime:
    """Naive UTC now, the representation stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_unix(seconds: int) -> datetime:
    """Convert a unix timestamp into a naive UTC datetime."""
    return datetime.fromtimestamp(int(seconds), tz=timezone.utc).replace(tzinfo=None)


def wei_to_ether(amount_wei: int) -> float:
    """Convert a wei amount into ether units."""
    return float(Decimal(int(amount_wei)) / WEI_PER_ETHER)


def short_address(address: str) -> str:
    """0x1234...abcd form for human readable reasons."""
    if not address or len(address) < 12:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"
