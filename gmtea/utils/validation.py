"""
Address and pagination validation.
"""

from typing import Optional, Tuple

from web3 import Web3

from gmtea.core.exceptions import ValidationError

MAX_PAGE_SIZE = 200


def is_valid_address(address: Optional[str]) -> bool:
    """True for a 0x-prefixed 20-byte hex address, any casing."""
    if not address or not isinstance(address, str):
        return False
    # Mixed-case input is accepted without a checksum check; everything is stored lower-case
    return Web3.is_address(address.lower())


def validate_address(address: Optional[str]) -> str:
    if not is_valid_address(address):
        raise ValidationError(f"Invalid address: {address}", {"address": address})
    return address.lower()


def validate_pagination(limit: int, offset: int) -> Tuple[int, int]:
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", {"limit": limit})
    if offset < 0:
        raise ValidationError("offset must not be negative", {"offset": offset})
    return limit, offset
