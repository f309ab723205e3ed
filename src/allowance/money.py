"""Exact integer amount helpers for fixed-width on-chain values."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Any

from .errors import ValidationError

UINT256_MAX = 2**256 - 1
UINT48_MAX = 2**48 - 1
UINT32_MAX = 2**32 - 1

USDC_DECIMALS = 6

_DECIMAL_RE = re.compile(r"[0-9]+")

def parse_uint(value: Any, field_name: str, bits: int = 256) -> int:
    """Parse an unsigned integer from an int or a decimal string.

    Floats are rejected. Strings must be plain ASCII digits.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an unsigned integer", field=field_name)
    if isinstance(value, int):
        parsed = value
    elif isinstance(value, str) and _DECIMAL_RE.fullmatch(value.strip()):
        parsed = int(value.strip())
    else:
        raise ValidationError(f"{field_name} must be an unsigned integer", field=field_name)
    if parsed < 0:
        raise ValidationError(f"{field_name} must not be negative", field=field_name)
    if parsed > 2**bits - 1:
        raise ValidationError(f"{field_name} exceeds uint{bits}", field=field_name)
    return parsed

def parse_positive_uint(value: Any, field_name: str, bits: int = 256) -> int:
    parsed = parse_uint(value, field_name, bits)
    if parsed == 0:
        raise ValidationError(f"{field_name} must be positive", field=field_name)
    return parsed

def from_base_units(value: int, decimals: int = USDC_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal token amount."""
    return Decimal(value) / (Decimal(10) ** decimals)

def format_token_amount(value: int, decimals: int = USDC_DECIMALS, symbol: str = "USDC") -> str:
    """Format integer base units for display."""
    return f"{from_base_units(value, decimals):.{decimals}f} {symbol}"
