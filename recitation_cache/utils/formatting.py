"""
Helper functions for formatting cache data into human-readable strings.

Author: Kasim Lyee <lyee@codewithlyee.com>
Company: Softlite Inc.
License: MIT
"""

from decimal import ROUND_HALF_UP, Decimal

from ..core.exceptions import InvalidArgumentError

SIZE_UNITS = ("B", "KB", "MB", "GB")

ONE_DECIMAL = Decimal("0.1")


def _round_half_up(value: float) -> Decimal:
    """Round to one decimal place, halves away from zero (1.25 -> 1.3)."""
    return Decimal(value).quantize(ONE_DECIMAL, rounding=ROUND_HALF_UP)


def format_cache_size(num_bytes: int) -> str:
    """
    Format a byte count using 1024-based units.

    Byte counts below 1 KB are shown as whole bytes; larger values get one
    decimal place in the largest unit keeping the magnitude below 1024.
    Halves round up, so 1280 bytes is "1.3 KB".

    Args:
        num_bytes: Non-negative number of bytes

    Returns:
        Formatted size (e.g., "0 B", "1.5 KB", "2.3 MB")

    Raises:
        InvalidArgumentError: If num_bytes is negative or not an integer

    Examples:
        >>> format_cache_size(1536)
        '1.5 KB'
    """
    if isinstance(num_bytes, bool) or not isinstance(num_bytes, int):
        raise InvalidArgumentError(f"Size must be an integer byte count, got {num_bytes!r}")
    if num_bytes < 0:
        raise InvalidArgumentError(f"Size cannot be negative: {num_bytes}")

    if num_bytes < 1024:
        return f"{num_bytes} B"

    value = float(num_bytes)
    unit = 0
    while value >= 1024 and unit < len(SIZE_UNITS) - 1:
        value /= 1024
        unit += 1

    rounded = _round_half_up(value)

    # 1023.96 KB would print as "1024.0 KB"
    if rounded >= 1024 and unit < len(SIZE_UNITS) - 1:
        unit += 1
        rounded = _round_half_up(value / 1024)

    return f"{rounded} {SIZE_UNITS[unit]}"
