"""
Phone number cleanup for loosely formatted source files.

Handles formats like:
- (415) 555-1234
- 415.555.1234
- +1 415 555 1234
- +44 20 7946 1234
"""

import re
from typing import Any

_NON_DIGITS = re.compile(r"\D")


def clean_phone(value: Any, *, min_digits: int = 7, max_digits: int = 15) -> str:
    """
    Reduce a phone value to its digits, keeping a leading ``+``.

    Args:
        value: Phone number in any format
        min_digits: Minimum number of digits to consider valid (default 7)
        max_digits: Maximum number of digits to consider valid (default 15)

    Returns:
        The cleaned number, or an empty string when the digit count is
        outside the valid range
    """
    if value is None:
        return ""

    text = str(value).strip()
    if not text:
        return ""

    digits = _NON_DIGITS.sub("", text)
    if not (min_digits <= len(digits) <= max_digits):
        return ""

    return f"+{digits}" if text.startswith("+") else digits
