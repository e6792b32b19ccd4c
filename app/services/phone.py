"""
Phone Number Normalization
E.164 normalization and US number checks for SMS destinations
"""

import re
from typing import Optional

_US_E164 = re.compile(r"^\+1[2-9]\d{9}$")


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    """
    Normalize a phone number to E.164.

    Accepted inputs:
    - 10 digits: assumed US, "+1" is prefixed
    - 11 digits starting with 1: US with country code
    - a leading "+" followed by 8-15 digits: already international

    Punctuation and spaces are ignored. Anything else returns None.

    Args:
        raw: Phone number as typed into the POS

    Returns:
        "+<digits>" or None if the input is not a usable number
    """
    if not raw:
        return None

    raw = raw.strip()
    digits = re.sub(r"\D", "", raw)

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if raw.startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    return None


def is_us_number(phone: Optional[str]) -> bool:
    """True for a normalized +1 number with a valid NANP area code."""
    return bool(phone and _US_E164.match(phone))


def mask_phone(phone: Optional[str]) -> str:
    """Mask a phone number for logging, keeping the last four digits."""
    if not phone:
        return "none"
    digits = re.sub(r"\D", "", phone)
    if len(digits) < 4:
        return "***"
    if len(digits) >= 10:
        return f"+{digits[:-10]}***-***-{digits[-4:]}"
    return f"***{digits[-4:]}"
