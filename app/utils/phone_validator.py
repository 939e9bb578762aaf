"""Phone number normalization and validation utilities.

Every entry point (uploads, checks, opt-outs, the pre-call gate) goes through
`normalize_phone` so one physical number always yields one lookup key.
"""

import re
from typing import Tuple

from app.services.errors import InvalidFormat

# Canonical North American E.164 form
E164_REGEX = re.compile(r"^\+1[2-9]\d{2}[2-9]\d{6}$")

# Formatting characters removed before validation; anything else is rejected
_STRIP_TABLE = str.maketrans("", "", " \t-.()")

_MAX_INPUT_LENGTH = 32


def normalize_phone(raw: str | None) -> str:
    """
    Normalize a phone number to E.164 (+1XXXXXXXXXX).

    Examples:
        (202) 555-1234    → +12025551234
        202.555.1234      → +12025551234
        1 202 555 1234    → +12025551234
        +1 (202) 555-1234 → +12025551234

    Args:
        raw: Phone number in any common North American format

    Returns:
        Canonical E.164 string

    Raises:
        InvalidFormat: If the input cannot be read as a NANP number
    """
    if raw is None or not str(raw).strip():
        raise InvalidFormat("Phone number is required")

    value = str(raw).strip()
    if len(value) > _MAX_INPUT_LENGTH:
        raise InvalidFormat(f"Phone number is too long: {value[:_MAX_INPUT_LENGTH]}...")

    cleaned = value.translate(_STRIP_TABLE)
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]

    if not cleaned.isdigit() or not cleaned.isascii():
        raise InvalidFormat(f"Invalid US phone number format: {value}")

    # Add country code if missing
    if len(cleaned) == 10:
        cleaned = "1" + cleaned

    if len(cleaned) != 11 or not cleaned.startswith("1"):
        raise InvalidFormat(f"Invalid US phone number format: {value}")

    candidate = "+" + cleaned
    if not E164_REGEX.match(candidate):
        raise InvalidFormat(f"Invalid North American area code or exchange: {value}")

    return candidate


def validate_phone(raw: str | None) -> Tuple[bool, str | None]:
    """
    Validate a phone number without raising.

    Args:
        raw: Phone number to validate

    Returns:
        Tuple of (is_valid, error_message)
        If valid, error_message is None
    """
    try:
        normalize_phone(raw)
    except InvalidFormat as e:
        return False, e.message
    return True, None


def is_e164(value: str) -> bool:
    """Check whether a value is already in canonical form."""
    return bool(E164_REGEX.match(value))
