"""Session key derivation and phone identity normalization.

Keys for sessions bound to a phone number are derived deterministically
from the normalized digits, so repeated requests for one number always
land on the same registry entry. Anonymous QR sessions get an
unpredictable token instead.
"""

import re
import secrets

from linkd.errors import ValidationError

PHONE_KEY_PREFIX = "session_"
QR_KEY_PREFIX = "qr_session_"

MIN_PHONE_DIGITS = 10
MAX_PHONE_DIGITS = 15

# Separators people type into phone numbers
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_PHONE_PATTERN = re.compile(r"^\+?\d+$")
_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

PAIRING_CODE_GROUP = 4


def normalize_phone(raw: str) -> str:
    """Normalize a phone identity to digits only.

    Accepts an optional leading "+" and common separators.

    Args:
        raw: Phone number as typed, e.g. "+1 (555) 123-4567".

    Returns:
        Digits only, including the country code.

    Raises:
        ValidationError: If the number is malformed.
    """
    if raw is None:
        raise ValidationError("Phone number is required")

    compact = _PHONE_SEPARATORS.sub("", raw.strip())
    if not compact or not _PHONE_PATTERN.match(compact):
        raise ValidationError(
            "Invalid phone number format. Use digits with the country code, "
            "e.g. +201012345678"
        )

    digits = compact.lstrip("+")
    if not MIN_PHONE_DIGITS <= len(digits) <= MAX_PHONE_DIGITS:
        raise ValidationError(
            f"Invalid phone number length: expected {MIN_PHONE_DIGITS}-"
            f"{MAX_PHONE_DIGITS} digits including country code"
        )
    return digits


def is_valid_phone(raw: str) -> bool:
    """Check whether a phone identity would normalize cleanly."""
    try:
        normalize_phone(raw)
    except ValidationError:
        return False
    return True


def phone_session_key(phone: str) -> str:
    """Derive the session key for a phone identity."""
    return f"{PHONE_KEY_PREFIX}{normalize_phone(phone)}"


def anonymous_session_key() -> str:
    """Generate an unpredictable key for an anonymous QR session."""
    return f"{QR_KEY_PREFIX}{secrets.token_hex(16)}"


def resolve_session_key(identifier: str) -> str:
    """Resolve a path identifier (session key or phone number) to a key.

    Args:
        identifier: Either an existing key ("session_..." / "qr_session_...")
            or a phone number.

    Returns:
        The session key.

    Raises:
        ValidationError: If the identifier is neither.
    """
    if identifier.startswith((PHONE_KEY_PREFIX, QR_KEY_PREFIX)):
        validate_session_key(identifier)
        return identifier
    return phone_session_key(identifier)


def validate_session_key(key: str) -> str:
    """Validate a session key so it is safe as a path component.

    Raises:
        ValidationError: If the key contains unsupported characters.
    """
    if not key or not _KEY_PATTERN.fullmatch(key):
        raise ValidationError(f"Invalid session key: {key!r}")
    return key


def format_pairing_code(code: str) -> str:
    """Group a raw pairing code for display, e.g. "ABCD1234" -> "ABCD-1234".

    The grouping is reversible with unformat_pairing_code().
    """
    raw = code.strip()
    if "-" in raw:
        return raw
    groups = [
        raw[i:i + PAIRING_CODE_GROUP] for i in range(0, len(raw), PAIRING_CODE_GROUP)
    ]
    return "-".join(groups)


def unformat_pairing_code(code: str) -> str:
    """Recover the raw pairing code from its display form."""
    return code.replace("-", "")
