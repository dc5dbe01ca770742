"""
Phone number helpers - E.164 normalization with the phonenumbers library,
and masking for logs. Numbers are never logged in full.
"""
import re
from typing import Optional

import phonenumbers

_PHONE_RE = re.compile(r"\+?\d[\d\-.\s]{7,}\d")


def normalize_phone_e164(phone: Optional[str], default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164 (+15125550100).
    Returns None if the number cannot be parsed or has an impossible length.
    """
    if not phone or not phone.strip():
        return None
    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def mask_phone(phone: str | None) -> str:
    """Mask phone number for logging - show first 6 characters only."""
    if not phone:
        return "unknown"
    if len(phone) > 6:
        return phone[:6] + "***"
    return phone


def sanitize_error(msg: str) -> str:
    """Mask phone numbers embedded in provider error messages."""
    return _PHONE_RE.sub(lambda m: m.group()[:6] + "***", msg)
