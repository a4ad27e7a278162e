"""Input validation and sanitisation for anything that reaches storage or an
outbound message. Every failure raises ``ValidationError`` before side effects.
"""
from __future__ import annotations

import math
import re
from enum import Enum
from typing import TypeVar

from aegis_ics.errors import ValidationError
from aegis_ics.models import Severity

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")
NON_DIGITS_RE = re.compile(r"\D")

NAME_MAX = 100
LOCATION_MAX = 200
TYPE_MAX = 50
DESCRIPTION_MAX = 5000
SUMMARY_MAX = 500
DESCRIPTION_MIN = 5
PHONE_MIN_DIGITS = 6
PHONE_MAX_DIGITS = 15

E = TypeVar("E", bound=Enum)


def validate_uuid(value: object, field: str = "id") -> str:
    if not isinstance(value, str) or not UUID_RE.match(value):
        raise ValidationError(f"Invalid {field} format")
    return value.lower()


def _coordinate(value: object, field: str, limit: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"Invalid {field}: must be a number")
    value = float(value)
    if math.isnan(value) or not -limit <= value <= limit:
        raise ValidationError(f"Invalid {field}: must be between -{limit:g} and {limit:g}")
    return value


def validate_coordinates(latitude: object, longitude: object) -> tuple[float, float]:
    return _coordinate(latitude, "latitude", 90), _coordinate(longitude, "longitude", 180)


def phone_digits(value: object) -> str:
    if not isinstance(value, str):
        raise ValidationError("Invalid mobile number format (must be 6-15 digits)")
    digits = NON_DIGITS_RE.sub("", value)
    if not PHONE_MIN_DIGITS <= len(digits) <= PHONE_MAX_DIGITS:
        raise ValidationError("Invalid mobile number format (must be 6-15 digits)")
    return digits


def validate_description(value: object, min_length: int = DESCRIPTION_MIN) -> str:
    if not isinstance(value, str) or len(value.strip()) < min_length:
        raise ValidationError(f"Description must be at least {min_length} characters")
    if len(value) > DESCRIPTION_MAX:
        raise ValidationError(f"Description too long (max {DESCRIPTION_MAX} characters)")
    return value


def parse_enum(enum_cls: type[E], value: object, field: str) -> E:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    allowed = ", ".join(member.value for member in enum_cls)
    raise ValidationError(f"Invalid {field} (must be one of: {allowed})")


def parse_severity(value: object) -> Severity:
    return parse_enum(Severity, value, "severity")


def sanitize_text(value: str | None, cap: int, default: str = "") -> str:
    """Strip control characters, then truncate to ``cap`` characters."""
    text = CONTROL_CHARS_RE.sub("", value if value else default)
    return text[:cap]
