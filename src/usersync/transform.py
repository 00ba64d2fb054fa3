"""
Source user → chat user transformation.

Pure functions only: no I/O, no logging, no state.  The same source
record always produces the same :class:`ChatUser`.

Field rules:
    - ``name``: trimmed first + last name, else ``"User <first 8 id chars>"``.
    - ``phone``: digits only; a deterministic placeholder when missing.
    - ``email``: only when the source marks it verified.
    - ``role``: mapped through :data:`ROLE_MAPPING`, default ``customer``.
    - presence fields (socket id, online flag, last seen) stay inactive;
      the chat server owns them.

Placeholder phones are ``"9"`` followed by the decimal value of the first
eight hex digits of the id, zero-padded to nine digits.  Two ids that
share their first eight hex digits get the same placeholder and the
second upsert will hit the phone uniqueness constraint; with random
UUIDs that is a 1-in-2**32 event per pair and is recorded as an ordinary
``SYNC_USER_FAILED`` error.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

ACTIVE_STATUS = "active"
DEFAULT_ROLE = "customer"
PLACEHOLDER_PREFIX = "9"

ROLE_MAPPING: Dict[str, str] = {
    "customer": "customer",
    "service_provider": "usta",
    "provider": "usta",
    "admin": "administrator",
    "administrator": "administrator",
    "super_admin": "administrator",
}

_NON_DIGITS = re.compile(r"\D")
_LEADING_HEX = re.compile(r"^[0-9a-fA-F]*")


@dataclass(slots=True)
class ChatUser:
    """Row written to the chat database's ``users`` table."""

    id: str
    external_id: str
    name: str
    phone: str
    email: Optional[str]
    role: str
    avatar: Optional[str]
    meta_data: Dict[str, Any]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    first_name: Optional[str]
    last_name: Optional[str]
    socket_id: Optional[str] = None
    is_online: bool = False
    last_seen: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_eligible(record: Mapping[str, Any]) -> bool:
    """Only active records with an identity are synced."""
    return record.get("id") not in (None, "") and record.get("status") == ACTIVE_STATUS


def user_id_of(record: Mapping[str, Any]) -> str:
    """Return the record identity as a string.

    Raises:
        ValueError: If the record has no identity.
    """
    raw = record.get("id")
    if raw is None or str(raw).strip() == "":
        raise ValueError("source user record has no id")
    return str(raw)


def build_full_name(record: Mapping[str, Any]) -> str:
    first = (record.get("first_name") or "").strip()
    last = (record.get("last_name") or "").strip()
    full = " ".join(part for part in (first, last) if part)
    if full:
        return full
    return f"User {user_id_of(record)[:8]}"


def placeholder_phone(user_id: str) -> str:
    """Deterministic numeric stand-in for a missing phone number."""
    hex_part = str(user_id).replace("-", "")[:8]
    # Only the leading run of hex digits counts (ids that are not hex
    # strings degrade to a zero value rather than failing).
    digits = _LEADING_HEX.match(hex_part).group(0)
    value = int(digits, 16) if digits else 0
    # Nine digits after the prefix, matching rows written before this service.
    return f"{PLACEHOLDER_PREFIX}{str(value)[:9].zfill(9)}"


def sanitize_phone(phone: Any, user_id: str) -> str:
    """Strip non-digits, falling back to :func:`placeholder_phone`."""
    if phone is None or str(phone).strip() == "":
        return placeholder_phone(user_id)
    cleaned = _NON_DIGITS.sub("", str(phone))
    if not cleaned:
        return placeholder_phone(user_id)
    return cleaned


def map_role(source_role: Any) -> str:
    if not source_role:
        return DEFAULT_ROLE
    return ROLE_MAPPING.get(str(source_role).strip().lower(), DEFAULT_ROLE)


def _flag(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return bool(value)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def build_meta_data(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Snapshot of verification, preference and rating fields."""
    average = record.get("average_rating")
    return {
        "emailVerified": _flag(record.get("email_verified"), False),
        "phoneVerified": _flag(record.get("phone_verified"), False),
        "authProvider": record.get("auth_provider"),
        "googleId": record.get("google_id"),
        "facebookId": record.get("facebook_id"),
        "status": record.get("status"),
        "customerPreferences": record.get("customer_preferences"),
        "notificationSettings": {
            "app": _flag(record.get("notification_via_app"), True),
            "email": _flag(record.get("notification_via_email"), True),
            "sms": _flag(record.get("notification_via_sms"), False),
        },
        "termsAccepted": _flag(record.get("terms_and_conditions"), False),
        "ratings": {
            "average": _jsonable(average) if average is not None else None,
            "total": record.get("total_ratings") or 0,
            "totalHires": record.get("total_hires") or 0,
            "totalViews": record.get("total_views") or 0,
            "lastHiredAt": _jsonable(record.get("last_hired_at")),
        },
        "verification": {
            "isVerified": _flag(record.get("is_verified"), False),
            "isFeatured": _flag(record.get("is_featured"), False),
            "searchBoost": _jsonable(record.get("search_boost")) or 0,
        },
        "bio": record.get("bio") or None,
        "hasPassword": bool(record.get("password")),
    }


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Accept datetimes from the pool or ISO strings from NOTIFY payloads."""
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def transform_user(record: Mapping[str, Any]) -> ChatUser:
    """Map one source ``users`` row to a :class:`ChatUser`.

    Args:
        record: An ``asyncpg.Record`` or a decoded notification dict.

    Raises:
        ValueError: If the record has no identity.
    """
    user_id = user_id_of(record)
    return ChatUser(
        id=user_id,
        external_id=user_id,
        name=build_full_name(record),
        phone=sanitize_phone(record.get("phone"), user_id),
        email=record.get("email") if record.get("email_verified") is True else None,
        role=map_role(record.get("role")),
        avatar=record.get("profile_picture"),
        meta_data=build_meta_data(record),
        created_at=parse_timestamp(record.get("created_at")),
        updated_at=parse_timestamp(record.get("updated_at")),
        first_name=record.get("first_name"),
        last_name=record.get("last_name"),
    )
