"""
Expiry policy and scope validation for stored integrations.

Both checks are pure: no I/O, no logging, no exceptions. The facade decides
what to raise when a check fails.
"""

from datetime import datetime, timedelta
from typing import Dict, FrozenSet, Iterable, Optional

from ..utils.types import Integration, Provider, ProviderLike, utcnow


def is_usable(
    integration: Integration, skew_seconds: float, now: Optional[datetime] = None
) -> bool:
    """
    Check whether the access token can be used for a request starting now.

    A token is usable when it has no expiry, or when it stays valid for at
    least ``skew_seconds`` more. The skew absorbs clock drift and requests
    that are still in flight when the token would expire.

    Args:
        integration: Integration to check
        skew_seconds: Safety margin subtracted from the nominal expiry
        now: Reference time (defaults to current UTC time)

    Returns:
        True if the access token is usable
    """
    if integration.expires_at is None:
        return True
    now = now or utcnow()
    return now + timedelta(seconds=skew_seconds) < integration.expires_at


def has_scopes(granted: Iterable[str], required: Iterable[str]) -> bool:
    """True iff every required scope was granted (exact, case-sensitive)."""
    return set(required) <= set(granted)


def parse_scope_string(scope: Optional[str]) -> FrozenSet[str]:
    """
    Split a provider scope string into a set.

    Google separates scopes with spaces, Zoom sometimes with commas.
    """
    if not scope:
        return frozenset()
    return frozenset(part for part in scope.replace(",", " ").split() if part)


# Google scope URIs used by the platform features
GOOGLE_SCOPES: Dict[str, str] = {
    "profile": "https://www.googleapis.com/auth/userinfo.profile",
    "contacts_readonly": "https://www.googleapis.com/auth/contacts.readonly",
    "other_contacts_readonly": "https://www.googleapis.com/auth/contacts.other.readonly",
    "calendar_readonly": "https://www.googleapis.com/auth/calendar.readonly",
    "calendar": "https://www.googleapis.com/auth/calendar",
}

ZOOM_SCOPES: Dict[str, str] = {
    "profile": "user:read",
    "meeting_read": "meeting:read",
    "meeting_write": "meeting:write",
}

FEATURE_SCOPES: Dict[Provider, Dict[str, FrozenSet[str]]] = {
    Provider.GOOGLE: {
        "contacts": frozenset(
            {
                GOOGLE_SCOPES["contacts_readonly"],
                GOOGLE_SCOPES["other_contacts_readonly"],
                GOOGLE_SCOPES["profile"],
            }
        ),
        "calendar": frozenset({GOOGLE_SCOPES["calendar"], GOOGLE_SCOPES["profile"]}),
        "calendar_readonly": frozenset(
            {GOOGLE_SCOPES["calendar_readonly"], GOOGLE_SCOPES["profile"]}
        ),
        "profile": frozenset({GOOGLE_SCOPES["profile"]}),
    },
    Provider.ZOOM: {
        "calendar": frozenset(
            {ZOOM_SCOPES["meeting_write"], ZOOM_SCOPES["profile"]}
        ),
        "calendar_readonly": frozenset(
            {ZOOM_SCOPES["meeting_read"], ZOOM_SCOPES["profile"]}
        ),
        "profile": frozenset({ZOOM_SCOPES["profile"]}),
    },
}


def required_scopes_for_feature(provider: ProviderLike, feature: str) -> FrozenSet[str]:
    """
    Scopes a platform feature needs from a provider.

    Unknown features fall back to the provider's profile scope.
    """
    features = FEATURE_SCOPES[Provider(provider)]
    return features.get(feature, features["profile"])
