"""
Identity domain constants and simple value types.

Why:
- Centralize known roles and the default role so the resolver, the session
  coordinator and the web function cannot drift apart.
- Keep the Identity value immutable: every validation replaces it wholesale,
  so stale fields from a previous user can never leak into a new one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from enum import Enum
from typing import Any, Dict, Optional


# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
KNOWN_ROLES = frozenset({"admin", "doctor", "staff"})
DEFAULT_ROLE = "staff"

# Ordered: the first pattern found wins. "dr" only counts as a title token
# (dr.jones, dr_smith), never inside a word like "andrea".
ROLE_KEYWORDS = (
    (re.compile(r"administrator|admin"), "admin"),
    (re.compile(r"physician|doctor"), "doctor"),
    (re.compile(r"(?:^|[^a-z])dr[._\-\s]"), "doctor"),
)

PATIENT_EDITOR_ROLES = frozenset({"admin", "doctor", "staff"})


@dataclass(frozen=True)
class Identity:
    """The signed-in principal as seen by the dashboard."""

    id: str
    email: str
    role: str


@dataclass(frozen=True)
class AuthUser:
    """User record as returned by the auth backend."""

    id: str
    email: str = ""
    user_metadata: Dict[str, Any] = field(default_factory=dict)
    app_metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AuthUser":
        return cls(
            id=str(payload.get("id") or ""),
            email=str(payload.get("email") or ""),
            user_metadata=dict(payload.get("user_metadata") or {}),
            app_metadata=dict(payload.get("app_metadata") or {}),
        )


@dataclass(frozen=True)
class AuthSession:
    access_token: str
    refresh_token: str
    expires_at: Optional[float]
    user: Optional[AuthUser]

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now


class AuthChangeEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


def role_from_text(text: str) -> Optional[str]:
    """Return the first role whose keyword occurs in `text` (case-insensitive)."""
    if not text:
        return None
    lowered = str(text).lower()
    for pattern, role in ROLE_KEYWORDS:
        if pattern.search(lowered):
            return role
    return None


def access_decision(identity: Optional[Identity], is_loading: bool, required_role: Optional[str] = None) -> str:
    """Decide what a protected view should do for the current auth state.

    Returns one of:
    - "loading": auth is still settling; show a spinner.
    - "sign_in": nobody is signed in; send the user to the sign-in page.
    - "forbidden": signed in but lacking `required_role`; send to the dashboard.
    - "allow": render the view.
    """
    if is_loading:
        return "loading"
    if identity is None:
        return "sign_in"
    if required_role and identity.role != required_role:
        return "forbidden"
    return "allow"


def can_manage_settings(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role == "admin"


def can_edit_patients(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role in PATIENT_EDITOR_ROLES


__all__ = [
    "KNOWN_ROLES",
    "DEFAULT_ROLE",
    "ROLE_KEYWORDS",
    "Identity",
    "AuthUser",
    "AuthSession",
    "AuthChangeEvent",
    "role_from_text",
    "access_decision",
    "can_manage_settings",
    "can_edit_patients",
]
