"""
Identity domain — role keywords and route access decisions.
"""
from __future__ import annotations

import pytest

from backend.identity_access.domain import (
    AuthSession,
    AuthUser,
    Identity,
    access_decision,
    can_edit_patients,
    can_manage_settings,
    role_from_text,
)


@pytest.mark.parametrize(
    "text,expected",
    [
        ("admin@clinic.com", "admin"),
        ("Chief Administrator", "admin"),
        ("dr.jones@clinic.com", "doctor"),
        ("house.physician@clinic.com", "doctor"),
        ("Doctor Who", "doctor"),
        ("andrea@clinic.com", None),
        ("", None),
    ],
)
def test_role_from_text(text, expected):
    assert role_from_text(text) == expected


def test_access_decision_states():
    doctor = Identity(id="u1", email="d@c.com", role="doctor")
    assert access_decision(None, True) == "loading"
    assert access_decision(doctor, True) == "loading"
    assert access_decision(None, False) == "sign_in"
    assert access_decision(doctor, False, "admin") == "forbidden"
    assert access_decision(doctor, False, "doctor") == "allow"
    assert access_decision(doctor, False) == "allow"


def test_settings_are_admin_only():
    assert can_manage_settings(Identity("a", "a@c.com", "admin"))
    assert not can_manage_settings(Identity("s", "s@c.com", "staff"))
    assert not can_manage_settings(None)
    assert can_edit_patients(Identity("s", "s@c.com", "staff"))
    assert not can_edit_patients(Identity("x", "x@c.com", "guest"))


def test_auth_user_from_payload_tolerates_missing_fields():
    user = AuthUser.from_payload({"id": 7, "email": None, "user_metadata": None})
    assert user.id == "7"
    assert user.email == ""
    assert user.user_metadata == {}


def test_session_expiry():
    session = AuthSession(access_token="a", refresh_token="r", expires_at=100.0, user=None)
    assert not session.is_expired(99.0)
    assert session.is_expired(100.0)
    assert not AuthSession("a", "r", None, None).is_expired(1e12)
