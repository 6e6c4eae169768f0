"""
Role resolution — fallback chain, caching and totality.

Why:
    A sign-in must never fail because the role lookup is down. These tests pin
    the chain (function -> users table -> user record -> "staff") and the
    five-minute cache.
"""
from __future__ import annotations

import pytest

from backend.identity_access.domain import AuthUser
from backend.identity_access.roles import RoleCache, RoleResolver, guess_role
from backend.identity_access.supabase_auth import SupabaseAuthAdapter
from supabase_fakes import make_settings

FUNCTION_PATH = "/functions/v1/fetch-role"


def _resolver(fake_backend, *, clock=None, with_client=True, with_auth=True, step_timeout=None):
    client = fake_backend.supabase()
    auth = SupabaseAuthAdapter(client) if with_auth else None
    cache = RoleCache(clock=clock) if clock is not None else None
    resolver = RoleResolver(
        make_settings(),
        http=fake_backend.client(),
        client=client if with_client else None,
        auth=auth,
        cache=cache,
        step_timeout=step_timeout,
    )
    return resolver, auth


@pytest.mark.anyio
async def test_doctor_role_is_cached_for_five_minutes(fake_backend, clock):
    fake_backend.add_account("u1", "someone@clinic.com", role="doctor")
    resolver, _ = _resolver(fake_backend, clock=clock)

    assert await resolver.resolve_role("u1") == "doctor"
    clock.advance(299)
    assert await resolver.resolve_role("u1") == "doctor"
    assert fake_backend.count(FUNCTION_PATH) == 1

    clock.advance(2)  # past the 300s window
    assert await resolver.resolve_role("u1") == "doctor"
    assert fake_backend.count(FUNCTION_PATH) == 2


def test_injected_empty_cache_is_used(clock):
    cache = RoleCache(clock=clock)
    assert len(cache) == 0
    resolver = RoleResolver(make_settings(), cache=cache)
    assert resolver.cache is cache


@pytest.mark.anyio
async def test_users_table_lookup_carries_the_user_token(fake_backend):
    fake_backend.add_account("u1", "someone@clinic.com", "pw", role="admin")
    fake_backend.failures[FUNCTION_PATH] = 500
    resolver, auth = _resolver(fake_backend)
    session = await auth.sign_in_with_password("someone@clinic.com", "pw")

    assert await resolver.resolve_role("u1", force_refresh=True) == "admin"
    lookup = fake_backend.calls_to("/rest/v1/users")[-1]
    assert lookup.authorization == f"Bearer {session.access_token}"


@pytest.mark.anyio
async def test_force_refresh_bypasses_cache(fake_backend):
    fake_backend.add_account("u1", "someone@clinic.com", role="doctor")
    resolver, _ = _resolver(fake_backend)
    await resolver.resolve_role("u1")
    fake_backend.tables["users"][0]["role"] = "admin"
    assert await resolver.resolve_role("u1") == "doctor"
    assert await resolver.resolve_role("u1", force_refresh=True) == "admin"


@pytest.mark.anyio
async def test_function_failure_falls_back_to_users_table(fake_backend):
    fake_backend.add_account("u1", "someone@clinic.com", role="admin")
    fake_backend.failures[FUNCTION_PATH] = 500
    resolver, _ = _resolver(fake_backend)
    assert await resolver.resolve_role("u1") == "admin"
    assert len(resolver.cache) == 1


@pytest.mark.anyio
async def test_http_500_falls_back_to_user_record_keywords(fake_backend):
    fake_backend.add_account("u2", "dr.jones@clinic.com", "pw")
    fake_backend.failures[FUNCTION_PATH] = 500
    fake_backend.failures["/rest/v1/users"] = 500
    resolver, auth = _resolver(fake_backend)
    await auth.sign_in_with_password("dr.jones@clinic.com", "pw")

    assert await resolver.resolve_role("u2") == "doctor"
    assert len(resolver.cache) == 0  # heuristics are not cached


@pytest.mark.anyio
async def test_total_failure_returns_default_role(fake_backend):
    fake_backend.transport_errors.update({FUNCTION_PATH, "/rest/v1/users", "/auth/v1/user"})
    resolver, auth = _resolver(fake_backend)
    assert await resolver.resolve_role("u3") == "staff"


@pytest.mark.anyio
async def test_user_record_for_another_identity_is_ignored(fake_backend):
    fake_backend.add_account("u1", "admin@clinic.com", "pw")
    fake_backend.failures[FUNCTION_PATH] = 500
    resolver, auth = _resolver(fake_backend, with_client=False)
    await auth.sign_in_with_password("admin@clinic.com", "pw")
    assert await resolver.resolve_role("someone-else") == "staff"


@pytest.mark.anyio
async def test_slow_function_is_bounded_by_step_timeout(fake_backend):
    fake_backend.add_account("u1", "x@clinic.com", role="doctor")
    fake_backend.delays[FUNCTION_PATH] = 1.0
    resolver, _ = _resolver(fake_backend, step_timeout=0.05)
    assert await resolver.resolve_role("u1") == "doctor"  # answered by the users table
    assert fake_backend.calls_to("/rest/v1/users")


@pytest.mark.anyio
async def test_malformed_function_body_is_a_failure(fake_backend, monkeypatch):
    fake_backend.add_account("u1", "x@clinic.com", role="doctor")
    resolver, _ = _resolver(fake_backend, with_client=False, with_auth=False)

    original = fake_backend._fetch_role

    def weird(request):
        import httpx

        return httpx.Response(200, json=["not", "an", "object"])

    monkeypatch.setattr(fake_backend, "_fetch_role", weird)
    assert await resolver.resolve_role("u1") == "staff"
    monkeypatch.setattr(fake_backend, "_fetch_role", original)
    assert await resolver.resolve_role("u1") == "doctor"


@pytest.mark.anyio
async def test_empty_identity_is_default_role(fake_backend):
    resolver, _ = _resolver(fake_backend)
    assert await resolver.resolve_role("") == "staff"
    assert fake_backend.untouched


def test_guess_role_prefers_explicit_metadata():
    user = AuthUser(id="u", email="dr.who@clinic.com", app_metadata={"role": "Admin"})
    assert guess_role(user) == "admin"


def test_guess_role_scans_nested_metadata_strings():
    user = AuthUser(id="u", email="x@clinic.com", user_metadata={"profile": {"title": "Attending Physician"}})
    assert guess_role(user) == "doctor"
    assert guess_role(AuthUser(id="u", email="x@clinic.com")) is None


def test_role_cache_invalidate_and_clear(clock):
    cache = RoleCache(ttl_seconds=10, clock=clock)
    cache.put("a", "admin")
    cache.put("b", "staff")
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == "staff"
    cache.clear()
    assert len(cache) == 0
