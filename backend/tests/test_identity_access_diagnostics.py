"""
Connectivity diagnostics — independent, individually-timed checks.
"""
from __future__ import annotations

import httpx
import pytest
from supabase import PostgrestAPIError

from backend.identity_access.config import SupabaseSettings
from backend.identity_access.diagnostics import ConnectivityDiagnostics
from supabase_fakes import BASE_URL, make_settings

INTERNET = "http://internet.test/get"


def _with_internet(fake_backend):
    """Answer the external reachability probe next to the fake backend."""

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "internet.test":
            return httpx.Response(200, json={"ok": True})
        if request.method == "OPTIONS":
            return httpx.Response(204, headers={"access-control-allow-origin": "*"})
        return await fake_backend.handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _diagnostics(fake_backend, **kwargs) -> ConnectivityDiagnostics:
    return ConnectivityDiagnostics(
        make_settings(),
        http=_with_internet(fake_backend),
        client=fake_backend.supabase(),
        internet_url=INTERNET,
        **kwargs,
    )


@pytest.mark.anyio
async def test_probe_all_healthy(fake_backend):
    report = await _diagnostics(fake_backend).probe()
    assert report.configured
    assert report.internet_ok and report.reachable and report.auth_ok and report.db_ok and report.cors_ok
    assert report.healthy
    assert report.details == []
    assert [c.check for c in report.checks] == ["internet", "rest", "auth", "database", "cors"]


@pytest.mark.anyio
async def test_one_failing_check_does_not_abort_the_rest(fake_backend):
    fake_backend.failures["/rest/v1/"] = 503
    report = await _diagnostics(fake_backend).probe()
    assert not report.reachable
    assert report.auth_ok and report.db_ok
    assert not report.healthy
    assert any("503" in d for d in report.details)


@pytest.mark.anyio
async def test_slow_check_is_timed_out(fake_backend):
    fake_backend.delays["/rest/v1/_supabase_migrations"] = 1.0
    report = await _diagnostics(fake_backend, check_timeout=0.05).probe()
    assert not report.db_ok
    assert report.timeout_issues
    assert "Try increasing timeout values in your connection tests" in report.recommendations()


@pytest.mark.anyio
async def test_missing_table_still_counts_as_database_answer(fake_backend):
    fake_backend.failures["/rest/v1/_supabase_migrations"] = 404
    report = await _diagnostics(fake_backend).probe()
    assert report.db_ok


@pytest.mark.anyio
async def test_not_configured_only_checks_internet(fake_backend):
    diagnostics = ConnectivityDiagnostics(
        SupabaseSettings(), http=_with_internet(fake_backend), internet_url=INTERNET
    )
    report = await diagnostics.probe()
    assert not report.configured
    assert report.internet_ok
    assert not report.reachable
    assert [c.check for c in report.checks] == ["internet"]
    assert report.recommendations()[0].startswith("Set SUPABASE_URL")


@pytest.mark.anyio
async def test_quick_check_accepts_401():
    async def handler(request):
        return httpx.Response(401, json={"message": "no api key"})

    settings = make_settings()
    diagnostics = ConnectivityDiagnostics(settings, http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await diagnostics.quick_check()
    assert result.success
    assert result.status == 401


@pytest.mark.anyio
async def test_quick_check_reports_transport_failure(fake_backend):
    fake_backend.transport_errors.add("/rest/v1/")
    diagnostics = ConnectivityDiagnostics(make_settings(), http=fake_backend.client())
    result = await diagnostics.quick_check()
    assert not result.success
    assert result.error == "ConnectError"
    assert fake_backend.requests[-1].url == httpx.URL(f"{BASE_URL}/rest/v1/")


@pytest.mark.anyio
async def test_auth_check_uses_health_endpoint_and_leaves_session_alone(fake_backend, monkeypatch):
    client = fake_backend.supabase()

    async def must_not_run():
        raise AssertionError("auth check touched the session")

    monkeypatch.setattr(client.auth, "get_session", must_not_run)
    diagnostics = ConnectivityDiagnostics(
        make_settings(), http=_with_internet(fake_backend), client=client, internet_url=INTERNET
    )
    report = await diagnostics.probe()
    assert report.auth_ok
    assert fake_backend.count("/auth/v1/health", "GET") == 1


@pytest.mark.anyio
async def test_auth_health_server_error_fails_auth_check(fake_backend):
    fake_backend.failures["/auth/v1/health"] = 502
    report = await _diagnostics(fake_backend).probe()
    assert not report.auth_ok
    assert "auth service returned status 502" in report.details
    assert "Auth service might be having issues, try again in a few minutes" in report.recommendations()


@pytest.mark.anyio
async def test_unreachable_database_fails_database_check(fake_backend, monkeypatch):
    client = fake_backend.supabase()

    async def no_database(query):
        raise PostgrestAPIError({"message": "Could not connect to the database", "code": "PGRST000"})

    monkeypatch.setattr(client, "run", no_database)
    diagnostics = ConnectivityDiagnostics(
        make_settings(), http=_with_internet(fake_backend), client=client, internet_url=INTERNET
    )
    report = await diagnostics.probe()
    assert not report.db_ok
    assert "database error: Could not connect to the database" in report.details
