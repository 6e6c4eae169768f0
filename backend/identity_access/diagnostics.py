"""
Connectivity diagnostics for the auth/data backend.

Intent:
    Provide a lightweight, best-effort probe that tells the session layer (and
    operators, via the CLI) whether the network, the backend REST root, the
    auth service, the database and CORS preflight are healthy. The probe is
    async-friendly and never raises: every check is bounded by its own short
    timeout and caught individually, so one failing check cannot abort the
    others.

Notes:
    A 401 from the REST root still proves reachability; a PostgREST error from
    a no-op table query (e.g. relation missing) still proves the database
    answers. The auth check hits the health endpoint and never touches the
    current session, so a probe cannot refresh or sign out anyone.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional
import logging
import time

import httpx
from supabase import AsyncClient, PostgrestAPIError

from .config import SupabaseSettings
from .resilience import OperationTimeout, with_timeout

logger = logging.getLogger("carecall.identity_access.diagnostics")

INTERNET_PROBE_URL = "https://httpbin.org/get"
CHECK_TIMEOUT = 5.0
CORS_TIMEOUT = 3.0
QUICK_TIMEOUT = 1.0


@dataclass(frozen=True)
class CheckResult:
    check: str
    ok: bool
    detail: Optional[str] = None
    elapsed: float = 0.0


@dataclass
class DiagnosticsReport:
    configured: bool = False
    internet_ok: bool = False
    reachable: bool = False
    auth_ok: bool = False
    db_ok: bool = False
    cors_ok: bool = False
    timeout_issues: bool = False
    details: List[str] = field(default_factory=list)
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.reachable and self.auth_ok and self.db_ok

    def recommendations(self) -> List[str]:
        tips: List[str] = []
        if not self.configured:
            tips.append("Set SUPABASE_URL and SUPABASE_ANON_KEY (see .env.example)")
        if self.timeout_issues:
            tips.append("Try increasing timeout values in your connection tests")
            tips.append("Check if your network has strict firewall rules")
        if not self.cors_ok and self.reachable:
            tips.append("Check the project's CORS settings and verify the project URL")
        if self.reachable and not self.auth_ok:
            tips.append("Auth service might be having issues, try again in a few minutes")
        return tips


@dataclass(frozen=True)
class QuickCheckResult:
    success: bool
    response_time: float
    status: Optional[int] = None
    error: Optional[str] = None


class ConnectivityDiagnostics:
    """Run independent, individually-timed backend checks."""

    def __init__(
        self,
        settings: SupabaseSettings,
        *,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[AsyncClient] = None,
        internet_url: str = INTERNET_PROBE_URL,
        check_timeout: float = CHECK_TIMEOUT,
        cors_timeout: float = CORS_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=check_timeout)
        self._client = client
        self.internet_url = internet_url
        self.check_timeout = check_timeout
        self.cors_timeout = cors_timeout
        self._clock = clock

    async def _run(self, report: DiagnosticsReport, name: str, check: Callable[[], Awaitable[Optional[str]]], timeout: float) -> bool:
        """Run one check; a returned string is a failure detail, None means ok."""
        started = self._clock()
        try:
            failure = await with_timeout(check(), timeout, name)
        except asyncio.CancelledError:
            raise
        except OperationTimeout:
            report.timeout_issues = True
            failure = f"{name} timed out"
        except Exception as exc:
            failure = f"{name} failed: {type(exc).__name__}"
        elapsed = self._clock() - started
        report.checks.append(CheckResult(check=name, ok=failure is None, detail=failure, elapsed=elapsed))
        if failure:
            report.details.append(failure)
            logger.info("diagnostics: %s", failure)
        return failure is None

    async def probe(self) -> DiagnosticsReport:
        report = DiagnosticsReport(configured=self.settings.configured)
        if not report.configured:
            report.details.append("Environment variables are missing: " + ", ".join(self.settings.missing()))
        report.internet_ok = await self._run(report, "internet", self._check_internet, self.check_timeout)
        if report.configured:
            report.reachable = await self._run(report, "rest", self._check_rest_root, self.check_timeout)
            report.auth_ok = await self._run(report, "auth", self._check_auth, self.check_timeout)
            report.db_ok = await self._run(report, "database", self._check_database, self.check_timeout)
            report.cors_ok = await self._run(report, "cors", self._check_cors, self.cors_timeout)
        logger.info(
            "diagnostics summary: internet=%s reachable=%s auth=%s db=%s cors=%s",
            report.internet_ok,
            report.reachable,
            report.auth_ok,
            report.db_ok,
            report.cors_ok,
        )
        return report

    async def quick_check(self, timeout: float = QUICK_TIMEOUT) -> QuickCheckResult:
        """Very short REST root ping; 200 and 401 both count as reachable."""
        started = self._clock()
        if not self.settings.configured:
            return QuickCheckResult(success=False, response_time=0.0, error="not configured")
        try:
            resp = await with_timeout(
                self._http.get(f"{self.settings.rest_url}/", headers=self.settings.api_headers()),
                timeout,
                "quick check",
            )
        except Exception as exc:
            return QuickCheckResult(success=False, response_time=self._clock() - started, error=type(exc).__name__)
        ok = resp.status_code in (200, 401)
        return QuickCheckResult(
            success=ok,
            response_time=self._clock() - started,
            status=resp.status_code,
            error=None if ok else f"Unexpected status: {resp.status_code}",
        )

    # --- Individual checks -------------------------------------------------------

    async def _check_internet(self) -> Optional[str]:
        resp = await self._http.get(self.internet_url)
        return None if resp.is_success else f"internet returned status {resp.status_code}"

    async def _check_rest_root(self) -> Optional[str]:
        resp = await self._http.get(f"{self.settings.rest_url}/", headers=self.settings.api_headers())
        if resp.is_success or resp.status_code == 401:
            return None
        return f"backend returned status {resp.status_code}"

    async def _check_auth(self) -> Optional[str]:
        resp = await self._http.get(f"{self.settings.auth_url}/health", headers=self.settings.api_headers())
        return None if resp.status_code < 500 else f"auth service returned status {resp.status_code}"

    async def _check_database(self) -> Optional[str]:
        if self._client is None:
            resp = await self._http.get(
                f"{self.settings.rest_url}/_supabase_migrations",
                params={"select": "*", "limit": "1"},
                headers=self.settings.api_headers(),
            )
            return None if resp.status_code < 500 else f"database returned status {resp.status_code}"
        try:
            await self._client.table("_supabase_migrations").select("*").limit(1).execute()
        except PostgrestAPIError as exc:
            # PGRST000-002: PostgREST cannot reach the database or its schema cache.
            if str(exc.code or "").startswith("PGRST00"):
                return f"database error: {exc.message}"
            logger.debug("diagnostics: database answered with %s", exc.code)
        return None

    async def _check_cors(self) -> Optional[str]:
        resp = await self._http.request(
            "OPTIONS",
            f"{self.settings.auth_url}/",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "apikey,authorization,content-type",
            },
        )
        return None if resp.status_code in (200, 204) else f"CORS preflight returned {resp.status_code}"

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


__all__ = [
    "CheckResult",
    "ConnectivityDiagnostics",
    "DiagnosticsReport",
    "QuickCheckResult",
]
