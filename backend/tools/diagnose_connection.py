"""Check connectivity to the CareCall backend from the command line.

Why:
    "The dashboard spins forever" is usually a network, CORS or credential
    problem. This tool runs the same connectivity probe the session layer uses
    and prints what failed plus what to try next.

Usage:
    python -m backend.tools.diagnose_connection
    python -m backend.tools.diagnose_connection --json --timeout 3

Exit codes:
    0  backend reachable, auth and database answer
    1  at least one of those checks failed
    2  SUPABASE_URL / SUPABASE_ANON_KEY not configured
"""
from __future__ import annotations

import asyncio
import dataclasses
import json
import logging

import click

from backend.identity_access.config import SupabaseSettings, load_settings
from backend.identity_access.diagnostics import ConnectivityDiagnostics, DiagnosticsReport
from backend.identity_access.supabase_auth import create_supabase

logger = logging.getLogger("carecall.tools.diagnose_connection")


def _mark(ok: bool) -> str:
    return "✅" if ok else "❌"


async def run_probe(settings: SupabaseSettings, timeout: float) -> DiagnosticsReport:
    client = None
    if settings.configured:
        try:
            client = await create_supabase(settings)
        except Exception as exc:
            # The database check falls back to plain HTTP.
            logger.warning("backend client unavailable: %s", type(exc).__name__)
    diagnostics = ConnectivityDiagnostics(
        settings, client=client, check_timeout=timeout, cors_timeout=min(timeout, 3.0)
    )
    try:
        return await diagnostics.probe()
    finally:
        await diagnostics.aclose()


def _report_json(report: DiagnosticsReport, settings: SupabaseSettings) -> str:
    payload = dataclasses.asdict(report)
    payload["healthy"] = report.healthy
    payload["environment"] = settings.describe()
    payload["recommendations"] = report.recommendations()
    return json.dumps(payload, indent=2, sort_keys=True)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Per-check timeout in seconds")
@click.option("--verbose", "-v", is_flag=True, help="Log each check as it runs")
def main(as_json: bool, timeout: float, verbose: bool) -> None:
    logging.basicConfig(level=logging.INFO if verbose else logging.WARNING)
    settings = load_settings()
    env = settings.describe()
    if not as_json:
        click.echo("🔍 Backend connection diagnostics")
        click.echo(f"   SUPABASE_URL: {env['url']}")
        click.echo(f"   SUPABASE_ANON_KEY: {env['key']}")

    report = asyncio.run(run_probe(settings, timeout))

    if as_json:
        click.echo(_report_json(report, settings))
    else:
        click.echo(f"{_mark(report.internet_ok)} Internet connectivity")
        if report.configured:
            click.echo(f"{_mark(report.reachable)} Backend reachable")
            click.echo(f"{_mark(report.auth_ok)} Auth service")
            click.echo(f"{_mark(report.db_ok)} Database")
            click.echo(f"{_mark(report.cors_ok)} CORS preflight")
        for detail in report.details:
            click.echo(f"   - {detail}")
        tips = report.recommendations()
        if tips:
            click.echo("💡 Recommendations:")
            for tip in tips:
                click.echo(f"   - {tip}")

    if not report.configured:
        raise SystemExit(2)
    raise SystemExit(0 if report.healthy else 1)


if __name__ == "__main__":  # pragma: no cover - manual entry
    main()
