"""
Data views: the records behind each dashboard screen.

Why:
    Every screen fetches its own rows independently of the session layer. A
    view reads `SessionCoordinator.current_identity` but never writes session
    state.

Behavior:
    - Without an identity a view clears its data and does not fetch.
    - Each fetch concern holds a named flag in the shared `LoadingRegistry`
      so the stuck-state watchdog can see (and force-clear) it.
    - `visible`/`focus` signals trigger a refetch, at most once per
      `refetch_guard` seconds (30s). Identity changes and forced resets
      always refetch.
    - Query failures land in `error` (or `errors[section]`); they are never
      raised from `load()`. Patient writes do raise, so the caller can show
      the failure next to the form.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging
import time

from supabase import AsyncClient, PostgrestAPIError

from backend.identity_access.domain import Identity
from backend.identity_access.session import SessionCoordinator
from backend.identity_access.signals import LifecycleSignals, Signal
from backend.identity_access.watchdog import LoadingRegistry

from . import stats
from .models import Alert, Call, CallVolume, DashboardStats, Doctor, Patient, PatientPayload, SymptomReport

logger = logging.getLogger("carecall.dashboard")

REFETCH_GUARD_SECONDS = 30.0
RECENT_CALLS_LIMIT = 10
LOOKBACK_DAYS = 7


def _rows(data: Any) -> List[Dict[str, Any]]:
    return [row for row in data if isinstance(row, dict)] if isinstance(data, list) else []


class DataView:
    """Base class: identity gate, loading flags, refetch guard, signal wiring."""

    name = "view"

    def __init__(
        self,
        session: SessionCoordinator,
        client: AsyncClient,
        *,
        signals: Optional[LifecycleSignals] = None,
        registry: Optional[LoadingRegistry] = None,
        refetch_guard: float = REFETCH_GUARD_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = stats.utc_now,
    ) -> None:
        self.session = session
        self.client = client
        self.signals = signals
        self.registry = registry if registry is not None else session.registry
        self.refetch_guard = refetch_guard
        self._clock = clock
        self._now = now
        self.error: Optional[str] = None
        self.last_fetched: Optional[float] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self.registry.register(self.flag)

    @property
    def flag(self) -> str:
        return f"view.{self.name}"

    @property
    def loading(self) -> bool:
        return self.registry.is_active(self.flag)

    # --- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if self._unsubscribers:
            return
        if self.signals is not None:
            self._unsubscribers.append(self.signals.subscribe(self._on_signal))
        self._unsubscribers.append(self.session.subscribe(self._on_identity))
        self._unsubscribers.append(self.registry.on_reset(self._on_force_reset))

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    async def _on_signal(self, signal: Signal) -> None:
        if signal in (Signal.VISIBLE, Signal.FOCUS):
            await self.load()

    async def _on_identity(self, identity: Optional[Identity]) -> None:
        await self.load(force=True)

    async def _on_force_reset(self) -> None:
        await self.load(force=True)

    # --- Loading ---------------------------------------------------------------

    async def load(self, *, force: bool = False) -> bool:
        """Fetch this view's records; returns True when a fetch ran."""
        if self.session.current_identity is None:
            self.clear()
            return False
        if not force and self.last_fetched is not None:
            if self._clock() - self.last_fetched < self.refetch_guard:
                logger.debug("%s: refetch skipped inside guard window", self.name)
                return False
        self.last_fetched = self._clock()
        async with self.registry.track(self.flag):
            self.error = None
            try:
                await self._fetch()
            except PostgrestAPIError as exc:
                logger.warning("%s: fetch failed (code=%s)", self.name, exc.code)
                self.error = exc.message or "Query failed"
                self._reset_data()
            except Exception as exc:
                logger.error("%s: unexpected fetch error: %s", self.name, type(exc).__name__)
                self.error = "Unexpected error while loading data"
                self._reset_data()
        return True

    def clear(self) -> None:
        self.error = None
        self.last_fetched = None
        self._reset_data()

    async def _fetch(self) -> None:
        raise NotImplementedError

    def _reset_data(self) -> None:
        raise NotImplementedError

    def _since(self, days: int = LOOKBACK_DAYS) -> str:
        return stats.days_ago_iso(self._now(), days)


class DashboardView(DataView):
    """Recent calls, patients due a call, weekly stats and call volume."""

    name = "dashboard"
    SECTIONS = ("calls", "upcoming", "stats", "volume")

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.errors: Dict[str, Optional[str]] = dict.fromkeys(self.SECTIONS)
        self._reset_data()

    def _reset_data(self) -> None:
        self.calls: List[Call] = []
        self.upcoming: List[Patient] = []
        self.stats: Optional[DashboardStats] = None
        self.volume: Optional[CallVolume] = None

    def clear(self) -> None:
        super().clear()
        self.errors = dict.fromkeys(self.SECTIONS)

    def section_loading(self, section: str) -> bool:
        return self.registry.is_active(f"{self.flag}.{section}")

    async def _fetch(self) -> None:
        await asyncio.gather(*(self._section(name) for name in self.SECTIONS))

    async def _section(self, section: str) -> None:
        fetch = getattr(self, f"_fetch_{section}")
        async with self.registry.track(f"{self.flag}.{section}"):
            self.errors[section] = None
            try:
                await fetch()
            except PostgrestAPIError as exc:
                logger.warning("dashboard %s failed (code=%s)", section, exc.code)
                self._fail_section(section, exc.message or "Query failed")
            except Exception as exc:
                logger.error("dashboard %s: unexpected fetch error: %s", section, type(exc).__name__)
                self._fail_section(section, "Unexpected error while loading data")

    def _fail_section(self, section: str, message: str) -> None:
        self.errors[section] = message
        setattr(self, section, [] if section in ("calls", "upcoming") else None)

    async def _fetch_calls(self) -> None:
        result = await (
            self.client.table("calls")
            .select("id, patient_id, call_time, call_status, transcript, patients(full_name)")
            .order("call_time", desc=True)
            .limit(RECENT_CALLS_LIMIT)
            .execute()
        )
        self.calls = [Call.from_row(row) for row in _rows(result.data)]

    async def _fetch_upcoming(self) -> None:
        patients = await self.client.table("patients").select("id, full_name, last_visit, condition_type").execute()
        recent = await (
            self.client.table("calls").select("patient_id, call_time").gte("call_time", self._since()).execute()
        )
        due = stats.patients_without_recent_calls(_rows(patients.data), _rows(recent.data))
        self.upcoming = [Patient(**row) for row in due]

    async def _fetch_stats(self) -> None:
        since = self._since()
        counted = await self.client.table("calls").select("id", count="exact").gte("call_time", since).limit(1).execute()
        reports = await (
            self.client.table("symptom_reports").select("risk_level, escalate").gte("created_at", since).execute()
        )
        self.stats = stats.summarize(counted.count, _rows(reports.data))

    async def _fetch_volume(self) -> None:
        days = stats.volume_days(self._now().date(), LOOKBACK_DAYS)
        result = await (
            self.client.table("calls").select("call_time").gte("call_time", f"{days[0]}T00:00:00.000Z").execute()
        )
        self.volume = stats.call_volume(_rows(result.data), self._now().date(), LOOKBACK_DAYS)


class AlertsView(DataView):
    name = "alerts"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reset_data()

    def _reset_data(self) -> None:
        self.alerts: List[Alert] = []

    async def _fetch(self) -> None:
        result = await (
            self.client.table("symptom_reports")
            .select("id, call_id, risk_level, escalate, notes, calls(patients(full_name))")
            .eq("escalate", True)
            .order("id", desc=True)
            .execute()
        )
        self.alerts = [Alert.from_row(row) for row in _rows(result.data)]


class PatientsView(DataView):
    """Patient list plus the doctor picker; writes reload the list."""

    name = "patients"

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._reset_data()

    def _reset_data(self) -> None:
        self.patients: List[Patient] = []
        self.doctors: List[Doctor] = []

    async def _fetch(self) -> None:
        result = await (
            self.client.table("patients")
            .select("id, full_name, phone_number, last_visit, condition_type, doctor_id")
            .execute()
        )
        self.patients = [Patient(**row) for row in _rows(result.data)]
        try:
            doctors = await self.client.table("users").select("id, name, email, role").eq("role", "doctor").execute()
        except PostgrestAPIError as exc:
            # The picker is optional; the list itself still renders.
            logger.warning("doctor list unavailable (code=%s)", exc.code)
            self.doctors = []
        else:
            self.doctors = [Doctor(**row) for row in _rows(doctors.data)]

    def doctor_name(self, doctor_id: Optional[str]) -> Optional[str]:
        for doctor in self.doctors:
            if doctor.id == doctor_id:
                return doctor.label
        return None

    async def create(self, payload: PatientPayload) -> None:
        await self.client.table("patients").insert(payload.model_dump()).execute()
        await self.load(force=True)

    async def update(self, patient_id: str, payload: PatientPayload) -> None:
        await self.client.table("patients").update(payload.model_dump()).eq("id", patient_id).execute()
        await self.load(force=True)

    async def delete(self, patient_id: str) -> None:
        await self.client.table("patients").delete().eq("id", patient_id).execute()
        await self.load(force=True)


class PatientProfileView(DataView):
    """One patient with call history and symptom reports, newest first."""

    name = "patient_profile"

    def __init__(self, session: SessionCoordinator, client: AsyncClient, patient_id: str, **kwargs) -> None:
        self.patient_id = patient_id
        super().__init__(session, client, **kwargs)
        self._reset_data()

    def _reset_data(self) -> None:
        self.patient: Optional[Patient] = None
        self.calls: List[Call] = []
        self.reports: List[SymptomReport] = []

    async def _fetch(self) -> None:
        patient = await (
            self.client.table("patients")
            .select("id, full_name, phone_number, last_visit, condition_type, doctor_id")
            .eq("id", self.patient_id)
            .single()
            .execute()
        )
        self.patient = Patient(**patient.data) if isinstance(patient.data, dict) else None
        calls = await (
            self.client.table("calls")
            .select("id, call_time, call_status, transcript")
            .eq("patient_id", self.patient_id)
            .order("call_time", desc=True)
            .execute()
        )
        self.calls = [Call.from_row(row) for row in _rows(calls.data)]
        reports = await (
            self.client.table("symptom_reports")
            .select("id, symptoms, created_at, call_id, calls(call_time)")
            .eq("patient_id", self.patient_id)
            .order("created_at", desc=True)
            .execute()
        )
        self.reports = [SymptomReport.from_row(row) for row in _rows(reports.data)]


__all__ = [
    "AlertsView",
    "DashboardView",
    "DataView",
    "PatientProfileView",
    "PatientsView",
    "REFETCH_GUARD_SECONDS",
]
