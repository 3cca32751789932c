"""
Pytest configuration and shared fixtures.

FakeProductionApi stands in for the production backend: it keeps live
sessions, sheets and the stored job list in memory and records every call.
"""

from datetime import datetime, timedelta, timezone

import pytest

from phaseflow.constants import DeadTimeCode, StationSettings
from phaseflow.models import (
    ActiveEntry,
    DeadTimeSession,
    JobItem,
    LiveStatus,
    PhaseDefinition,
    PhaseLog,
    ProductionSheet,
    SinglePhaseSession,
    StoredJobItem,
    new_job_id,
)
from phaseflow.errors import BackendError


SERVER_START = datetime(2024, 5, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeNow:
    """Controllable client clock for SessionClock."""

    def __init__(self, value: datetime = SERVER_START):
        self.value = value

    def __call__(self) -> datetime:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value = self.value + timedelta(seconds=seconds)


class FakeProductionApi:
    """In-memory ProductionApi recording every call."""

    def __init__(self):
        self.calls = []
        self.server_now = SERVER_START
        self.active = {}
        self.dead = {}
        self.sheets = {}
        self.stored = []
        self.active_phase = None
        # When set, logs stay open until finish_phase succeeds and are
        # reported by get_my_active_phase
        self.report_open_logs = False
        self.open_logs = {}
        self._failures = {}
        self._log_seq = 0
        self._dead_seq = 0

    # ---- test helpers ----

    def fail_on(self, name, error, after=0):
        """Make ``name`` raise ``error`` once it has succeeded ``after`` times."""
        self._failures[name] = (error, after)

    def clear_failure(self, name):
        self._failures.pop(name, None)

    def call_names(self):
        return [name for name, _ in self.calls]

    def calls_to(self, name):
        return [kwargs for called, kwargs in self.calls if called == name]

    def advance(self, seconds):
        self.server_now = self.server_now + timedelta(seconds=seconds)

    def add_sheet(self, sheet, qr_value=None):
        qr_value = qr_value or sheet.qr_value or f"QR-{sheet.id}"
        sheet.qr_value = qr_value
        self.sheets[qr_value] = sheet
        return qr_value

    def open_multi(self, username, start_time=None, running_seconds=0):
        self.active[username] = ActiveEntry(
            username=username,
            status="multi",
            running_seconds=running_seconds,
            start_time=start_time,
        )

    def open_single(self, username, phase_id="A", position=1, status="production"):
        self.active[username] = ActiveEntry(
            username=username,
            status=status,
            sheet_id="S1",
            phase_id=phase_id,
            position=position,
            start_time=self.server_now,
        )

    def open_dead_time(self, username, code=10):
        self._dead_seq += 1
        self.dead[username] = DeadTimeSession(
            id=f"dt-{self._dead_seq}", username=username, code=code
        )

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self._failures:
            error, after = self._failures[name]
            if len(self.calls_to(name)) > after:
                raise error

    # ---- ProductionApi ----

    async def get_live_status(self):
        self._record("get_live_status")
        return LiveStatus(
            active=tuple(self.active.values()),
            dead=tuple(self.dead.values()),
            server_now=self.server_now,
        )

    async def start_live_phase(self, username, sheet_id, product_id, phase_id,
                               position, planned_time, status):
        self._record(
            "start_live_phase",
            username=username,
            sheet_id=sheet_id,
            product_id=product_id,
            phase_id=phase_id,
            position=position,
            planned_time=planned_time,
            status=status,
        )
        self.active[username] = ActiveEntry(
            username=username,
            status=status,
            sheet_id=sheet_id,
            product_id=product_id,
            phase_id=phase_id,
            position=position,
            planned_time=planned_time,
            start_time=self.server_now,
        )

    async def stop_live_phase(self, username):
        self._record("stop_live_phase", username=username)
        self.active.pop(username, None)

    async def start_phase(self, username, sheet, phase_id, position, start_time,
                          total_quantity, stage, find_material_time=0, setup_time=0):
        self._record(
            "start_phase",
            username=username,
            sheet_id=sheet.id,
            phase_id=phase_id,
            position=position,
            start_time=start_time,
            total_quantity=total_quantity,
            stage=stage,
            find_material_time=find_material_time,
            setup_time=setup_time,
        )
        self._log_seq += 1
        log_id = f"log-{self._log_seq}"
        if self.report_open_logs:
            self.open_logs[log_id] = SinglePhaseSession(
                username=username,
                sheet_id=sheet.id,
                phase_id=phase_id,
                position=position,
                stage=stage,
                start_time=start_time,
                log_id=log_id,
            )
        return PhaseLog(
            id=log_id,
            phase_id=phase_id,
            position=position,
            production_position=position,
            operator=username,
            start_time=start_time,
            total_quantity=total_quantity,
            stage=stage,
        )

    async def finish_phase(self, log_id, end_time, quantity_done, duration_seconds):
        self._record(
            "finish_phase",
            log_id=log_id,
            end_time=end_time,
            quantity_done=quantity_done,
            duration_seconds=duration_seconds,
        )
        self.open_logs.pop(log_id, None)

    async def start_dead_time(self, username, code, description, linkage):
        self._record(
            "start_dead_time",
            username=username,
            code=code,
            description=description,
            linkage=linkage,
        )
        self._dead_seq += 1
        dead_time_id = f"dt-{self._dead_seq}"
        self.dead[username] = DeadTimeSession(
            id=dead_time_id,
            username=username,
            code=code,
            description=description,
            linkage=linkage,
        )
        return dead_time_id

    async def finish_dead_time(self, dead_time_id):
        self._record("finish_dead_time", dead_time_id=dead_time_id)
        self.dead = {u: d for u, d in self.dead.items() if d.id != dead_time_id}

    async def get_production_sheet_by_qr(self, code):
        self._record("get_production_sheet_by_qr", code=code)
        if code not in self.sheets:
            raise BackendError("get_production_sheet_by_qr", 404, "Sheet not found")
        return self.sheets[code]

    async def save_multi_session(self, username, items):
        self._record("save_multi_session", username=username, items=list(items))
        self.stored = list(items)

    async def get_my_multi_session(self):
        self._record("get_my_multi_session")
        return list(self.stored)

    async def clear_my_multi_session(self):
        self._record("clear_my_multi_session")
        self.stored = []

    async def get_my_active_phase(self):
        self._record("get_my_active_phase")
        if self.active_phase is None and self.open_logs:
            return next(iter(self.open_logs.values()))
        return self.active_phase


def make_sheet(sheet_id="S1", quantity=100, phases=None, logs=(), product_id="P1"):
    """Build a sheet; phases are (phase_id, position, setup, per_piece) tuples."""
    if phases is None:
        phases = [("A", 1, 10.0, 1.0), ("B", 2, 5.0, 0.5)]
    return ProductionSheet(
        id=sheet_id,
        order_number="ORD-1",
        sheet_number=f"PS-{sheet_id}",
        product_id=product_id,
        quantity=quantity,
        qr_value=f"QR-{sheet_id}",
        phases=[
            PhaseDefinition(
                phase_id=phase_id,
                position=position,
                production_position=position,
                setup_time=setup,
                production_time_per_piece=per_piece,
            )
            for phase_id, position, setup, per_piece in phases
        ],
        logs=list(logs),
    )


def make_log(phase_id, position, quantity_done, log_id=None):
    return PhaseLog(
        id=log_id or f"L-{phase_id}-{position}",
        phase_id=phase_id,
        position=position,
        production_position=position,
        quantity_done=quantity_done,
        start_time=SERVER_START,
        end_time=SERVER_START + timedelta(minutes=5),
    )


def make_job(sheet, phase_id, position):
    return JobItem(
        id=new_job_id(),
        qr_value=sheet.qr_value,
        sheet=sheet,
        phase_id=phase_id,
        position=position,
    )


def stored_item(sheet, phase_id, position):
    return StoredJobItem(qr_value=sheet.qr_value, phase_id=phase_id, position=position)


@pytest.fixture
def api():
    return FakeProductionApi()


@pytest.fixture
def fake_now():
    return FakeNow()


@pytest.fixture
def settings():
    """Station settings with immediate autosave and a small dead-time catalogue."""
    return StationSettings(
        autosave_debounce_ms=0,
        dead_time_codes={
            10: DeadTimeCode(10, "Break"),
            60: DeadTimeCode(60, "Maintenance", requires_product_manual=True),
            70: DeadTimeCode(70, "Quality check", requires_product_or_sheet=True),
        },
    )
