# Single-phase work flow: find material, setup and production stages.
# Version: 1.0.0
# One open phase log and one live session at a time for one (sheet, phase).

import logging
import math
from dataclasses import dataclass

from .client import ProductionApi
from .clock import SessionClock
from .constants import STAGE_LIVE_STATUS, StageType
from .errors import (
    InvalidTransitionError,
    NothingRemainingError,
    PayloadError,
    SessionError,
)
from .guard import GuardPurpose, SessionGuard
from .models import ProductionSheet
from .prompts import parse_quantity_input
from .remaining import remaining_quantity

logger = logging.getLogger(__name__)


@dataclass
class RunningStage:
    """The stage currently open for the operator.

    Attributes:
        log_id: Open phase log.
        qr_value: Code of the sheet, used to re-resolve it at finish.
        phase_id: Phase identifier.
        position: Execution position.
        stage: find, setup or production.
        sheet: Sheet snapshot taken at start (None after a resume without code).
    """
    log_id: str
    qr_value: str
    phase_id: str
    position: int | None
    stage: StageType
    sheet: ProductionSheet | None = None


def planned_stage_minutes(sheet: ProductionSheet, phase_id: str, position: int,
                          stage: StageType, remaining: int) -> float:
    """Planned minutes reported to the live dashboard for a stage.

    find/setup cover the whole phase (setup + per-piece x remaining);
    production covers only per-piece x remaining.
    """
    phase = sheet.find_phase(phase_id, position)
    if phase is None:
        return 0.0
    if stage == "production":
        return phase.production_time_per_piece * remaining
    return phase.setup_time + phase.production_time_per_piece * remaining


class SinglePhaseRunner:
    """Runs one stage of one phase for an operator.

    Find and setup durations are remembered per phase and sent along with
    the production log when production starts.

    Attributes:
        username: Operator.
        current: Open stage, if any.
        stage_times: Seconds spent in find/setup per (phase_id, position).
    """

    def __init__(self, api: ProductionApi, username: str, clock: SessionClock | None = None) -> None:
        self.api = api
        self.username = username
        self.clock = clock or SessionClock()
        self.current: RunningStage | None = None
        self.stage_times: dict[tuple[str, int | None], dict[str, int]] = {}

    async def start(self, code: str, phase_id: str, position: int, stage: StageType) -> RunningStage:
        """Open a phase log and a live session for one stage.

        Args:
            code: Sheet code.
            phase_id: Phase identifier.
            position: Execution position.
            stage: find, setup or production.

        Returns:
            The RunningStage.

        Raises:
            ExclusivityConflictError: If another session kind is open.
            NothingRemainingError: If nothing can be started at the phase.
        """
        if self.current is not None:
            raise InvalidTransitionError("start a stage", f"{self.current.stage} running")

        status = await SessionGuard(self.api).ensure_clear(
            self.username, GuardPurpose.START_SINGLE_PHASE
        )
        self.clock.sample_skew(status.server_now)

        phase_id = str(phase_id)
        sheet = await self.api.get_production_sheet_by_qr(code)
        remaining = remaining_quantity(sheet, phase_id, position)
        if remaining <= 0:
            raise NothingRemainingError(sheet.id, phase_id, position)

        key = (phase_id, position)
        times = self.stage_times.get(key, {}) if stage == "production" else {}
        started_at = self.clock.server_now()

        log = await self.api.start_phase(
            username=self.username,
            sheet=sheet,
            phase_id=phase_id,
            position=position,
            start_time=started_at,
            total_quantity=remaining if stage == "production" else 0,
            stage=stage,
            find_material_time=times.get("find", 0),
            setup_time=times.get("setup", 0),
        )
        if stage == "production":
            self.stage_times.pop(key, None)

        planned = planned_stage_minutes(sheet, phase_id, position, stage, remaining)
        try:
            await self.api.start_live_phase(
                username=self.username,
                sheet_id=sheet.id,
                product_id=sheet.product_id,
                phase_id=phase_id,
                position=position,
                planned_time=max(1, math.ceil(planned)),
                status=STAGE_LIVE_STATUS[stage],
            )
        except SessionError as e:
            # The open log still records the work
            logger.warning(f"Live start for {self.username} failed: {e}")

        self.clock.anchor(log.start_time or started_at)
        self.current = RunningStage(
            log_id=log.id,
            qr_value=code,
            phase_id=phase_id,
            position=position,
            stage=stage,
            sheet=sheet,
        )
        logger.info(f"{self.username} started {stage} of phase {phase_id} on sheet {sheet.id}")
        return self.current

    async def finish(self, quantity: str | int | None = None) -> int:
        """Close the open stage.

        find/setup close with quantity 0. Production closes with the full
        remaining quantity, or a partial quantity between 1 and remaining.

        Args:
            quantity: Partial production quantity (None means everything).

        Returns:
            Quantity recorded.

        Raises:
            InvalidQuantityError: If the partial quantity is out of range.
        """
        if self.current is None:
            raise InvalidTransitionError("finish a stage", "idle")
        current = self.current

        done = 0
        if current.stage == "production":
            if not current.qr_value:
                raise PayloadError("active_phase", "Missing sheet code, cannot compute remaining")
            sheet = await self.api.get_production_sheet_by_qr(current.qr_value)
            remaining = remaining_quantity(sheet, current.phase_id, current.position)
            if remaining <= 0:
                raise NothingRemainingError(sheet.id, current.phase_id, current.position)
            if quantity is None:
                done = remaining
            else:
                done = parse_quantity_input(quantity, 1, remaining, f"phase {current.phase_id}")

        stop_time = self.clock.server_now()
        seconds = self.clock.billed_seconds(stop_time)
        await self.api.finish_phase(current.log_id, stop_time, done, seconds)

        if current.stage in ("find", "setup"):
            times = self.stage_times.setdefault((current.phase_id, current.position), {})
            times[current.stage] = times.get(current.stage, 0) + seconds

        try:
            await self.api.stop_live_phase(self.username)
        except SessionError as e:
            logger.warning(f"Could not stop live session for {self.username}: {e}")

        self.current = None
        self.clock.reset()
        logger.info(
            f"{self.username} finished {current.stage} of phase {current.phase_id} "
            f"(qty {done}, {seconds}s)"
        )
        return done

    async def resume(self) -> RunningStage | None:
        """Rebuild the open stage from the my-active-phase read.

        Returns:
            RunningStage, or None when no log is open.
        """
        active = await self.api.get_my_active_phase()
        if active is None or not active.log_id:
            self.current = None
            return None

        sheet = None
        if active.qr_value:
            sheet = await self.api.get_production_sheet_by_qr(active.qr_value)

        self.clock.anchor(active.start_time, active.running_seconds)
        self.current = RunningStage(
            log_id=active.log_id,
            qr_value=active.qr_value,
            phase_id=active.phase_id,
            position=active.position,
            stage=active.stage,
            sheet=sheet,
        )
        return self.current
