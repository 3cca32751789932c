# Multi-job builder state machine.
# Version: 1.0.0
# Accumulates (sheet, phase) picks, runs them as one timed session and splits
# the elapsed time back into one phase log per job when the session stops.

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Literal

from .allocation import allocate, split_intervals
from .client import ProductionApi
from .clock import SessionClock
from .constants import MULTI_STATUS, StationSettings
from .errors import (
    CancelledByUserError,
    DuplicateJobError,
    ExclusivityConflictError,
    InsufficientJobsError,
    InvalidQuantityError,
    InvalidTransitionError,
    NothingRemainingError,
    SessionError,
    SessionUnrecoverableError,
)
from .guard import ExclusivityResult, GuardPurpose, SessionGuard
from .models import JobItem, ProductionSheet, new_job_id
from .persistence import (
    JobListAutosaver,
    ResumeOutcome,
    ResumeState,
    resolve_orphan,
    resume_session,
    run_idle_poll,
)
from .positions import execution_phases
from .prompts import OperatorPrompt, OrphanAction, QuantityRequest, parse_quantity_input
from .remaining import job_weights, planned_minutes, remaining_quantity
from .summary import CompletedJob, SessionReport, generate_session_summary

logger = logging.getLogger(__name__)


BuilderState = Literal["idle", "scanning", "pick_phase", "build", "running", "saving"]


@dataclass(frozen=True)
class PhaseOption:
    """A phase shown in the pick-phase step.

    Attributes:
        phase_id: Phase identifier.
        position: Execution position.
        remaining: Quantity startable given the current picks.
        planned_minutes: Estimate for the remaining quantity.
        already_picked: The exact (sheet, phase, position) is in the list.
    """
    phase_id: str
    position: int
    remaining: int
    planned_minutes: float
    already_picked: bool

    @property
    def eligible(self) -> bool:
        return self.remaining > 0 and not self.already_picked


class MultiJobBuilder:
    """State machine for one operator's multi-job session.

    States: idle -> scanning -> pick_phase -> build -> running -> saving -> idle.
    The running state can also be entered directly from server data
    through refresh().

    Attributes:
        username: Operator the builder belongs to.
        state: Current state.
        jobs: Pending (or running) job items.
        pending_sheet: Sheet resolved by the last scan.
        blocked: Guard result of the last blocked check.
        orphan_stored_count: Stored items of an unrecoverable session
            awaiting the operator's choice.
        last_report: Report of the last stopped session.
    """

    def __init__(
        self,
        api: ProductionApi,
        username: str,
        settings: StationSettings | None = None,
        prompt: OperatorPrompt | None = None,
        clock: SessionClock | None = None,
    ) -> None:
        self.api = api
        self.username = username
        self.settings = settings or StationSettings()
        self.prompt = prompt
        self.clock = clock or SessionClock()
        self.autosaver = JobListAutosaver(
            lambda: self.api,
            username,
            debounce_seconds=self.settings.autosave_debounce_seconds,
            retry_seconds=self.settings.poll_interval_seconds,
        )

        self.state: BuilderState = "idle"
        self.jobs: list[JobItem] = []
        self.pending_sheet: ProductionSheet | None = None
        self.pending_qr = ""
        self.blocked: ExclusivityResult | None = None
        self.orphan_stored_count: int | None = None
        self.last_report: SessionReport | None = None

    @property
    def guard(self) -> SessionGuard:
        return SessionGuard(self.api)

    def _require(self, operation: str, *states: str) -> None:
        if self.state not in states:
            raise InvalidTransitionError(operation, self.state)

    def _rest_state(self) -> BuilderState:
        return "build" if self.jobs else "idle"

    def _autosave(self) -> None:
        if self.state in ("build", "running") and self.jobs:
            self.autosaver.schedule([job.to_stored() for job in self.jobs])

    def _open_log_ids(self) -> set[str]:
        return {job.open_log_id for job in self.jobs if job.open_log_id}

    async def _ensure_clear(self) -> ExclusivityResult:
        result = await self.guard.check_exclusivity(
            self.username, GuardPurpose.START_MULTI_JOB, self._open_log_ids()
        )
        self.blocked = None if result.is_ok else result
        if not result.is_ok:
            raise ExclusivityConflictError(
                self.username, result.blocker, result.session, result.reason
            )
        return result

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    def begin_scan(self) -> None:
        """Open the scanner (from idle, or from build to add another job)."""
        self._require("scan", "idle", "build")
        if self.orphan_stored_count is not None:
            raise SessionUnrecoverableError(self.username, self.orphan_stored_count)
        self.state = "scanning"

    def cancel_scan(self) -> None:
        self._require("cancel scan", "scanning", "pick_phase")
        self.pending_sheet = None
        self.pending_qr = ""
        self.state = self._rest_state()

    async def scan(self, code: str) -> ProductionSheet:
        """Resolve a scanned sheet code after a fresh exclusivity check.

        Args:
            code: Code read from the sheet.

        Returns:
            The freshly resolved sheet.

        Raises:
            ExclusivityConflictError: If another session kind is open.
        """
        self._require("resolve a sheet", "scanning")
        try:
            await self._ensure_clear()
            sheet = await self.api.get_production_sheet_by_qr(code)
        except SessionError:
            self.state = self._rest_state()
            raise

        self.pending_sheet = sheet
        self.pending_qr = code
        self.state = "pick_phase"
        return sheet

    def phase_options(self) -> list[PhaseOption]:
        """List the execution phases of the scanned sheet with their remaining."""
        self._require("list phases", "pick_phase")
        sheet = self.pending_sheet
        picked = {job.key for job in self.jobs}

        options = []
        for phase in execution_phases(sheet.phases):
            position = phase.production_position
            options.append(PhaseOption(
                phase_id=phase.phase_id,
                position=position,
                remaining=remaining_quantity(sheet, phase.phase_id, position, self.jobs),
                planned_minutes=planned_minutes(sheet, phase.phase_id, position, self.jobs),
                already_picked=(sheet.id, phase.phase_id, position) in picked,
            ))
        return options

    def eligible_phases(self) -> list[PhaseOption]:
        """Phases that can be added: remaining > 0 and not picked yet."""
        return [option for option in self.phase_options() if option.eligible]

    async def add_job(self, phase_id: str, position: int) -> JobItem:
        """Add a phase of the scanned sheet to the job list.

        Args:
            phase_id: Phase identifier.
            position: Execution position.

        Returns:
            The new JobItem.

        Raises:
            NothingRemainingError: If nothing can be started at the phase.
            DuplicateJobError: If the exact phase is already picked.
        """
        self._require("add a job", "pick_phase")
        sheet = self.pending_sheet
        phase_id = str(phase_id)

        if remaining_quantity(sheet, phase_id, position, self.jobs) <= 0:
            raise NothingRemainingError(sheet.id, phase_id, position)

        if any(job.key == (sheet.id, phase_id, position) for job in self.jobs):
            raise DuplicateJobError(sheet.id, phase_id, position)

        job = JobItem(
            id=new_job_id(),
            qr_value=self.pending_qr,
            sheet=sheet,
            phase_id=phase_id,
            position=position,
        )
        self.jobs.append(job)
        self.pending_sheet = None
        self.pending_qr = ""
        self.state = "build"
        self._autosave()
        return job

    def _warn_open_logs(self, jobs: list[JobItem]) -> None:
        # Dropped jobs leave their log to the single-phase flow, which resumes it
        for job in jobs:
            if job.open_log_id:
                logger.warning(
                    f"Job {job.id} of {self.username} dropped with phase log {job.open_log_id} still open"
                )

    async def remove_job(self, job_id: str) -> bool:
        """Remove a pending job by local id. Returns False if not found."""
        self._require("remove a job", "build")
        removed = [job for job in self.jobs if job.id == job_id]
        if not removed:
            return False
        self.jobs = [job for job in self.jobs if job.id != job_id]
        self._warn_open_logs(removed)
        self._autosave()
        return True

    async def abandon(self) -> None:
        """Discard an unstarted build and its stored job list."""
        self._require("abandon", "idle", "scanning", "pick_phase", "build")
        self.autosaver.cancel()
        self._warn_open_logs(self.jobs)
        self.jobs = []
        self.pending_sheet = None
        self.pending_qr = ""
        self.state = "idle"
        try:
            await self.api.clear_my_multi_session()
        except SessionError as e:
            logger.warning(f"Could not clear stored job list for {self.username}: {e}")

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def _refresh_sheets(self) -> None:
        for job in self.jobs:
            job.sheet = await self.api.get_production_sheet_by_qr(job.qr_value)

    async def start(self) -> None:
        """Start the timed session for the pending jobs.

        Raises:
            InsufficientJobsError: Fewer jobs than required (no calls issued).
            ExclusivityConflictError: Another session kind is open.
            NothingRemainingError: A job has nothing left after the refresh.
        """
        self._require("start", "build")
        if len(self.jobs) < self.settings.min_multi_jobs:
            raise InsufficientJobsError(len(self.jobs), self.settings.min_multi_jobs)

        await self._ensure_clear()

        await self._refresh_sheets()
        for job in self.jobs:
            if remaining_quantity(job.sheet, job.phase_id, job.position, self.jobs) <= 0:
                raise NothingRemainingError(job.sheet_id, job.phase_id, job.position)

        planned_total = sum(
            planned_minutes(job.sheet, job.phase_id, job.position, self.jobs) for job in self.jobs
        )
        anchor = self.jobs[0]

        await self.api.start_live_phase(
            username=self.username,
            sheet_id=anchor.sheet.id,
            product_id=anchor.sheet.product_id,
            phase_id=anchor.phase_id,
            position=anchor.position,
            planned_time=max(1, math.ceil(planned_total)),
            status=MULTI_STATUS,
        )

        self.autosaver.cancel()
        try:
            await self.api.save_multi_session(
                self.username, [job.to_stored() for job in self.jobs]
            )
        except SessionError as e:
            logger.error(f"Saving job list for {self.username} failed after live start: {e}")
            await self._stop_live_quietly()
            raise

        try:
            status = await self.api.get_live_status()
        except SessionError as e:
            logger.warning(f"Could not read session start for {self.username}, using local time: {e}")
            self.clock.anchor(None)
        else:
            entry = status.active_for(self.username)
            if entry is not None:
                self.clock.anchor(
                    entry.start_time, entry.running_seconds, entry.server_now or status.server_now
                )
            else:
                self.clock.anchor(None, 0, status.server_now)

        self.state = "running"
        logger.info(
            f"Started multi-job session for {self.username} with {len(self.jobs)} jobs "
            f"(planned {planned_total:.1f} min)"
        )

    def tick(self) -> int:
        """Elapsed seconds for display (0 unless running)."""
        if self.state != "running":
            return 0
        return self.clock.elapsed_seconds()

    async def _ask_quantity(self, prompt: OperatorPrompt, job: JobItem, remaining: int) -> int:
        error = ""
        last_error = None
        for attempt in range(1, self.settings.max_quantity_attempts + 1):
            request = QuantityRequest(
                job_id=job.id,
                sheet_number=job.sheet.sheet_number,
                phase_id=job.phase_id,
                position=job.position,
                remaining=remaining,
                attempt=attempt,
                error=error,
            )
            answer = await prompt.ask_quantity(request)
            if answer is None:
                raise CancelledByUserError("quantity entry")
            try:
                return parse_quantity_input(answer, 0, remaining, request.label)
            except InvalidQuantityError as e:
                last_error = e
                error = e.message
        raise last_error

    async def stop(self, prompt: OperatorPrompt | None = None) -> SessionReport:
        """Stop the running session and emit one log pair per job.

        Quantities are asked for every job before anything is written. A
        declined or repeatedly invalid answer returns to running with
        nothing changed. Any other failure returns to build, keeping the
        jobs whose logs were not emitted.

        Args:
            prompt: Operator prompt; defaults to the builder's prompt.

        Returns:
            SessionReport of the emitted logs.
        """
        self._require("stop", "running")
        prompt = prompt or self.prompt
        if prompt is None:
            raise CancelledByUserError("quantity entry")

        self.state = "saving"
        self.autosaver.cancel()
        completed: list[CompletedJob] = []

        try:
            status = await self.api.get_live_status()
            entry = status.active_for(self.username)
            server_now = status.server_now or (entry.server_now if entry else None)
            if entry is not None:
                self.clock.anchor(entry.start_time, entry.running_seconds, server_now)
            elif not self.clock.is_anchored:
                self.clock.anchor(None, 0, server_now)
            else:
                self.clock.sample_skew(server_now)

            start = self.clock.start
            total_seconds = self.clock.billed_seconds(server_now)

            await self._refresh_sheets()
            seconds = allocate(total_seconds, job_weights(self.jobs))

            quantities = []
            for job in self.jobs:
                remaining = remaining_quantity(job.sheet, job.phase_id, job.position, self.jobs)
                quantities.append(await self._ask_quantity(prompt, job, remaining))

        except (CancelledByUserError, InvalidQuantityError):
            self.state = "running"
            self._autosave()
            raise
        except SessionError as e:
            logger.error(f"Stop of multi-job session for {self.username} failed: {e}")
            await self._fail_to_build(completed)
            raise

        current: JobItem | None = None
        try:
            intervals = split_intervals(start, seconds)
            for job, (job_start, job_end), job_seconds, quantity in zip(
                self.jobs, intervals, seconds, quantities
            ):
                current = job
                # A log left open by an earlier failed stop is finished, not restarted
                if job.open_log_id is None:
                    log = await self.api.start_phase(
                        username=self.username,
                        sheet=job.sheet,
                        phase_id=job.phase_id,
                        position=job.position,
                        start_time=job_start,
                        total_quantity=quantity,
                        stage="production",
                    )
                    job.open_log_id = log.id
                else:
                    logger.info(f"Finishing phase log {job.open_log_id} left open for job {job.id}")
                log_id = job.open_log_id

                await self.api.finish_phase(log_id, job_end, quantity, job_seconds)
                job.open_log_id = None
                completed.append(CompletedJob(
                    job_id=job.id,
                    sheet_id=job.sheet_id,
                    sheet_number=job.sheet.sheet_number,
                    phase_id=job.phase_id,
                    position=job.position,
                    log_id=log_id,
                    quantity=quantity,
                    seconds=job_seconds,
                    start=job_start,
                    end=job_end,
                ))
        except SessionError as e:
            logger.error(
                f"Log emission for {self.username} failed after {len(completed)} "
                f"of {len(self.jobs)} jobs: {e}"
            )
            e.details["logged_jobs"] = [c.job_id for c in completed]
            if current is not None and current.open_log_id is not None:
                e.details["open_log_id"] = current.open_log_id
            await self._fail_to_build(completed)
            raise

        report = SessionReport(
            username=self.username,
            start=start,
            total_seconds=total_seconds,
            jobs=completed,
        )

        await self._stop_live_quietly()
        try:
            await self.api.clear_my_multi_session()
        except SessionError as e:
            logger.warning(f"Could not clear stored job list for {self.username}: {e}")

        self.jobs = []
        self.clock.reset()
        self.state = "idle"
        self.last_report = report
        logger.info(generate_session_summary(report))
        return report

    async def _stop_live_quietly(self) -> None:
        try:
            await self.api.stop_live_phase(self.username)
        except SessionError as e:
            logger.warning(f"Could not stop live session for {self.username}: {e}")

    async def _fail_to_build(self, completed: list[CompletedJob]) -> None:
        # Jobs already logged must not be logged again on the next start
        logged = {c.job_id for c in completed}
        self.jobs = [job for job in self.jobs if job.id not in logged]
        await self._stop_live_quietly()
        self.clock.reset()
        self.state = "build"
        self._autosave()

    # ------------------------------------------------------------------
    # Resume
    # ------------------------------------------------------------------

    async def refresh(self) -> ResumeOutcome | None:
        """Re-read server state while idle and resume a running session.

        Does nothing outside the idle state, so a batch being built or a
        running session is never interrupted.

        Returns:
            ResumeOutcome, or None when not idle.
        """
        if self.state != "idle":
            return None

        outcome = await resume_session(
            self.api, self.username, self.clock, self.settings.min_multi_jobs
        )
        self.blocked = outcome.blocking

        if outcome.state == ResumeState.RESUMED:
            self.orphan_stored_count = None
            self.jobs = outcome.jobs
            self.state = "running"
        elif outcome.state == ResumeState.NEEDS_CHOICE:
            self.orphan_stored_count = outcome.stored_count
            if self.prompt is not None:
                action = await self.prompt.choose_orphan_action(self.username, outcome.stored_count)
                if action is not None:
                    await self.resolve_orphan(action)
        else:
            self.orphan_stored_count = None

        return outcome

    async def watch(self, stop: asyncio.Event) -> None:
        """Run refresh() on the idle poll interval until ``stop`` is set.

        Meant to run as a background task for as long as the station is open.
        """
        await run_idle_poll(self.refresh, self.settings.poll_interval_seconds, stop)

    async def resolve_orphan(self, action: OrphanAction) -> None:
        """Apply the operator's stop/keep choice for an unrecoverable session.

        Raises:
            InvalidTransitionError: If no choice is pending.
        """
        if self.orphan_stored_count is None:
            raise InvalidTransitionError("resolve an orphaned session", self.state)
        await resolve_orphan(self.api, self.username, action)
        if action == OrphanAction.STOP_SESSION:
            self.orphan_stored_count = None
            self.state = "idle"
