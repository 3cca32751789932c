# Session persistence and resume from server data.
# Version: 1.0.0
# Rebuilds a running multi-job session after a reload or on another device,
# and keeps the stored job list in sync while the operator builds a batch.

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Sequence

from .client import ProductionApi
from .clock import SessionClock
from .constants import MIN_MULTI_JOBS
from .errors import SessionError
from .guard import ExclusivityResult, GuardPurpose, SessionGuard
from .models import JobItem, MultiJobSession, StoredJobItem, new_job_id
from .prompts import OrphanAction

logger = logging.getLogger(__name__)


class ResumeState(Enum):
    """Result kind of a resume attempt."""
    IDLE = "idle"
    BLOCKED = "blocked"
    NEEDS_CHOICE = "needs_choice"
    RESUMED = "resumed"


@dataclass
class ResumeOutcome:
    """What a resume attempt found.

    Attributes:
        state: Outcome kind.
        blocking: Guard result when another session kind blocks the operator.
        session: The running multi-job session, when one exists.
        jobs: Rehydrated job items (RESUMED only).
        stored_count: Number of stored items found.
        start_time: Anchored server start (RESUMED only).
    """
    state: ResumeState
    blocking: ExclusivityResult | None = None
    session: MultiJobSession | None = None
    jobs: list[JobItem] = field(default_factory=list)
    stored_count: int = 0
    start_time: datetime | None = None


async def hydrate_jobs(api: ProductionApi, items: Sequence[StoredJobItem]) -> list[JobItem]:
    """Re-resolve every stored item's sheet fresh from the backend.

    Args:
        api: Production backend.
        items: Stored job list.

    Returns:
        JobItems with new local ids, in stored order.
    """
    jobs = []
    for item in items:
        sheet = await api.get_production_sheet_by_qr(item.qr_value)
        jobs.append(JobItem(
            id=new_job_id(),
            qr_value=item.qr_value,
            sheet=sheet,
            phase_id=item.phase_id,
            position=item.position,
            stage=item.stage,
        ))
    return jobs


async def resume_session(
    api: ProductionApi,
    username: str,
    clock: SessionClock | None = None,
    min_jobs: int = MIN_MULTI_JOBS,
) -> ResumeOutcome:
    """Reconstruct the operator's multi-job session from server data alone.

    A stored list shorter than ``min_jobs`` is never resolved automatically:
    stopping would discard real elapsed work, resuming would show no jobs.

    Args:
        api: Production backend.
        username: Operator to resume for.
        clock: Clock to anchor on success.
        min_jobs: Minimum stored items needed to resume.

    Returns:
        ResumeOutcome describing what was found.
    """
    guard = SessionGuard(api)
    result = await guard.check_exclusivity(username, GuardPurpose.OPEN_MULTI_JOB)

    if not result.is_ok:
        return ResumeOutcome(ResumeState.BLOCKED, blocking=result)

    session = result.session
    if not isinstance(session, MultiJobSession):
        return ResumeOutcome(ResumeState.IDLE)

    try:
        stored = await api.get_my_multi_session()
    except SessionError as e:
        logger.warning(f"Could not load stored job list for {username}: {e}")
        stored = []

    if len(stored) < min_jobs:
        logger.warning(
            f"Multi-job session of {username} has {len(stored)} stored job(s); "
            f"waiting for an explicit stop/keep choice"
        )
        return ResumeOutcome(ResumeState.NEEDS_CHOICE, session=session, stored_count=len(stored))

    jobs = await hydrate_jobs(api, stored)

    clock = clock or SessionClock()
    start = clock.anchor(
        session.start_time,
        session.running_seconds,
        session.server_now or result.server_now,
    )
    logger.info(f"Resumed multi-job session of {username} with {len(jobs)} jobs")

    return ResumeOutcome(
        ResumeState.RESUMED,
        session=session,
        jobs=jobs,
        stored_count=len(stored),
        start_time=start,
    )


async def resolve_orphan(api: ProductionApi, username: str, action: OrphanAction) -> None:
    """Apply the operator's choice for an unrecoverable multi-job session.

    Args:
        api: Production backend.
        username: Operator the session belongs to.
        action: STOP_SESSION stops the live session and clears the stored
            list; KEEP_RUNNING leaves both untouched.
    """
    if action == OrphanAction.KEEP_RUNNING:
        logger.info(f"Operator {username} kept the orphaned multi-job session running")
        return

    await api.stop_live_phase(username)
    try:
        await api.clear_my_multi_session()
    except SessionError as e:
        logger.warning(f"Could not clear stored job list for {username}: {e}")
    logger.info(f"Operator {username} stopped the orphaned multi-job session")


class JobListAutosaver:
    """Debounced, best-effort persistence of the pending job list.

    Each schedule() replaces any save still waiting. A failed save is logged,
    kept in ``last_error`` and attempted again with the same items after
    ``retry_seconds`` until it succeeds, is replaced, or is cancelled; it
    never interrupts local work.

    Attributes:
        username: Operator the list belongs to.
        debounce_seconds: Delay before a scheduled save runs.
        retry_seconds: Delay before a failed save is attempted again.
        last_error: Error of the most recent failed save, if any.
    """

    def __init__(
        self,
        api_getter: Callable[[], ProductionApi],
        username: str,
        debounce_seconds: float = 0.2,
        retry_seconds: float = 5.0,
    ) -> None:
        self._api_getter = api_getter
        self.username = username
        self.debounce_seconds = debounce_seconds
        self.retry_seconds = retry_seconds
        self.last_error: Exception | None = None
        self._task: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, items: Sequence[StoredJobItem]) -> None:
        """Schedule a save of ``items``; empty lists are not saved."""
        self.cancel()
        if not items:
            return
        self._task = asyncio.get_running_loop().create_task(
            self._save_later(list(items), self.debounce_seconds)
        )

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def flush(self) -> None:
        """Wait for the pending save attempt, if any.

        A retry scheduled by a failed attempt is left pending.
        """
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _save_later(self, items: list[StoredJobItem], delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._api_getter().save_multi_session(self.username, items)
        except SessionError as e:
            self.last_error = e
            logger.warning(
                f"Autosave of job list for {self.username} failed, retrying in {self.retry_seconds}s: {e}"
            )
            self._task = asyncio.get_running_loop().create_task(
                self._save_later(items, self.retry_seconds)
            )
        else:
            self.last_error = None


async def run_idle_poll(
    refresh: Callable[[], Awaitable[object]],
    interval_seconds: float,
    stop: asyncio.Event,
) -> None:
    """Call ``refresh`` immediately and then every interval until ``stop`` is set.

    The caller owns the loop: a station front end (or
    MultiJobBuilder.watch) runs it as a background task and sets ``stop``
    when the station closes. Refresh errors are logged and the poll
    continues.
    """
    while not stop.is_set():
        try:
            await refresh()
        except SessionError as e:
            logger.warning(f"Idle resume poll failed: {e}")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
