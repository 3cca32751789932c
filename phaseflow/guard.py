# Exclusivity check across dead time, single-phase and multi-job sessions.
# Version: 1.0.0
# The live-status read is the only lock; it is re-run right before every commit.

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Collection, Literal

from .client import ProductionApi
from .errors import ExclusivityConflictError
from .models import LiveSession, MultiJobSession

logger = logging.getLogger(__name__)


GuardStatus = Literal["ok", "blocked_dead_time", "blocked_other_session"]


class GuardPurpose(Enum):
    """What the caller is about to do."""
    START_MULTI_JOB = "start_multi_job"
    START_SINGLE_PHASE = "start_single_phase"
    START_DEAD_TIME = "start_dead_time"
    OPEN_MULTI_JOB = "open_multi_job"


@dataclass(frozen=True)
class ExclusivityResult:
    """Outcome of an exclusivity check.

    Attributes:
        status: ok, blocked_dead_time or blocked_other_session.
        session: The blocking (or, for OPEN_MULTI_JOB, resumable) session.
        server_now: Server clock at the read, for skew sampling.
        reason: Short explanation when blocked.
    """
    status: GuardStatus
    session: LiveSession | None = None
    server_now: datetime | None = None
    reason: str = ""

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    @property
    def blocker(self) -> str:
        return "dead_time" if self.status == "blocked_dead_time" else "other_session"


class SessionGuard:
    """Authoritative exclusivity rule per operator.

    Priority order:
        1. An open dead time blocks everything.
        2. An open non-multi session blocks every start.
        3. An open multi-job session blocks starting another one
           (it has to be resumed instead).
        4. An open phase log reported by the my-active-phase read blocks
           every start as well, unless it is one of ``own_log_ids`` (logs
           left open by the caller's own failed multi-job stop).
    """

    def __init__(self, api: ProductionApi) -> None:
        self.api = api

    async def check_exclusivity(
        self,
        username: str,
        purpose: GuardPurpose = GuardPurpose.START_MULTI_JOB,
        own_log_ids: Collection[str] = (),
    ) -> ExclusivityResult:
        """Read the live status and decide whether ``purpose`` may proceed.

        Args:
            username: Operator about to act.
            purpose: Kind of start being attempted.
            own_log_ids: Open phase logs held by the caller itself.

        Returns:
            ExclusivityResult. Read errors propagate unchanged.
        """
        status = await self.api.get_live_status()
        session = status.session_for(username)
        server_now = status.server_now

        if session is not None and session.kind == "dead_time":
            return ExclusivityResult(
                "blocked_dead_time", session, server_now, "Dead time is open"
            )

        if session is not None and session.kind == "single_phase":
            return ExclusivityResult(
                "blocked_other_session", session, server_now, "A single-phase session is running"
            )

        if isinstance(session, MultiJobSession):
            if purpose == GuardPurpose.OPEN_MULTI_JOB:
                return ExclusivityResult("ok", session, server_now)
            return ExclusivityResult(
                "blocked_other_session", session, server_now,
                "A multi-job session is running; resume it instead"
            )

        active_phase = await self.api.get_my_active_phase()
        if active_phase is not None and active_phase.log_id not in own_log_ids:
            return ExclusivityResult(
                "blocked_other_session", active_phase, server_now, "An open phase log exists"
            )

        return ExclusivityResult("ok", None, server_now)

    async def ensure_clear(
        self,
        username: str,
        purpose: GuardPurpose = GuardPurpose.START_MULTI_JOB,
        own_log_ids: Collection[str] = (),
    ) -> ExclusivityResult:
        """Same as check_exclusivity but raise when blocked.

        Raises:
            ExclusivityConflictError: If another session kind is open.
        """
        result = await self.check_exclusivity(username, purpose, own_log_ids)
        if not result.is_ok:
            logger.info(f"Blocked {purpose.value} for {username}: {result.reason}")
            raise ExclusivityConflictError(username, result.blocker, result.session, result.reason)
        return result
