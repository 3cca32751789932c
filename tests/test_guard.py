"""Tests for the exclusivity guard."""

import httpx
import pytest

from conftest import SERVER_START

from phaseflow.errors import ExclusivityConflictError, TransientNetworkError
from phaseflow.guard import GuardPurpose, SessionGuard
from phaseflow.models import MultiJobSession, SinglePhaseSession


class TestCheckExclusivity:
    """Tests for SessionGuard.check_exclusivity."""

    @pytest.mark.asyncio
    async def test_idle_operator_is_clear(self, api):
        result = await SessionGuard(api).check_exclusivity("ana")

        assert result.is_ok
        assert result.session is None
        assert result.server_now == SERVER_START
        assert api.call_names() == ["get_live_status", "get_my_active_phase"]

    @pytest.mark.asyncio
    async def test_dead_time_blocks_every_purpose(self, api):
        api.open_dead_time("ana")

        for purpose in GuardPurpose:
            result = await SessionGuard(api).check_exclusivity("ana", purpose)
            assert result.status == "blocked_dead_time"
            assert result.blocker == "dead_time"
            assert result.session.kind == "dead_time"

        # Only reads, no side effects
        assert set(api.call_names()) == {"get_live_status"}

    @pytest.mark.asyncio
    async def test_single_phase_blocks(self, api):
        api.open_single("ana", status="setup")

        result = await SessionGuard(api).check_exclusivity("ana", GuardPurpose.START_MULTI_JOB)

        assert result.status == "blocked_other_session"
        assert isinstance(result.session, SinglePhaseSession)
        assert result.session.stage == "setup"

    @pytest.mark.asyncio
    async def test_multi_job_blocks_a_new_start_but_may_be_opened(self, api):
        api.open_multi("ana", start_time=SERVER_START)
        guard = SessionGuard(api)

        blocked = await guard.check_exclusivity("ana", GuardPurpose.START_MULTI_JOB)
        opened = await guard.check_exclusivity("ana", GuardPurpose.OPEN_MULTI_JOB)

        assert blocked.status == "blocked_other_session"
        assert opened.is_ok
        assert isinstance(opened.session, MultiJobSession)

    @pytest.mark.asyncio
    async def test_open_phase_log_blocks(self, api):
        api.active_phase = SinglePhaseSession(
            username="ana", sheet_id="S1", phase_id="A", position=1, log_id="L1"
        )

        result = await SessionGuard(api).check_exclusivity("ana", GuardPurpose.START_DEAD_TIME)

        assert result.status == "blocked_other_session"
        assert result.session.log_id == "L1"

    @pytest.mark.asyncio
    async def test_own_open_phase_log_does_not_block(self, api):
        api.active_phase = SinglePhaseSession(
            username="ana", sheet_id="S1", phase_id="A", position=1, log_id="L1"
        )
        guard = SessionGuard(api)

        assert (await guard.check_exclusivity("ana", own_log_ids={"L1"})).is_ok
        result = await guard.check_exclusivity("ana", own_log_ids={"L2"})
        assert result.status == "blocked_other_session"

    @pytest.mark.asyncio
    async def test_other_operators_do_not_block(self, api):
        api.open_dead_time("bo")
        api.open_single("cy")

        result = await SessionGuard(api).check_exclusivity("ana")

        assert result.is_ok

    @pytest.mark.asyncio
    async def test_read_errors_propagate(self, api):
        api.fail_on("get_live_status", TransientNetworkError("get_live_status", httpx.ConnectError("down")))

        with pytest.raises(TransientNetworkError):
            await SessionGuard(api).check_exclusivity("ana")


class TestEnsureClear:
    """Tests for SessionGuard.ensure_clear."""

    @pytest.mark.asyncio
    async def test_raises_with_blocker(self, api):
        api.open_dead_time("ana")

        with pytest.raises(ExclusivityConflictError) as exc_info:
            await SessionGuard(api).ensure_clear("ana", GuardPurpose.START_SINGLE_PHASE)

        assert exc_info.value.blocker == "dead_time"
        assert exc_info.value.details["username"] == "ana"

    @pytest.mark.asyncio
    async def test_returns_result_when_clear(self, api):
        result = await SessionGuard(api).ensure_clear("ana")
        assert result.is_ok
