"""Tests for the multi-job builder state machine."""

import asyncio
from dataclasses import replace
from datetime import timedelta

import httpx
import pytest

from conftest import SERVER_START, make_log, make_sheet, stored_item

from phaseflow.builder import MultiJobBuilder
from phaseflow.clock import SessionClock
from phaseflow.errors import (
    BackendError,
    CancelledByUserError,
    DuplicateJobError,
    ExclusivityConflictError,
    InsufficientJobsError,
    InvalidQuantityError,
    InvalidTransitionError,
    NothingRemainingError,
    SessionUnrecoverableError,
    TransientNetworkError,
)
from phaseflow.prompts import OrphanAction, PresetPrompt


@pytest.fixture
def sheet(api):
    sheet = make_sheet("S1", quantity=100)
    api.add_sheet(sheet)
    return sheet


@pytest.fixture
def builder(api, settings, fake_now, sheet):
    return MultiJobBuilder(api, "ana", settings=settings, clock=SessionClock(now=fake_now))


async def pick(builder, code, phase_id, position):
    builder.begin_scan()
    await builder.scan(code)
    job = await builder.add_job(phase_id, position)
    await builder.autosaver.flush()
    return job


async def build_two_jobs(builder):
    first = await pick(builder, "QR-S1", "A", 1)
    second = await pick(builder, "QR-S1", "B", 2)
    return first, second


class TestBuilding:
    """Tests for scanning and the pending job list."""

    @pytest.mark.asyncio
    async def test_scan_checks_exclusivity_then_resolves_the_sheet(self, builder, api):
        builder.begin_scan()
        sheet = await builder.scan("QR-S1")

        assert sheet.id == "S1"
        assert builder.state == "pick_phase"
        assert api.call_names() == [
            "get_live_status", "get_my_active_phase", "get_production_sheet_by_qr"
        ]

    @pytest.mark.asyncio
    async def test_phase_options(self, builder):
        builder.begin_scan()
        await builder.scan("QR-S1")

        options = builder.phase_options()

        assert [(o.phase_id, o.remaining, o.planned_minutes) for o in options] == [
            ("A", 100, 110.0),
            ("B", 0, 5.0),
        ]
        assert [o.phase_id for o in builder.eligible_phases()] == ["A"]

    @pytest.mark.asyncio
    async def test_picking_the_first_phase_unlocks_the_next(self, builder):
        await pick(builder, "QR-S1", "A", 1)
        builder.begin_scan()
        await builder.scan("QR-S1")

        options = {o.phase_id: o for o in builder.phase_options()}

        assert options["A"].already_picked
        assert not options["A"].eligible
        assert options["B"].remaining == 100
        assert options["B"].eligible

    @pytest.mark.asyncio
    async def test_add_job_autosaves_the_list(self, builder, api):
        await build_two_jobs(builder)

        assert builder.state == "build"
        assert [(i.phase_id, i.position) for i in api.stored] == [("A", 1), ("B", 2)]

    @pytest.mark.asyncio
    async def test_duplicate_pick_is_rejected(self, builder):
        await pick(builder, "QR-S1", "A", 1)
        builder.begin_scan()
        await builder.scan("QR-S1")

        with pytest.raises(DuplicateJobError):
            await builder.add_job("A", 1)
        assert len(builder.jobs) == 1

    @pytest.mark.asyncio
    async def test_phase_with_nothing_remaining_is_rejected(self, builder):
        builder.begin_scan()
        await builder.scan("QR-S1")

        with pytest.raises(NothingRemainingError):
            await builder.add_job("B", 2)
        assert builder.jobs == []

    @pytest.mark.asyncio
    async def test_scan_blocked_by_dead_time_returns_to_rest_state(self, builder, api):
        api.open_dead_time("ana")
        builder.begin_scan()

        with pytest.raises(ExclusivityConflictError):
            await builder.scan("QR-S1")

        assert builder.state == "idle"
        assert builder.blocked.status == "blocked_dead_time"
        assert "get_production_sheet_by_qr" not in api.call_names()

    @pytest.mark.asyncio
    async def test_cancel_scan(self, builder):
        await pick(builder, "QR-S1", "A", 1)
        builder.begin_scan()
        builder.cancel_scan()
        assert builder.state == "build"

    @pytest.mark.asyncio
    async def test_remove_job(self, builder, api):
        first, second = await build_two_jobs(builder)

        assert await builder.remove_job(first.id)
        assert not await builder.remove_job("missing")
        await builder.autosaver.flush()

        assert builder.jobs == [second]
        assert [i.phase_id for i in api.stored] == ["B"]

    @pytest.mark.asyncio
    async def test_abandon_clears_the_stored_list(self, builder, api):
        await build_two_jobs(builder)

        await builder.abandon()

        assert builder.state == "idle"
        assert builder.jobs == []
        assert api.stored == []

    def test_wrong_state_is_rejected(self, builder):
        with pytest.raises(InvalidTransitionError):
            builder.phase_options()


class TestStart:
    """Tests for MultiJobBuilder.start."""

    @pytest.mark.asyncio
    async def test_fewer_than_two_jobs_issues_no_calls(self, builder, api):
        await pick(builder, "QR-S1", "A", 1)
        calls_before = len(api.calls)

        with pytest.raises(InsufficientJobsError):
            await builder.start()

        assert len(api.calls) == calls_before
        assert builder.state == "build"

    @pytest.mark.asyncio
    async def test_start_opens_a_multi_live_session(self, builder, api):
        await build_two_jobs(builder)

        await builder.start()

        live = api.calls_to("start_live_phase")[0]
        assert live["status"] == "multi"
        assert live["phase_id"] == "A"
        assert live["planned_time"] == 165
        assert [i.phase_id for i in api.calls_to("save_multi_session")[-1]["items"]] == ["A", "B"]
        assert builder.state == "running"
        assert builder.clock.start == SERVER_START

    @pytest.mark.asyncio
    async def test_start_rechecks_exclusivity(self, builder, api):
        await build_two_jobs(builder)
        api.open_dead_time("ana")
        calls_before = len(api.calls)

        with pytest.raises(ExclusivityConflictError):
            await builder.start()

        names = api.call_names()[calls_before:]
        assert names == ["get_live_status"]
        for mutation in ("start_phase", "finish_phase", "start_live_phase", "stop_live_phase"):
            assert mutation not in api.call_names()
        assert builder.state == "build"
        assert builder.blocked.blocker == "dead_time"

    @pytest.mark.asyncio
    async def test_start_rechecks_remaining(self, builder, api, sheet):
        await build_two_jobs(builder)
        sheet.logs.append(make_log("A", 1, 100))

        with pytest.raises(NothingRemainingError):
            await builder.start()

        assert "start_live_phase" not in api.call_names()

    @pytest.mark.asyncio
    async def test_failed_list_save_rolls_back_the_live_session(self, builder, api):
        await build_two_jobs(builder)
        saved = len(api.calls_to("save_multi_session"))
        api.fail_on(
            "save_multi_session",
            TransientNetworkError("save_multi_session", httpx.ConnectError("down")),
            after=saved,
        )

        with pytest.raises(TransientNetworkError):
            await builder.start()

        assert api.call_names()[-1] == "stop_live_phase"
        assert "ana" not in api.active
        assert builder.state == "build"


class TestStop:
    """Tests for MultiJobBuilder.stop."""

    @pytest.mark.asyncio
    async def test_stop_splits_time_and_emits_logs(self, builder, api):
        first, second = await build_two_jobs(builder)
        await builder.start()
        api.advance(90)

        report = await builder.stop(PresetPrompt({first.id: 100, second.id: "40"}))

        starts = api.calls_to("start_phase")
        finishes = api.calls_to("finish_phase")
        assert [s["phase_id"] for s in starts] == ["A", "B"]
        assert [s["total_quantity"] for s in starts] == [100, 40]
        assert starts[0]["start_time"] == SERVER_START
        assert starts[1]["start_time"] == SERVER_START + timedelta(seconds=60)
        assert [f["duration_seconds"] for f in finishes] == [60, 30]
        assert finishes[-1]["end_time"] == SERVER_START + timedelta(seconds=90)

        assert report.total_seconds == 90
        assert report.allocated_seconds == 90
        assert [j.log_id for j in report.jobs] == ["log-1", "log-2"]
        assert builder.state == "idle"
        assert builder.jobs == []
        assert builder.last_report is report
        assert "ana" not in api.active
        assert api.stored == []

    @pytest.mark.asyncio
    async def test_all_quantities_are_asked_before_any_write(self, builder, api):
        first, second = await build_two_jobs(builder)
        await builder.start()
        prompt = PresetPrompt({first.id: 100})

        with pytest.raises(CancelledByUserError):
            await builder.stop(prompt)

        assert [r.job_id for r in prompt.asked] == [first.id, second.id]
        assert "start_phase" not in api.call_names()
        assert builder.state == "running"
        assert "ana" in api.active
        await builder.autosaver.flush()

    @pytest.mark.asyncio
    async def test_invalid_quantity_is_asked_again_then_returns_to_running(self, builder, api):
        first, second = await build_two_jobs(builder)
        await builder.start()
        prompt = PresetPrompt({first.id: 500, second.id: 1})

        with pytest.raises(InvalidQuantityError):
            await builder.stop(prompt)

        assert [r.attempt for r in prompt.asked] == [1, 2, 3]
        assert "between 0 and 100" in prompt.asked[-1].error
        assert builder.state == "running"
        assert "finish_phase" not in api.call_names()
        await builder.autosaver.flush()

    @pytest.mark.asyncio
    async def test_emission_failure_returns_to_build_without_logged_jobs(self, builder, api):
        first, second = await build_two_jobs(builder)
        await builder.start()
        api.advance(90)
        api.fail_on("finish_phase", BackendError("finish_phase", 500, "boom"), after=1)

        with pytest.raises(BackendError) as exc_info:
            await builder.stop(PresetPrompt({first.id: 100, second.id: 40}))

        assert exc_info.value.details["logged_jobs"] == [first.id]
        assert builder.state == "build"
        assert builder.jobs == [second]
        assert "ana" not in api.active
        assert not builder.clock.is_anchored
        await builder.autosaver.flush()
        assert [i.phase_id for i in api.stored] == ["B"]

    @pytest.mark.asyncio
    async def test_log_left_open_by_a_failed_finish_is_finished_next_time(self, builder, api):
        api.report_open_logs = True
        first, second = await build_two_jobs(builder)
        await builder.start()
        api.advance(90)
        api.fail_on("finish_phase", BackendError("finish_phase", 500, "boom"), after=1)

        with pytest.raises(BackendError) as exc_info:
            await builder.stop(PresetPrompt({first.id: 100, second.id: 40}))

        assert exc_info.value.details["open_log_id"] == "log-2"
        assert second.open_log_id == "log-2"
        assert list(api.open_logs) == ["log-2"]

        # The open log belongs to this builder, so it does not block the next batch
        api.clear_failure("finish_phase")
        third = await pick(builder, "QR-S1", "A", 1)
        await builder.start()
        api.advance(30)
        report = await builder.stop(PresetPrompt({second.id: 40, third.id: 10}))

        assert [s["phase_id"] for s in api.calls_to("start_phase")] == ["A", "B", "A"]
        assert [f["log_id"] for f in api.calls_to("finish_phase")][-2:] == ["log-2", "log-3"]
        assert [j.log_id for j in report.jobs] == ["log-2", "log-3"]
        assert api.open_logs == {}
        assert second.open_log_id is None
        assert builder.state == "idle"

    @pytest.mark.asyncio
    async def test_stop_without_prompt_is_cancelled(self, builder):
        await build_two_jobs(builder)
        await builder.start()

        with pytest.raises(CancelledByUserError):
            await builder.stop()
        assert builder.state == "running"

    @pytest.mark.asyncio
    async def test_tick_only_counts_while_running(self, builder, api, fake_now):
        await build_two_jobs(builder)
        assert builder.tick() == 0

        await builder.start()
        fake_now.advance(42)

        assert builder.tick() == 42


class TestRefresh:
    """Tests for resuming through MultiJobBuilder.refresh."""

    @pytest.mark.asyncio
    async def test_refresh_resumes_a_running_session(self, builder, api, sheet):
        api.open_multi("ana", start_time=SERVER_START)
        api.stored = [
            stored_item(sheet, "A", 1),
            stored_item(sheet, "B", 2),
        ]

        outcome = await builder.refresh()

        assert outcome.state.value == "resumed"
        assert builder.state == "running"
        assert [j.phase_id for j in builder.jobs] == ["A", "B"]
        assert builder.clock.start == SERVER_START

    @pytest.mark.asyncio
    async def test_refresh_does_nothing_while_building(self, builder, api):
        await pick(builder, "QR-S1", "A", 1)
        calls_before = len(api.calls)

        assert await builder.refresh() is None
        assert len(api.calls) == calls_before

    @pytest.mark.asyncio
    async def test_orphaned_session_needs_an_explicit_choice(self, builder, api, sheet):
        api.open_multi("ana", start_time=SERVER_START)
        api.stored = [stored_item(sheet, "A", 1)]

        outcome = await builder.refresh()

        assert outcome.state.value == "needs_choice"
        assert builder.orphan_stored_count == 1
        assert builder.state == "idle"
        with pytest.raises(SessionUnrecoverableError):
            builder.begin_scan()

        await builder.resolve_orphan(OrphanAction.STOP_SESSION)

        assert builder.orphan_stored_count is None
        assert "ana" not in api.active
        assert api.stored == []

    @pytest.mark.asyncio
    async def test_prompt_choice_resolves_the_orphan(self, api, settings, sheet):
        api.open_multi("ana", start_time=SERVER_START)
        builder = MultiJobBuilder(
            api, "ana", settings=settings,
            prompt=PresetPrompt(orphan_action=OrphanAction.KEEP_RUNNING),
        )

        await builder.refresh()

        assert builder.orphan_stored_count == 0
        assert "ana" in api.active
        assert "stop_live_phase" not in api.call_names()

    @pytest.mark.asyncio
    async def test_resolve_without_pending_choice(self, builder):
        with pytest.raises(InvalidTransitionError):
            await builder.resolve_orphan(OrphanAction.STOP_SESSION)

    @pytest.mark.asyncio
    async def test_watch_resumes_on_the_idle_poll_until_stopped(self, api, settings, sheet):
        builder = MultiJobBuilder(
            api, "ana", settings=replace(settings, poll_interval_seconds=0.01)
        )
        stop = asyncio.Event()
        task = asyncio.create_task(builder.watch(stop))

        await asyncio.sleep(0.03)
        assert builder.state == "idle"

        api.open_multi("ana", start_time=SERVER_START)
        api.stored = [stored_item(sheet, "A", 1), stored_item(sheet, "B", 2)]
        for _ in range(100):
            if builder.state == "running":
                break
            await asyncio.sleep(0.01)

        stop.set()
        await asyncio.wait_for(task, timeout=5)

        assert builder.state == "running"
        assert len(builder.jobs) == 2
