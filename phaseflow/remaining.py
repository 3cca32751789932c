# Remaining-quantity calculation for phases of a production sheet.
# Version: 1.0.0
# Derives the startable quantity at a phase from upstream completion and
# log history, and the planned-time estimates built on top of it.

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable

from .models import JobItem, PhaseDefinition, ProductionSheet
from .positions import execution_phases


@dataclass
class UnlockInfo:
    """Batch context of one sheet while a job list is being built.

    Attributes:
        flow: Active phases of the sheet in execution order.
        selected_keys: (phase_id, position) pairs already picked on the sheet.
        next_position: First execution position after the highest picked
            one, or None when nothing is picked on the sheet.
    """
    flow: list[PhaseDefinition] = field(default_factory=list)
    selected_keys: set[tuple[str, int]] = field(default_factory=set)
    next_position: int | None = None

    def is_unlocked(self, phase_id: str, position: int) -> bool:
        """Check if a phase may start ahead of upstream logs."""
        if (str(phase_id), position) in self.selected_keys:
            return True
        return self.next_position is not None and position == self.next_position


def unlock_info(sheet: ProductionSheet, pending_picks: Iterable[JobItem] = ()) -> UnlockInfo:
    """Compute which phases of a sheet are unlocked by pending picks.

    Args:
        sheet: Sheet snapshot.
        pending_picks: Job items picked so far (any sheet).

    Returns:
        UnlockInfo for the sheet.
    """
    flow = execution_phases(sheet.phases)
    info = UnlockInfo(flow=flow)

    highest = None
    for pick in pending_picks:
        if pick.sheet_id != sheet.id:
            continue
        info.selected_keys.add((str(pick.phase_id), pick.position))
        if highest is None or pick.position > highest:
            highest = pick.position

    if highest is not None:
        for phase in flow:
            if phase.production_position > highest:
                info.next_position = phase.production_position
                break

    return info


def done_by_phase(sheet: ProductionSheet) -> dict[tuple[str, int], int]:
    """Sum completed quantity per (phase_id, execution position).

    Deletion-marker logs and logs without a position are ignored.

    Args:
        sheet: Sheet snapshot with logs.

    Returns:
        Dict mapping (phase_id, position) to total quantity done.
    """
    totals = defaultdict(int)
    for log in sheet.logs:
        if log.is_deletion_marker:
            continue
        position = log.execution_position
        if position is None:
            continue
        totals[(log.phase_id, position)] += log.quantity_done
    return totals


def remaining_quantity(
    sheet: ProductionSheet,
    phase_id: str,
    position: int,
    pending_picks: Iterable[JobItem] = (),
) -> int:
    """Calculate the quantity still startable at a phase.

    The first phase may start the whole sheet quantity; every later phase
    only what its predecessor completed, minus its own completion. While a
    batch is being built several phases are committed before any upstream
    log exists, so a phase that is already picked, or that is the next one
    after the highest pick on the sheet, is measured against the sheet
    quantity instead.

    Args:
        sheet: Fresh sheet snapshot (phases and logs).
        phase_id: Target phase identifier.
        position: Target execution position.
        pending_picks: Job items picked so far.

    Returns:
        Remaining quantity (never negative). 0 if the phase is not found.
    """
    info = unlock_info(sheet, pending_picks)
    phase_id = str(phase_id)

    index = None
    for i, phase in enumerate(info.flow):
        if phase.phase_id == phase_id and phase.production_position == position:
            index = i
            break
    if index is None:
        return 0

    done = done_by_phase(sheet)
    done_here = done.get(info.flow[index].execution_key, 0)

    if index == 0:
        upstream_done = sheet.quantity
    else:
        upstream_done = done.get(info.flow[index - 1].execution_key, 0)

    strict = max(0, upstream_done - done_here)
    if strict > 0:
        return strict

    if info.is_unlocked(phase_id, position):
        return max(0, sheet.quantity - done_here)

    return 0


def planned_minutes(
    sheet: ProductionSheet,
    phase_id: str,
    position: int,
    pending_picks: Iterable[JobItem] = (),
) -> float:
    """Estimate the minutes a phase needs for its remaining quantity.

    Args:
        sheet: Sheet snapshot.
        phase_id: Phase identifier.
        position: Execution position.
        pending_picks: Job items picked so far.

    Returns:
        setup + per-piece x remaining, or 0.0 when not positive.
    """
    phase = sheet.find_phase(phase_id, position)
    if phase is None:
        return 0.0

    pending_picks = list(pending_picks)
    remaining = remaining_quantity(sheet, phase_id, position, pending_picks)
    minutes = phase.setup_time + phase.production_time_per_piece * remaining
    return minutes if minutes > 0 else 0.0


def job_weights(jobs: list[JobItem]) -> list[float]:
    """Allocation weight per job: its planned minutes, or 1 when not positive.

    Args:
        jobs: Job items of the session (with refreshed sheets).

    Returns:
        List of weights aligned with ``jobs``.
    """
    weights = []
    for job in jobs:
        minutes = planned_minutes(job.sheet, job.phase_id, job.position, jobs)
        weights.append(minutes if minutes > 0 else 1.0)
    return weights
