# Phase ordering by authoring position and execution position.
# Version: 1.0.0
# Reads and sorts positions only; renumbering is an authoring concern.

import math
from collections import Counter
from typing import Any, Iterable


def parse_position(value: Any) -> int | None:
    """Parse a position value as an integer.

    Args:
        value: Raw position (int, integral float, or numeric string).

    Returns:
        Integer position, or None if the value is not a whole number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                return None
            if math.isfinite(number) and number.is_integer():
                return int(number)
    return None


def _sort_value(phase, use_execution_order: bool) -> int | None:
    if phase.deleted and use_execution_order:
        return None
    if use_execution_order:
        return phase.production_position
    return phase.position


def sort_phases(phases: Iterable, use_execution_order: bool) -> list:
    """Stable ascending sort of phases by the chosen position field.

    Every entry is kept. Entries without a numeric position (and tombstones
    when sorting by execution order) go last, in their original order.

    Args:
        phases: PhaseDefinition and DeletedPhase entries.
        use_execution_order: Sort by production position instead of position.

    Returns:
        New sorted list.
    """
    indexed = list(enumerate(phases))

    def key(item):
        index, phase = item
        value = _sort_value(phase, use_execution_order)
        if value is None:
            return (1, 0, index)
        return (0, value, index)

    return [phase for _, phase in sorted(indexed, key=key)]


def execution_phases(phases: Iterable) -> list:
    """Get the execution flow: active phases with a numeric production position.

    Args:
        phases: PhaseDefinition and DeletedPhase entries.

    Returns:
        Active PhaseDefinitions sorted by production position.
    """
    return [
        p for p in sort_phases(phases, use_execution_order=True)
        if not p.deleted and p.production_position is not None
    ]


def validate_phase_positions(phases: Iterable) -> list[str]:
    """Check that positions are unique among non-tombstoned phases.

    Both the authoring position and the production position must be
    unique on their own.

    Args:
        phases: PhaseDefinition and DeletedPhase entries.

    Returns:
        List of issue messages (empty when valid).
    """
    active = [p for p in phases if not p.deleted]
    issues = []

    by_position = Counter(p.position for p in active if p.position is not None)
    for position, count in sorted(by_position.items()):
        if count > 1:
            issues.append(f"Position {position} used by {count} phases")

    by_production = Counter(
        p.production_position for p in active if p.production_position is not None
    )
    for position, count in sorted(by_production.items()):
        if count > 1:
            issues.append(f"Production position {position} used by {count} phases")

    return issues
