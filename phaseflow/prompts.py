# Human prompts used while stopping or recovering a session.
# Version: 1.0.0
# Station front ends implement OperatorPrompt; PresetPrompt replays answers
# collected up front (web requests, scripted runs).

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import InvalidQuantityError


class OrphanAction(Enum):
    """Choice offered when a multi-job session cannot be resumed."""
    STOP_SESSION = "stop"
    KEEP_RUNNING = "keep"


@dataclass(frozen=True)
class QuantityRequest:
    """Context shown to the operator when asking for a finish quantity.

    Attributes:
        job_id: Local job identifier.
        sheet_number: Production sheet number.
        phase_id: Phase identifier.
        position: Execution position.
        remaining: Highest accepted quantity.
        attempt: 1-based attempt number.
        error: Message of the previous invalid answer, if any.
    """
    job_id: str
    sheet_number: str
    phase_id: str
    position: int
    remaining: int
    attempt: int = 1
    error: str = ""

    @property
    def label(self) -> str:
        return f"phase {self.phase_id} (sheet {self.sheet_number}, position {self.position})"


class OperatorPrompt(Protocol):
    """Questions the core may ask the operator."""

    async def ask_quantity(self, request: QuantityRequest) -> str | None:
        """Return the raw answer, or None when the operator declines."""
        ...

    async def choose_orphan_action(self, username: str, stored_count: int) -> OrphanAction | None:
        """Return the explicit choice, or None to decide later."""
        ...


def parse_quantity_input(text: str | int | None, minimum: int, maximum: int, label: str = "") -> int:
    """Parse a quantity typed by the operator.

    Args:
        text: Raw answer.
        minimum: Lowest accepted value.
        maximum: Highest accepted value.
        label: What the quantity is for (error messages).

    Returns:
        The quantity as int.

    Raises:
        InvalidQuantityError: If the answer is not a whole number in range.
    """
    if isinstance(text, bool):
        raise InvalidQuantityError(text, minimum, maximum, label)
    if isinstance(text, int):
        value = text
    else:
        raw = (text or "").strip()
        try:
            value = int(raw)
        except ValueError:
            raise InvalidQuantityError(text, minimum, maximum, label)

    if value < minimum or value > maximum:
        raise InvalidQuantityError(text, minimum, maximum, label)
    return value


@dataclass
class PresetPrompt:
    """OperatorPrompt answering from values supplied in advance.

    Attributes:
        quantities: Answers keyed by job id.
        orphan_action: Answer to the orphan choice (None defers it).
        asked: Quantity requests seen, in order.
    """
    quantities: dict[str, str | int] = field(default_factory=dict)
    orphan_action: OrphanAction | None = None
    asked: list[QuantityRequest] = field(default_factory=list)

    async def ask_quantity(self, request: QuantityRequest) -> str | None:
        self.asked.append(request)
        value = self.quantities.get(request.job_id)
        if value is None:
            return None
        return str(value)

    async def choose_orphan_action(self, username: str, stored_count: int) -> OrphanAction | None:
        return self.orphan_action
