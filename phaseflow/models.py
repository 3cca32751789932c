# Domain records for production sheets, phase logs and live sessions.
# Version: 1.0.0
# Canonical shapes produced by payload normalization and consumed by the core.

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from .constants import MULTI_STATUS, StageType


@dataclass(frozen=True)
class PhaseDefinition:
    """An active manufacturing phase of a product.

    Attributes:
        phase_id: Phase catalogue identifier.
        position: Stable authoring position (None if not numeric).
        production_position: Execution order position (None if not numeric).
        setup_time: Setup duration in minutes.
        production_time_per_piece: Production minutes per piece.
    """
    phase_id: str
    position: int | None
    production_position: int | None
    setup_time: float = 0.0
    production_time_per_piece: float = 0.0

    deleted = False

    @property
    def identity(self) -> tuple[str, int | None]:
        """Authoring identity (phase_id, position)."""
        return (self.phase_id, self.position)

    @property
    def execution_key(self) -> tuple[str, int | None]:
        """Key used to match logs and picks (phase_id, production_position)."""
        return (self.phase_id, self.production_position)


@dataclass(frozen=True)
class DeletedPhase:
    """Tombstone left where a phase was removed from a product.

    Kept for audit only; never part of the execution flow.

    Attributes:
        original_position: Authoring position the phase used to hold.
    """
    original_position: int | None

    deleted = True
    phase_id = ""
    production_position = None

    @property
    def position(self) -> int | None:
        return self.original_position


PhaseEntry = Union[PhaseDefinition, DeletedPhase]


def new_job_id() -> str:
    """Generate a local identifier for a job pick."""
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class PhaseLog:
    """Auditable record of one operator performing one phase of one sheet.

    Attributes:
        id: Log identifier.
        phase_id: Phase catalogue identifier.
        position: Authoring position of the phase.
        production_position: Execution position of the phase.
        operator: Operator username.
        start_time: When the log was opened.
        end_time: When the log was closed (None while open).
        quantity_done: Pieces completed.
        total_quantity: Pieces planned when the log was opened.
        stage: find, setup, production (or delete for markers).
        is_deletion_marker: Log records a phase deletion, not work.
    """
    id: str
    phase_id: str
    position: int | None
    production_position: int | None
    operator: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    quantity_done: int = 0
    total_quantity: int = 0
    stage: str = "production"
    is_deletion_marker: bool = False
    order_number: str = ""
    sheet_number: str = ""
    product_id: str = ""
    find_material_time: int = 0
    setup_time: int = 0
    production_time: int = 0

    @property
    def is_open(self) -> bool:
        """Check if the log is still running."""
        return self.end_time is None

    @property
    def execution_position(self) -> int | None:
        """Execution position, falling back to the authoring position."""
        if self.production_position is not None:
            return self.production_position
        return self.position


@dataclass
class ProductionSheet:
    """One production sheet of an order, with phases and log history.

    Attributes:
        id: Sheet identifier.
        order_number: Order the sheet belongs to.
        sheet_number: Production sheet number.
        product_id: Product being made.
        quantity: Pieces ordered on this sheet.
        qr_value: Code printed on the sheet.
        phases: Phase definitions and tombstones, in payload order.
        logs: Phase logs recorded against the sheet.
    """
    id: str
    order_number: str
    sheet_number: str
    product_id: str
    quantity: int
    qr_value: str = ""
    phases: list[PhaseEntry] = field(default_factory=list)
    logs: list[PhaseLog] = field(default_factory=list)

    def __hash__(self) -> int:
        return hash(self.id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProductionSheet):
            return NotImplemented
        return self.id == other.id

    def find_phase(self, phase_id: str, position: int) -> PhaseDefinition | None:
        """Find an active phase by id and execution position.

        Args:
            phase_id: Phase identifier.
            position: Execution position.

        Returns:
            PhaseDefinition if found, None otherwise.
        """
        for phase in self.phases:
            if phase.deleted:
                continue
            if phase.phase_id == str(phase_id) and phase.production_position == position:
                return phase
        return None


@dataclass(frozen=True)
class StoredJobItem:
    """Server-persisted entry of the pending job list.

    Attributes:
        qr_value: Sheet code used to re-resolve the sheet.
        phase_id: Phase identifier.
        position: Execution position.
        stage: Stage tracked for the job.
    """
    qr_value: str
    phase_id: str
    position: int
    stage: StageType = "production"

    def to_payload(self) -> dict:
        return {
            "qrValue": self.qr_value,
            "phaseId": self.phase_id,
            "position": str(self.position),
            "stage": self.stage,
        }


@dataclass
class JobItem:
    """One (sheet, phase) pick of a multi-job session.

    Attributes:
        id: Local identifier of the pick.
        qr_value: Sheet code the pick was resolved from.
        sheet: Sheet snapshot (refreshed before every commit).
        phase_id: Phase identifier.
        position: Execution position.
        stage: Stage tracked for the job.
        open_log_id: Phase log started for the job whose finish has not
            been confirmed yet.
    """
    id: str
    qr_value: str
    sheet: ProductionSheet
    phase_id: str
    position: int
    stage: StageType = "production"
    open_log_id: str | None = None

    @property
    def sheet_id(self) -> str:
        return self.sheet.id

    @property
    def key(self) -> tuple[str, str, int]:
        """Identity of the pick: (sheet_id, phase_id, position)."""
        return (self.sheet.id, self.phase_id, self.position)

    def to_stored(self) -> StoredJobItem:
        """Convert to the persisted job-list shape."""
        return StoredJobItem(
            qr_value=self.qr_value,
            phase_id=self.phase_id,
            position=self.position,
            stage=self.stage,
        )


@dataclass(frozen=True)
class SheetLinkage:
    """Optional product/sheet a dead time is linked to."""
    product_id: str | None = None
    sheet_id: str | None = None
    order_number: str | None = None
    sheet_number: str | None = None

    @property
    def is_empty(self) -> bool:
        return not (self.product_id or self.sheet_id)


@dataclass(frozen=True)
class DeadTimeSession:
    """Open categorized downtime record.

    Attributes:
        id: Dead-time record identifier.
        username: Operator the record belongs to.
        code: Dead-time code.
        description: Operator-facing description.
        linkage: Product/sheet the downtime is linked to.
        running_seconds: Seconds elapsed as reported by the server.
    """
    id: str
    username: str
    code: int
    description: str = ""
    linkage: SheetLinkage = field(default_factory=SheetLinkage)
    running_seconds: int = 0

    kind = "dead_time"


@dataclass(frozen=True)
class SinglePhaseSession:
    """Live session tracking one stage of one phase.

    Attributes:
        username: Operator the session belongs to.
        sheet_id: Sheet being worked on.
        phase_id: Phase being worked on.
        position: Execution position of the phase.
        stage: Stage running (find, setup, production).
        running_seconds: Seconds elapsed as reported by the server.
    """
    username: str
    sheet_id: str
    phase_id: str
    position: int | None
    stage: StageType = "production"
    running_seconds: int = 0
    sheet_number: str = ""
    product_id: str = ""
    start_time: datetime | None = None
    log_id: str | None = None
    qr_value: str = ""

    kind = "single_phase"


@dataclass(frozen=True)
class MultiJobSession:
    """Live session timing several jobs together.

    Attributes:
        username: Operator the session belongs to.
        jobs: Job items reported with the live entry (may be empty).
        running_seconds: Seconds elapsed as reported by the server.
        start_time: Server-side session start.
        server_now: Server clock at the time of the read.
    """
    username: str
    jobs: tuple[StoredJobItem, ...] = ()
    running_seconds: int = 0
    start_time: datetime | None = None
    server_now: datetime | None = None

    kind = "multi_job"


LiveSession = Union[DeadTimeSession, SinglePhaseSession, MultiJobSession]


@dataclass(frozen=True)
class ActiveEntry:
    """One row of the `active` list of the live status."""
    username: str
    status: str = ""
    sheet_id: str = ""
    sheet_number: str = ""
    product_id: str = ""
    phase_id: str = ""
    position: int | None = None
    planned_time: float = 0.0
    running_seconds: int = 0
    start_time: datetime | None = None
    server_now: datetime | None = None
    is_overrun: bool = False
    multi_items: tuple[StoredJobItem, ...] = ()

    @property
    def is_multi(self) -> bool:
        return self.status == MULTI_STATUS


@dataclass(frozen=True)
class IdleEntry:
    """One row of the `idle` list of the live status."""
    username: str
    kind: str = ""
    finished_at: datetime | None = None
    idle_seconds: int = 0


@dataclass(frozen=True)
class LiveStatus:
    """Authoritative snapshot of every operator's live state.

    Attributes:
        active: Operators with an open live session.
        dead: Operators with an open dead time.
        idle: Operators with nothing open.
        server_now: Server clock at the time of the read.
    """
    active: tuple[ActiveEntry, ...] = ()
    dead: tuple[DeadTimeSession, ...] = ()
    idle: tuple[IdleEntry, ...] = ()
    server_now: datetime | None = None

    def dead_for(self, username: str) -> DeadTimeSession | None:
        for entry in self.dead:
            if entry.username == username:
                return entry
        return None

    def active_for(self, username: str) -> ActiveEntry | None:
        for entry in self.active:
            if entry.username == username:
                return entry
        return None

    def session_for(self, username: str) -> LiveSession | None:
        """Get the single live session of an operator.

        An open dead time takes precedence over any active entry.

        Args:
            username: Operator to look up.

        Returns:
            The operator's LiveSession variant, or None if idle.
        """
        dead = self.dead_for(username)
        if dead is not None:
            return dead

        entry = self.active_for(username)
        if entry is None:
            return None

        if entry.is_multi:
            return MultiJobSession(
                username=username,
                jobs=entry.multi_items,
                running_seconds=entry.running_seconds,
                start_time=entry.start_time,
                server_now=entry.server_now or self.server_now,
            )

        return SinglePhaseSession(
            username=username,
            sheet_id=entry.sheet_id,
            phase_id=entry.phase_id,
            position=entry.position,
            stage=stage_from_status(entry.status),
            running_seconds=entry.running_seconds,
            sheet_number=entry.sheet_number,
            product_id=entry.product_id,
            start_time=entry.start_time,
        )


def stage_from_status(status: str) -> StageType:
    """Map a live dashboard status back to a stage name."""
    if status == "search":
        return "find"
    if status == "setup":
        return "setup"
    return "production"
