# Normalize backend payloads into canonical domain records.
# Version: 1.0.0
# Accepts the alias-laden JSON shapes of the production backend and isolates
# the core from naming variance (sheet_id vs sheetId, epoch vs ISO times, ...).

import logging
import math
from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    ValidationError,
)

from .constants import DELETED_MARKER
from .errors import PayloadError
from .models import (
    ActiveEntry,
    DeadTimeSession,
    DeletedPhase,
    IdleEntry,
    LiveStatus,
    PhaseDefinition,
    PhaseEntry,
    PhaseLog,
    ProductionSheet,
    SheetLinkage,
    SinglePhaseSession,
    StoredJobItem,
)
from .positions import parse_position, validate_phase_positions

logger = logging.getLogger(__name__)

VALID_STAGES = ("find", "setup", "production")

# Numbers below this are epoch seconds, above it epoch milliseconds
EPOCH_MILLIS_THRESHOLD = 1e12


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a backend timestamp into a timezone-aware UTC datetime.

    Args:
        value: ISO-8601 string, epoch seconds, epoch milliseconds or datetime.

    Returns:
        UTC datetime, or None for empty values.

    Raises:
        PayloadError: If the value cannot be interpreted as a time.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool):
        raise PayloadError("timestamp", f"Unexpected boolean {value!r}")

    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            if text.endswith("Z"):
                text = text[:-1] + "+00:00"
            try:
                parsed = datetime.fromisoformat(text)
            except ValueError:
                raise PayloadError("timestamp", f"Cannot parse {value!r}")
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise PayloadError("timestamp", f"Non-finite epoch {value!r}")
        seconds = value / 1000.0 if abs(value) >= EPOCH_MILLIS_THRESHOLD else float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    raise PayloadError("timestamp", f"Unsupported type {type(value).__name__}")


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _to_count(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return 0
        return int(value)
    return int(float(str(value).strip()))


def _to_minutes(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    number = float(value)
    return number if math.isfinite(number) else 0.0


def _to_timestamp(value: Any) -> datetime | None:
    try:
        return parse_timestamp(value)
    except PayloadError as e:
        raise ValueError(e.reason)


def _to_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


Text = Annotated[str, BeforeValidator(_to_text)]
Count = Annotated[int, BeforeValidator(_to_count)]
Minutes = Annotated[float, BeforeValidator(_to_minutes)]
Timestamp = Annotated[datetime | None, BeforeValidator(_to_timestamp)]
Flag = Annotated[bool, BeforeValidator(_to_flag)]


def _aliases(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class RawPhase(_Payload):
    phase_id: Text = Field("", validation_alias=AliasChoices("phaseId", "phase_id"))
    position: Any = None
    production_position: Any = _aliases("productionPosition", "production_position")
    setup_time: Minutes = Field(0.0, validation_alias=AliasChoices("setupTime", "setup_time"))
    production_time_per_piece: Minutes = Field(
        0.0,
        validation_alias=AliasChoices(
            "productionTimePerPiece", "production_time_per_piece", "productionTime"
        ),
    )
    deleted: Flag = Field(False, validation_alias=AliasChoices("deleted", "isDeleted", "is_deleted"))
    deleted_at: Any = _aliases("deletedAt", "deleted_at", "__deleted")


class RawProduct(_Payload):
    id: Text = Field("", validation_alias=AliasChoices("productId", "product_id", "id"))
    phases: list[RawPhase] = Field(default_factory=list)


class RawPhaseLog(_Payload):
    id: Text = Field("", validation_alias=AliasChoices("id", "_id", "log_id", "logId"))
    phase_id: Text = Field("", validation_alias=AliasChoices("phaseId", "phase_id"))
    position: Any = None
    production_position: Any = _aliases("productionPosition", "production_position")
    operator: Text = Field(
        "",
        validation_alias=AliasChoices(
            "operatorUsername", "operator_username", "operator", "username"
        ),
    )
    start_time: Timestamp = _aliases("startTime", "start_time")
    end_time: Timestamp = _aliases("endTime", "end_time")
    quantity_done: Count = Field(0, validation_alias=AliasChoices("quantityDone", "quantity_done"))
    total_quantity: Count = Field(0, validation_alias=AliasChoices("totalQuantity", "total_quantity"))
    stage: Text = "production"
    order_number: Text = Field("", validation_alias=AliasChoices("orderNumber", "order_number"))
    sheet_number: Text = Field(
        "", validation_alias=AliasChoices("productionSheetNumber", "production_sheet_number")
    )
    product_id: Text = Field("", validation_alias=AliasChoices("productId", "product_id"))
    find_material_time: Count = Field(
        0, validation_alias=AliasChoices("findMaterialTime", "find_material_time")
    )
    setup_time: Count = Field(0, validation_alias=AliasChoices("setupTime", "setup_time"))
    production_time: Count = Field(
        0, validation_alias=AliasChoices("productionTime", "production_time")
    )


class RawSheet(_Payload):
    id: Text = Field("", validation_alias=AliasChoices("sheet_id", "sheetId", "id", "_id"))
    order_number: Text = Field("", validation_alias=AliasChoices("orderNumber", "order_number"))
    sheet_number: Text = Field(
        "",
        validation_alias=AliasChoices(
            "productionSheetNumber", "production_sheet_number", "sheetNumber"
        ),
    )
    product_id: Text = Field("", validation_alias=AliasChoices("productId", "product_id"))
    quantity: Count = 0
    qr_value: Text = Field("", validation_alias=AliasChoices("qrValue", "qr_value", "qr"))
    product: RawProduct | None = None
    phases: list[RawPhase] | None = None
    phase_logs: list[RawPhaseLog] = Field(
        default_factory=list, validation_alias=AliasChoices("phaseLogs", "phase_logs", "logs")
    )


class RawStoredItem(_Payload):
    qr_value: Text = Field("", validation_alias=AliasChoices("qrValue", "qr_value"))
    phase_id: Text = Field("", validation_alias=AliasChoices("phaseId", "phase_id"))
    position: Any = None
    stage: Text = "production"


class RawActiveEntry(_Payload):
    username: Text = ""
    status: Text = ""
    sheet_id: Text = Field("", validation_alias=AliasChoices("sheet_id", "sheetId"))
    sheet_number: Text = Field(
        "", validation_alias=AliasChoices("production_sheet_number", "productionSheetNumber")
    )
    product_id: Text = Field("", validation_alias=AliasChoices("product_id", "productId"))
    phase_id: Text = Field("", validation_alias=AliasChoices("phase_id", "phaseId"))
    position: Any = None
    production_position: Any = _aliases("production_position", "productionPosition")
    planned_time: Minutes = Field(0.0, validation_alias=AliasChoices("planned_time", "plannedTime"))
    running_seconds: Count = Field(
        0, validation_alias=AliasChoices("running_seconds", "runningSeconds")
    )
    start_time: Timestamp = _aliases("start_time", "startTime")
    server_now: Timestamp = _aliases("server_now", "serverNow")
    is_overrun: Flag = Field(False, validation_alias=AliasChoices("is_overrun", "isOverrun"))
    multi_items: list[dict[str, Any]] | None = _aliases("multi_items", "multiItems")


class RawDeadEntry(_Payload):
    id: Text = Field("", validation_alias=AliasChoices("id", "_id", "deadtime_id"))
    username: Text = ""
    code: Count = 0
    description: Text = ""
    product_id: Text = Field("", validation_alias=AliasChoices("product_id", "productId"))
    sheet_id: Text = Field("", validation_alias=AliasChoices("sheet_id", "sheetId"))
    order_number: Text = Field("", validation_alias=AliasChoices("order_number", "orderNumber"))
    sheet_number: Text = Field(
        "", validation_alias=AliasChoices("production_sheet_number", "productionSheetNumber")
    )
    running_seconds: Count = Field(
        0, validation_alias=AliasChoices("running_seconds", "runningSeconds")
    )


class RawIdleEntry(_Payload):
    username: Text = ""
    kind: Text = ""
    finished_at: Timestamp = _aliases("finished_at", "finishedAt")
    idle_seconds: Count = Field(0, validation_alias=AliasChoices("idle_seconds", "idleSeconds"))


class RawLiveStatus(_Payload):
    active: list[RawActiveEntry] = Field(default_factory=list)
    dead: list[RawDeadEntry] = Field(default_factory=list)
    idle: list[RawIdleEntry] = Field(default_factory=list)
    server_now: Timestamp = _aliases("server_now", "serverNow")


class RawActivePhase(_Payload):
    log_id: Text = Field("", validation_alias=AliasChoices("log_id", "logId", "id"))
    username: Text = Field("", validation_alias=AliasChoices("username", "operatorUsername"))
    sheet_id: Text = Field("", validation_alias=AliasChoices("sheet_id", "sheetId"))
    sheet_number: Text = Field(
        "", validation_alias=AliasChoices("production_sheet_number", "productionSheetNumber")
    )
    product_id: Text = Field("", validation_alias=AliasChoices("product_id", "productId"))
    qr_value: Text = Field("", validation_alias=AliasChoices("qr_value", "qrValue"))
    phase_id: Text = Field("", validation_alias=AliasChoices("phase_id", "phaseId"))
    position: Any = None
    production_position: Any = _aliases("production_position", "productionPosition")
    stage: Text = "production"
    start_time: Timestamp = _aliases("start_time", "startTime")
    running_seconds: Count = Field(
        0, validation_alias=AliasChoices("running_seconds", "runningSeconds")
    )


# ---------------------------------------------------------------------------
# Conversion to domain records
# ---------------------------------------------------------------------------

def _validate(model: type[_Payload], payload: Any, payload_type: str) -> Any:
    if not isinstance(payload, dict):
        raise PayloadError(payload_type, f"Expected an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise PayloadError(payload_type, str(e))


def _is_deleted_marker(value: Any) -> bool:
    return isinstance(value, str) and value.strip().upper() == DELETED_MARKER


def _execution_position(production_position: Any, position: int | None) -> int | None:
    if production_position is None or production_position == "":
        return position
    return parse_position(production_position)


def _coerce_stage(stage: str) -> str:
    stage = stage.lower()
    return stage if stage in VALID_STAGES else "production"


def _phase_from_raw(raw: RawPhase) -> PhaseEntry:
    position = parse_position(raw.position)
    if (
        raw.deleted
        or raw.deleted_at not in (None, "", False)
        or not raw.phase_id
        or _is_deleted_marker(raw.production_position)
    ):
        return DeletedPhase(original_position=position)

    return PhaseDefinition(
        phase_id=raw.phase_id,
        position=position,
        production_position=_execution_position(raw.production_position, position),
        setup_time=max(0.0, raw.setup_time),
        production_time_per_piece=max(0.0, raw.production_time_per_piece),
    )


def _log_from_raw(raw: RawPhaseLog) -> PhaseLog:
    position = parse_position(raw.position)
    marker = _is_deleted_marker(raw.production_position) or raw.stage.lower() == "delete"
    return PhaseLog(
        id=raw.id,
        phase_id=raw.phase_id,
        position=position,
        production_position=None if marker else _execution_position(raw.production_position, position),
        operator=raw.operator,
        start_time=raw.start_time,
        end_time=raw.end_time,
        quantity_done=max(0, raw.quantity_done),
        total_quantity=max(0, raw.total_quantity),
        stage=raw.stage or "production",
        is_deletion_marker=marker,
        order_number=raw.order_number,
        sheet_number=raw.sheet_number,
        product_id=raw.product_id,
        find_material_time=raw.find_material_time,
        setup_time=raw.setup_time,
        production_time=raw.production_time,
    )


def normalize_phase_log(payload: Any) -> PhaseLog:
    """Normalize one phase-log payload.

    Args:
        payload: Raw JSON object from the backend.

    Returns:
        PhaseLog record.

    Raises:
        PayloadError: If the payload is malformed.
    """
    return _log_from_raw(_validate(RawPhaseLog, payload, "phase_log"))


def normalize_sheet(payload: Any, qr_value: str = "") -> ProductionSheet:
    """Normalize a production sheet snapshot (sheet, phases and logs).

    Phases are read from ``product.phases`` or a top-level ``phases`` list.
    Tombstoned phases become DeletedPhase entries.

    Args:
        payload: Raw JSON object from the backend.
        qr_value: Code the sheet was resolved from, if the payload lacks it.

    Returns:
        ProductionSheet record.

    Raises:
        PayloadError: If the payload is malformed or phase positions collide.
    """
    raw = _validate(RawSheet, payload, "sheet")
    if not raw.id:
        raise PayloadError("sheet", "Missing sheet id")

    raw_phases = raw.phases
    if raw_phases is None:
        raw_phases = raw.product.phases if raw.product is not None else []

    product_id = raw.product_id or (raw.product.id if raw.product is not None else "")

    sheet = ProductionSheet(
        id=raw.id,
        order_number=raw.order_number,
        sheet_number=raw.sheet_number,
        product_id=product_id,
        quantity=max(0, raw.quantity),
        qr_value=raw.qr_value or qr_value,
        phases=[_phase_from_raw(p) for p in raw_phases],
        logs=[_log_from_raw(log) for log in raw.phase_logs],
    )

    issues = validate_phase_positions(sheet.phases)
    if issues:
        raise PayloadError("sheet", "; ".join(issues))
    return sheet


def _stored_item_from_raw(raw: RawStoredItem) -> StoredJobItem | None:
    position = parse_position(raw.position)
    if not raw.qr_value or not raw.phase_id or position is None:
        return None
    return StoredJobItem(
        qr_value=raw.qr_value,
        phase_id=raw.phase_id,
        position=position,
        stage=_coerce_stage(raw.stage),
    )


def normalize_stored_items(payload: Any) -> list[StoredJobItem]:
    """Normalize a stored job list.

    Accepts ``{"items": [...]}``, ``{"session": {"items": [...]}}`` or a
    bare list. Incomplete entries are dropped with a warning.

    Args:
        payload: Raw JSON from the backend (None when nothing is stored).

    Returns:
        List of StoredJobItem in stored order.
    """
    if payload is None:
        return []

    items = payload
    if isinstance(payload, dict):
        session = payload.get("session")
        if isinstance(session, dict):
            items = session.get("items")
        else:
            items = payload.get("items")
    if items is None:
        return []
    if not isinstance(items, list):
        raise PayloadError("stored_job_list", "items must be a list")

    result = []
    for index, entry in enumerate(items):
        try:
            item = _stored_item_from_raw(_validate(RawStoredItem, entry, "stored_job_item"))
        except PayloadError as e:
            logger.warning("Dropping stored job item %d: %s", index, e)
            continue
        if item is None:
            logger.warning("Dropping incomplete stored job item %d: %r", index, entry)
            continue
        result.append(item)
    return result


def _active_from_raw(raw: RawActiveEntry) -> ActiveEntry:
    position = parse_position(raw.position)
    return ActiveEntry(
        username=raw.username,
        status=raw.status.lower(),
        sheet_id=raw.sheet_id,
        sheet_number=raw.sheet_number,
        product_id=raw.product_id,
        phase_id=raw.phase_id,
        position=_execution_position(raw.production_position, position),
        planned_time=raw.planned_time,
        running_seconds=max(0, raw.running_seconds),
        start_time=raw.start_time,
        server_now=raw.server_now,
        is_overrun=raw.is_overrun,
        multi_items=tuple(normalize_stored_items(raw.multi_items or [])),
    )


def _dead_from_raw(raw: RawDeadEntry) -> DeadTimeSession:
    return DeadTimeSession(
        id=raw.id,
        username=raw.username,
        code=raw.code,
        description=raw.description,
        linkage=SheetLinkage(
            product_id=raw.product_id or None,
            sheet_id=raw.sheet_id or None,
            order_number=raw.order_number or None,
            sheet_number=raw.sheet_number or None,
        ),
        running_seconds=max(0, raw.running_seconds),
    )


def normalize_live_status(payload: Any) -> LiveStatus:
    """Normalize the live-status read.

    Args:
        payload: Raw JSON object with ``active``, ``dead`` and ``idle`` lists.

    Returns:
        LiveStatus snapshot.

    Raises:
        PayloadError: If the payload is malformed.
    """
    raw = _validate(RawLiveStatus, payload, "live_status")
    active = tuple(_active_from_raw(a) for a in raw.active)

    server_now = raw.server_now
    if server_now is None:
        for entry in active:
            if entry.server_now is not None:
                server_now = entry.server_now
                break

    return LiveStatus(
        active=active,
        dead=tuple(_dead_from_raw(d) for d in raw.dead),
        idle=tuple(
            IdleEntry(
                username=i.username,
                kind=i.kind,
                finished_at=i.finished_at,
                idle_seconds=max(0, i.idle_seconds),
            )
            for i in raw.idle
        ),
        server_now=server_now,
    )


def normalize_active_phase(payload: Any) -> SinglePhaseSession | None:
    """Normalize the answer of the my-active-phase read.

    Args:
        payload: Raw JSON, usually ``{"active": {...}}`` or ``{"active": null}``.

    Returns:
        SinglePhaseSession for the open log, or None when nothing is open.
    """
    if payload is None:
        return None
    active = payload.get("active") if isinstance(payload, dict) else None
    if not active:
        return None

    raw = _validate(RawActivePhase, active, "active_phase")
    position = parse_position(raw.position)
    return SinglePhaseSession(
        username=raw.username,
        sheet_id=raw.sheet_id,
        phase_id=raw.phase_id,
        position=_execution_position(raw.production_position, position),
        stage=_coerce_stage(raw.stage),
        running_seconds=max(0, raw.running_seconds),
        sheet_number=raw.sheet_number,
        product_id=raw.product_id,
        start_time=raw.start_time,
        log_id=raw.log_id or None,
        qr_value=raw.qr_value,
    )


def extract_id(payload: Any, payload_type: str) -> str:
    """Read the identifier of a freshly created record.

    Args:
        payload: Raw JSON object (``id``, ``_id`` or ``log_id``).
        payload_type: Kind of record for error messages.

    Returns:
        Identifier as string.

    Raises:
        PayloadError: If no identifier is present.
    """
    if isinstance(payload, dict):
        for key in ("id", "_id", "log_id", "logId"):
            value = payload.get(key)
            if value not in (None, ""):
                return _to_text(value)
    raise PayloadError(payload_type, "Missing record id")
