# Phase Progression & Exclusive Session Scheduler - Core Package
# Version: 1.0.0

"""
Production phase progression and exclusive operator sessions.

Orders the phases of production sheets, derives the quantity still
startable at each phase, keeps every operator in exactly one session
(dead time, single phase or multi-job) and splits a multi-job session's
elapsed time back into one phase log per job.
"""

__version__ = "1.0.0"

from .errors import (
    SessionError,
    ExclusivityConflictError,
    NothingRemainingError,
    DuplicateJobError,
    InsufficientJobsError,
    InvalidQuantityError,
    SessionUnrecoverableError,
    TransientNetworkError,
    BackendError,
    CancelledByUserError,
    InvalidTransitionError,
    PayloadError,
    ConfigurationError,
    FileLoadError,
    MissingLinkageError,
)

from .constants import (
    StationSettings,
    DeadTimeCode,
    load_settings_from_yaml,
    save_settings_to_yaml,
    load_station_settings,
    MIN_MULTI_JOBS,
)

from .models import (
    PhaseDefinition,
    DeletedPhase,
    ProductionSheet,
    PhaseLog,
    JobItem,
    StoredJobItem,
    DeadTimeSession,
    SinglePhaseSession,
    MultiJobSession,
    LiveStatus,
)

from .payloads import (
    normalize_sheet,
    normalize_phase_log,
    normalize_live_status,
    normalize_stored_items,
    normalize_active_phase,
    parse_timestamp,
)

from .positions import (
    parse_position,
    sort_phases,
    execution_phases,
    validate_phase_positions,
)

from .remaining import (
    remaining_quantity,
    planned_minutes,
    unlock_info,
    job_weights,
)

from .allocation import (
    allocate,
    split_intervals,
)

from .clock import SessionClock

from .client import (
    ProductionApi,
    HttpProductionApi,
)

from .guard import (
    SessionGuard,
    GuardPurpose,
    ExclusivityResult,
)

from .prompts import (
    OperatorPrompt,
    OrphanAction,
    PresetPrompt,
    QuantityRequest,
    parse_quantity_input,
)

from .persistence import (
    ResumeOutcome,
    ResumeState,
    JobListAutosaver,
    resume_session,
    resolve_orphan,
    run_idle_poll,
)

from .builder import (
    MultiJobBuilder,
    PhaseOption,
)

from .single_phase import SinglePhaseRunner

from .dead_time import DeadTimeRunner

from .summary import (
    SessionReport,
    CompletedJob,
    format_duration,
    generate_session_summary,
)
