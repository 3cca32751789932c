# Custom exception hierarchy for the phase progression core.
# Version: 1.0.0
# Provides structured error handling with context details and operator-facing messages.

from typing import Any


class SessionError(Exception):
    """Base exception for all phase progression and session errors.

    All custom exceptions inherit from this class so callers can catch
    any session-related failure with a single except clause.

    Attributes:
        message: Human-readable error description.
        details: Additional context for debugging.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize the session error.

        Args:
            message: Human-readable error description.
            details: Optional dictionary of additional context.
        """
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self) -> str:
        """Return formatted error message with details."""
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} [{detail_str}]"
        return self.message


class ExclusivityConflictError(SessionError):
    """Raised when another session kind is already open for the operator.

    Recovered by showing a read-only blocked view, never by overriding
    the other session.

    Attributes:
        username: Operator the check ran for.
        blocker: "dead_time" or "other_session".
        session: The blocking live session, when known.
    """

    def __init__(self, username: str, blocker: str, session: Any = None, reason: str = "") -> None:
        """Initialize the exclusivity conflict.

        Args:
            username: Operator the check ran for.
            blocker: Kind of block ("dead_time" or "other_session").
            session: Blocking session object, if any.
            reason: Optional extra explanation.
        """
        self.username = username
        self.blocker = blocker
        self.session = session

        if blocker == "dead_time":
            message = f"Operator {username} has an open dead time. Finish it first."
        else:
            message = f"Operator {username} already has an active session."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message, {"username": username, "blocker": blocker})


class NothingRemainingError(SessionError):
    """Raised when the computed remaining quantity at a phase is zero.

    Attributes:
        sheet_id: Production sheet identifier.
        phase_id: Phase identifier.
        position: Execution position of the phase.
    """

    def __init__(self, sheet_id: str, phase_id: str, position: int) -> None:
        self.sheet_id = sheet_id
        self.phase_id = phase_id
        self.position = position

        message = f"Nothing remaining to start for phase {phase_id} at position {position}"
        super().__init__(
            message,
            {"sheet_id": sheet_id, "phase_id": phase_id, "position": position}
        )


class DuplicateJobError(SessionError):
    """Raised when the same (sheet, phase, position) is picked twice."""

    def __init__(self, sheet_id: str, phase_id: str, position: int) -> None:
        self.sheet_id = sheet_id
        self.phase_id = phase_id
        self.position = position

        message = f"Phase {phase_id} at position {position} is already in the job list"
        super().__init__(
            message,
            {"sheet_id": sheet_id, "phase_id": phase_id, "position": position}
        )


class InsufficientJobsError(SessionError):
    """Raised when a multi-job session is started with too few jobs.

    Attributes:
        job_count: Number of jobs in the pending list.
        required: Minimum number of jobs for a multi-job session.
    """

    def __init__(self, job_count: int, required: int) -> None:
        self.job_count = job_count
        self.required = required

        message = f"A multi-job session needs at least {required} jobs, got {job_count}"
        super().__init__(message, {"job_count": job_count, "required": required})


class InvalidQuantityError(SessionError):
    """Raised when a finish quantity is non-numeric or out of range.

    Attributes:
        value: Raw value the operator entered.
        minimum: Lowest accepted quantity.
        maximum: Highest accepted quantity.
    """

    def __init__(self, value: Any, minimum: int, maximum: int, label: str = "") -> None:
        self.value = value
        self.minimum = minimum
        self.maximum = maximum

        target = f" for {label}" if label else ""
        message = f"Invalid quantity{target}: enter a whole number between {minimum} and {maximum}"
        super().__init__(
            message,
            {"value": repr(value), "minimum": minimum, "maximum": maximum}
        )


class SessionUnrecoverableError(SessionError):
    """Raised when a multi live session cannot be resumed from stored data.

    Only an explicit human choice (stop or keep running) resolves it.

    Attributes:
        username: Operator whose session is orphaned.
        stored_count: Number of stored job items found.
    """

    def __init__(self, username: str, stored_count: int) -> None:
        self.username = username
        self.stored_count = stored_count

        message = (
            f"Found a running multi-job session for {username} but only "
            f"{stored_count} stored job(s). Choose to stop it or keep it running."
        )
        super().__init__(message, {"username": username, "stored_count": stored_count})


class TransientNetworkError(SessionError):
    """Raised when the backend cannot be reached or times out.

    Attributes:
        operation: Backend operation that failed.
        cause: Underlying transport exception.
    """

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        self.cause = cause

        cause_type = type(cause).__name__
        message = f"Network failure during {operation}: {cause_type} - {cause}"
        super().__init__(message, {"operation": operation, "cause_type": cause_type})


class BackendError(SessionError):
    """Raised when the backend answers with an error status.

    Attributes:
        operation: Backend operation that failed.
        status_code: HTTP status code returned.
        reason: Error text reported by the backend.
    """

    def __init__(self, operation: str, status_code: int, reason: str) -> None:
        self.operation = operation
        self.status_code = status_code
        self.reason = reason

        message = f"Backend rejected {operation}: {reason}"
        super().__init__(message, {"operation": operation, "status": status_code})


class CancelledByUserError(SessionError):
    """Raised when the operator declines a required prompt mid-stop."""

    def __init__(self, step: str) -> None:
        self.step = step
        super().__init__(f"Cancelled by operator during {step}", {"step": step})


class InvalidTransitionError(SessionError):
    """Raised when a builder operation is called in the wrong state.

    Attributes:
        operation: Operation that was attempted.
        state: Current builder state.
    """

    def __init__(self, operation: str, state: str) -> None:
        self.operation = operation
        self.state = state

        message = f"Cannot {operation} while in state '{state}'"
        super().__init__(message, {"operation": operation, "state": state})


class PayloadError(SessionError):
    """Raised when a backend payload cannot be normalized.

    Attributes:
        payload_type: Kind of payload (sheet, phase_log, live_status, ...).
        reason: Explanation of what is wrong.
    """

    def __init__(self, payload_type: str, reason: str) -> None:
        self.payload_type = payload_type
        self.reason = reason

        message = f"Malformed {payload_type} payload: {reason}"
        super().__init__(message, {"payload_type": payload_type})


class ConfigurationError(SessionError):
    """Raised when configuration data is invalid or missing.

    Attributes:
        config_source: Name of the configuration source (file, section, etc.).
        issue: Description of the configuration problem.
    """

    def __init__(self, config_source: str, issue: str) -> None:
        self.config_source = config_source
        self.issue = issue

        message = f"Configuration error in {config_source}: {issue}"
        super().__init__(message, {"source": config_source})


class FileLoadError(SessionError):
    """Raised when a required file cannot be loaded.

    Attributes:
        filepath: Path to the file that failed to load.
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, filepath: str, cause: Exception) -> None:
        self.filepath = filepath
        self.cause = cause

        # Extract just the filename for cleaner messages
        filename = filepath.split("/")[-1].split("\\")[-1]
        cause_type = type(cause).__name__

        message = f"Failed to load {filename}: {cause_type} - {cause}"
        super().__init__(message, {"filepath": filepath, "cause_type": cause_type})


class MissingLinkageError(SessionError):
    """Raised when a dead-time code needs a product or sheet that was not given.

    Attributes:
        code: Dead-time code.
        requirement: "product" or "product_or_sheet".
    """

    def __init__(self, code: int, requirement: str) -> None:
        self.code = code
        self.requirement = requirement

        if requirement == "product":
            message = f"Dead-time code {code} needs a product id"
        else:
            message = f"Dead-time code {code} needs a product id or a scanned sheet"
        super().__init__(message, {"code": code, "requirement": requirement})
