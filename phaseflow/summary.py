# Reports for completed multi-job sessions.
# Version: 1.0.0
# Text summary of how one session duration was split across its jobs.

from dataclasses import dataclass, field
from datetime import datetime


@dataclass(frozen=True)
class CompletedJob:
    """One job whose log pair was emitted at stop.

    Attributes:
        job_id: Local job identifier.
        sheet_id: Sheet identifier.
        sheet_number: Production sheet number.
        phase_id: Phase identifier.
        position: Execution position.
        log_id: Identifier of the emitted phase log.
        quantity: Quantity confirmed by the operator.
        seconds: Allocated duration.
        start: Start of the job's sub-interval.
        end: End of the job's sub-interval.
    """
    job_id: str
    sheet_id: str
    sheet_number: str
    phase_id: str
    position: int
    log_id: str
    quantity: int
    seconds: int
    start: datetime
    end: datetime


@dataclass
class SessionReport:
    """Outcome of a stopped multi-job session.

    Attributes:
        username: Operator who ran the session.
        start: Server-side session start.
        total_seconds: Billed duration.
        jobs: Completed jobs in emission order.
    """
    username: str
    start: datetime
    total_seconds: int
    jobs: list[CompletedJob] = field(default_factory=list)

    @property
    def allocated_seconds(self) -> int:
        return sum(j.seconds for j in self.jobs)

    @property
    def total_quantity(self) -> int:
        return sum(j.quantity for j in self.jobs)


def format_duration(seconds: int) -> str:
    """Format seconds as mm:ss (minutes may exceed 59)."""
    seconds = max(0, int(seconds))
    return f"{seconds // 60:02d}:{seconds % 60:02d}"


def generate_session_summary(report: SessionReport) -> str:
    """Generate a text summary of a stopped multi-job session.

    Args:
        report: SessionReport to describe.

    Returns:
        Multi-line summary string.
    """
    lines = []

    lines.append("=" * 60)
    lines.append("MULTI-JOB SESSION SUMMARY")
    lines.append("=" * 60)
    lines.append(f"Operator: {report.username}")
    lines.append(f"Started: {report.start.isoformat(timespec='seconds')}")
    lines.append(f"Duration: {format_duration(report.total_seconds)} ({report.total_seconds}s)")
    lines.append(f"Jobs: {len(report.jobs)}")
    lines.append(f"Total Quantity: {report.total_quantity}")
    lines.append("")

    lines.append("-" * 60)
    lines.append("JOBS")
    lines.append("-" * 60)

    for index, job in enumerate(report.jobs, start=1):
        lines.append(
            f"{index}. Sheet {job.sheet_number or job.sheet_id} | "
            f"Phase {job.phase_id} @ {job.position} | "
            f"Qty {job.quantity} | {format_duration(job.seconds)}"
        )
        lines.append(
            f"   {job.start.strftime('%H:%M:%S')} - {job.end.strftime('%H:%M:%S')}"
            f" (log {job.log_id})"
        )

    lines.append("")
    return "\n".join(lines)
