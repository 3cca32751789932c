# Server-anchored session clock with clock-skew correction.
# Version: 1.0.0
# The local tick is a display echo only; billed durations come from server times.

from datetime import datetime, timedelta, timezone
from typing import Callable


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionClock:
    """Timer anchored to a server-side start time.

    Skew is ``server_now - client_now`` sampled at an authoritative read, so
    that client times can be mapped onto the server timeline.

    Attributes:
        start: Server-side session start, once anchored.
        skew: Estimated server minus client offset.
    """

    def __init__(self, now: Callable[[], datetime] = utc_now) -> None:
        self._now = now
        self.start: datetime | None = None
        self.skew = timedelta(0)

    @property
    def is_anchored(self) -> bool:
        return self.start is not None

    def sample_skew(self, server_now: datetime | None) -> None:
        """Update the skew from a server timestamp read just now."""
        if server_now is not None:
            self.skew = server_now - self._now()

    def server_now(self) -> datetime:
        """Current time on the server timeline."""
        return self._now() + self.skew

    def anchor(
        self,
        start_time: datetime | None,
        running_seconds: int = 0,
        server_now: datetime | None = None,
    ) -> datetime:
        """Anchor the clock to a session start.

        Uses the server start time when known, otherwise reconstructs it as
        ``server_now - running_seconds``.

        Args:
            start_time: Server-reported session start.
            running_seconds: Server-reported elapsed seconds.
            server_now: Server clock at the read.

        Returns:
            The anchored start time.
        """
        self.sample_skew(server_now)
        if start_time is not None:
            self.start = start_time
        else:
            reference = server_now if server_now is not None else self.server_now()
            self.start = reference - timedelta(seconds=max(0, running_seconds))
        return self.start

    def reset(self) -> None:
        self.start = None
        self.skew = timedelta(0)

    def elapsed_seconds(self) -> int:
        """Seconds since the anchor on the server timeline (0 when unanchored)."""
        if self.start is None:
            return 0
        delta = self.server_now() - self.start
        return max(0, int(delta.total_seconds()))

    def billed_seconds(self, stop_time: datetime | None = None) -> int:
        """Whole seconds between the server start and the stop time.

        Args:
            stop_time: Server-side stop time; defaults to the skew-corrected now.

        Returns:
            Non-negative duration in seconds.
        """
        if self.start is None:
            return 0
        stop = stop_time if stop_time is not None else self.server_now()
        return max(0, int((stop - self.start).total_seconds()))
