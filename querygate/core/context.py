import time
from dataclasses import dataclass
from typing import Optional

DEADLINE_EXCEEDED = "context deadline exceeded"


@dataclass(frozen=True)
class RequestContext:
    """
    Deadline carried alongside a request.

    `deadline` is a point on the `time.monotonic()` clock, or None when the
    caller set no deadline. `cause` is the error text to report when that
    deadline fires. Cancellation itself is left to asyncio; this only
    answers "how much time is left".
    """

    deadline: Optional[float] = None
    cause: str = DEADLINE_EXCEEDED

    @classmethod
    def background(cls) -> "RequestContext":
        return cls()

    @classmethod
    def from_timeout(cls, seconds: float) -> "RequestContext":
        return cls(deadline=time.monotonic() + seconds)

    def with_timeout(self, seconds: float, cause: Optional[str] = None) -> "RequestContext":
        """
        Derive a child context; never extends the parent's deadline.

        The child reports `cause` only when its own timeout is the tighter
        bound; otherwise it keeps the parent's deadline and cause.
        """
        candidate = time.monotonic() + seconds
        if self.deadline is not None and self.deadline <= candidate:
            return self
        return RequestContext(deadline=candidate, cause=cause or DEADLINE_EXCEEDED)

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0
