"""
Per-request context passed explicitly through the pipeline.

Holds everything a single user request needs to know about its caller,
so no request ever reads another request's state from a global.
"""

import threading
import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class RequestContext:
    """Identity, correlation id and abort signal of one user request."""
    user_id: str
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    abort_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def __post_init__(self):
        """Validate the caller identity."""
        if not self.user_id or not isinstance(self.user_id, str) or not self.user_id.strip():
            raise ValueError("user_id is required and cannot be empty")

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    def abort(self) -> None:
        """Signal that no further tool calls may start for this request."""
        self.abort_event.set()
