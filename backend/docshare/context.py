"""Explicit execution context passed into every core operation."""
import uuid
from dataclasses import dataclass, field


@dataclass(frozen=True)
class ExecutionContext:
    """
    Who is performing an operation and under which request.

    Background components never look up a "current user" from ambient
    state; the caller builds one of these and hands it down.

    Attributes:
        actor: Operator, user id, or component name (e.g. "scheduler")
        request_id: Correlates log lines, audit rows and decision traces
    """
    actor: str
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def system(cls, component: str) -> "ExecutionContext":
        """Context for an unattended background component."""
        return cls(actor=f"system:{component}")

    def child(self) -> "ExecutionContext":
        """Same actor, fresh request id (one per dispatched unit of work)."""
        return ExecutionContext(actor=self.actor)

    def log_extra(self) -> str:
        return f"actor={self.actor} request_id={self.request_id}"
