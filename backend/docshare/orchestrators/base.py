"""
Base Orchestrator

Abstract base class for all orchestrators with built-in support for:
- Decision tracing (audit trail of every run, success or failure)
- Step-by-step timing of a pipeline run
- Evidence collection (what data a run was based on)

All feature orchestrators should extend this class.
"""

import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from docshare.context import ExecutionContext
from docshare.models.decision_trace import DecisionTrace


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ExecutionStep:
    """Represents a single execution step in the trace"""
    def __init__(self, action: str, step_number: int):
        self.step = step_number
        self.action = action
        self.status = "in_progress"
        self.started_at = _now_iso()
        self.completed_at = None
        self.duration_ms = None
        self.details = {}
        self.error = None
        self._start_time = time.time()

    def complete(self, status: str = "success", details: Optional[Dict[str, Any]] = None):
        """Mark step as completed"""
        self.status = status
        self.completed_at = _now_iso()
        self.duration_ms = int((time.time() - self._start_time) * 1000)
        if details:
            self.details = details

    def fail(self, error: str, details: Optional[Dict[str, Any]] = None):
        """Mark step as failed"""
        self.status = "failed"
        self.completed_at = _now_iso()
        self.duration_ms = int((time.time() - self._start_time) * 1000)
        self.error = error
        if details:
            self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        result = {
            "step": self.step,
            "action": self.action,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
        }
        if self.details:
            result["details"] = self.details
        if self.error:
            result["error"] = self.error
        return result


class RunTrace:
    """
    Steps and evidence of one orchestrator run.

    A run owns its trace, so several runs of the same orchestrator can
    proceed on different threads without sharing step state.
    """

    def __init__(self, ctx: ExecutionContext, subject: Optional[str] = None):
        self.ctx = ctx
        self.subject = subject
        self.steps: List[ExecutionStep] = []
        self.evidence: List[Dict[str, Any]] = []
        self._start_time = time.time()

    @contextmanager
    def step(self, action: str):
        """
        Context manager for automatic step tracing.

        Usage:
            with trace.step("load_conversations") as step:
                step.details = {...}
        """
        step = ExecutionStep(action, len(self.steps) + 1)
        self.steps.append(step)
        try:
            yield step
            if step.status == "in_progress":
                step.complete(details=step.details)
        except Exception as e:
            step.fail(str(e))
            raise

    def log_step(
        self,
        action: str,
        status: str = "success",
        details: Optional[Dict[str, Any]] = None
    ):
        """Manually log an execution step."""
        step = ExecutionStep(action, len(self.steps) + 1)
        step.complete(status, details)
        self.steps.append(step)

    def add_evidence(
        self,
        evidence_type: str,
        data: Any,
        source: Optional[str] = None,
    ):
        """
        Record what a decision was based on.

        Args:
            evidence_type: Type of evidence (e.g., "conversation_window")
            data: The evidence data (must be JSON serialisable)
            source: Source of the evidence (e.g., "Project:uuid")
        """
        item = {"type": evidence_type, "data": data, "timestamp": _now_iso()}
        if source:
            item["source"] = source
        self.evidence.append(item)

    def get_elapsed_time_ms(self) -> int:
        return int((time.time() - self._start_time) * 1000)

    def to_json(self, error: Optional[str] = None) -> Dict[str, Any]:
        trace_json = {
            "started_at": datetime.fromtimestamp(self._start_time, timezone.utc).isoformat(),
            "completed_at": _now_iso(),
            "duration_ms": self.get_elapsed_time_ms(),
            "steps": [step.to_dict() for step in self.steps],
            "evidence": self.evidence,
            "result": "failed" if error else "success",
            "metadata": {
                "actor": self.ctx.actor,
                "total_steps": len(self.steps),
            },
        }
        if error:
            trace_json["error"] = error
        return trace_json


class OrchestrationError(Exception):
    """Base exception for orchestration errors"""
    pass


class BaseOrchestrator(ABC):
    """
    Abstract base orchestrator with decision tracing.

    Subclasses must implement:
    - orchestrator_name: str property

    and wrap each unit of work in a ``RunTrace`` obtained from
    ``start_trace``; ``persist_trace`` writes it as a DecisionTrace row.
    """

    @property
    @abstractmethod
    def orchestrator_name(self) -> str:
        """
        Name of this orchestrator (must be unique across all orchestrators).

        Returns:
            Orchestrator name (e.g., "document_scheduler")
        """
        pass

    def start_trace(self, ctx: ExecutionContext, subject: Optional[str] = None) -> RunTrace:
        return RunTrace(ctx, subject)

    def persist_trace(self, db: Session, trace: RunTrace, error: Optional[str] = None) -> DecisionTrace:
        """
        Add a DecisionTrace for the run to the session.

        Pure structured storage - no UI formatting. Does not commit.
        """
        decision_trace = DecisionTrace(
            request_id=trace.ctx.request_id,
            orchestrator_name=self.orchestrator_name,
            subject=trace.subject,
            trace_json=trace.to_json(error=error),
        )
        db.add(decision_trace)
        db.flush()
        return decision_trace
