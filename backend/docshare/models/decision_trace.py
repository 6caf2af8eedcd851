"""
Decision Trace Model

Audit trail of orchestrator runs (document processing, synthesis).
"""

import uuid

from sqlalchemy import Column, DateTime, String

from docshare.database import Base
from docshare.models.base import GUID, JSONType, utcnow


class DecisionTrace(Base):
    """
    Audit trail of orchestration execution.

    Stores step-by-step execution logs as structured JSON in trace_json.
    Pure structured storage - no UI formatting.
    """
    __tablename__ = "decision_traces"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4, index=True)

    # ExecutionContext.request_id of the run
    request_id = Column(String(255), nullable=False, index=True)

    # Orchestrator that created this trace
    orchestrator_name = Column(String(100), nullable=False, index=True)

    # Entity the run acted on ("Document:<id>", "Project:<id>")
    subject = Column(String(255), nullable=True, index=True)

    # Complete execution trace as structured JSON
    trace_json = Column(JSONType, nullable=False)

    # Timestamp
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<DecisionTrace(request_id='{self.request_id}', orchestrator='{self.orchestrator_name}')>"
