"""
Models Package

Imports all SQLAlchemy models for application use.
"""

from docshare.models.base import BaseModel
from docshare.models.project import Project
from docshare.models.document import Document, DocumentStatus
from docshare.models.document_chunk import DocumentChunk
from docshare.models.document_status_event import DocumentStatusEvent
from docshare.models.conversation import Conversation, Message
from docshare.models.audience_synthesis import AudienceSynthesis
from docshare.models.decision_trace import DecisionTrace

__all__ = [
    'BaseModel',
    'Project',
    'Document',
    'DocumentStatus',
    'DocumentChunk',
    'DocumentStatusEvent',
    'Conversation',
    'Message',
    'AudienceSynthesis',
    'DecisionTrace',
]

# Registers the immutability guards on the mappers above
import docshare.utils.invariants  # noqa: E402,F401
