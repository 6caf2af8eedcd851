"""Conversation and Message models."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID, JSONType, utcnow


class Conversation(Base, BaseModel):
    """
    A visitor's chat session against a project's documents.

    Only ended conversations (``ended_at`` set) feed audience synthesis.

    Attributes:
        project_id: Project the conversation belongs to
        started_at: When the session started
        ended_at: When the session ended (None while still open)
        summary: Post-session summary text
        topics: List of topic strings
        sentiment: positive | neutral | negative | mixed
        message_count: Number of messages exchanged
    """

    __tablename__ = "conversations"

    project_id = Column(
        GUID(),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    started_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    ended_at = Column(DateTime, nullable=True, index=True)
    summary = Column(Text, nullable=True)
    topics = Column(JSONType, nullable=True)
    sentiment = Column(String(32), nullable=True)
    message_count = Column(Integer, default=0, nullable=False)

    # Relationships
    project = relationship("Project", back_populates="conversations")
    messages = relationship(
        "Message",
        back_populates="conversation",
        order_by="Message.created_at",
        cascade="all, delete-orphan"
    )


class Message(Base, BaseModel):
    """
    A single chat message.

    Attributes:
        conversation_id: Parent conversation
        role: user | assistant
        content: Message text
        cited_document_ids: Document ids referenced by an assistant answer
        cited_sections: [{documentId, section}] an assistant answer drew on
    """

    __tablename__ = "messages"

    conversation_id = Column(
        GUID(),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    cited_document_ids = Column(JSONType, nullable=True)
    cited_sections = Column(JSONType, nullable=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
