"""AudienceSynthesis model."""
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID, JSONType


class AudienceSynthesis(Base, BaseModel):
    """
    Immutable, versioned roll-up of a project's audience conversations.

    **IMMUTABILITY RULES:**
    - Snapshots are IMMUTABLE once created
    - NEVER update fields after creation
    - NEVER delete snapshots (they are historical records)
    - To "update" the synthesis, create a NEW version

    **VERSIONING:**
    - ``version`` starts at 1 and increases by one per project
    - UNIQUE(project_id, version): two writers can never both commit version N
    - The current synthesis is the row with the highest version

    Attributes:
        project_id: Owning project
        version: Positive, gap-free, per-project version number
        overview: Overall pattern description
        common_questions: [{pattern, frequency, documents}]
        knowledge_gaps: [{topic, severity, suggestion}]
        document_suggestions: [{documentId, section, suggestion}]
        sentiment_trend: improving | stable | declining
        insights: List of free-text insights
        conversation_count: Conversations covered up to this version
        total_messages: Messages covered up to this version
        date_range_from: Start of the covered period
        date_range_to: End of the covered period

    Guards:
        - docshare.utils.invariants rejects updates and deletes at flush time
    """

    __tablename__ = "audience_syntheses"
    __table_args__ = (
        UniqueConstraint("project_id", "version", name="uq_audience_synthesis_project_version"),
    )

    project_id = Column(
        GUID(),
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    version = Column(Integer, nullable=False)

    overview = Column(Text, nullable=False)
    common_questions = Column(JSONType, nullable=False)
    knowledge_gaps = Column(JSONType, nullable=False)
    document_suggestions = Column(JSONType, nullable=False)
    sentiment_trend = Column(String(16), nullable=False)
    insights = Column(JSONType, nullable=False)

    conversation_count = Column(Integer, nullable=False)
    total_messages = Column(Integer, nullable=False)
    date_range_from = Column(DateTime, nullable=False)
    date_range_to = Column(DateTime, nullable=False)

    # Relationships
    project = relationship("Project", back_populates="syntheses")

    def to_dict(self) -> dict:
        """Payload served to readers."""
        return {
            "id": str(self.id),
            "projectId": str(self.project_id),
            "version": self.version,
            "overview": self.overview,
            "commonQuestions": self.common_questions,
            "knowledgeGaps": self.knowledge_gaps,
            "documentSuggestions": self.document_suggestions,
            "sentimentTrend": self.sentiment_trend,
            "insights": self.insights,
            "conversationCount": self.conversation_count,
            "totalMessages": self.total_messages,
            "dateRangeFrom": self.date_range_from.isoformat(),
            "dateRangeTo": self.date_range_to.isoformat(),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
