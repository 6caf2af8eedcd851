"""Project model."""
from sqlalchemy import Column, String, Text
from sqlalchemy.orm import relationship

from docshare.database import Base
from docshare.models.base import BaseModel, GUID


class Project(Base, BaseModel):
    """
    A collection of documents shared with an audience.

    Attributes:
        owner_id: Opaque id of the owning user (authentication is external)
        name: Display name
        description: Optional description
    """

    __tablename__ = "projects"

    owner_id = Column(GUID(), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    # Relationships
    documents = relationship(
        "Document",
        back_populates="project",
        cascade="all, delete-orphan"
    )
    conversations = relationship(
        "Conversation",
        back_populates="project",
        cascade="all, delete-orphan"
    )
    syntheses = relationship(
        "AudienceSynthesis",
        back_populates="project",
        order_by="AudienceSynthesis.version",
        passive_deletes=True,
    )
