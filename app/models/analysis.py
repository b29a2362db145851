"""Analysis and Message models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from app.database import Base

REPORT_TYPES = ("FULL_CHECK", "CONTEXT_REPORT", "COMMUNITY_NOTE")
SENDER_TYPES = ("user", "assistant")


class Analysis(Base):
    """One fact-checking task and its first completed turn."""

    __tablename__ = "analyses"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_query_text = Column(Text)  # Null for image-only analyses
    user_image_filename = Column(String(255))
    report_type = Column(String(100), nullable=False)
    model_id_used = Column(String(255), nullable=False)
    generated_report_text = Column(Text)  # Written once, after the initial stream completes
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    messages = relationship(
        "Message",
        back_populates="analysis",
        cascade="all, delete-orphan",
        order_by="Message.sequence",
    )

    __table_args__ = (
        CheckConstraint(
            "report_type IN ('FULL_CHECK', 'CONTEXT_REPORT', 'COMMUNITY_NOTE')",
            name="ck_analyses_report_type",
        ),
        Index("idx_analyses_created_at", "created_at"),
    )

    @property
    def has_image(self) -> bool:
        return bool(self.user_image_filename)

    def summary(self) -> dict:
        """Compact representation used by the history listing."""
        return {
            "id": str(self.id),
            "user_query": self.user_query_text,
            "report_type": self.report_type,
            "model_used": self.model_id_used,
            "has_image": self.has_image,
            "message_count": len(self.messages),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Message(Base):
    """One append-only turn half (user or assistant) belonging to an analysis."""

    __tablename__ = "messages"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    analysis_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("analyses.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type = Column(String(50), nullable=False)  # 'user' or 'assistant'
    message_text = Column(Text, nullable=False)
    model_id_used = Column(String(255))  # Assistant messages only
    grounding_sources = Column(JSON().with_variant(JSONB(), "postgresql"))
    sequence = Column(Integer, nullable=False)  # 0-based position within the analysis
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Relationships
    analysis = relationship("Analysis", back_populates="messages")

    __table_args__ = (
        CheckConstraint("sender_type IN ('user', 'assistant')", name="ck_messages_sender_type"),
        UniqueConstraint("analysis_id", "sequence"),
        Index("idx_messages_analysis_order", "analysis_id", "timestamp", "sequence"),
    )

    @property
    def is_initial(self) -> bool:
        """True for the user/assistant pair that produced the report."""
        return self.sequence < 2

    def to_chat_format(self) -> dict:
        return {"role": self.sender_type, "content": self.message_text}

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "analysis_id": str(self.analysis_id),
            "sender_type": self.sender_type,
            "message_text": self.message_text,
            "model_id_used": self.model_id_used,
            "grounding_sources": self.grounding_sources,
            "is_initial": self.is_initial,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
