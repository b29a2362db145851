"""SQLAlchemy ORM models."""

from app.models.analysis import REPORT_TYPES, SENDER_TYPES, Analysis, Message
from app.models.content import ProcessedContent

__all__ = [
    "REPORT_TYPES",
    "SENDER_TYPES",
    "Analysis",
    "Message",
    "ProcessedContent",
]
