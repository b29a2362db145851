"""Content cache model."""

import hashlib
from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from app.database import Base


class ProcessedContent(Base):
    """Previously fetched external text, deduplicated by content hash."""

    __tablename__ = "processed_contents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    content_hash = Column(String(64), nullable=False, unique=True)
    source_url = Column(Text, nullable=False)
    extracted_title = Column(Text)
    extracted_content = Column(Text)
    processed_at = Column(DateTime, default=datetime.utcnow)
    last_fetched_at = Column(DateTime, default=datetime.utcnow)

    @staticmethod
    def hash_source(source: str) -> str:
        """Hash a source key (URL or raw text) after normalising case and whitespace."""
        return hashlib.sha256(source.strip().lower().encode()).hexdigest()
