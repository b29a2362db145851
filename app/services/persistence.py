"""Transactional storage of analyses, conversation turns and cached content."""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from app.database import SessionLocal
from app.models import Analysis, Message, ProcessedContent
from app.services.errors import AnalysisNotFoundError, PersistenceError, SiftError, ValidationError
from app.services.prompts import normalize_report_type

logger = logging.getLogger(__name__)

MAX_RECENT_LIMIT = 100

# Smallest step that keeps message timestamps strictly increasing within an analysis
_TIMESTAMP_STEP = timedelta(microseconds=1)


@dataclass(frozen=True)
class TurnIds:
    user_message_id: uuid.UUID
    assistant_message_id: uuid.UUID


def _as_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise AnalysisNotFoundError(f"Analysis not found: {value}")


class PersistenceEngine:
    """
    Writes completed turns to the database.

    Every public method opens its own session and either commits fully or
    rolls back fully. No session outlives a call.
    """

    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self.session_factory = session_factory

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        db = self.session_factory(expire_on_commit=False)
        try:
            yield db
            db.commit()
        except SiftError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database error, transaction rolled back: {e}")
            raise PersistenceError(f"Database error: {e}") from e
        finally:
            db.close()

    @staticmethod
    def _validate_turn(user_text: str, assistant_text: str, model_id: str) -> None:
        if not user_text or not user_text.strip():
            raise ValidationError("User message text is required")
        if not assistant_text or not assistant_text.strip():
            raise ValidationError("Assistant message text is required")
        if not model_id:
            raise ValidationError("model_id is required")

    @staticmethod
    def _add_analysis(
        db: Session,
        query: Optional[str],
        report_type: str,
        model_id: str,
        image_ref: Optional[str],
    ) -> Analysis:
        analysis = Analysis(
            user_query_text=query,
            report_type=report_type,
            model_id_used=model_id,
            user_image_filename=image_ref,
        )
        db.add(analysis)
        db.flush()  # Flush to get the generated id
        return analysis

    @staticmethod
    def _add_turn(
        db: Session,
        analysis: Analysis,
        user_text: str,
        assistant_text: str,
        model_id: str,
        citations: Optional[List[Dict[str, Any]]],
    ) -> TurnIds:
        last_sequence, last_timestamp = db.query(
            func.max(Message.sequence),
            func.max(Message.timestamp),
        ).filter(
            Message.analysis_id == analysis.id,
        ).one()
        next_sequence = 0 if last_sequence is None else last_sequence + 1

        user_time = datetime.utcnow()
        if last_timestamp is not None and user_time <= last_timestamp:
            user_time = last_timestamp + _TIMESTAMP_STEP
        assistant_time = user_time + _TIMESTAMP_STEP

        user_message = Message(
            analysis_id=analysis.id,
            sender_type="user",
            message_text=user_text,
            sequence=next_sequence,
            timestamp=user_time,
        )
        assistant_message = Message(
            analysis_id=analysis.id,
            sender_type="assistant",
            message_text=assistant_text,
            model_id_used=model_id,
            grounding_sources=citations or None,
            sequence=next_sequence + 1,
            timestamp=assistant_time,
        )
        db.add_all([user_message, assistant_message])

        if next_sequence == 0:
            analysis.generated_report_text = assistant_text
        analysis.updated_at = assistant_time
        db.flush()

        return TurnIds(user_message_id=user_message.id, assistant_message_id=assistant_message.id)

    def create_analysis(
        self,
        query: Optional[str],
        report_type: str,
        model_id: str,
        image_ref: Optional[str] = None,
    ) -> uuid.UUID:
        """
        Create an analysis record without any messages.

        Raises:
            ValidationError: On an unknown report type or missing model id (nothing is written)
            PersistenceError: On database failure
        """
        report_type = normalize_report_type(report_type)
        if not model_id:
            raise ValidationError("model_id is required")

        with self._transaction() as db:
            analysis = self._add_analysis(db, query, report_type, model_id, image_ref)
            analysis_id = analysis.id

        logger.info(f"Created analysis {analysis_id}")
        return analysis_id

    def append_turn(
        self,
        analysis_id: Any,
        user_text: str,
        assistant_text: str,
        model_id: str,
        citations: Optional[List[Dict[str, Any]]] = None,
    ) -> TurnIds:
        """
        Append a user/assistant pair to an analysis in one transaction.

        The first turn also sets the analysis' ``generated_report_text``.

        Raises:
            AnalysisNotFoundError: If the analysis does not exist
            PersistenceError: On database failure (the whole turn is rolled back)
        """
        self._validate_turn(user_text, assistant_text, model_id)
        analysis_uuid = _as_uuid(analysis_id)

        with self._transaction() as db:
            analysis = db.query(Analysis).filter(Analysis.id == analysis_uuid).with_for_update().first()
            if not analysis:
                raise AnalysisNotFoundError(f"Analysis not found: {analysis_id}")
            turn = self._add_turn(db, analysis, user_text, assistant_text, model_id, citations)

        logger.info(f"Saved turn for analysis {analysis_uuid} ({len(assistant_text)} chars)")
        return turn

    def record_initial_turn(
        self,
        query: Optional[str],
        report_type: str,
        model_id: str,
        user_text: str,
        report_text: str,
        image_ref: Optional[str] = None,
        citations: Optional[List[Dict[str, Any]]] = None,
    ) -> Tuple[uuid.UUID, TurnIds]:
        """Create an analysis and its first turn in a single transaction."""
        report_type = normalize_report_type(report_type)
        self._validate_turn(user_text, report_text, model_id)

        with self._transaction() as db:
            analysis = self._add_analysis(db, query, report_type, model_id, image_ref)
            turn = self._add_turn(db, analysis, user_text, report_text, model_id, citations)
            analysis_id = analysis.id

        logger.info(f"Saved initial analysis {analysis_id} ({len(report_text)} chars)")
        return analysis_id, turn

    def load_history(self, analysis_id: Any) -> List[Message]:
        """Return the analysis' messages in conversation order (timestamps strictly increase)."""
        analysis_uuid = _as_uuid(analysis_id)
        with self._transaction() as db:
            exists = db.query(Analysis.id).filter(Analysis.id == analysis_uuid).first()
            if not exists:
                raise AnalysisNotFoundError(f"Analysis not found: {analysis_id}")
            messages = (
                db.query(Message)
                .filter(Message.analysis_id == analysis_uuid)
                .order_by(Message.timestamp, Message.sequence)
                .all()
            )
            db.expunge_all()
        return messages

    def get_analysis(self, analysis_id: Any) -> Analysis:
        analysis_uuid = _as_uuid(analysis_id)
        with self._transaction() as db:
            analysis = (
                db.query(Analysis)
                .options(selectinload(Analysis.messages))
                .filter(Analysis.id == analysis_uuid)
                .first()
            )
            if not analysis:
                raise AnalysisNotFoundError(f"Analysis not found: {analysis_id}")
            db.expunge_all()
        return analysis

    def list_recent(self, limit: int = 50) -> List[Analysis]:
        limit = max(1, min(int(limit), MAX_RECENT_LIMIT))
        with self._transaction() as db:
            analyses = (
                db.query(Analysis)
                .options(selectinload(Analysis.messages))
                .order_by(Analysis.created_at.desc())
                .limit(limit)
                .all()
            )
            db.expunge_all()
        return analyses

    def find_cached_content(self, source: str) -> Optional[ProcessedContent]:
        """Look up previously fetched content by its normalised source key."""
        if not source or not source.strip():
            return None
        content_hash = ProcessedContent.hash_source(source)
        with self._transaction() as db:
            cached = db.query(ProcessedContent).filter(ProcessedContent.content_hash == content_hash).first()
            if cached:
                db.expunge(cached)
        return cached

    def store_content(
        self,
        source: str,
        title: Optional[str],
        content: Optional[str],
    ) -> ProcessedContent:
        """Insert or refresh a cache entry keyed by the source hash."""
        if not source or not source.strip():
            raise ValidationError("source is required")
        content_hash = ProcessedContent.hash_source(source)
        now = datetime.utcnow()

        with self._transaction() as db:
            cached = db.query(ProcessedContent).filter(ProcessedContent.content_hash == content_hash).first()
            if cached:
                cached.extracted_title = title
                cached.extracted_content = content
                cached.last_fetched_at = now
                logger.info(f"Refreshed cached content {content_hash[:16]}")
            else:
                cached = ProcessedContent(
                    content_hash=content_hash,
                    source_url=source.strip(),
                    extracted_title=title,
                    extracted_content=content,
                    processed_at=now,
                    last_fetched_at=now,
                )
                db.add(cached)
                logger.info(f"Cached new content {content_hash[:16]}")
            db.flush()
            db.expunge(cached)
        return cached
