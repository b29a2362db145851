"""Analysis history routes."""

import logging
import uuid
from typing import List

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_persistence
from app.schemas.sift import AnalysisDetail, AnalysisSummary
from app.services.persistence import PersistenceEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analyses", tags=["analyses"])


@router.get("", response_model=List[AnalysisSummary])
def list_analyses(
    limit: int = Query(default=50, ge=1, le=100),
    persistence: PersistenceEngine = Depends(get_persistence),
):
    """List recent analyses, newest first."""
    return [analysis.summary() for analysis in persistence.list_recent(limit=limit)]


@router.get("/{analysis_id}", response_model=AnalysisDetail)
def get_analysis(
    analysis_id: uuid.UUID,
    persistence: PersistenceEngine = Depends(get_persistence),
):
    """Get an analysis with its full conversation history."""
    analysis = persistence.get_analysis(analysis_id)
    return {
        "analysis": analysis.summary(),
        "generated_report_text": analysis.generated_report_text,
        "messages": [message.to_dict() for message in analysis.messages],
    }
