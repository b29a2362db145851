"""SIFT request and response schemas."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChatHistoryEntry(BaseModel):
    """One prior message supplied by a client without a stored analysis."""

    role: str
    content: str


class ChatRequest(BaseModel):
    """Schema for a follow-up message."""

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    new_user_message_text: Optional[str] = Field(default=None, alias="newUserMessageText")
    command: Optional[str] = None
    analysis_id: Optional[str] = Field(default=None, alias="analysisId")
    chat_history: Optional[List[ChatHistoryEntry]] = Field(default=None, alias="chatHistory")
    selected_model_id: Optional[str] = Field(default=None, alias="selectedModelId")
    model_config_params: Optional[Dict[str, Any]] = Field(default=None, alias="modelConfigParams")


class SessionSnapshot(BaseModel):
    """Session state as shown to the client."""

    session_id: str
    state: str
    analysis_id: Optional[str] = None
    is_generating: bool
    can_restart: bool
    model_id: Optional[str] = None
    messages: List[Dict[str, Any]]
    updated_at: str


class AnalysisSummary(BaseModel):
    """Analysis listing entry."""

    id: str
    user_query: Optional[str] = None
    report_type: str
    model_used: str
    has_image: bool
    message_count: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class AnalysisDetail(BaseModel):
    """Analysis with its conversation history."""

    analysis: AnalysisSummary
    generated_report_text: Optional[str] = None
    messages: List[Dict[str, Any]]
