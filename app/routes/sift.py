"""SIFT analysis routes: initiate, chat, stop, restart, session state."""

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse

from app.dependencies import get_adapter_registry, get_persistence, get_session_registry
from app.schemas.sift import ChatRequest, SessionSnapshot
from app.services.adapters import AdapterRegistry, ImageInput
from app.services.errors import NoConversationError, ValidationError
from app.services.image_handler import process_uploaded_image
from app.services.persistence import PersistenceEngine
from app.services.prompts import build_followup_prompt
from app.services.relay import StreamRelay
from app.services.session_engine import SessionEngine, SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sift", tags=["sift"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _event_stream(relay: StreamRelay, session: SessionEngine) -> StreamingResponse:
    headers = dict(SSE_HEADERS)
    headers["X-Session-Id"] = session.session_id
    return StreamingResponse(relay.events(), media_type="text/event-stream", headers=headers)


def _parse_model_params(raw: Optional[str]) -> Dict[str, Any]:
    if raw is None or not raw.strip():
        return {}
    try:
        params = json.loads(raw)
    except json.JSONDecodeError:
        raise ValidationError("Invalid JSON format for modelConfigParams.")
    if not isinstance(params, dict):
        raise ValidationError("modelConfigParams must be a JSON object.")
    return params


@router.post("/initiate")
def initiate_analysis(
    user_input_text: Optional[str] = Form(default=None, alias="userInputText"),
    user_image_file: Optional[UploadFile] = File(default=None, alias="userImageFile"),
    report_type: Optional[str] = Form(default=None, alias="reportType"),
    selected_model_id: Optional[str] = Form(default=None, alias="selectedModelId"),
    model_config_params: Optional[str] = Form(default=None, alias="modelConfigParams"),
    session_id: Optional[str] = Form(default=None, alias="sessionId"),
    registry: AdapterRegistry = Depends(get_adapter_registry),
    persistence: PersistenceEngine = Depends(get_persistence),
    sessions: SessionRegistry = Depends(get_session_registry),
):
    """Start a SIFT analysis and stream the report as server-sent events."""
    if not selected_model_id or not selected_model_id.strip():
        raise ValidationError("selectedModelId is a required parameter.")
    params = _parse_model_params(model_config_params)

    image = None
    if user_image_file is not None and user_image_file.filename:
        with process_uploaded_image(
            user_image_file.file,
            filename=user_image_file.filename,
            content_type=user_image_file.content_type,
        ) as details:
            image = ImageInput.from_file(details.file_path, details.original_mime_type, details.filename)

    session = sessions.find(session_id)
    if session is None:
        session = SessionEngine(registry, persistence, session_id=session_id)

    relay = session.start(user_input_text, image, report_type, selected_model_id, params)
    sessions.add(session)

    logger.info(f"Initiated analysis in session {session.session_id} with {selected_model_id}")
    return _event_stream(relay, session)


@router.post("/chat")
def continue_chat(
    data: ChatRequest,
    registry: AdapterRegistry = Depends(get_adapter_registry),
    persistence: PersistenceEngine = Depends(get_persistence),
    sessions: SessionRegistry = Depends(get_session_registry),
):
    """Send a follow-up message and stream the reply."""
    build_followup_prompt(data.new_user_message_text, data.command)

    session = sessions.find(data.session_id)
    if session is not None:
        relay = session.send_followup(
            data.new_user_message_text,
            data.command,
            model_id=data.selected_model_id,
            params=data.model_config_params,
        )
        return _event_stream(relay, session)

    session = SessionEngine(registry, persistence, session_id=data.session_id)
    if data.analysis_id:
        session.resume(data.analysis_id, model_id=data.selected_model_id, params=data.model_config_params)
    elif data.chat_history is not None:
        if not data.selected_model_id:
            raise ValidationError("selectedModelId is a required parameter.")
        session.adopt_history(
            [entry.model_dump() for entry in data.chat_history],
            data.selected_model_id,
            params=data.model_config_params,
        )
    else:
        raise NoConversationError("No active session. Provide sessionId, analysisId or chatHistory.")

    relay = session.send_followup(data.new_user_message_text, data.command)
    sessions.add(session)
    return _event_stream(relay, session)


@router.post("/sessions/{session_id}/stop", response_model=SessionSnapshot)
def stop_generation(
    session_id: str,
    sessions: SessionRegistry = Depends(get_session_registry),
):
    """Stop the in-flight generation of a session."""
    session = sessions.get(session_id)
    session.stop()
    return session.snapshot()


@router.post("/sessions/{session_id}/restart")
def restart_generation(
    session_id: str,
    sessions: SessionRegistry = Depends(get_session_registry),
):
    """Regenerate the last turn of a session and stream it."""
    session = sessions.get(session_id)
    relay = session.restart()
    return _event_stream(relay, session)


@router.get("/sessions/{session_id}", response_model=SessionSnapshot)
def get_session(
    session_id: str,
    sessions: SessionRegistry = Depends(get_session_registry),
):
    """Get the current state of a session."""
    return sessions.get(session_id).snapshot()
