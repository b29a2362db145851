"""Per-analysis session state machine: start, follow-up, stop, restart."""

import logging
import math
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from app.config import settings
from app.services.adapters import AdapterRegistry, CancelToken, Delta, ImageInput, ModelAdapter
from app.services.errors import (
    GenerationInProgressError,
    NoCheckpointError,
    NoConversationError,
    SessionNotFoundError,
    SiftError,
    ValidationError,
)
from app.services.persistence import PersistenceEngine
from app.services.prompts import (
    build_followup_prompt,
    build_report_prompt,
    normalize_report_type,
    system_instructions,
)
from app.services.relay import RelayState, StreamRelay

logger = logging.getLogger(__name__)

STOPPED_MARKER = "Generation stopped by user."
INITIAL_COMPLETE_MESSAGE = "Stream finished"
FOLLOWUP_COMPLETE_MESSAGE = "Chat stream finished"


class SessionStatus(str, Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    STREAMING = "STREAMING"
    COMPLETED = "COMPLETED"
    STOPPED = "STOPPED"
    FAILED = "FAILED"


@dataclass
class DisplayMessage:
    """A message as the client renders it."""

    sender: str  # 'user' or 'assistant'
    text: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)
    model_id: Optional[str] = None
    loading: bool = False
    is_error: bool = False
    is_initial: bool = False
    citations: Optional[List[Dict[str, Any]]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
            "model_id": self.model_id,
            "loading": self.loading,
            "is_error": self.is_error,
            "is_initial": self.is_initial,
            "citations": list(self.citations) if self.citations else None,
        }


@dataclass
class ChatHandle:
    """Provider-facing conversation: adapter, instructions and completed turns."""

    adapter: ModelAdapter
    system: str
    model_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    transcript: List[Dict[str, str]] = field(default_factory=list)
    analysis_id: Optional[uuid.UUID] = None


@dataclass(frozen=True)
class RestartCheckpoint:
    """Everything needed to regenerate the most recent turn."""

    kind: str  # 'initial' or 'followup'
    model_id: str
    params: Dict[str, Any]
    message_count: int  # Length of the message list before the turn was appended
    query_text: Optional[str] = None
    image: Optional[ImageInput] = None
    report_type: Optional[str] = None
    followup_text: Optional[str] = None
    command: Optional[str] = None
    transcript: Tuple[Dict[str, str], ...] = ()
    chat_handle: Optional[ChatHandle] = None


@dataclass
class Generation:
    """One in-flight turn."""

    kind: str
    handle: ChatHandle
    prompt: str
    history: List[Dict[str, str]]
    user_message: DisplayMessage
    placeholder: DisplayMessage
    persisted_user_text: str
    cancel: CancelToken
    relay: StreamRelay
    image: Optional[ImageInput] = None
    query_text: Optional[str] = None
    report_type: Optional[str] = None
    thread: Optional[threading.Thread] = None
    finalized: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


FLOAT_PARAMS = ("temperature", "topP", "top_p")
INT_PARAMS = ("max_tokens", "maxTokens", "topK", "top_k")


def _validate_params(params: Any) -> Dict[str, Any]:
    """Check model parameters and coerce the known numeric ones."""
    if params is None:
        return {}
    if not isinstance(params, dict):
        raise ValidationError("modelConfigParams must be an object")

    validated = dict(params)
    for key, value in params.items():
        if value is None or key not in FLOAT_PARAMS + INT_PARAMS:
            continue
        if isinstance(value, bool):
            raise ValidationError(f"Model parameter {key} must be a number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Model parameter {key} must be a number")
        if not math.isfinite(number) or number < 0:
            raise ValidationError(f"Model parameter {key} must be a non-negative number")
        if key in INT_PARAMS:
            if not number.is_integer():
                raise ValidationError(f"Model parameter {key} must be a whole number")
            validated[key] = int(number)
        else:
            validated[key] = number
    return validated


def _merge_citations(existing: Optional[List[Dict[str, Any]]], new: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    merged = list(existing or [])
    seen = {c.get("uri") for c in merged}
    for citation in new:
        if citation.get("uri") not in seen:
            merged.append(citation)
            seen.add(citation.get("uri"))
    return merged


class SessionEngine:
    """
    Drives one analysis conversation.

    At most one generation is in flight at a time. Each generation runs on its
    own worker thread and streams through a StreamRelay; the caller hands
    ``relay.events()`` to the HTTP response.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        persistence: Optional[PersistenceEngine] = None,
        session_id: Optional[str] = None,
        settle_timeout: Optional[float] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.registry = registry
        self.persistence = persistence
        self.settle_timeout = settle_timeout if settle_timeout is not None else settings.RESTART_SETTLE_SECONDS

        self.state = SessionStatus.IDLE
        self.messages: List[DisplayMessage] = []
        self.current_generation: Optional[Generation] = None
        self.last_restart_checkpoint: Optional[RestartCheckpoint] = None
        self.chat_handle: Optional[ChatHandle] = None
        self.updated_at = datetime.utcnow()

        self._lock = threading.RLock()

    @property
    def analysis_id(self) -> Optional[uuid.UUID]:
        return self.chat_handle.analysis_id if self.chat_handle else None

    @property
    def is_generating(self) -> bool:
        return self.current_generation is not None

    # Operations

    def start(
        self,
        query: Optional[str],
        image: Optional[ImageInput],
        report_type: str,
        model_id: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> StreamRelay:
        """
        Start a new analysis, replacing whatever this session showed before.

        Args:
            query: User text, may be empty when an image is given
            image: Optional image for the first turn
            report_type: FULL_CHECK, CONTEXT_REPORT or COMMUNITY_NOTE (any case)
            model_id: Registered model id
            params: Model parameters

        Returns:
            The relay carrying this generation's SSE events

        Raises:
            ValidationError: On missing input, bad report type, unknown model or bad params
            GenerationInProgressError: If a generation is already in flight
        """
        query = (query or "").strip() or None
        if not query and image is None:
            raise ValidationError("Either userInputText or userImageFile must be provided.")
        report_type = normalize_report_type(report_type)
        params = _validate_params(params)
        adapter = self.registry.resolve(model_id)

        with self._lock:
            if self.current_generation is not None:
                raise GenerationInProgressError("A generation is already in progress for this session")
            return self._begin_initial(adapter, query, image, report_type, model_id, params)

    def send_followup(
        self,
        text: Optional[str],
        command: Optional[str] = None,
        model_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> StreamRelay:
        """
        Continue the conversation on the existing chat handle.

        ``model_id`` and ``params``, when given, switch the model or parameters
        used from this turn on; the transcript is kept.

        Raises:
            NoConversationError: If no analysis was started or resumed, or no
                turn has completed yet (restart the stopped or failed report instead)
            GenerationInProgressError: If a generation is already in flight
            ValidationError: If both text and command are empty
        """
        with self._lock:
            if self.chat_handle is None:
                raise NoConversationError("No analysis has been started in this session")
            if self.current_generation is not None:
                raise GenerationInProgressError("A generation is already in progress for this session")
            if not self.chat_handle.transcript:
                raise NoConversationError("The report has not completed yet; restart it before following up")

            handle = self.chat_handle
            build_followup_prompt(text, command)
            new_params = _validate_params(params) if params is not None else None
            if model_id and model_id != handle.model_id:
                handle.adapter = self.registry.resolve(model_id)
                handle.model_id = model_id
            if new_params is not None:
                handle.params = new_params

            return self._begin_followup(handle, text, command)

    def stop(self) -> bool:
        """
        Stop the in-flight generation.

        Returns:
            True if a generation was stopped, False if there was nothing to stop
            or it had already committed to completing
        """
        with self._lock:
            generation = self.current_generation
            if generation is None:
                return False
            if not generation.cancel.cancel():
                logger.info(f"Session {self.session_id}: stop ignored, generation {generation.id} is completing")
                return False
            generation.relay.cancel()
            self._mark_stopped(generation)
            logger.info(f"Session {self.session_id}: generation {generation.id} stopped by user")
            return True

    def restart(self) -> StreamRelay:
        """
        Regenerate the most recent turn from its checkpoint.

        Raises:
            NoCheckpointError: If nothing has been generated yet
        """
        with self._lock:
            checkpoint = self.last_restart_checkpoint
            if checkpoint is None:
                raise NoCheckpointError("There is no previous generation to restart")
            generation = self.current_generation

        if generation is not None:
            self.stop()
            thread = generation.thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=self.settle_timeout)
                if thread.is_alive():
                    logger.warning(
                        f"Session {self.session_id}: generation {generation.id} did not settle "
                        f"within {self.settle_timeout}s"
                    )

        with self._lock:
            if self.current_generation is not None:
                raise GenerationInProgressError("A generation is already in progress for this session")

            del self.messages[checkpoint.message_count:]
            logger.info(f"Session {self.session_id}: restarting {checkpoint.kind} turn")

            if checkpoint.kind == "initial":
                adapter = self.registry.resolve(checkpoint.model_id)
                return self._begin_initial(
                    adapter,
                    checkpoint.query_text,
                    checkpoint.image,
                    checkpoint.report_type,
                    checkpoint.model_id,
                    dict(checkpoint.params),
                )

            handle = checkpoint.chat_handle
            handle.transcript[:] = [dict(m) for m in checkpoint.transcript]
            handle.model_id = checkpoint.model_id
            handle.params = dict(checkpoint.params)
            if handle.adapter.model_id != checkpoint.model_id:
                handle.adapter = self.registry.resolve(checkpoint.model_id)
            self.chat_handle = handle
            return self._begin_followup(handle, checkpoint.followup_text, checkpoint.command)

    def resume(
        self,
        analysis_id: Any,
        model_id: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Rebuild messages and the chat handle from persisted history.

        Raises:
            AnalysisNotFoundError: If the analysis does not exist
            ValidationError: If the model is not available
        """
        if self.persistence is None:
            raise NoConversationError("History is not available without storage")

        analysis = self.persistence.get_analysis(analysis_id)
        history = self.persistence.load_history(analysis.id)
        model_id = model_id or analysis.model_id_used
        adapter = self.registry.resolve(model_id)

        with self._lock:
            if self.current_generation is not None:
                raise GenerationInProgressError("A generation is already in progress for this session")

            self.messages = [
                DisplayMessage(
                    id=str(m.id),
                    sender=m.sender_type,
                    text=m.message_text,
                    timestamp=m.timestamp,
                    model_id=m.model_id_used,
                    is_initial=m.is_initial,
                    citations=m.grounding_sources,
                )
                for m in history
            ]
            self.chat_handle = ChatHandle(
                adapter=adapter,
                system=system_instructions(),
                model_id=model_id,
                params=_validate_params(params),
                transcript=[m.to_chat_format() for m in history],
                analysis_id=analysis.id,
            )
            self.last_restart_checkpoint = None
            self.state = SessionStatus.COMPLETED if history else SessionStatus.IDLE
            self.updated_at = datetime.utcnow()

        logger.info(f"Session {self.session_id}: resumed analysis {analysis.id} with {len(history)} messages")

    def adopt_history(
        self,
        chat_history: List[Dict[str, Any]],
        model_id: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Seed a stateless conversation from a client-supplied transcript (never persisted)."""
        if not isinstance(chat_history, list):
            raise ValidationError("chatHistory must be a list")

        transcript = []
        for entry in chat_history:
            role = entry.get("role") if isinstance(entry, dict) else None
            content = entry.get("content") if isinstance(entry, dict) else None
            if role not in ("user", "assistant") or not isinstance(content, str):
                raise ValidationError("chatHistory entries need a role of 'user' or 'assistant' and text content")
            transcript.append({"role": role, "content": content})

        adapter = self.registry.resolve(model_id)

        with self._lock:
            if self.current_generation is not None:
                raise GenerationInProgressError("A generation is already in progress for this session")
            self.messages = [
                DisplayMessage(sender=m["role"], text=m["content"], is_initial=i < 2)
                for i, m in enumerate(transcript)
            ]
            self.chat_handle = ChatHandle(
                adapter=adapter,
                system=system_instructions(),
                model_id=model_id,
                params=_validate_params(params),
                transcript=transcript,
            )
            self.last_restart_checkpoint = None
            self.state = SessionStatus.COMPLETED if transcript else SessionStatus.IDLE

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "session_id": self.session_id,
                "state": self.state.value,
                "analysis_id": str(self.analysis_id) if self.analysis_id else None,
                "is_generating": self.is_generating,
                "can_restart": self.last_restart_checkpoint is not None,
                "model_id": self.chat_handle.model_id if self.chat_handle else None,
                "messages": [m.to_dict() for m in self.messages],
                "updated_at": self.updated_at.isoformat(),
            }

    # Turn setup (caller holds the lock)

    def _begin_initial(
        self,
        adapter: ModelAdapter,
        query: Optional[str],
        image: Optional[ImageInput],
        report_type: str,
        model_id: str,
        params: Dict[str, Any],
    ) -> StreamRelay:
        prompt = build_report_prompt(report_type, query, has_image=image is not None)
        user_text = query or f"[Image: {(image.filename if image else None) or 'upload'}]"

        handle = ChatHandle(
            adapter=adapter,
            system=system_instructions(),
            model_id=model_id,
            params=params,
        )
        self.messages = []
        self.chat_handle = handle
        self.last_restart_checkpoint = RestartCheckpoint(
            kind="initial",
            model_id=model_id,
            params=dict(params),
            message_count=0,
            query_text=query,
            image=image,
            report_type=report_type,
        )

        return self._launch(
            kind="initial",
            handle=handle,
            prompt=prompt,
            history=[],
            display_text=user_text,
            image=image,
            query_text=query,
            report_type=report_type,
        )

    def _begin_followup(self, handle: ChatHandle, text: Optional[str], command: Optional[str]) -> StreamRelay:
        prompt = build_followup_prompt(text, command)
        display_text = (text or "").strip() or (command or "").strip()

        previous = self.last_restart_checkpoint
        self.last_restart_checkpoint = RestartCheckpoint(
            kind="followup",
            model_id=handle.model_id,
            params=dict(handle.params),
            message_count=len(self.messages),
            query_text=previous.query_text if previous else None,
            report_type=previous.report_type if previous else None,
            followup_text=text,
            command=command,
            transcript=tuple(dict(m) for m in handle.transcript),
            chat_handle=handle,
        )

        return self._launch(
            kind="followup",
            handle=handle,
            prompt=prompt,
            history=list(handle.transcript),
            display_text=display_text,
        )

    def _launch(
        self,
        kind: str,
        handle: ChatHandle,
        prompt: str,
        history: List[Dict[str, str]],
        display_text: str,
        image: Optional[ImageInput] = None,
        query_text: Optional[str] = None,
        report_type: Optional[str] = None,
    ) -> StreamRelay:
        is_initial = kind == "initial"
        user_message = DisplayMessage(sender="user", text=display_text, is_initial=is_initial)
        placeholder = DisplayMessage(
            sender="assistant",
            model_id=handle.model_id,
            loading=True,
            is_initial=is_initial,
        )
        self.messages.extend([user_message, placeholder])

        cancel = CancelToken()
        generation = Generation(
            kind=kind,
            handle=handle,
            prompt=prompt,
            history=history,
            user_message=user_message,
            placeholder=placeholder,
            persisted_user_text=display_text,
            cancel=cancel,
            relay=StreamRelay(cancel=cancel),
            image=image,
            query_text=query_text,
            report_type=report_type,
        )
        generation.thread = threading.Thread(
            target=self._run,
            args=(generation,),
            name=f"sift-generation-{generation.id}",
            daemon=True,
        )

        self.current_generation = generation
        self.state = SessionStatus.STARTING
        self.updated_at = datetime.utcnow()

        logger.info(
            f"Session {self.session_id}: starting {kind} generation {generation.id} "
            f"with {handle.model_id} ({len(history)} history messages)"
        )
        generation.thread.start()
        return generation.relay

    # Worker

    def _run(self, generation: Generation) -> None:
        relay = generation.relay
        handle = generation.handle
        try:
            deltas = handle.adapter.generate(
                generation.prompt,
                history=generation.history,
                image=generation.image,
                params=handle.params,
                system=handle.system,
                cancel=generation.cancel,
            )
            drained = relay.pump(deltas, on_delta=lambda delta: self._on_delta(generation, delta))

            if drained and relay.seal():
                self._complete(generation)
            elif relay.state == RelayState.ERROR:
                self._mark_failed(generation, relay.error)
            else:
                if relay.state == RelayState.PEER_CLOSED:
                    logger.info(f"Session {self.session_id}: client disconnected during {generation.id}")
                self._mark_stopped(generation)
        except Exception as e:
            logger.exception(f"Session {self.session_id}: generation {generation.id} crashed: {e}")
            relay.fail(e)
            self._mark_failed(generation, e)

    def _on_delta(self, generation: Generation, delta: Delta) -> None:
        with self._lock:
            if generation.finalized:
                return
            if self.state == SessionStatus.STARTING and self.current_generation is generation:
                self.state = SessionStatus.STREAMING
            generation.placeholder.text += delta.text
            if delta.citations:
                generation.placeholder.citations = _merge_citations(generation.placeholder.citations, delta.citations)

    def _complete(self, generation: Generation) -> None:
        relay = generation.relay
        handle = generation.handle

        with self._lock:
            text = generation.placeholder.text
            citations = generation.placeholder.citations
            handle.transcript.extend(
                [
                    {"role": "user", "content": generation.prompt},
                    {"role": "assistant", "content": text},
                ]
            )

        analysis_id = self._persist(generation, text, citations)

        with self._lock:
            if analysis_id is not None:
                handle.analysis_id = analysis_id
            generation.finalized = True
            generation.placeholder.loading = False
            if self.current_generation is generation:
                self.current_generation = None
                self.state = SessionStatus.COMPLETED
            self.updated_at = datetime.utcnow()

        if analysis_id is not None:
            relay.emit_control("analysis_id", {"analysis_id": str(analysis_id)})
        relay.complete(INITIAL_COMPLETE_MESSAGE if generation.kind == "initial" else FOLLOWUP_COMPLETE_MESSAGE)
        logger.info(f"Session {self.session_id}: generation {generation.id} completed ({len(text)} chars)")

    def _persist(
        self,
        generation: Generation,
        text: str,
        citations: Optional[List[Dict[str, Any]]],
    ) -> Optional[uuid.UUID]:
        """Record the finished turn. Returns the analysis id when an analysis was created."""
        if self.persistence is None:
            return None

        handle = generation.handle
        try:
            if generation.kind == "initial":
                analysis_id, _ = self.persistence.record_initial_turn(
                    query=generation.query_text,
                    report_type=generation.report_type,
                    model_id=handle.model_id,
                    user_text=generation.persisted_user_text,
                    report_text=text,
                    image_ref=generation.image.filename if generation.image else None,
                    citations=citations,
                )
                return analysis_id
            if handle.analysis_id is None:
                logger.info(f"Session {self.session_id}: follow-up without an analysis, not persisted")
                return None
            self.persistence.append_turn(
                handle.analysis_id,
                generation.persisted_user_text,
                text,
                handle.model_id,
                citations=citations,
            )
        except SiftError as e:
            logger.error(f"Session {self.session_id}: failed to persist generation {generation.id}: {e.message}")
        return None

    def _mark_stopped(self, generation: Generation) -> None:
        with self._lock:
            if generation.finalized:
                return
            generation.finalized = True
            partial = generation.placeholder.text
            generation.placeholder.text = f"{partial}\n\n{STOPPED_MARKER}" if partial else STOPPED_MARKER
            generation.placeholder.loading = False
            if self.current_generation is generation:
                self.current_generation = None
                self.state = SessionStatus.STOPPED
            self.updated_at = datetime.utcnow()

    def _mark_failed(self, generation: Generation, error: Optional[BaseException]) -> None:
        with self._lock:
            if generation.finalized:
                return
            generation.finalized = True
            if isinstance(error, SiftError):
                message = error.message
            else:
                message = str(error) if error else "Generation failed"
            generation.placeholder.text = message
            generation.placeholder.is_error = True
            generation.placeholder.loading = False
            if self.current_generation is generation:
                self.current_generation = None
                self.state = SessionStatus.FAILED
            self.updated_at = datetime.utcnow()


class SessionRegistry:
    """In-process map of live sessions, so stop and restart can reach them."""

    def __init__(self, capacity: Optional[int] = None):
        self.capacity = capacity or settings.SESSION_CAPACITY
        self._sessions: "OrderedDict[str, SessionEngine]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, session: SessionEngine) -> SessionEngine:
        with self._lock:
            self._sessions[session.session_id] = session
            self._sessions.move_to_end(session.session_id)
            self._evict()
        return session

    def find(self, session_id: Optional[str]) -> Optional[SessionEngine]:
        if not session_id:
            return None
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._sessions.move_to_end(session_id)
            return session

    def get(self, session_id: str) -> SessionEngine:
        session = self.find(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def remove(self, session_id: str) -> Optional[SessionEngine]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict(self) -> None:
        # Oldest idle sessions go first; sessions with a generation in flight are kept
        while len(self._sessions) > self.capacity:
            victim = next((sid for sid, s in self._sessions.items() if not s.is_generating), None)
            if victim is None:
                break
            self._sessions.pop(victim)
            logger.debug(f"Evicted session {victim}")
