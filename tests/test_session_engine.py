"""Tests for the session engine state machine."""

import threading

import pytest

from app.services.adapters import ImageInput
from app.services.errors import (
    AdapterError,
    GenerationInProgressError,
    NoCheckpointError,
    NoConversationError,
    PersistenceError,
    SessionNotFoundError,
    ValidationError,
)
from app.services.session_engine import (
    STOPPED_MARKER,
    SessionEngine,
    SessionRegistry,
    SessionStatus,
)

from tests.conftest import TEST_MODEL_ID, ScriptedAdapter, make_registry, parse_frames, wait_for


def run_to_end(session, relay):
    """Drain the relay and wait for the worker to settle."""
    frames = parse_frames(list(relay.events()))
    assert wait_for(lambda: not session.is_generating)
    return frames


class FailingPersistence:
    """Persistence stub whose writes always fail."""

    def record_initial_turn(self, **kwargs):
        raise PersistenceError("Database error: connection refused")

    def append_turn(self, *args, **kwargs):
        raise PersistenceError("Database error: connection refused")


class BlockingPersistence:
    """Persistence wrapper that holds the initial write until released."""

    def __init__(self, inner):
        self.inner = inner
        self.entered = threading.Event()
        self.release = threading.Event()

    def record_initial_turn(self, **kwargs):
        self.entered.set()
        self.release.wait(5)
        return self.inner.record_initial_turn(**kwargs)

    def append_turn(self, *args, **kwargs):
        return self.inner.append_turn(*args, **kwargs)


def test_placeholder_appended_before_first_delta():
    """Test the user message and a loading placeholder exist before any delta."""
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate)
    session = SessionEngine(make_registry(adapter))

    relay = session.start("Is this photo real?", None, "FULL_CHECK", TEST_MODEL_ID)

    assert len(session.messages) == 2
    user, placeholder = session.messages
    assert user.sender == "user"
    assert user.text == "Is this photo real?"
    assert placeholder.sender == "assistant"
    assert placeholder.loading
    assert placeholder.text == ""
    assert session.state == SessionStatus.STARTING

    gate.set()
    run_to_end(session, relay)
    assert len(session.messages) == 2


def test_three_deltas_then_complete(registry):
    """Test three deltas stream as three data events followed by complete."""
    session = SessionEngine(registry)

    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    frames = run_to_end(session, relay)

    assert frames == [
        ("message", {"delta": "Part1"}),
        ("message", {"delta": "Part2"}),
        ("message", {"delta": "Part3"}),
        ("complete", {"message": "Stream finished"}),
    ]
    placeholder = session.messages[-1]
    assert placeholder.text == "Part1Part2Part3"
    assert not placeholder.loading
    assert session.state == SessionStatus.COMPLETED
    assert session.current_generation is None


def test_stop_before_first_delta():
    """Test a stop before any delta leaves exactly the stopped marker."""
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate)
    session = SessionEngine(make_registry(adapter))

    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    assert session.stop()
    gate.set()

    frames = run_to_end(session, relay)

    assert frames == []
    placeholder = session.messages[-1]
    assert placeholder.text == STOPPED_MARKER
    assert not placeholder.loading
    assert session.state == SessionStatus.STOPPED
    assert session.current_generation is None


def test_stop_keeps_partial_text():
    """Test the stopped marker is appended to what was already received."""
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate, block_at=1)
    session = SessionEngine(make_registry(adapter))

    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    assert wait_for(lambda: session.messages[-1].text == "Part1")
    assert session.state == SessionStatus.STREAMING

    session.stop()
    gate.set()
    frames = run_to_end(session, relay)

    assert [event for event, _ in frames] == ["message"]
    assert session.messages[-1].text == f"Part1\n\n{STOPPED_MARKER}"


def test_stop_is_idempotent():
    """Test stopping twice has the same effect as stopping once."""
    gate = threading.Event()
    session = SessionEngine(make_registry(ScriptedAdapter(gate=gate)))
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)

    assert session.stop()
    snapshot = session.snapshot()
    assert not session.stop()
    assert session.snapshot()["messages"] == snapshot["messages"]

    gate.set()
    run_to_end(session, relay)
    assert session.messages[-1].text == STOPPED_MARKER


def test_stop_with_nothing_in_flight(registry):
    session = SessionEngine(registry)
    assert not session.stop()
    assert session.state == SessionStatus.IDLE


def test_followup_history_is_prior_pair_then_new_message(adapter, registry):
    """Test a follow-up sends the completed pair as history and the new message as prompt."""
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    frames = run_to_end(session, session.send_followup("What about the date?"))

    assert frames[-1] == ("complete", {"message": "Chat stream finished"})
    followup_call = adapter.calls[1]
    assert followup_call["history"] == [
        {"role": "user", "content": adapter.calls[0]["prompt"]},
        {"role": "assistant", "content": "Part1Part2Part3"},
    ]
    assert followup_call["prompt"] == "What about the date?"
    assert [m.sender for m in session.messages] == ["user", "assistant", "user", "assistant"]
    assert not session.messages[2].is_initial


def test_followup_command_expands_prompt(adapter, registry):
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    run_to_end(session, session.send_followup(None, command="another round"))

    assert adapter.calls[1]["prompt"].startswith("another round")
    assert session.messages[2].text == "another round"


def test_followup_requires_conversation(registry):
    session = SessionEngine(registry)
    with pytest.raises(NoConversationError):
        session.send_followup("hello")


def test_followup_rejects_empty_message(registry):
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    with pytest.raises(ValidationError):
        session.send_followup("   ", command=None)
    assert len(session.messages) == 2


def test_second_generation_rejected_while_in_flight():
    gate = threading.Event()
    session = SessionEngine(make_registry(ScriptedAdapter(gate=gate)))
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)

    with pytest.raises(GenerationInProgressError):
        session.start("another claim", None, "FULL_CHECK", TEST_MODEL_ID)
    with pytest.raises(GenerationInProgressError):
        session.send_followup("more")

    gate.set()
    run_to_end(session, relay)


@pytest.mark.parametrize(
    "query,image,report_type,model_id,params",
    [
        (None, None, "FULL_CHECK", TEST_MODEL_ID, None),
        ("   ", None, "FULL_CHECK", TEST_MODEL_ID, None),
        ("claim", None, "BOGUS", TEST_MODEL_ID, None),
        ("claim", None, "FULL_CHECK", "", None),
        ("claim", None, "FULL_CHECK", "unknown/model", None),
        ("claim", None, "FULL_CHECK", TEST_MODEL_ID, ["not", "a", "dict"]),
        ("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"temperature": "hot"}),
        ("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"topP": -0.5}),
        ("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"max_tokens": 10.5}),
        ("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"topK": True}),
    ],
)
def test_start_validation(adapter, registry, query, image, report_type, model_id, params):
    session = SessionEngine(registry)
    with pytest.raises(ValidationError):
        session.start(query, image, report_type, model_id, params)
    assert session.messages == []
    assert session.state == SessionStatus.IDLE
    assert adapter.calls == []


def test_numeric_params_are_coerced(adapter, registry):
    session = SessionEngine(registry)

    run_to_end(
        session,
        session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"temperature": "0.3", "max_tokens": "512.0"}),
    )

    assert adapter.calls[0]["params"] == {"temperature": 0.3, "max_tokens": 512}


def test_followup_rejects_bad_params(adapter, registry):
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"temperature": 0.5}))

    with pytest.raises(ValidationError):
        session.send_followup("Why?", params={"temperature": "hot"})

    assert len(session.messages) == 2
    assert session.chat_handle.params == {"temperature": 0.5}
    assert len(adapter.calls) == 1


def test_start_accepts_lowercase_report_type_and_image_only(adapter, registry):
    session = SessionEngine(registry)
    image = ImageInput(data=b"\x89PNG\r\n", mime_type="image/png", filename="photo.png")

    run_to_end(session, session.start(None, image, "community_note", TEST_MODEL_ID))

    assert adapter.calls[0]["image"] is image
    assert session.messages[0].text == "[Image: photo.png]"
    assert session.last_restart_checkpoint.report_type == "COMMUNITY_NOTE"


def test_restart_without_checkpoint(registry):
    session = SessionEngine(registry)
    with pytest.raises(NoCheckpointError):
        session.restart()


def test_restart_initial_turn(adapter, registry):
    """Test restarting the first turn replaces it with a fresh generation."""
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID, {"temperature": 0.2}))

    frames = run_to_end(session, session.restart())

    assert frames[-1] == ("complete", {"message": "Stream finished"})
    assert len(session.messages) == 2
    assert adapter.calls[1]["prompt"] == adapter.calls[0]["prompt"]
    assert adapter.calls[1]["params"] == {"temperature": 0.2}


def test_restart_followup_restores_transcript(adapter, registry):
    """Test restarting a follow-up regenerates it against the same history."""
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))
    run_to_end(session, session.send_followup("Why?"))
    assert len(session.messages) == 4

    run_to_end(session, session.restart())

    assert len(session.messages) == 4
    assert adapter.calls[2]["history"] == adapter.calls[1]["history"]
    assert adapter.calls[2]["prompt"] == "Why?"
    assert len(session.chat_handle.transcript) == 4


def test_restart_stops_in_flight_generation():
    """Test restart stops the running generation before regenerating."""
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate, block_at=1)
    session = SessionEngine(make_registry(adapter), settle_timeout=5)
    first_relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    assert wait_for(lambda: session.messages[-1].text == "Part1")

    second_relay = session.restart()
    gate.set()

    assert [event for event, _ in parse_frames(list(first_relay.events()))] == ["message"]
    frames = run_to_end(session, second_relay)

    assert frames[-1][0] == "complete"
    assert len(session.messages) == 2
    assert session.messages[-1].text == "Part1Part2Part3"


def test_restart_after_failed_followup(adapter, registry):
    """Test restarting a failed follow-up replaces it with exactly one new pair."""
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))
    adapter.deltas = []
    adapter.error = AdapterError("Rate limited", kind="RateLimitError")

    frames = run_to_end(session, session.send_followup("Why?"))

    assert frames == [("error", {"type": "RateLimitError", "message": "Rate limited"})]
    assert session.state == SessionStatus.FAILED
    assert len(session.messages) == 4

    adapter.deltas = ["Because"]
    adapter.error = None
    frames = run_to_end(session, session.restart())

    assert frames[-1] == ("complete", {"message": "Chat stream finished"})
    assert len(session.messages) == 4
    assert session.messages[-1].text == "Because"
    assert not session.messages[-1].is_error
    assert adapter.calls[2]["history"] == adapter.calls[1]["history"]
    assert len(session.chat_handle.transcript) == 4


def test_restart_after_failed_initial_turn(adapter, registry):
    adapter.deltas = []
    adapter.error = AdapterError("Invalid API key", kind="AuthenticationError")
    session = SessionEngine(registry)
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))
    assert session.state == SessionStatus.FAILED

    adapter.deltas = ["Report"]
    adapter.error = None
    frames = run_to_end(session, session.restart())

    assert frames[-1] == ("complete", {"message": "Stream finished"})
    assert [m.text for m in session.messages] == ["claim", "Report"]


def test_followup_requires_completed_turn():
    """Test a follow-up after a stopped report is rejected until the report completes."""
    gate = threading.Event()
    adapter = ScriptedAdapter(gate=gate)
    session = SessionEngine(make_registry(adapter))
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    session.stop()
    gate.set()
    run_to_end(session, relay)

    with pytest.raises(NoConversationError):
        session.send_followup("What about the date?")
    assert len(session.messages) == 2

    run_to_end(session, session.restart())
    frames = run_to_end(session, session.send_followup("What about the date?"))

    assert frames[-1][0] == "complete"
    assert adapter.calls[-1]["history"][0]["content"] == adapter.calls[0]["prompt"]


def test_adapter_failure_marks_placeholder():
    """Test an adapter error replaces the placeholder text and flags it."""
    adapter = ScriptedAdapter(deltas=(), error=AdapterError("Invalid API key", kind="AuthenticationError"))
    session = SessionEngine(make_registry(adapter))

    frames = run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    assert frames == [("error", {"type": "AuthenticationError", "message": "Invalid API key"})]
    placeholder = session.messages[-1]
    assert placeholder.is_error
    assert placeholder.text == "Invalid API key"
    assert not placeholder.loading
    assert session.state == SessionStatus.FAILED


def test_completed_turns_are_persisted(adapter, registry, persistence):
    """Test the initial turn creates an analysis and follow-ups append to it."""
    adapter.citations = [{"uri": "https://example.org/a", "title": "A"}]
    session = SessionEngine(registry, persistence)

    frames = run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    assert [event for event, _ in frames] == ["message", "message", "message", "analysis_id", "complete"]
    analysis_id = frames[3][1]["analysis_id"]
    assert str(session.analysis_id) == analysis_id

    run_to_end(session, session.send_followup("More sources?"))

    history = persistence.load_history(analysis_id)
    assert [(m.sender_type, m.message_text) for m in history] == [
        ("user", "claim"),
        ("assistant", "Part1Part2Part3"),
        ("user", "More sources?"),
        ("assistant", "Part1Part2Part3"),
    ]
    assert history[1].grounding_sources == [{"uri": "https://example.org/a", "title": "A"}]
    assert persistence.get_analysis(analysis_id).generated_report_text == "Part1Part2Part3"


def test_stopped_turn_is_not_persisted(persistence):
    gate = threading.Event()
    session = SessionEngine(make_registry(ScriptedAdapter(gate=gate, block_at=1)), persistence)
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    assert wait_for(lambda: session.messages[-1].text == "Part1")

    session.stop()
    gate.set()
    run_to_end(session, relay)

    assert persistence.list_recent() == []
    assert session.analysis_id is None


def test_stop_after_seal_is_ignored(registry, persistence):
    """Test a stop that arrives once the turn is committed to completing changes nothing."""
    store = BlockingPersistence(persistence)
    session = SessionEngine(registry, store)
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)
    assert store.entered.wait(5)

    assert not session.stop()
    store.release.set()
    frames = run_to_end(session, relay)

    assert [event for event, _ in frames] == ["message", "message", "message", "analysis_id", "complete"]
    assert session.state == SessionStatus.COMPLETED
    assert session.messages[-1].text == "Part1Part2Part3"
    analysis_id = frames[3][1]["analysis_id"]
    assert str(session.analysis_id) == analysis_id
    assert [m.message_text for m in persistence.load_history(analysis_id)] == ["claim", "Part1Part2Part3"]


def test_persistence_failure_still_completes(adapter, registry):
    """Test a storage failure is logged and the client still gets complete."""
    session = SessionEngine(registry, FailingPersistence())

    frames = run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    assert [event for event, _ in frames] == ["message", "message", "message", "complete"]
    assert session.analysis_id is None
    assert session.state == SessionStatus.COMPLETED

    frames = run_to_end(session, session.send_followup("next"))
    assert frames[-1][0] == "complete"


def test_peer_disconnect_is_clean_stop(persistence):
    """Test a client that disconnects mid-stream leaves a stopped, unsaved turn."""
    gate = threading.Event()
    session = SessionEngine(make_registry(ScriptedAdapter(gate=gate, block_at=1)), persistence)
    relay = session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID)

    events = relay.events()
    next(events)
    events.close()

    assert wait_for(lambda: not session.is_generating)
    assert session.state == SessionStatus.STOPPED
    assert session.messages[-1].text == f"Part1\n\n{STOPPED_MARKER}"
    assert persistence.list_recent() == []


def test_resume_from_history(adapter, registry, persistence):
    """Test a conversation can continue from stored history."""
    analysis_id, _ = persistence.record_initial_turn(
        query="claim",
        report_type="FULL_CHECK",
        model_id=TEST_MODEL_ID,
        user_text="claim",
        report_text="Stored report",
    )
    session = SessionEngine(registry, persistence)

    session.resume(analysis_id)

    assert [m.text for m in session.messages] == ["claim", "Stored report"]
    assert session.analysis_id == analysis_id
    assert session.state == SessionStatus.COMPLETED

    run_to_end(session, session.send_followup("Go on"))

    assert adapter.calls[0]["history"] == [
        {"role": "user", "content": "claim"},
        {"role": "assistant", "content": "Stored report"},
    ]
    assert len(persistence.load_history(analysis_id)) == 4


def test_adopt_history_is_stateless(adapter, registry, persistence):
    session = SessionEngine(registry, persistence)
    session.adopt_history(
        [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}],
        TEST_MODEL_ID,
    )

    frames = run_to_end(session, session.send_followup("next"))

    assert frames[-1][0] == "complete"
    assert adapter.calls[0]["history"] == [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]
    assert persistence.list_recent() == []


def test_adopt_history_rejects_bad_roles(registry):
    session = SessionEngine(registry)
    with pytest.raises(ValidationError):
        session.adopt_history([{"role": "system", "content": "x"}], TEST_MODEL_ID)


def test_snapshot(registry):
    session = SessionEngine(registry, session_id="abc")
    run_to_end(session, session.start("claim", None, "FULL_CHECK", TEST_MODEL_ID))

    snapshot = session.snapshot()

    assert snapshot["session_id"] == "abc"
    assert snapshot["state"] == "COMPLETED"
    assert snapshot["can_restart"]
    assert not snapshot["is_generating"]
    assert [m["sender"] for m in snapshot["messages"]] == ["user", "assistant"]


def test_session_registry_evicts_oldest_idle(registry):
    sessions = SessionRegistry(capacity=2)
    first = sessions.add(SessionEngine(registry, session_id="one"))
    sessions.add(SessionEngine(registry, session_id="two"))
    sessions.find("one")
    sessions.add(SessionEngine(registry, session_id="three"))

    assert len(sessions) == 2
    assert sessions.get("one") is first
    assert sessions.find("two") is None
    with pytest.raises(SessionNotFoundError):
        sessions.get("two")
