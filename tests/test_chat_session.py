"""Turn lifecycle tests driving a session through a fake transport."""

from __future__ import annotations

import asyncio
import json

import pytest

from chat_engine.contracts import AuthParams, LineRange, TurnInput
from chat_engine.core.constants import LOGIN_REQUIRED_TEXT, SERVICE_ERROR_TEXT, TERMINAL_ERROR_TEXT
from chat_engine.core.settings import Settings
from chat_engine.services.chat_session import ChatSession, accept_range_for
from chat_engine.services.connection_manager import ConnectionState
from chat_engine.services.host_bridge import HostBridge
from chat_engine.state import Role
from conftest import agent_end, agent_start, text_chunk, thought


def _answers(session: ChatSession):
    return [message for message in session.messages if message.role is Role.ANSWER]


@pytest.mark.asyncio
async def test_start_turn_records_question_and_sends_request(session: ChatSession, transport_factory, auth) -> None:
    turn = await session.start_turn(auth, TurnInput(prompt="Explain this", file_path="a.py", language="python"))

    question = session.messages[0]
    assert question.role is Role.QUESTION
    assert question.text == "Explain this"
    assert question.username == "Dev User"
    assert question.input_info is not None and question.input_info.prompt == "Explain this"
    assert turn.finished is False

    event, payload = transport_factory.latest.emitted[0]
    assert event == "chat"
    assert payload["conversation_id"] == "conv-test"
    assert payload["action"] == "chat"
    assert payload["filePath"] == "a.py"
    assert payload["stream"] is True


@pytest.mark.asyncio
async def test_chunks_before_first_tick_are_revealed_whole(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="greet"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    animator = session.state.current_stream()
    for offset, chunk in enumerate(["Hel", "lo ", "world"], start=2):
        await transport.deliver("json", text_chunk(chunk, offset=offset))

    while not animator.buffer.drained:
        animator.tick()

    assert _answers(session)[0].text == "Hello world"
    assert session.resume_cursor == 4


@pytest.mark.asyncio
async def test_step_goes_from_pending_to_finished_once(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="search"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start())
    animator = session.state.current_stream()
    await transport.deliver("json", thought("node_started", data={"title": "*Search"}))
    animator.buffer.flush()
    animator.render()

    message = _answers(session)[0]
    assert "start-step" in message.rendered and "is-finished" not in message.rendered

    await transport.deliver("json", thought("node_finished", data={"title": "*Search"}))
    finished_render = message.rendered
    assert "is-finished" in finished_render

    await transport.deliver("json", agent_end())
    assert message.rendered.count("is-finished") == 1
    assert message.steps.pending() == []


@pytest.mark.asyncio
async def test_disconnect_mid_stream_keeps_partial_answer_and_cursor(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="long answer"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    animator = session.state.current_stream()
    await transport.deliver("json", text_chunk("Partial ans", offset=2))
    animator.buffer.flush()
    animator.render()
    await transport.deliver("json", text_chunk("wer.", offset=3))

    await transport.deliver("disconnect")

    message = _answers(session)[0]
    assert message.completed is True
    assert message.text == "Partial ans"
    assert session.resume_cursor == 3
    assert session.resumable is True
    assert session.state.interruption == "connection-lost"
    assert session.state.turn is not None and session.state.turn.clean is False
    assert session.connection.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_new_turn_aborts_streaming_turn(session: ChatSession, transport_factory, auth) -> None:
    first_turn = await session.start_turn(auth, TurnInput(prompt="A"))
    first_transport = transport_factory.latest
    await first_transport.deliver("json", agent_start(offset=1))
    first_animator = session.state.current_stream()
    await first_transport.deliver("json", text_chunk("Answer A so", offset=2))
    first_animator.buffer.reveal(6)
    first_animator.render()

    second_turn = await session.start_turn(auth, TurnInput(prompt="B"))
    second_transport = transport_factory.latest
    await first_transport.deliver("json", text_chunk(" late", offset=3))
    await second_transport.deliver("json", agent_start())
    await second_transport.deliver("json", text_chunk("Answer B"))

    first_answer, second_answer = _answers(session)
    assert first_turn.finished and not first_turn.clean
    assert first_answer.completed is True
    assert first_answer.text == "Answer"
    assert second_turn.finished is False
    assert session.state.current_stream().buffer.pending_text == "Answer B"
    assert second_answer.text == ""
    assert first_transport.disconnect_calls == 1
    assert "rechat" not in second_transport.emitted_events()
    assert session.resume_cursor is None


@pytest.mark.asyncio
async def test_unknown_event_kind_leaves_session_untouched(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    before = [(message.id, message.text, message.completed) for message in session.messages]

    await transport.deliver("json", {"event": "totally-unknown-kind", "offset": 9})

    assert [(message.id, message.text, message.completed) for message in session.messages] == before
    assert session.resume_cursor == 1
    assert session.state.turn_active


@pytest.mark.asyncio
async def test_done_finishes_turn_and_clears_cursor(session: ChatSession, transport_factory, auth) -> None:
    turn = await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    animator = session.state.current_stream()
    await transport.deliver("json", text_chunk("All done", offset=2))
    await transport.deliver("updateChatId", "chat-1")

    await transport.deliver("message", "[DONE]")

    assert turn.finished and turn.clean
    assert session.resume_cursor is None
    assert session.connection.chat_id is None
    assert transport.disconnect_calls == 1
    assert animator.tick() is False
    assert _answers(session)[0].text == "All done"
    assert _answers(session)[0].completed is True


@pytest.mark.asyncio
async def test_events_after_turn_finished_are_ignored(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    handler = transport.handlers["json"]
    await session.stop()

    await handler(agent_start(offset=5))

    assert _answers(session) == []
    assert session.resume_cursor is None


@pytest.mark.asyncio
async def test_backend_error_replaces_answer_with_apology(session: ChatSession, transport_factory, auth) -> None:
    turn = await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    await transport.deliver("json", text_chunk("half an ans", offset=2))

    await transport.deliver("json", thought("error", answer="model crashed", offset=3))

    message = _answers(session)[0]
    assert message.text == TERMINAL_ERROR_TEXT
    assert message.completed is True
    assert turn.finished and not turn.clean
    assert session.resume_cursor is None
    assert session.state.interruption == "backend-error"
    assert transport.disconnect_calls == 1
    assert session.connection.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_transport_error_adds_service_notice(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))

    await transport.deliver("error", "boom")

    assert session.messages[-1].role is Role.NOTICE
    assert session.messages[-1].text == SERVICE_ERROR_TEXT
    assert session.state.interruption == "transport-error"
    assert session.resume_cursor == 1


@pytest.mark.asyncio
async def test_missing_credentials_ask_for_login(session: ChatSession, transport_factory) -> None:
    turn = await session.start_turn(AuthParams(username="dev"), TurnInput(prompt="hi"))

    assert turn.finished
    assert [message.text for message in session.messages] == [LOGIN_REQUIRED_TEXT]
    assert transport_factory.transports == []


@pytest.mark.asyncio
async def test_handshake_failure_finishes_turn_with_notice(session: ChatSession, transport_factory, auth) -> None:
    transport_factory.fail_connect = True

    turn = await session.start_turn(auth, TurnInput(prompt="hi"))

    assert turn.finished and not turn.clean
    assert session.messages[-1].text == SERVICE_ERROR_TEXT
    assert session.state.interruption == "handshake-failed"
    assert session.connection.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_resume_replays_from_cursor_after_loss(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("updateChatId", "chat-5")
    await transport.deliver("json", agent_start(offset=1))
    await transport.deliver("json", text_chunk("Hel", offset=2))
    await transport.deliver("disconnect")

    assert await session.resume(auth) is True

    replay = transport_factory.latest
    assert replay is not transport
    assert replay.emitted == [("rechat", {"conversation_id": "conv-test", "chat_id": "chat-5", "offset": 2})]
    assert session.state.turn_active

    await replay.deliver("json", agent_start(offset=3))
    await replay.deliver("json", text_chunk("lo", offset=4))
    await replay.deliver("message", "[DONE]")
    assert session.resume_cursor is None


@pytest.mark.asyncio
async def test_resume_without_cursor_does_nothing(session: ChatSession, transport_factory, auth) -> None:
    assert await session.resume(auth) is False
    assert transport_factory.transports == []


@pytest.mark.asyncio
async def test_next_turn_after_loss_sends_resume_first(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="first"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=7))
    await transport.deliver("disconnect")

    await session.start_turn(auth, TurnInput(prompt="second"))

    assert transport_factory.latest.emitted_events() == ["rechat", "chat"]


@pytest.mark.asyncio
async def test_stop_keeps_revealed_text_and_clears_cursor(session: ChatSession, transport_factory, auth) -> None:
    turn = await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    animator = session.state.current_stream()
    await transport.deliver("json", text_chunk("Stopped here", offset=2))
    animator.buffer.reveal(7)
    animator.render()

    await session.stop()

    assert turn.finished and not turn.clean
    assert _answers(session)[0].text == "Stopped"
    assert _answers(session)[0].completed is True
    assert session.resume_cursor is None
    assert session.state.streams == {}
    assert session.connection.state is ConnectionState.IDLE


@pytest.mark.asyncio
async def test_clear_starts_a_new_conversation(session: ChatSession, transport_factory, offset_tracker, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", {"event": "agent_advise", "advises": [{"title": "More"}]})
    await transport.deliver("json", agent_start(offset=1))

    await session.clear()

    assert session.conversation_id != "conv-test"
    assert session.messages == []
    assert session.state.advisories == []
    assert offset_tracker.cursor_for("conv-test") is None
    assert session.connection.conversation_id == session.conversation_id

    await session.start_turn(auth, TurnInput(prompt="fresh"))
    assert transport_factory.latest.emitted[0][1]["conversation_id"] == session.conversation_id


@pytest.mark.asyncio
async def test_ide_action_sends_code_and_accept_range(session: ChatSession, transport_factory, auth) -> None:
    context = json.dumps({"func_sign_range": {"start_line": 10, "end_line": 12}})
    turn_input = TurnInput(
        action="addComment",
        action_name="Add comment",
        tooltip="Add a docstring",
        code="def f():\n    return 1",
        language="python",
        context=context,
        range=LineRange(start_line=10, end_line=14),
    )

    await session.start_turn(auth, turn_input)

    question = session.messages[0]
    assert question.text == "def f():\n    return 1"
    assert question.input_info is not None and question.input_info.is_from_ide
    payload = transport_factory.latest.emitted[0][1]
    assert payload["action"] == "addComment"
    assert payload["prompt"] == "Add a docstring"
    assert payload["acceptRange"] == {"startLine": 10, "endLine": 12}
    assert payload["context_association"] is True


def test_accept_range_falls_back_to_selection_start() -> None:
    turn_input = TurnInput(action="addComment", language="python", context="not json", range=LineRange(start_line=4, end_line=9))

    assert accept_range_for(turn_input) == LineRange(start_line=4, end_line=4)
    assert accept_range_for(TurnInput(action="addComment", language="go")) is None


@pytest.mark.asyncio
async def test_drained_answer_links_are_resolved_through_host(test_settings, offset_tracker, transport_factory, auth) -> None:
    posted: list[dict] = []
    bridge = HostBridge(posted.append, id_factory=lambda: "cb-1")
    session = ChatSession(
        settings=test_settings,
        offset_tracker=offset_tracker,
        transport_factory=transport_factory,
        host_bridge=bridge,
    )
    await session.start_turn(auth, TurnInput(prompt="where"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start())
    await transport.deliver("json", text_chunk("see main.py"))
    await transport.deliver("json", agent_end())

    assert posted == [{"action": "ide.dealJumpFilePath", "params": {"mdString": "see main.py"}, "cbid": "cb-1"}]

    bridge.handle_message({"action": "ideCallback", "cbid": "cb-1", "data": {"data": "see [main.py](file://main.py)"}})

    message = _answers(session)[0]
    assert message.text == "see main.py"
    assert message.rendered == "<p>see [main.py](file://main.py)</p>"
    await session.close()


@pytest.mark.asyncio
async def test_wait_until_drained_runs_animation_to_completion(offset_tracker, transport_factory, auth) -> None:
    settings = Settings(CHAT_ANIMATION_INTERVAL_SECONDS=0, CHAT_HEARTBEAT_INTERVAL_SECONDS=3600)
    session = ChatSession(settings=settings, offset_tracker=offset_tracker, transport_factory=transport_factory)
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=1))
    await transport.deliver("json", text_chunk("y" * 300, offset=2))
    await asyncio.sleep(0)
    await transport.deliver("message", "[DONE]")

    await asyncio.wait_for(session.wait_until_drained(), timeout=1)

    assert _answers(session)[0].text == "y" * 300
    assert _answers(session)[0].completed is True
    await session.close()


@pytest.mark.asyncio
async def test_stop_after_connection_loss_drops_resume_cursor(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="hi"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start(offset=3))
    await transport.deliver("disconnect")
    assert session.resumable

    await session.stop()

    assert session.resume_cursor is None
    assert await session.resume(AuthParams(display_name="x", token="y")) is False


@pytest.mark.asyncio
async def test_late_handshake_of_aborted_turn_leaves_new_turn_alone(session: ChatSession, transport_factory, auth) -> None:
    gate = asyncio.Event()
    transport_factory.connect_gate = gate
    first = asyncio.create_task(session.start_turn(auth, TurnInput(prompt="A")))
    await asyncio.sleep(0)
    stale_transport = transport_factory.latest
    transport_factory.connect_gate = None

    second_turn = await session.start_turn(auth, TurnInput(prompt="B"))
    live = transport_factory.latest
    await live.deliver("json", agent_start(offset=1))
    await live.deliver("json", text_chunk("B answer", offset=2))

    gate.set()
    first_turn = await first

    assert first_turn.finished
    assert second_turn.finished is False
    assert session.state.interruption is None
    assert [(message.role, message.completed) for message in session.messages] == [
        (Role.QUESTION, True),
        (Role.QUESTION, True),
        (Role.ANSWER, False),
    ]
    stream = session.state.current_stream()
    assert stream.buffer.revealed_text + stream.buffer.pending_text == "B answer"
    assert stale_transport.connected is False
    assert stale_transport.emitted == []
    assert session.connection.state is ConnectionState.STREAMING

    await live.deliver("json", text_chunk("!", offset=3))
    assert stream.buffer.revealed_text + stream.buffer.pending_text == "B answer!"


@pytest.mark.asyncio
async def test_step_syntax_inside_answer_is_not_left_spinning(session: ChatSession, transport_factory, auth) -> None:
    await session.start_turn(auth, TurnInput(prompt="steps?"))
    transport = transport_factory.latest
    await transport.deliver("json", agent_start())
    await transport.deliver("json", text_chunk("see\n~~Step start: Lookup~~\ndone"))
    await transport.deliver("json", agent_end())
    await transport.deliver("message", "[DONE]")

    message = _answers(session)[0]
    assert message.completed is True
    assert 'class="start-step is-finished"' in message.rendered
    assert 'class="start-step">' not in message.rendered
