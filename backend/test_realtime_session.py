import asyncio

import pytest

import prompts
from conftest import FakeClient, FakeStore, FakeUpstream, fast_policy, make_context
from interview_session import Phase
from realtime_session import RealtimeInterviewSession, SpeakingState, count_words


def build_session(registry, *, ctx=None, policy=None, clock=None, api_key="sk-test"):
    ctx = ctx or make_context()
    client, store, upstream = FakeClient(), FakeStore([ctx]), FakeUpstream()
    connections = []

    async def connect(url, additional_headers):
        connections.append((url, additional_headers))
        return upstream

    kwargs = {"clock": clock} if clock else {}
    session = RealtimeInterviewSession(
        client, ctx, store, registry, policy or fast_policy(silence_nudge_s=5, silence_final_s=5),
        api_key=api_key, url="wss://realtime.test/v1", connect=connect, **kwargs,
    )
    registry.register(ctx.session_id, session)
    return session, client, store, upstream, connections


async def play_response(session, response_id, text, status="completed"):
    await session.handle_upstream_event({"type": "response.created", "response": {"id": response_id}})
    await session.handle_upstream_event({"type": "response.audio_transcript.delta", "delta": text})
    await session.handle_upstream_event({"type": "response.audio.delta", "delta": "UENNMTY="})
    await session.handle_upstream_event({"type": "response.done", "response": {"id": response_id, "status": status}})


async def greet(session):
    await session.handle_upstream_event({"type": "session.updated"})
    await asyncio.sleep(0.01)
    await play_response(session, "resp_greeting", "Hi, I'm your interviewer today.")


async def candidate_said(session, item_id, transcript):
    await session.handle_upstream_event({
        "type": "conversation.item.input_audio_transcription.completed",
        "item_id": item_id,
        "transcript": transcript,
    })


def test_count_words_ignores_punctuation():
    assert count_words("mm-hm") == 1
    assert count_words("  ok , sure ") == 2
    assert count_words("...") == 0


def test_greeting_plays_before_turn_detection_is_enabled(registry):
    async def scenario():
        session, client, store, upstream, connections = build_session(registry)
        await session.start()

        url, headers = connections[0]
        assert url == "wss://realtime.test/v1"
        assert headers["Authorization"] == "Bearer sk-test"
        first = upstream.sent[0]
        assert first["type"] == "session.update"
        assert first["session"]["turn_detection"] is None
        assert first["session"]["tools"][0]["name"] == "end_interview"

        await session.handle_upstream_event({"type": "session.updated"})
        await session.handle_upstream_event({"type": "session.updated"})
        await asyncio.sleep(0.01)
        greetings = [e for e in upstream.sent if e["type"] == "response.create"]
        assert len(greetings) == 1
        assert prompts.greeting(session.ctx) in greetings[0]["response"]["instructions"]
        assert session.phase is Phase.INTRO

        await play_response(session, "resp_greeting", "Hi, I'm your interviewer today.")
        vad = upstream.sent[-1]
        assert vad["type"] == "session.update"
        assert vad["session"]["turn_detection"]["type"] == "server_vad"
        assert vad["session"]["turn_detection"]["interrupt_response"] is False
        assert session.phase is Phase.SMALL_TALK
        assert session.watchdog.purpose == "silence_nudge"

        assert client.types() == ["response_start", "text_delta", "audio_chunk", "response_done"]
        assert store.texts("interviewer") == ["Hi, I'm your interviewer today."]

        await candidate_said(session, "item_1", "I'm doing well, thank you")
        assert session.phase is Phase.INTERVIEW
        assert store.texts("candidate") == ["I'm doing well, thank you"]
        await session.terminate("test over")

    asyncio.run(scenario())


def test_backchannel_during_ai_speech_is_dropped(registry):
    async def scenario():
        session, client, store, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_bc"})
        assert session.barge_in is not None
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_q1"}})

        # The server VAD answers the backchannel with a new response.
        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_react"}})
        await candidate_said(session, "item_bc", "mm-hm")

        assert {"type": "conversation.item.delete", "item_id": "item_bc"} in upstream.sent
        assert upstream.sent[-1] == {"type": "response.cancel"}
        await session.handle_upstream_event({"type": "response.audio_transcript.delta", "delta": "Sure, so"})
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_react", "status": "cancelled"}})

        assert store.texts("candidate") == []
        assert "Sure, so" not in store.texts()
        assert "interruption" not in client.types()
        assert session.phase is Phase.SMALL_TALK
        assert session.barge_in is None
        await session.terminate("test over")

    asyncio.run(scenario())


def test_backchannel_judged_before_reaction_cancels_next_response(registry):
    async def scenario():
        session, _, store, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_bc"})
        await candidate_said(session, "item_bc", "yeah")
        assert upstream.sent_types().count("response.cancel") == 0

        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_react"}})
        assert upstream.sent_types().count("response.cancel") == 1
        assert store.texts("candidate") == []
        await session.terminate("test over")

    asyncio.run(scenario())


def test_real_barge_in_is_kept_and_interrupts_client(registry):
    async def scenario():
        session, client, store, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_2"})
        await candidate_said(session, "item_2", "Actually, I wanted to add one more thing")

        assert client.types()[-1] == "interruption"
        assert store.texts("candidate") == ["Actually, I wanted to add one more thing"]
        assert "conversation.item.delete" not in upstream.sent_types()
        assert upstream.sent[-1] == {"type": "response.cancel"}

        # Deltas still in flight for the talked-over response never reach the client.
        await session.handle_upstream_event({"type": "response.audio.delta", "delta": "UENNMTY="})
        await session.handle_upstream_event({"type": "response.audio_transcript.delta", "delta": "As I was saying"})
        assert client.types()[-1] == "interruption"
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_q1", "status": "cancelled"}})
        assert "As I was saying" not in store.texts()

        # The reply to the candidate's turn plays normally.
        await play_response(session, "resp_answer", "Sure, go ahead.")
        assert client.types()[-4:] == ["response_start", "text_delta", "audio_chunk", "response_done"]
        await session.terminate("test over")

    asyncio.run(scenario())


def test_barge_in_kept_once_ai_already_answering_it(registry):
    async def scenario():
        session, client, _, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_2"})
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_react"}})
        await candidate_said(session, "item_2", "Actually, I wanted to add one more thing")

        assert "response.cancel" not in upstream.sent_types()
        await session.handle_upstream_event({"type": "response.audio.delta", "delta": "UENNMTY="})
        assert client.types()[-1] == "audio_chunk"
        await session.terminate("test over")

    asyncio.run(scenario())


def test_backchannel_verdict_expires_when_candidate_speaks_again(registry):
    async def scenario():
        session, _, _, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_q1"}})
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_bc"})
        await candidate_said(session, "item_bc", "yeah")
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_q1"}})
        assert session._cancel_next_response

        # No reply to the backchannel ever came; the candidate now takes a real turn.
        await session.handle_upstream_event({"type": "input_audio_buffer.speech_started", "item_id": "item_3"})
        assert not session._cancel_next_response
        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_answer"}})
        assert "response.cancel" not in upstream.sent_types()
        await session.terminate("test over")

    asyncio.run(scenario())


def test_time_checks_announce_each_mark_once(registry):
    now = [0.0]

    async def scenario():
        session, _, _, upstream, _ = build_session(
            registry, ctx=make_context(duration_minutes=10), clock=lambda: now[0]
        )
        await session.start()
        await greet(session)
        await candidate_said(session, "item_1", "Doing well, thanks for asking")
        assert session.phase is Phase.INTERVIEW

        now[0] = 5.5 * 60
        assert await session.check_time_remaining() == 5
        assert await session.check_time_remaining() is None
        assert session.phase is Phase.INTERVIEW

        now[0] = 9.5 * 60
        assert await session.check_time_remaining() == 1
        assert session.announced_marks == {5, 3, 1}
        assert session.phase is Phase.Q_AND_A

        note = upstream.sent[-1]
        assert note["type"] == "conversation.item.create"
        assert note["item"]["role"] == "system"
        assert note["item"]["content"][0]["text"] == prompts.time_check_note(1)
        await session.terminate("test over")

    asyncio.run(scenario())


def test_end_interview_tool_closes_after_goodbye(registry):
    async def scenario():
        session, client, store, upstream, _ = build_session(registry)
        await session.start()
        await greet(session)

        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_bye"}})
        await session.handle_upstream_event({"type": "response.audio_transcript.delta", "delta": "Thanks, goodbye!"})
        await session.handle_upstream_event({
            "type": "response.function_call_arguments.done",
            "name": "end_interview",
            "call_id": "call_1",
            "arguments": '{"reason": "completed"}',
        })
        assert session.phase is Phase.CLOSING
        assert upstream.sent[-1]["item"]["type"] == "function_call_output"
        assert session.closer.purpose == "close_backstop"

        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_bye"}})
        assert session.closer.purpose == "close"
        await asyncio.sleep(0.05)

        assert client.of_type("call_ended") == [{"type": "call_ended", "reason": "Interview Complete"}]
        assert store.texts("interviewer")[-1] == "Thanks, goodbye!"
        assert upstream.closed
        assert session.session_id not in registry

    asyncio.run(scenario())


def test_close_backstop_fires_without_response_done(registry):
    async def scenario():
        session, client, _, _, _ = build_session(registry)
        await session.start()
        await greet(session)
        await session.handle_upstream_event({
            "type": "response.function_call_arguments.done",
            "name": "end_interview",
            "call_id": "call_1",
            "arguments": "not json",
        })
        await asyncio.sleep(0.1)
        assert session.end_reason == "Interview Complete"
        assert client.closed == [1000]

    asyncio.run(scenario())


def test_hard_limit_cancels_speech_and_says_goodbye(registry):
    async def scenario():
        session, client, _, upstream, _ = build_session(
            registry,
            ctx=make_context(duration_minutes=0),
            policy=fast_policy(overrun_grace_s=0.05, closing_grace_s=0.05),
        )
        await session.start()
        await session.handle_upstream_event({"type": "response.created", "response": {"id": "resp_long"}})
        await asyncio.sleep(0.1)

        assert session.phase is Phase.CLOSING
        assert "response.cancel" in upstream.sent_types()
        assert "interruption" in client.types()
        goodbye = upstream.sent[-1]
        assert goodbye["type"] == "response.create"
        assert prompts.HARD_LIMIT_GOODBYE in goodbye["response"]["instructions"]

        # The cancelled response finishes first, then the goodbye itself.
        await session.handle_upstream_event({"type": "response.done", "response": {"id": "resp_long", "status": "cancelled"}})
        assert session.closer.purpose == "close_backstop"
        await play_response(session, "resp_bye", prompts.HARD_LIMIT_GOODBYE)
        assert session.closer.purpose == "close"

        await asyncio.sleep(0.1)
        assert client.of_type("call_ended") == [{"type": "call_ended", "reason": "Hard Time Limit"}]

    asyncio.run(scenario())


def test_upstream_drop_terminates_session(registry):
    async def scenario():
        session, client, _, upstream, _ = build_session(registry)
        await session.start()
        upstream.push({"type": "session.updated"})
        await asyncio.sleep(0.02)
        assert session.greeting_requested

        upstream.hang_up()
        await asyncio.sleep(0.02)
        assert client.of_type("call_ended") == [{"type": "call_ended", "reason": "Upstream Disconnected"}]
        assert session.phase is Phase.TERMINATED

    asyncio.run(scenario())


def test_client_audio_and_commit_are_forwarded(registry):
    async def scenario():
        session, _, _, upstream, _ = build_session(registry)
        await session.start()
        await session.handle_inbound_audio("data:audio/pcm;base64,AAAA")
        await session.commit_turn()
        assert upstream.sent[-2:] == [
            {"type": "input_audio_buffer.append", "audio": "AAAA"},
            {"type": "input_audio_buffer.commit"},
        ]
        await session.terminate("test over")

    asyncio.run(scenario())


def test_upstream_error_is_forwarded_as_non_fatal(registry):
    async def scenario():
        session, client, _, _, _ = build_session(registry)
        await session.start()
        await session.handle_upstream_event({"type": "error", "error": {"message": "rate limited"}})
        assert client.events[-1] == {"type": "error", "error": "rate limited", "fatal": False}
        assert not session.is_terminating
        assert session.speaking is SpeakingState.IDLE
        await session.terminate("test over")

    asyncio.run(scenario())


def test_missing_api_key_fails_to_start(registry, monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    async def scenario():
        session, _, _, _, connections = build_session(registry, api_key=None)
        with pytest.raises(RuntimeError):
            await session.start()
        assert connections == []
        await session.terminate("Upstream Unavailable")

    asyncio.run(scenario())
