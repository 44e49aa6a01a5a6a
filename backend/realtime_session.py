import asyncio
import json
import os
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import websockets

import prompts
from interview_session import LiveInterviewSession, Phase


def build_openai_ws_url() -> str:
    model = os.getenv("LIVE_MODEL", "gpt-realtime")
    return f"wss://api.openai.com/v1/realtime?model={model}"


class SpeakingState(Enum):
    IDLE = "IDLE"
    SPEAKING = "SPEAKING"


@dataclass
class BargeIn:
    """Candidate speech that started while the AI was talking.

    Held until the transcript for `item_id` arrives and tells us whether it
    was a real turn or a backchannel.
    """
    item_id: Optional[str]
    reaction_response_id: Optional[str] = None


def count_words(text: str) -> int:
    return len([w for w in text.split() if any(ch.isalnum() for ch in w)])


def _end_interview_tool() -> dict:
    return {
        "type": "function",
        "name": "end_interview",
        "description": "Call this after you have said goodbye to end the interview.",
        "parameters": {
            "type": "object",
            "properties": {
                "reason": {"type": "string", "description": "Short reason, e.g. completed"},
            },
        },
    }


class RealtimeInterviewSession(LiveInterviewSession):
    """Relay to the OpenAI Realtime speech-to-speech endpoint.

    The upstream model runs the conversation itself. This side configures it,
    streams deltas to the client, filters backchannel barge-ins, keeps the
    model informed about remaining time and applies the shared watchdog,
    hard limit and termination rules.
    """

    mode = "realtime"

    def __init__(self, ws, ctx, store, registry, policy=None, *,
                 api_key: Optional[str] = None, url: Optional[str] = None,
                 voice: Optional[str] = None, connect=websockets.connect, **kwargs):
        super().__init__(ws, ctx, store, registry, policy, **kwargs)
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.url = url or build_openai_ws_url()
        self.voice = voice or os.getenv("REALTIME_VOICE", "alloy")
        self._connect = connect

        self.upstream = None
        self.speaking = SpeakingState.IDLE
        self.barge_in: Optional[BargeIn] = None
        self.current_response_id: Optional[str] = None
        self.greeting_requested = False
        self.greeting_done = False
        self.candidate_turns = 0
        self.announced_marks: set = set()
        self._ai_text: list[str] = []
        self._pending_close_reason: Optional[str] = None
        self._responses_before_close = 0
        self._cancel_next_response = False
        self._muted_response_id: Optional[str] = None

    # ── Upstream plumbing ────────────────────────────────

    def session_update(self, enable_vad: bool) -> dict:
        turn_detection = None
        if enable_vad:
            turn_detection = {
                "type": "server_vad",
                "threshold": 0.5,
                "prefix_padding_ms": 300,
                "silence_duration_ms": 500,
                "create_response": True,
                # Barge-ins are judged here; a backchannel must not cut the AI off.
                "interrupt_response": False,
            }
        return {
            "type": "session.update",
            "session": {
                "instructions": prompts.build_realtime_instructions(self.ctx),
                "modalities": ["text", "audio"],
                "voice": self.voice,
                "input_audio_format": "pcm16",
                "output_audio_format": "pcm16",
                "input_audio_transcription": {"model": "whisper-1"},
                "tools": [_end_interview_tool()],
                "tool_choice": "auto",
                "turn_detection": turn_detection,
            },
        }

    async def send_upstream(self, event: dict) -> None:
        if self.upstream is None:
            return
        try:
            await self.upstream.send(json.dumps(event))
        except websockets.ConnectionClosed as e:
            self.log(f"Upstream closed while sending {event.get('type')}: {e}")

    async def _begin(self) -> None:
        if not self.api_key:
            raise RuntimeError("OPENAI_API_KEY not configured")
        self.upstream = await self._connect(
            self.url,
            additional_headers={
                "Authorization": f"Bearer {self.api_key}",
                "OpenAI-Beta": "realtime=v1",
            },
        )
        self.log("Connected to OpenAI Realtime API")
        # Turn detection stays off until the greeting has played, so echo or
        # room noise cannot interrupt it.
        await self.send_upstream(self.session_update(enable_vad=False))
        self.spawn(self._pump_upstream())

    async def _pump_upstream(self) -> None:
        try:
            async for raw in self.upstream:
                try:
                    event = json.loads(raw)
                except json.JSONDecodeError:
                    self.log("Unparsable upstream message ignored")
                    continue
                await self.handle_upstream_event(event)
        except websockets.ConnectionClosed as e:
            self.log(f"OpenAI connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log(f"Upstream pump error: {e}")
            traceback.print_exc()
        if not self.is_terminating:
            await self.terminate("Upstream Disconnected")

    async def _request_greeting(self) -> None:
        await asyncio.sleep(self.policy.greeting_delay_s)
        if self.is_terminating:
            return
        self.log("Triggering intro greeting")
        await self.send_upstream({
            "type": "response.create",
            "response": {
                "modalities": ["text", "audio"],
                "instructions": prompts.say_exactly(prompts.greeting(self.ctx)),
            },
        })

    # ── Upstream events ──────────────────────────────────

    async def handle_upstream_event(self, event: dict) -> None:
        kind = event.get("type", "")

        if kind == "session.updated":
            if not self.greeting_requested:
                self.greeting_requested = True
                self.spawn(self._request_greeting())

        elif kind == "response.created":
            response_id = (event.get("response") or {}).get("id")
            self.current_response_id = response_id
            self.speaking = SpeakingState.SPEAKING
            self.watchdog.cancel()
            if self.barge_in is not None and self.barge_in.reaction_response_id is None:
                self.barge_in.reaction_response_id = response_id
            if self._cancel_next_response:
                # Reply to a backchannel that was judged before its response existed.
                self._cancel_next_response = False
                self.log("Cancelling response to backchannel")
                await self._cancel_current_response()
            await self.send({"type": "response_start"})

        elif kind == "response.audio.delta":
            delta = event.get("delta", "")
            if delta and not self._is_muted():
                await self.send({"type": "audio_chunk", "audio": delta})

        elif kind == "response.audio_transcript.delta":
            delta = event.get("delta", "")
            if delta and not self._is_muted():
                self._ai_text.append(delta)
                await self.send({"type": "text_delta", "text": delta})

        elif kind == "input_audio_buffer.speech_started":
            self.watchdog.cancel()
            # A backchannel verdict only covers the reply to that backchannel.
            self._cancel_next_response = False
            if self.speaking is SpeakingState.SPEAKING:
                self.log("Candidate speech while AI is talking: possible barge-in")
                self.barge_in = BargeIn(item_id=event.get("item_id"))
            else:
                self.barge_in = None

        elif kind == "conversation.item.input_audio_transcription.completed":
            await self._on_candidate_transcript(event.get("item_id"), event.get("transcript", ""))

        elif kind == "response.function_call_arguments.done":
            await self._on_function_call(event)

        elif kind == "response.done":
            await self._on_response_done(event.get("response") or {})

        elif kind == "error":
            detail = event.get("error", {})
            message = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)
            self.log(f"OpenAI error: {message}")
            await self.send({"type": "error", "error": message, "fatal": False})

    async def _on_candidate_transcript(self, item_id: Optional[str], transcript: str) -> None:
        text = (transcript or "").strip()
        barge_in = self.barge_in
        if barge_in is not None and barge_in.item_id in (None, item_id):
            self.barge_in = None
            if count_words(text) < self.policy.backchannel_max_words:
                await self._drop_backchannel(item_id, barge_in, text)
                return
            self.log("Barge-in confirmed as a real turn")
            if self.speaking is SpeakingState.SPEAKING \
                    and self.current_response_id != barge_in.reaction_response_id:
                # The AI is still on the turn the candidate talked over.
                await self._cancel_current_response()
            await self.send({"type": "interruption"})

        if not text:
            return
        self.reset_silence()
        self.log(f"Candidate: {text[:120]}")
        await self.store.append(self.session_id, "candidate", text)
        self.candidate_turns += 1
        if self.phase is Phase.SMALL_TALK:
            self.set_phase(Phase.INTERVIEW)

    async def _drop_backchannel(self, item_id: Optional[str], barge_in: BargeIn, text: str) -> None:
        self.log(f"Backchannel ignored: '{text}'")
        if item_id:
            await self.send_upstream({"type": "conversation.item.delete", "item_id": item_id})
        if barge_in.reaction_response_id is None:
            self._cancel_next_response = True
        elif self.speaking is SpeakingState.SPEAKING \
                and self.current_response_id == barge_in.reaction_response_id:
            await self._cancel_current_response()

    async def _cancel_current_response(self) -> None:
        """Cancel the in-flight response and stop relaying its remaining deltas."""
        self._muted_response_id = self.current_response_id
        await self.send_upstream({"type": "response.cancel"})

    def _is_muted(self) -> bool:
        return self._muted_response_id is not None and self._muted_response_id == self.current_response_id

    async def _on_response_done(self, response: dict) -> None:
        status = response.get("status")
        text = "".join(self._ai_text).strip()
        self._ai_text = []
        self.speaking = SpeakingState.IDLE
        self.current_response_id = None
        self._muted_response_id = None

        if text and status != "cancelled":
            await self.store.append(self.session_id, "interviewer", text)
        await self.send({"type": "response_done"})

        if not self.greeting_done and not self.is_closing:
            self.greeting_done = True
            self.log("Greeting finished. Enabling turn detection.")
            await self.send_upstream(self.session_update(enable_vad=True))
            self.set_phase(Phase.SMALL_TALK)
            self.spawn(self._monitor_time())

        if self._pending_close_reason is not None:
            if self._responses_before_close > 0:
                self._responses_before_close -= 1
                return
            # Goodbye has finished generating: give the client time to play it.
            reason = self._pending_close_reason
            self._pending_close_reason = None
            super().schedule_close(reason)
            return
        self.arm_after_speaking()

    async def _on_function_call(self, event: dict) -> None:
        if event.get("name") != "end_interview":
            return
        try:
            args = json.loads(event.get("arguments") or "{}")
        except json.JSONDecodeError:
            args = {}
        reason = args.get("reason", "completed") if isinstance(args, dict) else "completed"
        self.log(f"end_interview tool called, reason={reason}")
        await self.send_upstream({
            "type": "conversation.item.create",
            "item": {
                "type": "function_call_output",
                "call_id": event.get("call_id", ""),
                "output": json.dumps({"status": "ok"}),
            },
        })
        if self.is_closing:
            return
        self.set_phase(Phase.CLOSING)
        self.watchdog.cancel()
        self.deadline.cancel()
        # The tool call is part of the goodbye response; close after it is done.
        self._close_after_response("Interview Complete", responses_to_skip=0)

    # ── Pacing ───────────────────────────────────────────

    async def _monitor_time(self) -> None:
        while not self.is_closing:
            await asyncio.sleep(self.policy.time_check_interval_s)
            await self.check_time_remaining()

    async def check_time_remaining(self) -> Optional[int]:
        """Inject a time-check note once per crossed mark. Returns the mark announced."""
        if self.is_closing:
            return None
        remaining_min = self.remaining_s / 60
        crossed = [
            m for m in self.policy.time_warnings_min
            if m < self.ctx.duration_minutes and remaining_min <= m and m not in self.announced_marks
        ]
        if not crossed:
            return None
        self.announced_marks.update(crossed)
        mark = min(crossed)
        self.log(f"Time check: {mark} min remaining")
        if mark <= 3 and self.phase is Phase.INTERVIEW:
            self.set_phase(Phase.Q_AND_A)
        await self.send_upstream({
            "type": "conversation.item.create",
            "item": {
                "type": "message",
                "role": "system",
                "content": [{"type": "input_text", "text": prompts.time_check_note(mark)}],
            },
        })
        return mark

    # ── Strategy interface ───────────────────────────────

    async def say(self, text: str) -> None:
        await self.send_upstream({
            "type": "response.create",
            "response": {
                "modalities": ["text", "audio"],
                "instructions": prompts.say_exactly(text),
            },
        })

    def schedule_close(self, reason: str) -> None:
        # The goodbye was requested with response.create. A response still in
        # flight (e.g. one just cancelled) finishes first.
        skip = 1 if self.speaking is SpeakingState.SPEAKING else 0
        self._close_after_response(reason, responses_to_skip=skip)

    def _close_after_response(self, reason: str, responses_to_skip: int) -> None:
        # The long timer is a backstop in case the upstream never answers.
        self._pending_close_reason = reason
        self._responses_before_close = responses_to_skip
        self.closer.arm("close_backstop", self.policy.closing_grace_s * 4, self._close_backstop)

    async def _close_backstop(self) -> None:
        await self.terminate(self._pending_close_reason or "Interview Complete")

    async def interrupt_for_hard_limit(self) -> None:
        if self.speaking is SpeakingState.SPEAKING:
            await self._cancel_current_response()
        await self.send({"type": "interruption"})

    async def handle_inbound_audio(self, data: str) -> None:
        if self.upstream is None or self.is_terminating:
            return
        await self.send_upstream({
            "type": "input_audio_buffer.append",
            "audio": data.split(",")[-1],
        })

    async def commit_turn(self) -> None:
        if self.upstream is None or self.is_closing:
            return
        self.log("Force committing audio buffer")
        await self.send_upstream({"type": "input_audio_buffer.commit"})

    async def notify_playback_complete(self) -> None:
        # Audio is streamed live; response.done already armed the watchdog.
        pass

    async def close(self) -> None:
        if self.upstream is not None:
            try:
                await self.upstream.close()
            except Exception as e:
                self.log(f"Error closing upstream: {e}")
