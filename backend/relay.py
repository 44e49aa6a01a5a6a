import asyncio
import json
import traceback
from typing import Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from database import SessionContext
from registry import CapacityExceeded, SessionAlreadyActive, SessionRegistry

CLOSE_NORMAL = 1000
CLOSE_NOT_FOUND = 4004
CLOSE_ALREADY_ACTIVE = 4009
CLOSE_CAPACITY = 4029
CLOSE_BAD_HANDSHAKE = 4400

# Older clients speak the upstream's vocabulary; map it onto ours.
EVENT_ALIASES = {
    "init_session": "init",
    "input_audio_buffer.append": "audio_chunk",
    "user_speaking_end": "end_of_turn",
    "input_audio_buffer.commit": "end_of_turn",
    "ai_playback_complete": "playback_complete",
}


class ClientEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    audio: Optional[str] = None
    session_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("session_id", "sessionId")
    )
    use_realtime_api: Optional[bool] = Field(
        default=None, validation_alias=AliasChoices("use_realtime_api", "useRealtimeApi")
    )

    @property
    def kind(self) -> str:
        return EVENT_ALIASES.get(self.type, self.type)


async def receive_client_text(ws: WebSocket) -> Optional[str]:
    """Next text frame from the client, or None for a binary frame."""
    message = await ws.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(code=message.get("code", 1000))
    return message.get("text")


def parse_client_event(raw: str) -> Optional[ClientEvent]:
    try:
        return ClientEvent.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        print(f"[Relay] Ignoring malformed client message: {e}")
        return None


# (websocket, session context, use_realtime override) -> interview session
SessionFactory = Callable[[WebSocket, SessionContext, Optional[bool]], object]


class InterviewRelay:
    """Admits client connections and feeds their events to one session each."""

    def __init__(self, registry: SessionRegistry, store, session_factory: SessionFactory,
                 handshake_timeout_s: float = 10.0):
        self.registry = registry
        self.store = store
        self.session_factory = session_factory
        self.handshake_timeout_s = handshake_timeout_s

    async def _reject(self, ws: WebSocket, code: int, message: str) -> None:
        print(f"[Relay] Rejecting connection ({code}): {message}")
        try:
            await ws.send_json({"type": "error", "error": message, "fatal": True})
            await ws.close(code=code, reason=message)
        except Exception:
            pass

    async def _await_init(self, ws: WebSocket) -> Optional[ClientEvent]:
        try:
            raw = await asyncio.wait_for(receive_client_text(ws), timeout=self.handshake_timeout_s)
        except (asyncio.TimeoutError, WebSocketDisconnect):
            return None
        if raw is None:
            return None
        event = parse_client_event(raw)
        if event is None or event.kind != "init" or not event.session_id:
            return None
        return event

    async def serve(self, ws: WebSocket, session_id: Optional[str] = None,
                    use_realtime: Optional[bool] = None) -> None:
        await ws.accept()

        if not session_id:
            init = await self._await_init(ws)
            if init is None:
                await self._reject(ws, CLOSE_BAD_HANDSHAKE, "Expected an init message with a session id")
                return
            session_id = init.session_id
            if init.use_realtime_api is not None:
                use_realtime = init.use_realtime_api

        if self.registry.is_full:
            await self._reject(ws, CLOSE_CAPACITY, "Interviewer is at capacity, please try again shortly")
            return
        if session_id in self.registry:
            await self._reject(ws, CLOSE_ALREADY_ACTIVE, "This interview is already in progress")
            return

        ctx = await self.store.load_session_context(session_id)
        if ctx is None:
            await self._reject(ws, CLOSE_NOT_FOUND, "Interview session not found")
            return

        session = self.session_factory(ws, ctx, use_realtime)
        try:
            self.registry.register(session_id, session)
        except CapacityExceeded:
            await self._reject(ws, CLOSE_CAPACITY, "Interviewer is at capacity, please try again shortly")
            return
        except SessionAlreadyActive:
            await self._reject(ws, CLOSE_ALREADY_ACTIVE, "This interview is already in progress")
            return

        print(f"[Relay] Socket linked to session {session_id} ({session.mode})")
        try:
            await session.start()
        except Exception as e:
            print(f"[Relay] Session {session_id} failed to start: {e}")
            traceback.print_exc()
            await session.send({"type": "error", "error": "Interviewer unavailable", "fatal": True})
            await session.terminate("Upstream Unavailable")
            return

        try:
            await self._pump_client(ws, session)
        finally:
            await session.terminate("Client Disconnected")

    async def _pump_client(self, ws: WebSocket, session) -> None:
        while not session.is_terminating:
            try:
                raw = await receive_client_text(ws)
            except WebSocketDisconnect:
                print(f"[Relay] Client disconnected from {session.session_id}")
                return
            except RuntimeError:
                # Socket already closed by the session's termination sequence.
                return

            if raw is None:
                print(f"[Relay] Ignoring binary frame from {session.session_id}")
                continue
            event = parse_client_event(raw)
            if event is None:
                continue

            kind = event.kind
            if kind == "audio_chunk":
                if event.audio:
                    await session.handle_inbound_audio(event.audio)
            elif kind == "end_of_turn":
                session.spawn(session.commit_turn())
            elif kind == "playback_complete":
                await session.notify_playback_complete()
            elif kind == "init":
                pass
            else:
                print(f"[Relay] Unknown client event '{event.type}' ignored")
