"""Fake collaborators shared by the backend tests."""
import asyncio
import base64
import json

import pytest

from config import TimingPolicy
from database import SessionContext
from registry import SessionRegistry
from speech import Transcription


def fast_policy(**overrides) -> TimingPolicy:
    values = dict(
        small_talk_pause_s=0,
        bridge_pause_s=0,
        silence_nudge_s=0.05,
        silence_final_s=0.05,
        hold_grace_s=0.3,
        closing_grace_s=0.01,
        socket_close_delay_s=0,
        greeting_delay_s=0,
        time_check_interval_s=3600,
    )
    values.update(overrides)
    return TimingPolicy(**values)


def make_context(**overrides) -> SessionContext:
    values = dict(
        session_id="sess-0001-test",
        role="Backend Engineer",
        experience="Senior",
        company_name="Acme",
        job_description="Build and run Python services.",
        duration_minutes=15,
        questions=["Tell me about a system you built.", "How do you handle incidents?"],
    )
    values.update(overrides)
    return SessionContext(**values)


def pcm_b64(n_bytes: int = 4800) -> str:
    return base64.b64encode(b"\x01\x00" * (n_bytes // 2)).decode("ascii")


class FakeClient:
    """Stands in for the browser WebSocket."""

    def __init__(self):
        self.events = []
        self.closed = []

    async def send_json(self, event):
        self.events.append(event)

    async def close(self, code=1000, reason=None):
        self.closed.append(code)

    def types(self):
        return [e["type"] for e in self.events]

    def of_type(self, kind):
        return [e for e in self.events if e["type"] == kind]


class FakeStore:
    def __init__(self, contexts=None):
        self.contexts = {c.session_id: c for c in (contexts or [])}
        self.entries = []
        self.started = []
        self.ended = []
        self.lookups = []

    async def load_session_context(self, session_id):
        self.lookups.append(session_id)
        return self.contexts.get(session_id)

    async def append(self, session_id, role, text):
        self.entries.append((role, text))

    async def mark_started(self, session_id):
        self.started.append(session_id)

    async def mark_ended(self, session_id):
        self.ended.append(session_id)

    def roles(self):
        return [role for role, _ in self.entries]

    def texts(self, role=None):
        return [text for r, text in self.entries if role is None or r == role]


class FakeText:
    """Scripted text service; an exhausted script behaves like a failing API."""

    def __init__(self, json_replies=None, text_replies=None):
        self.json_replies = list(json_replies or [])
        self.text_replies = list(text_replies or [])
        self.prompts = []

    async def complete_json(self, prompt, max_tokens=300):
        self.prompts.append(prompt)
        return self.json_replies.pop(0) if self.json_replies else None

    async def complete_text(self, prompt, max_tokens=100):
        self.prompts.append(prompt)
        return self.text_replies.pop(0) if self.text_replies else None


class FakeTranscriber:
    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    async def transcribe(self, wav_bytes, language="en-US"):
        self.calls.append(wav_bytes)
        if not self.results:
            return Transcription(text="", no_speech_prob=1.0)
        return self.results.pop(0)


class FakeSynthesizer:
    def __init__(self, fail=False):
        self.fail = fail
        self.spoken = []

    async def synthesize(self, text, language="en-US"):
        self.spoken.append(text)
        if self.fail:
            raise RuntimeError("tts down")
        return ["AAAA", "BBBB"]


class FakeUpstream:
    """In-memory stand-in for the OpenAI Realtime socket."""

    def __init__(self):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()

    async def send(self, raw):
        self.sent.append(json.loads(raw))

    def push(self, event):
        self._incoming.put_nowait(json.dumps(event))

    def hang_up(self):
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self._incoming.put_nowait(None)

    def sent_types(self):
        return [e["type"] for e in self.sent]


@pytest.fixture
def registry():
    return SessionRegistry(capacity=5)
