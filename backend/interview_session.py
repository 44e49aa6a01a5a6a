import asyncio
import time
import traceback
from abc import ABC, abstractmethod
from enum import Enum, IntEnum
from typing import Optional

import prompts
from config import TimingPolicy
from database import SessionContext, TranscriptStore
from registry import SessionRegistry
from timers import TimerSlot


class Phase(str, Enum):
    INTRO = "INTRO"
    SMALL_TALK = "SMALL_TALK"
    INTERVIEW = "INTERVIEW"
    Q_AND_A = "Q_AND_A"
    CLOSING = "CLOSING"
    TERMINATED = "TERMINATED"


PHASE_ORDER = list(Phase)


class SilenceLevel(IntEnum):
    NONE = 0
    NUDGED = 1
    WARNED = 2


class ListenMode(Enum):
    NORMAL = "NORMAL"
    HOLD = "HOLD"  # candidate asked for time: one long single-stage timer


class LiveInterviewSession(ABC):
    """Per-connection interview lifecycle shared by both upstream strategies.

    Owns the phase, the silence watchdog, the hard duration limit and the
    termination sequence. Subclasses decide how audio reaches the AI and how
    the AI speaks. All state is mutated from this connection's event loop
    callbacks only, so no locking is needed beyond turn serialization.
    """

    mode = "base"

    def __init__(
        self,
        ws,
        ctx: SessionContext,
        store: TranscriptStore,
        registry: SessionRegistry,
        policy: Optional[TimingPolicy] = None,
        clock=time.monotonic,
    ):
        self.ws = ws
        self.ctx = ctx
        self.store = store
        self.registry = registry
        self.policy = policy or TimingPolicy()
        self.clock = clock

        self.phase = Phase.INTRO
        self.phase_history = [Phase.INTRO]
        self.silence_level = SilenceLevel.NONE
        self.listen_mode = ListenMode.NORMAL

        self.watchdog = TimerSlot("watchdog")
        self.deadline = TimerSlot("deadline")
        self.closer = TimerSlot("closer")

        self.started_at: Optional[float] = None
        self.is_terminating = False
        self.end_reason: Optional[str] = None
        self._tasks: set = set()

    @property
    def session_id(self) -> str:
        return self.ctx.session_id

    def log(self, message: str) -> None:
        print(f"[Session {self.session_id[:8]}] {message}")

    # ── Strategy interface ───────────────────────────────

    @abstractmethod
    async def _begin(self) -> None:
        """Open the upstream (if any) and get the greeting going."""

    @abstractmethod
    async def say(self, text: str) -> None:
        """Speak a fixed line to the candidate."""

    @abstractmethod
    async def handle_inbound_audio(self, data: str) -> None:
        ...

    @abstractmethod
    async def commit_turn(self) -> None:
        ...

    @abstractmethod
    async def notify_playback_complete(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the upstream connection."""

    async def interrupt_for_hard_limit(self) -> None:
        pass

    # ── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        self.started_at = self.clock()
        await self.store.mark_started(self.session_id)
        self.deadline.arm(
            "hard_limit", self.budget_s + self.policy.overrun_grace_s, self._on_hard_limit
        )
        self.log(
            f"Started ({self.mode}), {len(self.ctx.questions)} questions, "
            f"{self.ctx.duration_minutes} min budget"
        )
        await self._begin()

    @property
    def budget_s(self) -> float:
        return self.ctx.duration_minutes * 60

    @property
    def elapsed_s(self) -> float:
        if self.started_at is None:
            return 0.0
        return self.clock() - self.started_at

    @property
    def remaining_s(self) -> float:
        return self.budget_s - self.elapsed_s

    @property
    def is_closing(self) -> bool:
        return self.is_terminating or self.phase in (Phase.CLOSING, Phase.TERMINATED)

    def set_phase(self, phase: Phase) -> None:
        if phase is self.phase:
            return
        if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self.phase):
            self.log(f"Ignoring backward transition {self.phase.value} -> {phase.value}")
            return
        self.log(f"Phase {self.phase.value} -> {phase.value}")
        self.phase = phase
        self.phase_history.append(phase)

    async def send(self, event: dict) -> None:
        try:
            await self.ws.send_json(event)
        except Exception as e:
            self.log(f"Client send failed ({event.get('type')}): {e}")

    def spawn(self, coro) -> Optional[asyncio.Task]:
        if self.is_terminating:
            coro.close()
            return None
        task = asyncio.create_task(self._guard(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.log(f"Background task error: {e}")
            traceback.print_exc()

    # ── Silence watchdog ─────────────────────────────────

    def arm_after_speaking(self) -> None:
        """Start listening for inactivity; called whenever the AI stops talking."""
        if self.is_closing:
            return
        if self.listen_mode is ListenMode.HOLD:
            self.watchdog.arm("hold", self.policy.hold_grace_s, self._on_hold_expired)
        elif self.silence_level is SilenceLevel.NONE:
            self.watchdog.arm("silence_nudge", self.policy.silence_nudge_s, self._on_silence_nudge)
        else:
            self.watchdog.arm("silence_final", self.policy.silence_final_s, self._on_silence_timeout)

    def reset_silence(self) -> None:
        self.silence_level = SilenceLevel.NONE
        self.watchdog.cancel()

    async def _on_silence_nudge(self) -> None:
        if self.is_closing:
            return
        self.silence_level = SilenceLevel.NUDGED
        self.log("No input: nudging candidate")
        if self.phase in (Phase.INTRO, Phase.SMALL_TALK):
            await self.say(prompts.NUDGE_GREETING)
        else:
            await self.say(prompts.NUDGE_INTERVIEW)

    async def _on_hold_expired(self) -> None:
        if self.is_closing:
            return
        self.log("Hold grace expired: checking in")
        self.listen_mode = ListenMode.NORMAL
        self.silence_level = SilenceLevel.NUDGED
        await self.say(prompts.HOLD_CHECK_IN)

    async def _on_silence_timeout(self) -> None:
        if self.is_closing:
            return
        self.silence_level = SilenceLevel.WARNED
        self.log("Still no input after nudge: ending session")
        await self.finish(prompts.SILENCE_GOODBYE, "Silence Timeout")

    # ── Hard limit & closing ─────────────────────────────

    async def _on_hard_limit(self) -> None:
        if self.is_closing:
            return
        self.log(f"Hard limit hit after {self.elapsed_s:.0f}s")
        await self.interrupt_for_hard_limit()
        await self.finish(prompts.HARD_LIMIT_GOODBYE, "Hard Time Limit")

    async def finish(self, text: str, reason: str) -> None:
        """Say a last line, then terminate once it has had time to play."""
        if self.is_closing:
            return
        self.set_phase(Phase.CLOSING)
        self.watchdog.cancel()
        self.deadline.cancel()
        await self.say(text)
        self.schedule_close(reason)

    def schedule_close(self, reason: str) -> None:
        async def _close():
            await self.terminate(reason)

        self.closer.arm("close", self.policy.closing_grace_s, _close)

    async def terminate(self, reason: str) -> None:
        if self.is_terminating:
            return
        self.is_terminating = True
        self.end_reason = reason
        self.log(f"Terminating: {reason}")

        for slot in (self.watchdog, self.deadline, self.closer):
            slot.cancel()
        self.set_phase(Phase.TERMINATED)

        await self.send({"type": "call_ended", "reason": reason})
        try:
            await self.close()
        except Exception as e:
            self.log(f"Upstream close failed: {e}")
        await self.store.mark_ended(self.session_id)

        if self.policy.socket_close_delay_s > 0:
            await asyncio.sleep(self.policy.socket_close_delay_s)
        try:
            await self.ws.close(code=1000)
        except Exception:
            pass
        self.registry.remove(self.session_id, self)

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()
