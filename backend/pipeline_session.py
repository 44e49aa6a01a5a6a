import asyncio
import binascii
from enum import Enum

import prompts
from interview_session import ListenMode, LiveInterviewSession, Phase
from interviewer import Intent, InterviewBrain
from speech import SpeechSynthesizer, SpeechTranscriber, decode_audio_chunk, pcm16_mono_to_wav


class TurnState(Enum):
    ANSWERING = "ANSWERING"
    FOLLOW_UP = "FOLLOW_UP"  # a probe was asked about the current question


class PipelineInterviewSession(LiveInterviewSession):
    """Discrete transcribe -> decide -> synthesize interviewer.

    The candidate pushes audio for a turn and signals its end; the turn is
    transcribed, persisted, classified, and the reply is synthesized and sent
    as whole-utterance audio. Turns are handled one at a time.
    """

    mode = "pipeline"

    def __init__(self, ws, ctx, store, registry, policy=None, *,
                 brain: InterviewBrain, transcriber: SpeechTranscriber,
                 synthesizer: SpeechSynthesizer, **kwargs):
        super().__init__(ws, ctx, store, registry, policy, **kwargs)
        self.brain = brain
        self.transcriber = transcriber
        self.synthesizer = synthesizer

        self.questions = list(ctx.questions)
        self.question_cursor = 0
        self.turn_state = TurnState.ANSWERING
        self.audio_accumulator = bytearray()
        self._turn_lock = asyncio.Lock()

    @property
    def current_question(self) -> str:
        if self.question_cursor < len(self.questions):
            return self.questions[self.question_cursor]
        return ""

    # ── Strategy interface ───────────────────────────────

    async def _begin(self) -> None:
        await self.speak(prompts.greeting(self.ctx))
        self.set_phase(Phase.SMALL_TALK)

    async def say(self, text: str) -> None:
        await self.speak(text, force=True)

    async def handle_inbound_audio(self, data: str) -> None:
        try:
            chunk = decode_audio_chunk(data)
        except (binascii.Error, ValueError) as e:
            self.log(f"Dropping undecodable audio chunk: {e}")
            return
        if not chunk:
            return
        self.audio_accumulator.extend(chunk)
        # Silence escalation only resets once the turn proves to be speech.
        self.watchdog.cancel()

    async def notify_playback_complete(self) -> None:
        # Mid-turn playback events belong to lines the turn handler is still
        # sequencing; the last line's event arrives after the lock is released.
        if self._turn_lock.locked():
            return
        self.arm_after_speaking()

    async def close(self) -> None:
        self.audio_accumulator.clear()

    async def commit_turn(self) -> None:
        async with self._turn_lock:
            if self.is_closing:
                self.audio_accumulator.clear()
                return

            pcm = bytes(self.audio_accumulator)
            self.audio_accumulator.clear()
            if not pcm:
                self.log("Audio buffer empty. Resetting client.")
                await self._silence_reset()
                return

            result = await self.transcriber.transcribe(pcm16_mono_to_wav(pcm), self.ctx.language)
            text = result.text.strip()
            if result.no_speech_prob > self.policy.no_speech_threshold or not text:
                self.log(f"No speech detected (p={result.no_speech_prob:.2f}). Resetting client.")
                await self._silence_reset()
                return
            if self.is_closing:
                return

            self.reset_silence()
            self.log(f"Candidate: {text[:120]}")
            await self.store.append(self.session_id, "candidate", text)
            self.listen_mode = ListenMode.NORMAL

            if self.phase is Phase.SMALL_TALK:
                await self._handle_small_talk(text)
            elif self.phase is Phase.INTERVIEW:
                await self._handle_interview(text)
            elif self.phase is Phase.Q_AND_A:
                await self._handle_q_and_a(text)

    # ── Speaking ─────────────────────────────────────────

    async def speak(self, text: str, force: bool = False) -> None:
        """Persist an interviewer line, then send its caption and audio.

        Once closing has begun only forced lines (goodbyes) go out, so a turn
        still in flight cannot talk over the closing statement.
        """
        if self.is_terminating or (self.is_closing and not force):
            return
        self.log(f"Speaking: {text[:120]}")
        await self.store.append(self.session_id, "interviewer", text)
        await self.send({"type": "response_start"})
        await self.send({"type": "text_delta", "text": text})

        try:
            chunks = await self.synthesizer.synthesize(text, self.ctx.language)
        except Exception as e:
            self.log(f"Speech synthesis failed, caption only: {e}")
            chunks = []
        for chunk in chunks:
            await self.send({"type": "audio_chunk", "audio": chunk})
        await self.send({"type": "response_done"})

        # Without audio there is no playback_complete to wait for.
        if not chunks:
            self.arm_after_speaking()

    async def _speak_hold(self) -> None:
        self.listen_mode = ListenMode.HOLD
        await self.speak(prompts.HOLD_ACK)

    async def _silence_reset(self) -> None:
        await self.send({"type": "silence_reset"})
        self.arm_after_speaking()

    # ── Phase handlers ───────────────────────────────────

    async def _handle_small_talk(self, text: str) -> None:
        intent = await self.brain.classify_small_talk(text)
        if intent is Intent.HOLD:
            await self._speak_hold()
            return

        await self.speak(await self.brain.small_talk_transition(text))
        await asyncio.sleep(self.policy.small_talk_pause_s)
        if self.is_closing:
            return
        self.set_phase(Phase.INTERVIEW)
        await self._ask_current_question()

    async def _handle_interview(self, text: str) -> None:
        if self.turn_state is TurnState.FOLLOW_UP:
            self.turn_state = TurnState.ANSWERING
            await self._advance(await self.brain.follow_up_transition(text))
            return

        decision = await self.brain.classify_answer(self.current_question, text)
        if decision.intent is Intent.HOLD:
            await self._speak_hold()
        elif decision.intent is Intent.FOLLOW_UP:
            self.turn_state = TurnState.FOLLOW_UP
            await self.speak(decision.probe)
        else:
            await self._advance(decision.bridge or prompts.FALLBACK_ACK)

    async def _handle_q_and_a(self, text: str) -> None:
        if self.remaining_s <= 0 or await self.brain.is_done_asking(text):
            await self.finish(prompts.FINAL_GOODBYE, "Interview Complete")
            return
        await self.speak(await self.brain.answer_candidate_question(text))

    async def _advance(self, bridge: str) -> None:
        if self.question_cursor < len(self.questions):
            self.question_cursor += 1

        has_more = self.question_cursor < len(self.questions)
        if has_more and self.remaining_s > self.policy.question_time_floor_s:
            await self.speak(bridge)
            await asyncio.sleep(self.policy.bridge_pause_s)
            if self.is_closing:
                return
            await self._ask_current_question()
            return

        closing = prompts.CLOSING_TIME_UP if has_more else prompts.CLOSING_QUESTIONS_DONE
        self.set_phase(Phase.Q_AND_A)
        await self.speak(f"{bridge} {closing}")

    async def _ask_current_question(self) -> None:
        if self.question_cursor >= len(self.questions):
            self.set_phase(Phase.Q_AND_A)
            await self.speak(prompts.CLOSING_QUESTIONS_DONE)
            return
        await self.speak(self.current_question)
