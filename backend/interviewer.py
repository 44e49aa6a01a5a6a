import random
from dataclasses import dataclass
from enum import Enum

import prompts
from database import SessionContext
from llm import TextService


class Intent(str, Enum):
    HOLD = "HOLD"
    CONTINUE = "CONTINUE"
    FOLLOW_UP = "FOLLOW_UP"
    MOVE_ON = "MOVE_ON"


@dataclass
class AnswerDecision:
    intent: Intent
    probe: str = ""
    bridge: str = ""


class InterviewBrain:
    """Turn-level decisions for the pipeline interviewer.

    Every method degrades to a neutral default when the text service fails,
    so the state machine always has something to say and somewhere to go.
    """

    def __init__(self, text: TextService, ctx: SessionContext):
        self.text = text
        self.ctx = ctx

    async def classify_small_talk(self, said: str) -> Intent:
        data = await self.text.complete_json(prompts.small_talk_intent_prompt(said), max_tokens=20)
        intent = str((data or {}).get("intent", "")).strip().upper()
        return Intent.HOLD if intent == Intent.HOLD.value else Intent.CONTINUE

    async def small_talk_transition(self, said: str) -> str:
        reply = await self.text.complete_text(
            prompts.small_talk_transition_prompt(said, self.ctx), max_tokens=60
        )
        return reply or prompts.FALLBACK_CONTINUE

    async def classify_answer(self, question: str, answer: str) -> AnswerDecision:
        data = await self.text.complete_json(
            prompts.answer_intent_prompt(question, answer, self.ctx), max_tokens=120
        )
        if data is None:
            return AnswerDecision(Intent.MOVE_ON, bridge=prompts.FALLBACK_ACK)

        intent = str(data.get("intent", "")).strip().upper()
        probe = str(data.get("probe", "") or "").strip()
        if intent == Intent.HOLD.value:
            return AnswerDecision(Intent.HOLD)
        if intent == Intent.FOLLOW_UP.value and probe:
            return AnswerDecision(Intent.FOLLOW_UP, probe=probe)
        return AnswerDecision(Intent.MOVE_ON, bridge=random.choice(prompts.NEUTRAL_BRIDGES))

    async def follow_up_transition(self, reply: str) -> str:
        phrase = await self.text.complete_text(prompts.follow_up_transition_prompt(reply), max_tokens=20)
        return phrase or prompts.FALLBACK_ACK

    async def is_done_asking(self, said: str) -> bool:
        data = await self.text.complete_json(prompts.done_asking_prompt(said), max_tokens=10)
        if data is None:
            return False
        done = data.get("done")
        if isinstance(done, str):
            return done.strip().lower() == "true"
        return bool(done)

    async def answer_candidate_question(self, said: str) -> str:
        answer = await self.text.complete_text(
            prompts.candidate_question_prompt(said, self.ctx), max_tokens=150
        )
        return answer or prompts.FALLBACK_QA_ANSWER


async def generate_primary_questions(text: TextService, fields: dict) -> list[str]:
    """Generate the ordered question list for a new session."""
    print(f"[LLM] Generating questions for {fields.get('role')}...")
    data = await text.complete_json(prompts.question_generation_prompt(fields), max_tokens=800)
    questions = (data or {}).get("questions")
    if not isinstance(questions, list):
        return ["Tell me about yourself."]
    cleaned = [str(q).strip() for q in questions if str(q).strip()]
    return cleaned or ["Tell me about yourself."]
