from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

import prompts
from database import fetch_transcript
from llm import TextService
from models import InterviewSession


def format_transcript(entries) -> str:
    return "\n".join(
        f"{'Interviewer' if e.role in ('interviewer', 'assistant') else 'Candidate'}: {e.text}"
        for e in entries
    )


def actual_duration_minutes(session: InterviewSession, entries) -> float:
    if session.started_at and session.ended_at:
        return (session.ended_at - session.started_at).total_seconds() / 60
    if entries:
        return (entries[-1].created_at - entries[0].created_at).total_seconds() / 60
    return 0.0


async def build_report_context(db: AsyncSession, session_id: str) -> Optional[dict]:
    session = await db.get(InterviewSession, session_id)
    if session is None:
        return None
    entries = await fetch_transcript(db, session_id)
    return {
        "session_id": session.id,
        "role": session.role,
        "seniority": session.experience,
        "duration_minutes": session.duration_minutes,
        "actual_duration_minutes": actual_duration_minutes(session, entries),
        "transcript_text": format_transcript(entries),
        "resume_text": session.resume_text or "",
        "job_description": session.job_description or "",
        "type": session.interview_type,
        "rubric": session.rubric,
    }


async def generate_coaching_report(text: TextService, report_ctx: dict) -> dict:
    report = await text.complete_json(prompts.coaching_report_prompt(report_ctx), max_tokens=2000)
    if report is None:
        print(f"[Report] Coaching report failed for {report_ctx['session_id']}")
        return {
            "pacing_score": None,
            "pacing_feedback": "Automated coaching is unavailable right now.",
            "star_analysis": [],
            "weakest_answers": [],
            "error": "generation_failed",
        }
    return report


async def generate_screening_report(text: TextService, report_ctx: dict) -> dict:
    report = await text.complete_json(prompts.screening_report_prompt(report_ctx), max_tokens=2000)
    if report is None:
        print(f"[Report] Screening report failed for {report_ctx['session_id']}")
        return {
            "overall_score": None,
            "decision": None,
            "rubric_scores": [],
            "seniority_analysis": "",
            "red_flags": ["Automated screening failed"],
            "error": "generation_failed",
        }
    decision = str(report.get("decision", "")).upper()
    if decision not in {"STRONG_HIRE", "HIRE", "NO_HIRE"}:
        report["decision"] = None
    return report
