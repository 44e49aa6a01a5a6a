from fastapi import FastAPI, Depends, HTTPException, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from typing import Optional
import base64
import os
import re
import fitz  # PyMuPDF

from config import FRONTEND_URL, MAX_CONCURRENT_SESSIONS, UPSTREAM_MODE, TimingPolicy
from database import init_db, get_db, create_session, fetch_questions, fetch_transcript, TranscriptStore
from interviewer import InterviewBrain, generate_primary_questions
from llm import TextService
from models import InterviewSession
from pipeline_session import PipelineInterviewSession
from realtime_session import RealtimeInterviewSession
from registry import SessionRegistry
from relay import InterviewRelay
from reports import build_report_context, generate_coaching_report, generate_screening_report
from speech import SpeechSynthesizer, SpeechTranscriber

app = FastAPI(title="Voice Interviewer API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

policy = TimingPolicy.from_env()
registry = SessionRegistry(capacity=MAX_CONCURRENT_SESSIONS)
store = TranscriptStore()
text_service = TextService(timeout_s=policy.text_timeout_s)
transcriber = SpeechTranscriber()
synthesizer = SpeechSynthesizer()


def build_interview_session(ws: WebSocket, ctx, use_realtime: Optional[bool]):
    realtime = use_realtime if use_realtime is not None else UPSTREAM_MODE == "realtime"
    if realtime:
        return RealtimeInterviewSession(ws, ctx, store, registry, policy)
    return PipelineInterviewSession(
        ws, ctx, store, registry, policy,
        brain=InterviewBrain(text_service, ctx),
        transcriber=transcriber,
        synthesizer=synthesizer,
    )


app.state.relay = InterviewRelay(
    registry, store, build_interview_session, handshake_timeout_s=policy.handshake_timeout_s
)


@app.on_event("startup")
async def startup():
    await init_db()


# ── Resume helpers ───────────────────────────────────────

RESUME_PLACEHOLDER = "Candidate summary not available."


def extract_pdf_text(file_bytes: bytes) -> str:
    doc = fitz.open(stream=file_bytes, filetype="pdf")
    text = ""
    for page in doc:
        text += page.get_text()
    doc.close()
    return re.sub(r"\n\s*\n", "\n", text).strip()


def looks_like_text(value: str, min_ratio: float = 0.4) -> bool:
    """Reject binary garbage some clients paste into the resume field."""
    if not value:
        return False
    clean = len(re.sub(r"[^a-zA-Z0-9\s]", "", value))
    return clean / len(value) > min_ratio


def choose_resume_text(resume_file: Optional[str], resume_text: Optional[str]) -> str:
    if resume_file:
        try:
            text = extract_pdf_text(base64.b64decode(resume_file.split(",")[-1]))
            if text:
                print(f"[CV] PDF extracted, {len(text)} chars")
                return text
        except Exception as e:
            print(f"[CV] PDF parse failed: {e}")
    if resume_text and looks_like_text(resume_text):
        return resume_text
    if resume_text:
        print("[CV] Ignoring corrupt resume text")
    return RESUME_PLACEHOLDER


# ── Sessions ─────────────────────────────────────────────

class SessionCreate(BaseModel):
    role: str
    experience: str
    duration_minutes: int = 15
    company_name: Optional[str] = None
    industry: Optional[str] = None
    region: Optional[str] = None
    job_description: Optional[str] = None
    language: str = "en-US"
    interview_type: str = "practice"
    rubric: Optional[str] = None
    resume_text: Optional[str] = None
    resume_file: Optional[str] = None  # base64 PDF


@app.post("/api/session")
async def create_interview_session(body: SessionCreate, db: AsyncSession = Depends(get_db)):
    if body.duration_minutes <= 0:
        raise HTTPException(400, "duration_minutes must be positive")
    if body.interview_type not in {"practice", "screening"}:
        raise HTTPException(400, "interview_type must be 'practice' or 'screening'")

    fields = body.model_dump(exclude={"resume_file", "resume_text"})
    fields["resume_text"] = choose_resume_text(body.resume_file, body.resume_text)

    questions = await generate_primary_questions(text_service, fields)
    session = await create_session(db, questions, **fields)
    print(f"[API] Session created: {session.id} with {len(questions)} questions")

    return {
        "id": session.id,
        "role": session.role,
        "experience": session.experience,
        "duration_minutes": session.duration_minutes,
        "company_name": session.company_name,
        "interview_type": session.interview_type,
        "status": session.status,
        "questions": questions,
    }


@app.get("/api/session/{session_id}")
async def get_interview_session(session_id: str, db: AsyncSession = Depends(get_db)):
    session = await db.get(InterviewSession, session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    transcript = await fetch_transcript(db, session_id)
    return {
        "id": session.id,
        "role": session.role,
        "experience": session.experience,
        "duration_minutes": session.duration_minutes,
        "status": session.status,
        "started_at": session.started_at,
        "ended_at": session.ended_at,
        "questions": await fetch_questions(db, session_id),
        "transcript": [
            {"role": e.role, "text": e.text, "created_at": e.created_at} for e in transcript
        ],
        "live": session_id in registry,
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "active_sessions": len(registry),
        "capacity": registry.capacity,
        "upstream_mode": UPSTREAM_MODE,
    }


# ── Assessments ──────────────────────────────────────────

class AssessmentRequest(BaseModel):
    session_id: str


@app.post("/api/assessments/coaching")
async def coaching_assessment(body: AssessmentRequest, db: AsyncSession = Depends(get_db)):
    report_ctx = await build_report_context(db, body.session_id)
    if report_ctx is None:
        raise HTTPException(404, "Session not found")
    return await generate_coaching_report(text_service, report_ctx)


@app.post("/api/assessments/screening")
async def screening_assessment(body: AssessmentRequest, db: AsyncSession = Depends(get_db)):
    report_ctx = await build_report_context(db, body.session_id)
    if report_ctx is None:
        raise HTTPException(404, "Session not found")
    return await generate_screening_report(text_service, report_ctx)


# ── WebSocket Interview Relay ────────────────────────────

@app.websocket("/ws")
async def websocket_interview(ws: WebSocket, session_id: Optional[str] = None, realtime: Optional[bool] = None):
    """Browser ↔ Backend ↔ interviewer (pipeline or OpenAI Realtime)."""
    await ws.app.state.relay.serve(ws, session_id=session_id, use_realtime=realtime)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
