from dataclasses import dataclass, field
from typing import Optional
import datetime
import traceback

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy import select, update

from config import DATABASE_URL
from models import Base, InterviewSession, InterviewQuestion, TranscriptEntry

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind: AsyncEngine = engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db():
    async with async_session() as session:
        yield session


@dataclass
class SessionContext:
    """Everything a live interview needs to know about its session row."""
    session_id: str
    role: str
    experience: str = "Not specified"
    company_name: str = "our company"
    industry: str = "General Technology"
    region: str = "Global"
    job_description: str = ""
    resume_text: str = ""
    duration_minutes: int = 15
    language: str = "en-US"
    interview_type: str = "practice"
    rubric: Optional[str] = None
    questions: list[str] = field(default_factory=list)


async def create_session(db: AsyncSession, questions: list[str], **fields) -> InterviewSession:
    session = InterviewSession(**fields)
    db.add(session)
    await db.flush()
    for index, question in enumerate(questions):
        db.add(InterviewQuestion(session_id=session.id, question=question, order=index + 1))
    await db.commit()
    return session


async def fetch_questions(db: AsyncSession, session_id: str) -> list[str]:
    result = await db.execute(
        select(InterviewQuestion.question)
        .where(InterviewQuestion.session_id == session_id)
        .order_by(InterviewQuestion.order)
    )
    return list(result.scalars().all())


async def fetch_transcript(db: AsyncSession, session_id: str) -> list[TranscriptEntry]:
    result = await db.execute(
        select(TranscriptEntry)
        .where(TranscriptEntry.session_id == session_id)
        .order_by(TranscriptEntry.created_at, TranscriptEntry.id)
    )
    return list(result.scalars().all())


class TranscriptStore:
    """Session lookup and append-only transcript writes used by live sessions.

    Writes never raise: a failed insert is logged and the conversation goes on.
    """

    def __init__(self, session_factory: async_sessionmaker = async_session):
        self.session_factory = session_factory

    async def load_session_context(self, session_id: str) -> Optional[SessionContext]:
        async with self.session_factory() as db:
            row = await db.get(InterviewSession, session_id)
            if row is None:
                return None
            questions = await fetch_questions(db, session_id)
        return SessionContext(
            session_id=row.id,
            role=row.role,
            experience=row.experience or "Not specified",
            company_name=row.company_name or "our company",
            industry=row.industry or "General Technology",
            region=row.region or "Global",
            job_description=row.job_description or "",
            resume_text=row.resume_text or "",
            duration_minutes=row.duration_minutes or 15,
            language=row.language or "en-US",
            interview_type=row.interview_type or "practice",
            rubric=row.rubric,
            questions=questions,
        )

    async def append(self, session_id: str, role: str, text: str) -> None:
        try:
            async with self.session_factory() as db:
                db.add(TranscriptEntry(session_id=session_id, role=role, text=text))
                await db.commit()
        except Exception as e:
            print(f"[DB] Transcript write failed for {session_id} ({role}): {e}")
            traceback.print_exc()

    async def mark_started(self, session_id: str) -> None:
        await self._stamp(session_id, started_at=_now(), status="in_progress")

    async def mark_ended(self, session_id: str) -> None:
        await self._stamp(session_id, ended_at=_now(), status="completed")

    async def _stamp(self, session_id: str, **values) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(InterviewSession).where(InterviewSession.id == session_id).values(**values)
                )
                await db.commit()
        except Exception as e:
            print(f"[DB] Could not update session {session_id}: {e}")


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)
