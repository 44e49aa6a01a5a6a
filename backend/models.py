from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, func
from sqlalchemy.orm import DeclarativeBase
import datetime
import uuid


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class InterviewSession(Base):
    __tablename__ = "interview_sessions"

    id = Column(String, primary_key=True, default=_new_id)
    role = Column(String, nullable=False)
    experience = Column(String, nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=15)
    company_name = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    region = Column(String, nullable=True)
    job_description = Column(Text, nullable=True)
    resume_text = Column(Text, nullable=True)
    language = Column(String, default="en-US")
    interview_type = Column(String, default="practice")  # practice, screening
    rubric = Column(Text, nullable=True)
    status = Column(String, default="ready")  # ready, in_progress, completed
    started_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime, default=func.now())


class InterviewQuestion(Base):
    __tablename__ = "interview_questions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("interview_sessions.id"), nullable=False, index=True)
    order = Column(Integer, nullable=False)
    question = Column(Text, nullable=False)


class TranscriptEntry(Base):
    __tablename__ = "transcript_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("interview_sessions.id"), nullable=False, index=True)
    role = Column(String, nullable=False)  # candidate, interviewer
    text = Column(Text, nullable=False)
    # Set in Python: SQLite's CURRENT_TIMESTAMP only has one-second resolution.
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
