from sqlalchemy import (Column, Integer, String, Text, Boolean, DateTime, Float,
                        ForeignKey, UniqueConstraint)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base, relationship
from datetime import datetime
from typing import Optional
import enum

from config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


class JudgeStatus(str, enum.Enum):
    QUEUED = "queued"
    ENQUEUED = "enqueued"
    COMPILING = "compiling"
    RUNNING = "running"
    ACCEPTED = "accepted"
    WRONG_ANSWER = "wrong_answer"
    PRESENTATION_ERROR = "presentation_error"
    TIME_LIMIT = "time_limit_exceeded"
    MEMORY_LIMIT = "memory_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    COMPILE_ERROR = "compilation_error"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self not in IN_FLIGHT

    @classmethod
    def from_verdict(cls, verdict: "Verdict") -> "JudgeStatus":
        if verdict == Verdict.PASSED:
            return cls.ACCEPTED
        return cls(verdict.value)


class Verdict(str, enum.Enum):
    """Outcome of a single test case."""
    PASSED = "passed"
    WRONG_ANSWER = "wrong_answer"
    PRESENTATION_ERROR = "presentation_error"
    TIME_LIMIT = "time_limit_exceeded"
    MEMORY_LIMIT = "memory_limit_exceeded"
    RUNTIME_ERROR = "runtime_error"
    COMPILE_ERROR = "compilation_error"
    ERROR = "error"


class TestingMode(str, enum.Enum):
    STDIN_STDOUT = "stdin_stdout"
    FUNCTION = "function"


class ProblemStatus(str, enum.Enum):
    SOLVED = "solved"
    ATTEMPTED = "attempted"
    UNATTEMPTED = "unattempted"


IN_FLIGHT = (JudgeStatus.QUEUED, JudgeStatus.ENQUEUED, JudgeStatus.COMPILING, JudgeStatus.RUNNING)
CLAIMABLE = (JudgeStatus.QUEUED, JudgeStatus.ENQUEUED)

_RESULTS = {s for s in JudgeStatus if s not in IN_FLIGHT}

TRANSITIONS = {
    JudgeStatus.QUEUED: {JudgeStatus.ENQUEUED, JudgeStatus.COMPILING, JudgeStatus.RUNNING},
    JudgeStatus.ENQUEUED: {JudgeStatus.COMPILING, JudgeStatus.RUNNING},
    JudgeStatus.COMPILING: {JudgeStatus.RUNNING, JudgeStatus.COMPILE_ERROR, JudgeStatus.ERROR},
    JudgeStatus.RUNNING: _RESULTS - {JudgeStatus.COMPILE_ERROR},
}


def can_transition(current: JudgeStatus, new: JudgeStatus) -> bool:
    return new in TRANSITIONS.get(current, ())


def status_text(status: str, failed_case: Optional[int] = None) -> str:
    """Human readable status, e.g. "wrong answer (example 3)"."""
    text = JudgeStatus(status).value.replace("_", " ")
    if status == JudgeStatus.WRONG_ANSWER.value and failed_case:
        text += f" (example {failed_case})"
    return text


class ProgrammingLanguage(Base):
    __tablename__ = "programming_languages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(64), nullable=False)
    compiler_binary = Column(String(256), default="")
    compiler_flags = Column(String(512), default="")
    interpreter_binary = Column(String(256), default="")
    interpreter_flags = Column(String(512), default="")
    memory_limit_kb = Column(Integer, nullable=False)
    time_limit_sec = Column(Float, nullable=False)
    extension = Column(String(16), nullable=False)

    @property
    def compiled(self) -> bool:
        return bool(self.compiler_binary)


class Problem(Base):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(256), default="")
    difficulty = Column(String(16), default="easy")
    time_limit_sec = Column(Float, default=1)
    memory_limit_kb = Column(Integer, default=262144)
    testing_mode = Column(String(16), default=TestingMode.STDIN_STDOUT.value)
    ignore_output_line_order = Column(Boolean, default=False)
    total_submissions = Column(Integer, default=0)
    accepted_submissions = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)

    examples = relationship("Example", back_populates="problem", order_by="Example.sort_order")
    templates = relationship("ProblemTemplate")
    testers = relationship("ProblemTester")

    def template_for(self, language_id: int) -> Optional["ProblemTemplate"]:
        return next((t for t in self.templates if t.programming_language_id == language_id), None)

    def tester_for(self, language_id: int) -> Optional["ProblemTester"]:
        return next((t for t in self.testers if t.programming_language_id == language_id), None)

    @property
    def acceptance_rate(self) -> float:
        if not self.total_submissions:
            return 0.0
        return round(self.accepted_submissions * 100 / self.total_submissions, 1)


class Example(Base):
    __tablename__ = "examples"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False, index=True)
    input = Column(Text, nullable=False)
    output = Column(Text, nullable=False)
    sort_order = Column(Integer, nullable=False)
    is_hidden = Column(Boolean, default=True, nullable=False)

    problem = relationship("Problem", back_populates="examples")


class ProblemTemplate(Base):
    __tablename__ = "problem_templates"
    __table_args__ = (UniqueConstraint("problem_id", "programming_language_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False)
    programming_language_id = Column(Integer, ForeignKey("programming_languages.id"), nullable=False)
    template_code = Column(Text, nullable=False)


class ProblemTester(Base):
    __tablename__ = "problem_testers"
    __table_args__ = (UniqueConstraint("problem_id", "programming_language_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False)
    programming_language_id = Column(Integer, ForeignKey("programming_languages.id"), nullable=False)
    tester_code = Column(Text, nullable=False)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False, index=True)
    programming_language_id = Column(Integer, ForeignKey("programming_languages.id"), nullable=False)
    user_id = Column(Integer, nullable=False, index=True)
    contest_id = Column(Integer, nullable=True)
    source_code = Column(Text, nullable=False)
    status = Column(String(32), default=JudgeStatus.QUEUED.value, nullable=False)
    time_used = Column(Float, default=0.0)  # seconds
    memory_used = Column(Integer, nullable=True)  # KB
    message = Column(Text, default="")
    failed_case = Column(Integer, nullable=True)  # 1-based example index
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def status_text(self) -> str:
        return status_text(self.status, self.failed_case)


class UserProblemStatus(Base):
    __tablename__ = "user_problem_statuses"
    __table_args__ = (UniqueConstraint("user_id", "problem_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    problem_id = Column(Integer, ForeignKey("problems.id"), nullable=False)
    status = Column(String(16), default=ProblemStatus.UNATTEMPTED.value, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


async def init_db(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    async with async_session() as session:
        yield session
