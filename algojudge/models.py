from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Float, ForeignKey, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from datetime import datetime
import enum

from algojudge.config import DATABASE_URL, DEFAULT_TIME_LIMIT, DEFAULT_MEMORY_LIMIT

engine = create_async_engine(DATABASE_URL, echo=False)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
Base = declarative_base()


class JudgeStatus(str, enum.Enum):
    QUEUED = "Queued"
    COMPILING = "Compiling"
    RUNNING = "Running"
    JUDGING = "Judging"
    ACCEPTED = "Accepted"
    WRONG_ANSWER = "Wrong Answer"
    TIME_LIMIT = "Time Limit Exceeded"
    RUNTIME_ERROR = "Runtime Error"
    COMPILE_ERROR = "Compilation Error"
    SYSTEM_ERROR = "System Error"

    @property
    def is_terminal(self) -> bool:
        return self not in (JudgeStatus.QUEUED, JudgeStatus.COMPILING,
                            JudgeStatus.RUNNING, JudgeStatus.JUDGING)


class SubmissionFrozen(Exception):
    """A submission that reached a terminal status cannot be rewritten."""


class Problem(Base):
    __tablename__ = "problems"

    id = Column(String(64), primary_key=True)
    title = Column(String(256), default="")
    time_limit = Column(Integer, default=DEFAULT_TIME_LIMIT)  # ms, wall clock
    cpu_time_limit = Column(Integer, nullable=True)  # ms, defaults to 2x time_limit
    memory_limit = Column(Integer, default=DEFAULT_MEMORY_LIMIT)  # MB
    comparison_mode = Column(String(16), default="relaxed")
    abs_tolerance = Column(Float, default=0.0)
    rel_tolerance = Column(Float, default=0.0)
    ignore_case = Column(Boolean, default=False)
    test_case_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)


class ProblemTestCase(Base):
    __tablename__ = "test_cases"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(String(64), ForeignKey("problems.id"), nullable=False, index=True)
    ordinal = Column(Integer, nullable=False)
    input = Column(Text, default="")
    expected_output = Column(Text, default="")
    is_hidden = Column(Boolean, default=True)


class Submission(Base):
    __tablename__ = "submissions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    problem_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    contest_id = Column(String(64), nullable=True, index=True)
    code = Column(Text, nullable=False)
    language = Column(String(16), nullable=False)
    status = Column(String(32), default=JudgeStatus.QUEUED.value)
    tests_passed = Column(Integer, default=0)
    total_tests = Column(Integer, default=0)
    compile_time_ms = Column(Integer, default=0)
    run_time_ms = Column(Integer, default=0)  # mean over executed test cases
    submission_time_ms = Column(Integer, default=0)  # intake to verdict
    memory_used = Column(Integer, default=0)  # KB
    message = Column(Text, default="")
    failed_case = Column(Integer, default=0)  # Failed test case number (0 if none)
    created_at = Column(DateTime, default=datetime.utcnow)
    judged_at = Column(DateTime, nullable=True)


class Contest(Base):
    __tablename__ = "contests"

    id = Column(String(64), primary_key=True)
    title = Column(String(256), default="")
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    prize_pool = Column(Float, default=0.0)
    prize_first = Column(Integer, default=50)  # percentage
    prize_second = Column(Integer, default=30)
    prize_third = Column(Integer, default=20)
    created_at = Column(DateTime, default=datetime.utcnow)

    def is_active(self, now: datetime) -> bool:
        if self.start_time and now < self.start_time:
            return False
        if self.end_time and now > self.end_time:
            return False
        return True

    @property
    def prize_distribution(self):
        return {1: self.prize_first, 2: self.prize_second, 3: self.prize_third}


class ContestProblem(Base):
    __tablename__ = "contest_problems"

    contest_id = Column(String(64), ForeignKey("contests.id"), primary_key=True)
    problem_id = Column(String(64), ForeignKey("problems.id"), primary_key=True)


class ContestParticipant(Base):
    __tablename__ = "contest_participants"

    contest_id = Column(String(64), ForeignKey("contests.id"), primary_key=True)
    user_id = Column(String(64), primary_key=True)
    username = Column(String(128), default="")
    joined_at = Column(DateTime, default=datetime.utcnow)


async def init_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session():
    async with async_session() as session:
        yield session


async def unfinished_submissions(session: AsyncSession):
    """Submissions that never reached a terminal status, oldest first."""
    pending = [s.value for s in JudgeStatus if not s.is_terminal]
    result = await session.execute(
        select(Submission).where(Submission.status.in_(pending)).order_by(Submission.id)
    )
    return result.scalars().all()


async def record_result(session: AsyncSession, submission_id: int, result) -> Submission:
    """Write a terminal judge result. Terminal rows are append-only."""
    submission = await session.get(Submission, submission_id)
    if submission is None:
        raise LookupError(f"Submission {submission_id} not found")
    if JudgeStatus(submission.status).is_terminal:
        raise SubmissionFrozen(f"Submission {submission_id} is already {submission.status}")

    submission.status = result.status.value
    submission.tests_passed = result.tests_passed
    submission.total_tests = result.total_tests
    submission.compile_time_ms = result.compile_time_ms
    submission.run_time_ms = result.run_time_ms
    submission.submission_time_ms = result.submission_time_ms
    submission.memory_used = result.memory_used
    submission.message = result.message
    submission.failed_case = result.failed_case
    submission.judged_at = datetime.utcnow()
    await session.commit()
    return submission
