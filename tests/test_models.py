import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from algojudge.judge import JudgeResult
from algojudge.models import Base, Contest, JudgeStatus, Submission, SubmissionFrozen, record_result


@pytest_asyncio.fixture
async def session():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as s:
        yield s
    await engine.dispose()


async def add_submission(session):
    submission = Submission(problem_id="sum", user_id="alice", code="print(3)", language="python",
                            total_tests=2)
    session.add(submission)
    await session.commit()
    return submission.id


@pytest.mark.asyncio
async def test_record_result_writes_terminal_row(session):
    submission_id = await add_submission(session)
    result = JudgeResult(JudgeStatus.ACCEPTED, 2, 2, compile_time_ms=12, run_time_ms=30,
                         memory_used=9000, message="Passed 2/2 test cases")
    result.submission_time_ms = 80

    submission = await record_result(session, submission_id, result)
    assert submission.status == "Accepted"
    assert (submission.compile_time_ms, submission.run_time_ms, submission.submission_time_ms) == (12, 30, 80)
    assert submission.judged_at is not None


@pytest.mark.asyncio
async def test_terminal_rows_are_frozen(session):
    submission_id = await add_submission(session)
    await record_result(session, submission_id, JudgeResult(JudgeStatus.WRONG_ANSWER, 1, 2, failed_case=2))

    with pytest.raises(SubmissionFrozen):
        await record_result(session, submission_id, JudgeResult(JudgeStatus.ACCEPTED, 2, 2))
    submission = await session.get(Submission, submission_id)
    assert submission.status == "Wrong Answer"
    assert submission.failed_case == 2


@pytest.mark.asyncio
async def test_record_result_missing_row(session):
    with pytest.raises(LookupError):
        await record_result(session, 404, JudgeResult(JudgeStatus.ACCEPTED))


def test_terminal_statuses():
    in_flight = {JudgeStatus.QUEUED, JudgeStatus.COMPILING, JudgeStatus.RUNNING, JudgeStatus.JUDGING}
    for status in JudgeStatus:
        assert status.is_terminal == (status not in in_flight)


def test_contest_window():
    from datetime import datetime

    contest = Contest(id="c", start_time=datetime(2024, 1, 1), end_time=datetime(2024, 1, 2))
    assert not contest.is_active(datetime(2023, 12, 31))
    assert contest.is_active(datetime(2024, 1, 1, 12))
    assert not contest.is_active(datetime(2024, 1, 3))
    assert Contest(id="open").is_active(datetime(1999, 1, 1))
