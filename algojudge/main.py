import logging
import os
import zipfile
from datetime import datetime, timezone
from functools import partial
from typing import List, Optional, Tuple

from fastapi import FastAPI, UploadFile, File, Form, HTTPException, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete

from algojudge.comparator import ComparisonMode, ComparisonPolicy
from algojudge.config import LANGUAGES, MAX_CODE_LENGTH, DEFAULT_TIME_LIMIT, DEFAULT_MEMORY_LIMIT, SANDBOX_NAMESPACES
from algojudge.judge import JudgeResult, ProblemConfig, TestCase
from algojudge.languages import Language
from algojudge.models import (
    init_db, get_session, async_session, record_result, unfinished_submissions, JudgeStatus, SubmissionFrozen,
    Problem, ProblemTestCase, Submission, Contest, ContestProblem, ContestParticipant,
)
from algojudge.ranking import SubmissionRecord, rank_contest, paginate, prize_table, allocate_prizes
from algojudge.sandbox import ResourceLimits, namespaces_available
from algojudge.scheduler import Backpressure, JudgeJob, JudgeScheduler

logger = logging.getLogger(__name__)

app = FastAPI(title="AlgoJudge")


async def persist_result(job: JudgeJob, result: JudgeResult):
    async with async_session() as session:
        try:
            await record_result(session, job.submission_id, result)
        except SubmissionFrozen:
            logger.warning("[Judge #%s] Result dropped, submission already final", job.submission_id)


scheduler = JudgeScheduler(on_result=persist_result)


@app.on_event("startup")
async def startup():
    await init_db()
    if SANDBOX_NAMESPACES != "off" and not namespaces_available():
        logger.warning("Namespaces unavailable, sandboxed programs see the host filesystem and network")
    await scheduler.start()
    await resume_unfinished()


@app.on_event("shutdown")
async def shutdown():
    await scheduler.stop()


def _read_testcases(upload: UploadFile) -> List[Tuple[str, str]]:
    """Pairs of (input, expected output) from a zip of N.in / N.out files, ordered by N"""
    inputs = {}
    outputs = {}
    with zipfile.ZipFile(upload.file, "r") as zf:
        for name in zf.namelist():
            basename = os.path.basename(name)
            stem, ext = os.path.splitext(basename)
            if not stem or ext not in (".in", ".out"):
                continue
            content = zf.read(name).decode("utf-8", errors="replace")
            (inputs if ext == ".in" else outputs)[stem] = content

    stems = sorted(inputs, key=lambda s: (not s.isdigit(), int(s) if s.isdigit() else 0, s))
    return [(inputs[s], outputs[s]) for s in stems if s in outputs]


async def _replace_testcases(session: AsyncSession, problem: Problem, upload: UploadFile, samples: int):
    try:
        cases = _read_testcases(upload)
    except (zipfile.BadZipFile, OSError) as e:
        raise HTTPException(400, f"Failed to extract test cases: {e}")
    if not cases:
        raise HTTPException(400, "No test cases found (expected N.in / N.out pairs)")

    await session.execute(delete(ProblemTestCase).where(ProblemTestCase.problem_id == problem.id))
    for ordinal, (input_data, expected) in enumerate(cases, 1):
        session.add(ProblemTestCase(
            problem_id=problem.id,
            ordinal=ordinal,
            input=input_data,
            expected_output=expected,
            is_hidden=ordinal > samples,
        ))
    problem.test_case_count = len(cases)


def _validate_mode(comparison_mode: str) -> str:
    try:
        return ComparisonMode(comparison_mode.lower()).value
    except ValueError:
        raise HTTPException(400, f"Unknown comparison mode: {comparison_mode}")


def _problem_dict(problem: Problem) -> dict:
    return {
        "id": problem.id,
        "title": problem.title,
        "time_limit": problem.time_limit,
        "cpu_time_limit": problem.cpu_time_limit,
        "memory_limit": problem.memory_limit,
        "comparison_mode": problem.comparison_mode,
        "abs_tolerance": problem.abs_tolerance,
        "rel_tolerance": problem.rel_tolerance,
        "ignore_case": problem.ignore_case,
        "test_case_count": problem.test_case_count,
    }


async def _problem_config(session: AsyncSession, problem: Problem) -> ProblemConfig:
    result = await session.execute(
        select(ProblemTestCase)
        .where(ProblemTestCase.problem_id == problem.id)
        .order_by(ProblemTestCase.ordinal)
    )
    return ProblemConfig(
        test_cases=[
            TestCase(tc.input, tc.expected_output, tc.is_hidden)
            for tc in result.scalars().all()
        ],
        limits=ResourceLimits.from_problem(problem.time_limit, problem.memory_limit, problem.cpu_time_limit),
        policy=ComparisonPolicy(
            mode=ComparisonMode(problem.comparison_mode),
            abs_tolerance=problem.abs_tolerance or 0.0,
            rel_tolerance=problem.rel_tolerance or 0.0,
            ignore_case=bool(problem.ignore_case),
        ),
    )


def _log_judge_failure(submission_id: int, future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error("[Judge #%s] Result was not stored: %s", submission_id, error)


def _enqueue(job: JudgeJob):
    future = scheduler.submit(job)
    future.add_done_callback(partial(_log_judge_failure, job.submission_id))
    return future


async def _close_unfinished(session: AsyncSession, submission: Submission, message: str):
    await record_result(session, submission.id, JudgeResult(
        JudgeStatus.SYSTEM_ERROR, total_tests=submission.total_tests or 0, message=message,
    ))


async def resume_unfinished():
    """Re-queue submissions left unfinished by a previous run.

    Submissions that cannot be judged any more are closed with System Error.
    """
    async with async_session() as session:
        pending = await unfinished_submissions(session)
        for submission in pending:
            problem = await session.get(Problem, submission.problem_id)
            if problem is None:
                await _close_unfinished(session, submission, "Problem no longer exists")
                continue
            config = await _problem_config(session, problem)
            job = JudgeJob(submission.id, submission.code, submission.language, config,
                           contest_id=submission.contest_id)
            try:
                _enqueue(job)
            except Backpressure:
                await _close_unfinished(session, submission, "Judge queue was full after restart, please resubmit")
    if pending:
        logger.info("Resumed %d unfinished submission(s)", len(pending))

# ===== Problem APIs =====

@app.post("/api/problems")
async def create_problem(
    problem_id: str = Form(...),
    title: str = Form(""),
    time_limit: int = Form(DEFAULT_TIME_LIMIT),
    cpu_time_limit: Optional[int] = Form(None),
    memory_limit: int = Form(DEFAULT_MEMORY_LIMIT),
    comparison_mode: str = Form("relaxed"),
    abs_tolerance: float = Form(0.0),
    rel_tolerance: float = Form(0.0),
    ignore_case: bool = Form(False),
    samples: int = Form(0),
    testcases: UploadFile = File(...),
    session: AsyncSession = Depends(get_session)
):
    """Upload a problem with test cases; the first `samples` cases are visible"""
    comparison_mode = _validate_mode(comparison_mode)

    # Upsert
    problem = await session.get(Problem, problem_id)
    if problem is None:
        problem = Problem(id=problem_id)
        session.add(problem)
    problem.title = title
    problem.time_limit = time_limit
    problem.cpu_time_limit = cpu_time_limit
    problem.memory_limit = memory_limit
    problem.comparison_mode = comparison_mode
    problem.abs_tolerance = abs_tolerance
    problem.rel_tolerance = rel_tolerance
    problem.ignore_case = ignore_case

    await _replace_testcases(session, problem, testcases, samples)
    await session.commit()

    return {
        "success": True,
        "problem_id": problem_id,
        "test_case_count": problem.test_case_count,
    }

@app.get("/api/problems")
async def list_problems(session: AsyncSession = Depends(get_session)):
    """List all problems"""
    result = await session.execute(select(Problem).order_by(Problem.id))
    return [_problem_dict(p) for p in result.scalars().all()]

@app.get("/api/problems/{problem_id}")
async def get_problem(problem_id: str, session: AsyncSession = Depends(get_session)):
    """Get problem details with its visible sample cases"""
    problem = await session.get(Problem, problem_id)
    if not problem:
        raise HTTPException(404, "Problem not found")

    result = await session.execute(
        select(ProblemTestCase)
        .where(ProblemTestCase.problem_id == problem_id, ProblemTestCase.is_hidden.is_(False))
        .order_by(ProblemTestCase.ordinal)
    )
    data = _problem_dict(problem)
    data["samples"] = [
        {"input": tc.input, "expected_output": tc.expected_output}
        for tc in result.scalars().all()
    ]
    return data

@app.patch("/api/problems/{problem_id}")
async def update_problem(
    problem_id: str,
    title: Optional[str] = Form(None),
    time_limit: Optional[int] = Form(None),
    cpu_time_limit: Optional[int] = Form(None),
    memory_limit: Optional[int] = Form(None),
    comparison_mode: Optional[str] = Form(None),
    abs_tolerance: Optional[float] = Form(None),
    rel_tolerance: Optional[float] = Form(None),
    ignore_case: Optional[bool] = Form(None),
    samples: int = Form(0),
    testcases: Optional[UploadFile] = File(None),
    session: AsyncSession = Depends(get_session)
):
    """Update problem settings; new settings apply to later submissions only"""
    problem = await session.get(Problem, problem_id)
    if not problem:
        raise HTTPException(404, "Problem not found")

    if title is not None:
        problem.title = title
    if time_limit is not None:
        problem.time_limit = time_limit
    if cpu_time_limit is not None:
        problem.cpu_time_limit = cpu_time_limit
    if memory_limit is not None:
        problem.memory_limit = memory_limit
    if comparison_mode is not None:
        problem.comparison_mode = _validate_mode(comparison_mode)
    if abs_tolerance is not None:
        problem.abs_tolerance = abs_tolerance
    if rel_tolerance is not None:
        problem.rel_tolerance = rel_tolerance
    if ignore_case is not None:
        problem.ignore_case = ignore_case

    if testcases:
        await _replace_testcases(session, problem, testcases, samples)

    await session.commit()

    data = _problem_dict(problem)
    data["success"] = True
    return data

@app.delete("/api/problems/{problem_id}")
async def delete_problem(problem_id: str, session: AsyncSession = Depends(get_session)):
    """Delete a problem"""
    problem = await session.get(Problem, problem_id)
    if problem:
        await session.execute(delete(ProblemTestCase).where(ProblemTestCase.problem_id == problem_id))
        await session.delete(problem)
        await session.commit()

    return {"success": True}

# ===== Submission APIs =====

async def _check_contest_entry(session: AsyncSession, contest_id: str, problem_id: str, user_id: str):
    contest = await session.get(Contest, contest_id)
    if not contest:
        raise HTTPException(404, "Contest not found")
    if not await session.get(ContestProblem, (contest_id, problem_id)):
        raise HTTPException(400, "Problem not part of contest")
    if not contest.is_active(datetime.utcnow()):
        raise HTTPException(403, "Contest is not active")
    if not await session.get(ContestParticipant, (contest_id, user_id)):
        raise HTTPException(403, "Not a contest participant")

@app.post("/api/submit")
async def submit(
    problem_id: str = Form(...),
    user_id: str = Form(...),
    code: str = Form(...),
    language: str = Form(...),
    contest_id: Optional[str] = Form(None),
    session: AsyncSession = Depends(get_session)
):
    """Submit code for judging"""
    # Validate language
    if language not in LANGUAGES:
        raise HTTPException(400, f"Unsupported language. Available: {list(LANGUAGES.keys())}")
    if len(code) > MAX_CODE_LENGTH:
        raise HTTPException(400, f"Code too long (limit: {MAX_CODE_LENGTH} characters)")

    # Validate problem
    problem = await session.get(Problem, problem_id)
    if not problem:
        raise HTTPException(404, "Problem not found")
    if contest_id:
        await _check_contest_entry(session, contest_id, problem_id, user_id)

    config = await _problem_config(session, problem)

    # Create submission
    submission = Submission(
        problem_id=problem_id,
        user_id=user_id,
        contest_id=contest_id or None,
        code=code,
        language=language,
        status=JudgeStatus.QUEUED.value,
        total_tests=len(config.test_cases),
    )
    session.add(submission)
    await session.commit()
    await session.refresh(submission)

    job = JudgeJob(submission.id, code, language, config, contest_id=contest_id or None)
    try:
        _enqueue(job)
    except Backpressure as e:
        await session.delete(submission)
        await session.commit()
        raise HTTPException(503, str(e), headers={"Retry-After": "5"})

    return {"submission_id": submission.id, "status": JudgeStatus.QUEUED.value}

def _submission_dict(submission: Submission) -> dict:
    status = submission.status
    if not JudgeStatus(status).is_terminal:
        live = scheduler.live_status(submission.id)
        if live is not None:
            status = live.value
    return {
        "id": submission.id,
        "problem_id": submission.problem_id,
        "user_id": submission.user_id,
        "contest_id": submission.contest_id,
        "language": submission.language,
        "status": status,
        "tests_passed": submission.tests_passed,
        "total_tests": submission.total_tests,
        "compile_time_ms": submission.compile_time_ms,
        "run_time_ms": submission.run_time_ms,
        "submission_time_ms": submission.submission_time_ms,
        "memory_used": submission.memory_used,
        "message": submission.message,
        "failed_case": submission.failed_case,
        "created_at": submission.created_at.isoformat(),
    }

@app.get("/api/submissions/{submission_id}")
async def get_submission(submission_id: int, session: AsyncSession = Depends(get_session)):
    """Get submission status and result"""
    submission = await session.get(Submission, submission_id)
    if not submission:
        raise HTTPException(404, "Submission not found")

    return _submission_dict(submission)

@app.get("/api/submissions")
async def list_submissions(
    problem_id: Optional[str] = None,
    user_id: Optional[str] = None,
    contest_id: Optional[str] = None,
    limit: int = 50,
    session: AsyncSession = Depends(get_session)
):
    """List recent submissions"""
    query = select(Submission).order_by(Submission.id.desc()).limit(min(max(limit, 1), 200))
    if problem_id:
        query = query.where(Submission.problem_id == problem_id)
    if user_id:
        query = query.where(Submission.user_id == user_id)
    if contest_id:
        query = query.where(Submission.contest_id == contest_id)

    result = await session.execute(query)
    return [_submission_dict(s) for s in result.scalars().all()]

# ===== Contest APIs =====

def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored datetimes are naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

@app.post("/api/contests")
async def create_contest(
    contest_id: str = Form(...),
    title: str = Form(""),
    problem_ids: str = Form(""),
    start_time: Optional[datetime] = Form(None),
    end_time: Optional[datetime] = Form(None),
    prize_pool: float = Form(0.0),
    prize_first: int = Form(50),
    prize_second: int = Form(30),
    prize_third: int = Form(20),
    session: AsyncSession = Depends(get_session)
):
    """Create or replace a contest; problem_ids is comma separated"""
    if prize_first + prize_second + prize_third > 100:
        raise HTTPException(400, "Prize distribution exceeds 100%")

    problems = [p.strip() for p in problem_ids.split(",") if p.strip()]
    for problem_id in problems:
        if not await session.get(Problem, problem_id):
            raise HTTPException(404, f"Problem not found: {problem_id}")

    contest = await session.get(Contest, contest_id)
    if contest is None:
        contest = Contest(id=contest_id)
        session.add(contest)
    contest.title = title
    contest.start_time = _naive_utc(start_time)
    contest.end_time = _naive_utc(end_time)
    contest.prize_pool = prize_pool
    contest.prize_first = prize_first
    contest.prize_second = prize_second
    contest.prize_third = prize_third

    await session.execute(delete(ContestProblem).where(ContestProblem.contest_id == contest_id))
    for problem_id in problems:
        session.add(ContestProblem(contest_id=contest_id, problem_id=problem_id))
    await session.commit()

    return {"success": True, "contest_id": contest_id, "problems": problems}

@app.get("/api/contests/{contest_id}")
async def get_contest(contest_id: str, session: AsyncSession = Depends(get_session)):
    contest = await session.get(Contest, contest_id)
    if not contest:
        raise HTTPException(404, "Contest not found")

    problems = await session.execute(
        select(ContestProblem.problem_id).where(ContestProblem.contest_id == contest_id)
    )
    participants = await session.execute(
        select(ContestParticipant).where(ContestParticipant.contest_id == contest_id)
    )
    return {
        "id": contest.id,
        "title": contest.title,
        "start_time": contest.start_time.isoformat() if contest.start_time else None,
        "end_time": contest.end_time.isoformat() if contest.end_time else None,
        "prize_pool": contest.prize_pool,
        "prize_distribution": contest.prize_distribution,
        "problems": sorted(problems.scalars().all()),
        "participants": len(participants.scalars().all()),
    }

@app.post("/api/contests/{contest_id}/participants")
async def join_contest(
    contest_id: str,
    user_id: str = Form(...),
    username: str = Form(""),
    session: AsyncSession = Depends(get_session)
):
    """Register a participant (idempotent)"""
    if not await session.get(Contest, contest_id):
        raise HTTPException(404, "Contest not found")

    participant = await session.get(ContestParticipant, (contest_id, user_id))
    if participant is None:
        participant = ContestParticipant(contest_id=contest_id, user_id=user_id)
        session.add(participant)
    participant.username = username or user_id
    await session.commit()

    return {"success": True, "contest_id": contest_id, "user_id": user_id}

async def _contest_rows(session: AsyncSession, contest_id: str):
    contest = await session.get(Contest, contest_id)
    if not contest:
        raise HTTPException(404, "Contest not found")

    result = await session.execute(
        select(Submission).where(
            Submission.contest_id == contest_id,
            Submission.status == JudgeStatus.ACCEPTED.value,
        )
    )
    records = [
        SubmissionRecord(
            id=s.id,
            user_id=s.user_id,
            problem_id=s.problem_id,
            status=s.status,
            submission_time_ms=s.submission_time_ms or 0,
            run_time_ms=s.run_time_ms or 0,
            compile_time_ms=s.compile_time_ms or 0,
            created_at=s.created_at,
        )
        for s in result.scalars().all()
    ]
    participants = await session.execute(
        select(ContestParticipant).where(ContestParticipant.contest_id == contest_id)
    )
    usernames = {p.user_id: p.username for p in participants.scalars().all()}
    duration_ms = 0
    if contest.start_time and contest.end_time:
        duration_ms = int((contest.end_time - contest.start_time).total_seconds() * 1000)
    return contest, rank_contest(records, usernames, participants=usernames, fallback_ms=duration_ms)

@app.get("/api/contests/{contest_id}/results")
async def contest_results(
    contest_id: str,
    page: int = 1,
    limit: int = 50,
    search: str = "",
    session: AsyncSession = Depends(get_session)
):
    """Leaderboard ranked by (submission + run + compile time) / 3, ties share a rank"""
    _, rows = await _contest_rows(session, contest_id)
    result = paginate(rows, page, limit, search)
    result["results"] = [r.to_dict() for r in result["results"]]
    return result

@app.post("/api/contests/{contest_id}/settle")
async def settle_contest(contest_id: str, session: AsyncSession = Depends(get_session)):
    """Compute prize shares for the current standings. Payout is done elsewhere."""
    contest, rows = await _contest_rows(session, contest_id)
    prizes = prize_table(contest.prize_pool or 0, contest.prize_distribution)
    allocate_prizes(rows, prizes)
    logger.info("[Contest %s] Settled %d rows, pool %s", contest_id, len(rows), contest.prize_pool)

    return {
        "contest_id": contest_id,
        "prize_pool": contest.prize_pool,
        "results": [r.to_dict() for r in rows],
    }

# ===== Config APIs =====

@app.get("/api/languages")
async def get_languages():
    """Get supported languages and their toolchains"""
    return {
        lang.value: {k: v for k, v in LANGUAGES[lang.value].items() if k != "source"}
        for lang in Language
    }

@app.get("/api/status")
async def get_status():
    return {
        "workers": scheduler.workers,
        "running": scheduler.running,
        "pending": scheduler.pending,
    }
