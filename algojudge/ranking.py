"""Contest leaderboard projection.

Rows are recomputed from terminal submissions every time they are requested;
nothing here mutates stored data. The composite score is

    average = (submission_time_ms + run_time_ms + compile_time_ms) / 3

lower is better, and equal averages share a rank (1, 1, 3).
"""
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from algojudge.config import DEFAULT_PRIZE_DISTRIBUTION, MAX_RESULTS_PAGE_SIZE
from algojudge.judge import mean_ms
from algojudge.models import JudgeStatus

CENT = Decimal("0.01")
TOP_TEN = 10


@dataclass(frozen=True)
class SubmissionRecord:
    """Timing record of one terminal submission."""

    id: int
    user_id: str
    problem_id: str
    status: str
    submission_time_ms: int
    run_time_ms: int
    compile_time_ms: int
    created_at: Optional[datetime] = None

    @property
    def composite(self) -> float:
        return (self.submission_time_ms + self.run_time_ms + self.compile_time_ms) / 3


@dataclass
class ContestResultRow:
    user_id: str
    username: str
    submission_time_ms: int
    run_time_ms: int
    compile_time_ms: int
    average: float
    solved: int = 0
    rank: int = 0
    top_ten: bool = False
    prize: Optional[Decimal] = None

    def to_dict(self) -> dict:
        data = {
            "user_id": self.user_id,
            "username": self.username,
            "submission_time_ms": self.submission_time_ms,
            "run_time_ms": self.run_time_ms,
            "compile_time_ms": self.compile_time_ms,
            "average": self.average,
            "solved": self.solved,
            "rank": self.rank,
            "top_ten": self.top_ten,
        }
        if self.prize is not None:
            data["prize"] = float(self.prize)
        return data


def _selection_key(record: SubmissionRecord):
    return (record.composite, record.created_at or datetime.min, record.id)


def select_best(records: Iterable[SubmissionRecord]) -> Dict[str, List[SubmissionRecord]]:
    """Best Accepted submission per (user, problem), grouped by user.

    Best means lowest composite, then earliest, then lowest id.
    """
    best: Dict[Tuple[str, str], SubmissionRecord] = {}
    for record in records:
        if record.status != JudgeStatus.ACCEPTED.value:
            continue
        key = (record.user_id, record.problem_id)
        current = best.get(key)
        if current is None or _selection_key(record) < _selection_key(current):
            best[key] = record

    by_user: Dict[str, List[SubmissionRecord]] = {}
    for (user_id, _), record in sorted(best.items()):
        by_user.setdefault(user_id, []).append(record)
    return by_user


def build_rows(records: Iterable[SubmissionRecord],
               usernames: Optional[Mapping[str, str]] = None,
               participants: Iterable[str] = (),
               fallback_ms: int = 0) -> List[ContestResultRow]:
    """One unranked row per participant and per user with an Accepted submission.

    Participants who solved nothing get ``fallback_ms`` (the contest length)
    as their submission time and zero run and compile time.
    """
    usernames = usernames or {}
    best = select_best(records)
    rows = []
    for user_id in sorted(set(participants) | set(best)):
        selected = best.get(user_id, [])
        if selected:
            submission_time = mean_ms([r.submission_time_ms for r in selected])
            run_time = mean_ms([r.run_time_ms for r in selected])
            compile_time = mean_ms([r.compile_time_ms for r in selected])
        else:
            submission_time, run_time, compile_time = max(0, fallback_ms), 0, 0
        rows.append(ContestResultRow(
            user_id=user_id,
            username=usernames.get(user_id) or user_id,
            submission_time_ms=submission_time,
            run_time_ms=run_time,
            compile_time_ms=compile_time,
            average=(submission_time + run_time + compile_time) / 3,
            solved=len(selected),
        ))
    return rows


def _standing(row: ContestResultRow):
    # Anyone who solved a problem ranks ahead of everyone who solved none
    return (row.solved == 0, row.average)


def assign_ranks(rows: List[ContestResultRow]) -> List[ContestResultRow]:
    """Sort ascending by average and apply standard competition ranking."""
    ordered = sorted(rows, key=lambda r: _standing(r) + (r.username, r.user_id))
    rank = 0
    last = None
    for position, row in enumerate(ordered, 1):
        if last is None or _standing(row) != last:
            rank = position
            last = _standing(row)
        row.rank = rank
        row.top_ten = rank <= TOP_TEN
    return ordered


def rank_contest(records: Iterable[SubmissionRecord],
                 usernames: Optional[Mapping[str, str]] = None,
                 participants: Iterable[str] = (),
                 fallback_ms: int = 0) -> List[ContestResultRow]:
    return assign_ranks(build_rows(records, usernames, participants, fallback_ms))


def prize_table(prize_pool, distribution: Optional[Mapping[int, int]] = None) -> Dict[int, Decimal]:
    """Prize per rank from a pool and percentage shares, floored to cents."""
    distribution = DEFAULT_PRIZE_DISTRIBUTION if distribution is None else distribution
    pool = Decimal(str(prize_pool))
    return {
        rank: (pool * Decimal(percent) / 100).quantize(CENT, rounding=ROUND_DOWN)
        for rank, percent in sorted(distribution.items())
        if percent
    }


def allocate_prizes(rows: List[ContestResultRow], prizes: Mapping[int, Decimal]) -> List[ContestResultRow]:
    """Split each rank's prize equally among the rows holding that rank.

    Shares are floored to cents. A rank nobody holds (skipped by a tie) pays
    out nothing.
    """
    holders: Dict[int, int] = {}
    for row in rows:
        if not row.solved:
            continue
        holders[row.rank] = holders.get(row.rank, 0) + 1
    for row in rows:
        if not row.solved:
            row.prize = Decimal("0.00")
            continue
        amount = Decimal(str(prizes.get(row.rank, 0)))
        row.prize = (amount / holders[row.rank]).quantize(CENT, rounding=ROUND_DOWN)
    return rows


def paginate(rows: List[ContestResultRow], page: int = 1, limit: int = 50,
             search: str = "") -> dict:
    """Filter ranked rows by username and slice one page. Ranks stay global."""
    page = max(1, page)
    limit = min(MAX_RESULTS_PAGE_SIZE, max(1, limit))
    if search:
        needle = search.lower()
        rows = [r for r in rows if needle in (r.username or "").lower()]
    total = len(rows)
    start = (page - 1) * limit
    return {
        "total": total,
        "page": page,
        "pages": math.ceil(total / limit),
        "results": rows[start:start + limit],
    }
