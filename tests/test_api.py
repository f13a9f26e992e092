import io
import time
import zipfile
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient

from algojudge import main
from algojudge.main import app
from algojudge.models import JudgeStatus, Submission, async_session
from algojudge.scheduler import Backpressure

SUM_CODE = "a, b = map(int, input().split())\nprint(a + b)\n"


def make_zip(cases):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in cases.items():
            zf.writestr(name, content)
    return buf.getvalue()


@pytest.fixture(scope="module")
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture(scope="module")
def sum_problem(client):
    archive = make_zip({
        "1.in": "1 2\n", "1.out": "3\n",
        "2.in": "5 5\n", "2.out": "10\n",
        "10.in": "100 -1\n", "10.out": "99\n",
    })
    response = client.post(
        "/api/problems",
        data={"problem_id": "sum", "title": "A + B", "time_limit": 3000, "samples": 1},
        files={"testcases": ("tests.zip", archive, "application/zip")},
    )
    assert response.status_code == 200
    return "sum"


def wait_for_verdict(client, submission_id, timeout=30):
    deadline = time.time() + timeout
    while time.time() < deadline:
        data = client.get(f"/api/submissions/{submission_id}").json()
        if JudgeStatus(data["status"]).is_terminal:
            return data
        time.sleep(0.1)
    raise AssertionError(f"Submission {submission_id} not judged in {timeout}s")


def submit(client, code, problem_id="sum", user_id="alice", language="python", contest_id=None):
    data = {"problem_id": problem_id, "user_id": user_id, "code": code, "language": language}
    if contest_id:
        data["contest_id"] = contest_id
    return client.post("/api/submit", data=data)


def test_problem_upload(client, sum_problem):
    data = client.get(f"/api/problems/{sum_problem}").json()
    assert data["test_case_count"] == 3
    assert data["comparison_mode"] == "relaxed"
    assert data["samples"] == [{"input": "1 2\n", "expected_output": "3\n"}]
    assert any(p["id"] == sum_problem for p in client.get("/api/problems").json())


def test_problem_upload_rejects_bad_archive(client):
    response = client.post(
        "/api/problems",
        data={"problem_id": "broken"},
        files={"testcases": ("tests.zip", b"not a zip", "application/zip")},
    )
    assert response.status_code == 400

    response = client.post(
        "/api/problems",
        data={"problem_id": "empty"},
        files={"testcases": ("tests.zip", make_zip({"readme.txt": "hi"}), "application/zip")},
    )
    assert response.status_code == 400


def test_problem_rejects_unknown_mode(client):
    response = client.post(
        "/api/problems",
        data={"problem_id": "modes", "comparison_mode": "fuzzy"},
        files={"testcases": ("tests.zip", make_zip({"1.in": "", "1.out": ""}), "application/zip")},
    )
    assert response.status_code == 400


def test_update_and_delete_problem(client):
    client.post(
        "/api/problems",
        data={"problem_id": "scratch"},
        files={"testcases": ("tests.zip", make_zip({"1.in": "", "1.out": "x"}), "application/zip")},
    )
    response = client.patch("/api/problems/scratch", data={"comparison_mode": "strict", "time_limit": 500})
    assert response.status_code == 200
    assert response.json()["comparison_mode"] == "strict"
    assert response.json()["time_limit"] == 500

    assert client.delete("/api/problems/scratch").status_code == 200
    assert client.get("/api/problems/scratch").status_code == 404


def test_accepted_submission(client, sum_problem):
    response = submit(client, SUM_CODE)
    assert response.status_code == 200
    assert response.json()["status"] == "Queued"

    data = wait_for_verdict(client, response.json()["submission_id"])
    assert data["status"] == "Accepted"
    assert data["tests_passed"] == data["total_tests"] == 3
    assert data["submission_time_ms"] > 0
    assert data["failed_case"] == 0


def test_wrong_answer_submission(client, sum_problem):
    response = submit(client, "a, b = map(int, input().split())\nprint(a - b)\n")
    data = wait_for_verdict(client, response.json()["submission_id"])
    assert data["status"] == "Wrong Answer"
    assert data["tests_passed"] == 0
    assert data["failed_case"] == 1


def test_compile_error_submission(client, sum_problem):
    response = submit(client, "def broken(:\n")
    data = wait_for_verdict(client, response.json()["submission_id"])
    assert data["status"] == "Compilation Error"
    assert data["total_tests"] == 3
    assert "SyntaxError" in data["message"]


def test_submit_validation(client, sum_problem):
    assert submit(client, SUM_CODE, language="cobol").status_code == 400
    assert submit(client, SUM_CODE, problem_id="missing").status_code == 404
    assert submit(client, "#" * (64 * 1024 + 1)).status_code == 400
    assert client.get("/api/submissions/999999").status_code == 404


def test_list_submissions(client, sum_problem):
    submission_id = submit(client, SUM_CODE, user_id="lister").json()["submission_id"]
    wait_for_verdict(client, submission_id)
    data = client.get("/api/submissions", params={"user_id": "lister"}).json()
    assert [s["id"] for s in data] == [submission_id]


def test_contest_flow(client, sum_problem):
    start = datetime.utcnow() - timedelta(hours=1)
    response = client.post("/api/contests", data={
        "contest_id": "weekly", "title": "Weekly", "problem_ids": "sum", "prize_pool": 100,
        "start_time": start.isoformat(), "end_time": (start + timedelta(hours=2)).isoformat(),
    })
    assert response.status_code == 200
    assert response.json()["problems"] == ["sum"]

    # Only participants may submit
    assert submit(client, SUM_CODE, user_id="carol", contest_id="weekly").status_code == 403

    for user_id, username in [("u1", "Alice"), ("u2", "Bob"), ("u3", "Carol")]:
        response = client.post("/api/contests/weekly/participants", data={"user_id": user_id, "username": username})
        assert response.status_code == 200

    submitted = [
        submit(client, SUM_CODE, user_id="u1", contest_id="weekly"),
        submit(client, SUM_CODE, user_id="u2", contest_id="weekly"),
        submit(client, "print(0)", user_id="u3", contest_id="weekly"),
    ]
    for response in submitted:
        assert response.status_code == 200
        wait_for_verdict(client, response.json()["submission_id"])

    contest = client.get("/api/contests/weekly").json()
    assert contest["participants"] == 3
    assert contest["prize_distribution"] == {"1": 50, "2": 30, "3": 20}

    results = client.get("/api/contests/weekly/results").json()
    assert results["total"] == 3
    assert results["pages"] == 1
    rows = results["results"]
    assert {r["username"] for r in rows[:2]} == {"Alice", "Bob"}
    assert rows[0]["rank"] == 1
    assert all(r["top_ten"] for r in rows)

    # Carol never got Accepted: last, charged the whole contest length
    carol = rows[2]
    assert carol["username"] == "Carol"
    assert carol["solved"] == 0
    assert carol["rank"] == 3
    assert (carol["submission_time_ms"], carol["run_time_ms"], carol["compile_time_ms"]) == (7_200_000, 0, 0)
    for r in rows:
        expected = (r["submission_time_ms"] + r["run_time_ms"] + r["compile_time_ms"]) / 3
        assert r["average"] == pytest.approx(expected)

    search = client.get("/api/contests/weekly/results", params={"search": "bo"}).json()
    assert [r["username"] for r in search["results"]] == ["Bob"]

    settled = client.post("/api/contests/weekly/settle").json()
    prizes = [r["prize"] for r in settled["results"]]
    assert sum(prizes) <= 80
    assert prizes[0] >= prizes[1]
    assert prizes[2] == 0


def test_contest_entry_checks(client, sum_problem):
    client.post("/api/problems", data={"problem_id": "other"},
                files={"testcases": ("tests.zip", make_zip({"1.in": "", "1.out": "1"}), "application/zip")})
    client.post("/api/contests", data={
        "contest_id": "ended", "problem_ids": "sum",
        "start_time": "2000-01-01T00:00:00", "end_time": "2000-01-02T00:00:00",
    })
    client.post("/api/contests/ended/participants", data={"user_id": "dave"})

    assert submit(client, SUM_CODE, user_id="dave", contest_id="ended").status_code == 403
    assert submit(client, SUM_CODE, problem_id="other", user_id="dave", contest_id="ended").status_code == 400
    assert submit(client, SUM_CODE, user_id="dave", contest_id="nope").status_code == 404
    assert client.get("/api/contests/nope/results").status_code == 404


def test_contest_rejects_bad_distribution(client, sum_problem):
    response = client.post("/api/contests", data={
        "contest_id": "greedy", "problem_ids": "sum", "prize_first": 80, "prize_second": 30,
    })
    assert response.status_code == 400


def test_languages_and_status(client):
    languages = client.get("/api/languages").json()
    assert set(languages) == {"javascript", "python", "java", "cpp"}
    status = client.get("/api/status").json()
    assert status["running"] is True
    assert status["workers"] >= 1


def insert_queued(client, problem_id, code=SUM_CODE, user_id="restart"):
    async def insert():
        async with async_session() as session:
            submission = Submission(problem_id=problem_id, user_id=user_id, code=code,
                                    language="python", status=JudgeStatus.QUEUED.value, total_tests=3)
            session.add(submission)
            await session.commit()
            return submission.id
    return client.portal.call(insert)


def test_unfinished_submissions_are_judged_after_restart(client, sum_problem):
    resumed = insert_queued(client, "sum")
    orphaned = insert_queued(client, "deleted-problem")

    client.portal.call(main.resume_unfinished)

    assert wait_for_verdict(client, resumed)["status"] == "Accepted"
    data = wait_for_verdict(client, orphaned)
    assert data["status"] == "System Error"
    assert data["message"] == "Problem no longer exists"


def test_unfinished_submissions_are_closed_when_queue_is_full(client, sum_problem, monkeypatch):
    submission_id = insert_queued(client, "sum")

    def full(job):
        raise Backpressure("Judge queue is full")

    monkeypatch.setattr(main.scheduler, "submit", full)
    client.portal.call(main.resume_unfinished)

    data = client.get(f"/api/submissions/{submission_id}").json()
    assert data["status"] == "System Error"
    assert "resubmit" in data["message"]
