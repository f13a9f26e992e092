"""
Remote submitter: submits code through the HTTP intake and polls for verdicts.
Supports batch submission with a thread pool.
"""
import argparse
import asyncio
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional

import aiohttp
from tqdm import tqdm
from concurrent.futures import ThreadPoolExecutor, as_completed

PENDING_STATUSES = {"Queued", "Compiling", "Running", "Judging"}
SUFFIX_LANGUAGES = {".js": "javascript", ".py": "python", ".java": "java", ".cpp": "cpp", ".cc": "cpp"}


def _failure(message: str) -> Dict:
    return {
        "success": False,
        "verdict": "System Error",
        "message": message,
        "passed": False,
        "tests_passed": 0,
        "total_tests": 0,
        "failed_test": None,
    }


class RemoteJudgeClient:
    def __init__(self, base_url: str = "http://localhost:8000", max_workers: int = None,
                 user_id: str = "batch", timeout: float = 300.0):
        """
        Args:
            base_url: judge server address
            max_workers: thread pool size for batches, None means CPU count
            user_id: user the submissions are filed under
            timeout: seconds to wait for a verdict before giving up
        """
        self.base_url = base_url.rstrip("/")
        self.submit_url = f"{self.base_url}/api/submit"
        self.query_url = f"{self.base_url}/api/submissions"
        self.max_workers = max_workers
        self.user_id = user_id
        self.timeout = timeout
        self.poll_interval = 0.5  # seconds

    async def submit_code_async(
        self,
        problem_id: str,
        code: str,
        language: str = "cpp",
        contest_id: Optional[str] = None
    ) -> Dict:
        """
        Submit code and wait for the verdict.

        Returns:
            result dict with verdict, timings and test counts
        """
        async with aiohttp.ClientSession() as session:
            data = aiohttp.FormData()
            data.add_field("problem_id", problem_id)
            data.add_field("user_id", self.user_id)
            data.add_field("code", code)
            data.add_field("language", language)
            if contest_id:
                data.add_field("contest_id", contest_id)

            try:
                async with session.post(self.submit_url, data=data) as response:
                    result = await response.json()
                    if response.status != 200:
                        return _failure(f"Submit rejected ({response.status}): {result.get('detail')}")
                    submission_id = result.get("submission_id")
                    if not submission_id:
                        return _failure("Failed to get submission_id")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                return _failure(f"Submit failed: {e}")

            # Poll until the submission is final
            start_time = time.time()
            while True:
                try:
                    async with session.get(f"{self.query_url}/{submission_id}") as response:
                        result = await response.json()
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    return _failure(f"Query failed: {e}")

                status = result.get("status")
                elapsed = time.time() - start_time
                if status in PENDING_STATUSES:
                    if elapsed > self.timeout:
                        return _failure(f"No verdict after {self.timeout:.0f}s")
                    await asyncio.sleep(self.poll_interval)
                    continue

                return {
                    "success": status != "System Error",
                    "verdict": status,
                    "message": result.get("message", ""),
                    "compile_time": result.get("compile_time_ms", 0),
                    "run_time": result.get("run_time_ms", 0),
                    "submission_time": result.get("submission_time_ms", 0),
                    "memory": result.get("memory_used", 0),
                    "passed": status == "Accepted",
                    "tests_passed": result.get("tests_passed", 0),
                    "total_tests": result.get("total_tests", 0),
                    "failed_test": result.get("failed_case") or None,
                    "submission_id": submission_id,
                    "total_time": elapsed,
                }

    def submit_code(self, problem_id: str, code: str, language: str = "cpp",
                    contest_id: Optional[str] = None) -> Dict:
        """Blocking wrapper around submit_code_async"""
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            return loop.run_until_complete(
                self.submit_code_async(problem_id, code, language, contest_id)
            )
        finally:
            loop.close()

    def batch_submit_code(
        self,
        problem_id: str,
        batch_code: List[str],
        language: str = "cpp",
        contest_id: Optional[str] = None,
        use_multithreading: bool = True
    ) -> Dict:
        """
        Submit many solutions to one problem.

        Returns:
            summary dict (see summarize) with per-submission results in order
        """
        results: List[Optional[Dict]] = [None] * len(batch_code)

        if use_multithreading and len(batch_code) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_idx = {
                    executor.submit(self.submit_code, problem_id, code, language, contest_id): idx
                    for idx, code in enumerate(batch_code)
                }
                with tqdm(total=len(batch_code), desc=f"Submitting {problem_id}") as pbar:
                    for future in as_completed(future_to_idx):
                        idx = future_to_idx[future]
                        try:
                            results[idx] = future.result()
                        except Exception as e:
                            results[idx] = _failure(f"Error processing code {idx}: {e}")
                        pbar.update(1)
        else:
            for idx, code in enumerate(tqdm(batch_code, desc=f"Submitting {problem_id}")):
                results[idx] = self.submit_code(problem_id, code, language, contest_id)

        return summarize(results)


def summarize(results: List[Dict]) -> Dict:
    """Acceptance counts over a batch; infrastructure failures are excluded from the rate"""
    accepted = sum(1 for r in results if r.get("passed"))
    errors = sum(1 for r in results if not r.get("success"))
    valid = len(results) - errors
    verdicts: Dict[str, int] = {}
    for r in results:
        verdicts[r.get("verdict")] = verdicts.get(r.get("verdict"), 0) + 1
    return {
        "total": len(results),
        "accepted": accepted,
        "errors": errors,
        "acceptance_rate": accepted / valid if valid else 0.0,
        "verdicts": verdicts,
        "results": results,
    }


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Submit solution files to an AlgoJudge server")
    parser.add_argument("files", nargs="+", type=Path, help="source files to submit")
    parser.add_argument("--problem", required=True, help="problem id")
    parser.add_argument("--language", help="language (default: from file suffix)")
    parser.add_argument("--contest", help="contest id")
    parser.add_argument("--url", default="http://localhost:8000", help="server base url")
    parser.add_argument("--user", default="batch", help="user id for the submissions")
    parser.add_argument("--workers", type=int, default=8, help="concurrent submissions")
    args = parser.parse_args(argv)

    language = args.language or SUFFIX_LANGUAGES.get(args.files[0].suffix)
    if language is None:
        parser.error(f"Cannot infer language from {args.files[0].name}, pass --language")

    client = RemoteJudgeClient(base_url=args.url, max_workers=args.workers, user_id=args.user)
    codes = [f.read_text(encoding="utf-8") for f in args.files]
    summary = client.batch_submit_code(args.problem, codes, language=language, contest_id=args.contest)

    for path, result in zip(args.files, summary["results"]):
        line = f"{path.name}: {result['verdict']}"
        if result.get("total_tests"):
            line += f" ({result['tests_passed']}/{result['total_tests']})"
        print(line)
    print(f"Accepted: {summary['accepted']}/{summary['total']}, errors: {summary['errors']}")
    return 0 if summary["errors"] == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
