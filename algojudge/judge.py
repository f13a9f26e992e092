import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from algojudge.comparator import ComparisonPolicy, compare
from algojudge.languages import Artifact, CompileFailure, LanguageAdapter, get_adapter
from algojudge.models import JudgeStatus
from algojudge.sandbox import ResourceLimits, RunResult, workspace

logger = logging.getLogger(__name__)

# Program stderr echoed back on a runtime error
MAX_STDERR_MESSAGE = 500


def mean_ms(values: Sequence[int]) -> int:
    """Integer mean of non-negative millisecond values, rounded half up."""
    if not values:
        return 0
    return (2 * sum(values) + len(values)) // (2 * len(values))


@dataclass(frozen=True)
class TestCase:
    __test__ = False

    input: str
    expected_output: str
    is_hidden: bool = False


@dataclass(frozen=True)
class ProblemConfig:
    test_cases: Sequence[TestCase]
    limits: ResourceLimits
    policy: ComparisonPolicy = field(default_factory=ComparisonPolicy)


class JudgeResult:
    def __init__(self, status: JudgeStatus, tests_passed: int = 0, total_tests: int = 0,
                 compile_time_ms: int = 0, run_time_ms: int = 0, memory_used: int = 0,
                 message: str = "", failed_case: int = 0):
        self.status = status
        self.tests_passed = tests_passed
        self.total_tests = total_tests
        self.compile_time_ms = compile_time_ms
        self.run_time_ms = run_time_ms
        self.submission_time_ms = 0
        self.memory_used = memory_used  # KB
        self.message = message
        self.failed_case = failed_case

    def __repr__(self):
        return (f"JudgeResult({self.status.value}, {self.tests_passed}/{self.total_tests}, "
                f"compile={self.compile_time_ms}ms, run={self.run_time_ms}ms)")


class Judge:
    """Drives one submission from compilation to a terminal verdict.

    State changes are reported through ``on_state``, which must not block:
    the scheduler keeps them in memory while the submission is in flight.
    Sandbox failures are not verdicts and propagate as ``SandboxError``.
    """

    def __init__(self, submission_id: int, code: str, language: str,
                 on_state: Optional[Callable[[JudgeStatus], None]] = None):
        self.submission_id = submission_id
        self.code = code
        self.language = language
        self.on_state = on_state
        self.state = JudgeStatus.QUEUED

    def _transition(self, status: JudgeStatus):
        if status == self.state:
            return
        logger.debug("[Judge #%s] %s -> %s", self.submission_id, self.state.value, status.value)
        self.state = status
        if self.on_state:
            self.on_state(status)

    def _finish(self, result: JudgeResult) -> JudgeResult:
        self._transition(result.status)
        logger.info("[Judge #%s] Result: %s, Passed: %d/%d, Compile: %dms, Run: %dms",
                    self.submission_id, result.status.value, result.tests_passed,
                    result.total_tests, result.compile_time_ms, result.run_time_ms)
        return result

    async def run(self, problem: ProblemConfig) -> JudgeResult:
        adapter = get_adapter(self.language)
        total = len(problem.test_cases)
        logger.info("[Judge #%s] Language: %s, Tests: %d", self.submission_id, self.language, total)

        self._transition(JudgeStatus.COMPILING)
        if not total:
            return self._finish(JudgeResult(JudgeStatus.SYSTEM_ERROR, message="No test cases"))

        with workspace() as work_dir:
            compiled = await adapter.compile(self.code, work_dir)
            if isinstance(compiled, CompileFailure):
                logger.info("[Judge #%s] Compile Error: %s", self.submission_id, compiled.stderr[:200])
                return self._finish(JudgeResult(
                    JudgeStatus.COMPILE_ERROR,
                    total_tests=total,
                    compile_time_ms=compiled.compile_time_ms,
                    message=compiled.stderr,
                ))
            return self._finish(await self._run_tests(adapter, compiled, problem))

    async def _run_tests(self, adapter: LanguageAdapter, artifact: Artifact,
                         problem: ProblemConfig) -> JudgeResult:
        total = len(problem.test_cases)
        times: List[int] = []
        max_memory = 0
        passed = 0

        def result(status: JudgeStatus, message: str, failed_case: int = 0) -> JudgeResult:
            return JudgeResult(
                status,
                tests_passed=passed,
                total_tests=total,
                compile_time_ms=artifact.compile_time_ms,
                run_time_ms=mean_ms(times),
                memory_used=max_memory // 1024,
                message=message,
                failed_case=failed_case,
            )

        for idx, case in enumerate(problem.test_cases, 1):
            self._transition(JudgeStatus.RUNNING)
            run = await adapter.run(artifact, case.input, problem.limits)
            times.append(run.wall_time_ms)
            max_memory = max(max_memory, run.peak_memory_bytes)

            failure = self._classify(run, idx, case)
            if failure is not None:
                status, message = failure
                return result(status, message, idx)

            self._transition(JudgeStatus.JUDGING)
            if not compare(run.stdout, case.expected_output, problem.policy):
                return result(JudgeStatus.WRONG_ANSWER, f"Wrong answer on test {idx}", idx)
            passed += 1

        return result(JudgeStatus.ACCEPTED, f"Passed {passed}/{total} test cases")

    @staticmethod
    def _classify(run: RunResult, idx: int, case: TestCase):
        if run.timed_out:
            return JudgeStatus.TIME_LIMIT, f"Time limit exceeded on test {idx}"
        if run.killed_for_memory:
            return JudgeStatus.RUNTIME_ERROR, f"Memory limit exceeded on test {idx}"
        if run.output_limit_exceeded:
            return JudgeStatus.RUNTIME_ERROR, f"Output too large on test {idx}"
        if run.exit_code != 0:
            message = f"Exit code: {run.exit_code} on test {idx}"
            if run.stderr and not case.is_hidden:
                message += "\n" + run.stderr[-MAX_STDERR_MESSAGE:]
            return JudgeStatus.RUNTIME_ERROR, message
        return None
