"""Single-process execution under hard resource limits.

Every compile step and every test run gets its own :class:`Sandbox`. The
process runs in a fresh session inside the submission workspace, with
rlimits applied before exec, a wall-clock deadline enforced from the event
loop, and a psutil watchdog that samples memory and CPU of the whole process
tree.

When the host allows unprivileged namespaces the program runs inside new
user, mount, pid and network namespaces. The data and work directories are
masked with an empty tmpfs so only the program's own workspace is visible,
and the namespace's init process takes every descendant down with it.
Without namespaces, descendants are found by the watchdog and by an
environment marker and killed one by one. Either way nothing started by the
program outlives :meth:`Sandbox.execute`.
"""
import asyncio
import logging
import math
import os
import resource
import shlex
import shutil
import signal
import subprocess
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import psutil

from algojudge.config import (
    MAX_OUTPUT_SIZE,
    MEMORY_POLL_INTERVAL,
    SANDBOX_HIDDEN_PATHS,
    SANDBOX_NAMESPACES,
    WORK_DIR,
)

logger = logging.getLogger(__name__)

READ_CHUNK = 64 * 1024
# Time allowed for pipes to close once the process tree is dead
DRAIN_GRACE = 1.0  # seconds
EXIT_POLL_INTERVAL = 0.005  # seconds

# Every sandboxed process inherits this variable; stray descendants are
# found by it when no pid namespace is available
MARKER_ENV = "ALGOJUDGE_SANDBOX"
# Exit status of the namespace wrapper when the mounts could not be set up
SETUP_FAILED = 125
SETUP_FAILED_MESSAGE = "algojudge: sandbox setup failed"


class SandboxError(Exception):
    """The sandbox could not be provisioned or supervised.

    This is an infrastructure failure, never a verdict on the submitted code.
    """


@dataclass(frozen=True)
class ResourceLimits:
    cpu_time_ms: int
    wall_time_ms: int
    memory_bytes: int
    no_network: bool = True
    max_output_bytes: int = MAX_OUTPUT_SIZE

    @classmethod
    def from_problem(cls, time_limit: int, memory_limit: int,
                     cpu_time_limit: Optional[int] = None) -> "ResourceLimits":
        """Build limits from problem settings (ms / MB)."""
        return cls(
            cpu_time_ms=cpu_time_limit or time_limit * 2,
            wall_time_ms=time_limit,
            memory_bytes=memory_limit * 1024 * 1024,
        )


@dataclass
class RunResult:
    stdout: str
    stderr: str
    exit_code: int
    wall_time_ms: int
    peak_memory_bytes: int = 0
    timed_out: bool = False
    killed_for_memory: bool = False
    output_limit_exceeded: bool = False

    @property
    def succeeded(self) -> bool:
        return (self.exit_code == 0 and not self.timed_out
                and not self.killed_for_memory and not self.output_limit_exceeded)


@contextmanager
def workspace(prefix: str = "oj_judge_"):
    """Private working directory, removed on every exit path."""
    try:
        path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(WORK_DIR)))
    except OSError as e:
        raise SandboxError(f"Failed to create workspace: {e}") from e
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def _hidden_paths() -> List[Path]:
    """Existing hidden directories, without those already under another one."""
    paths = sorted({Path(p).resolve() for p in SANDBOX_HIDDEN_PATHS if Path(p).is_dir()})
    kept: List[Path] = []
    for path in paths:
        if not any(path == parent or parent in path.parents for parent in kept):
            kept.append(path)
    return kept


def isolated_command(argv: Sequence[str], work_dir: Path, no_network: bool = True) -> List[str]:
    """Wrap argv to run inside fresh user, mount, pid (and network) namespaces.

    The shell stays as pid 1 of the namespace and runs the program as its
    child, so the program gets normal signal semantics. The workspace is
    bind-mounted back into place after the hidden directories are masked;
    the mount source is the shell's cwd, which still refers to it.
    """
    flags = "-rmpf" + ("n" if no_network else "")
    setup = [
        f"mount -t tmpfs -o size=64k,mode=755 tmpfs {shlex.quote(str(path))}"
        for path in _hidden_paths()
    ]
    setup += ['mkdir -p "$0"', 'mount --bind . "$0"', 'cd "$0"']
    script = (
        " && ".join(setup)
        + f' || {{ echo "{SETUP_FAILED_MESSAGE}" >&2; exit {SETUP_FAILED}; }}\n'
        + '"$@"\nexit $?\n'
    )
    return [shutil.which("unshare") or "unshare", flags, "--kill-child",
            "sh", "-c", script, str(work_dir)] + list(argv)


@lru_cache(maxsize=None)
def namespaces_available() -> bool:
    """Whether the namespace wrapper works on this host."""
    if not shutil.which("unshare"):
        return False
    try:
        with workspace("oj_nscheck_") as check_dir:
            subprocess.run(
                isolated_command(["true"], check_dir),
                cwd=str(check_dir),
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
                check=True,
            )
    except (OSError, subprocess.SubprocessError, SandboxError):
        return False
    return True


def _lower_limit(which: int, soft: int, hard: Optional[int] = None):
    if hard is None:
        hard = soft
    _, current_hard = resource.getrlimit(which)
    if current_hard != resource.RLIM_INFINITY:
        soft = min(soft, current_hard)
        hard = min(hard, current_hard)
    resource.setrlimit(which, (soft, hard))


class ResourceWatchdog:
    """Samples RSS and CPU time of a process and all of its descendants.

    Every process seen in the tree is remembered, so descendants that later
    leave the session can still be killed.
    """

    def __init__(self, pid: int, memory_bytes: int, cpu_time_ms: int):
        self.memory_bytes = memory_bytes
        self.cpu_time_ms = cpu_time_ms
        self.peak_memory_bytes = 0
        self.used_cpu_ms = 0
        self.memory_exceeded = False
        self.cpu_exceeded = False
        self.seen: Dict[int, psutil.Process] = {}
        try:
            self.process = psutil.Process(pid)
        except psutil.NoSuchProcess:
            self.process = None

    def exited(self) -> bool:
        """True once the root process has exited, reaped or not."""
        if self.process is None:
            return True
        try:
            return self.process.status() == psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return True

    def sample(self) -> bool:
        """Take one sample. Returns False once the process is gone."""
        if self.process is None:
            return False
        try:
            procs = [self.process] + self.process.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return False

        rss = 0
        cpu = 0.0
        for proc in procs:
            self.seen.setdefault(proc.pid, proc)
            try:
                rss += proc.memory_info().rss
                times = proc.cpu_times()
                cpu += times.user + times.system
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue

        self.peak_memory_bytes = max(self.peak_memory_bytes, rss)
        self.used_cpu_ms = max(self.used_cpu_ms, int(cpu * 1000))
        if rss > self.memory_bytes:
            self.memory_exceeded = True
        if self.used_cpu_ms > self.cpu_time_ms:
            self.cpu_exceeded = True
        return True

    async def watch(self, kill: Callable[[], None]):
        while self.sample():
            if self.memory_exceeded or self.cpu_exceeded:
                kill()
                return
            await asyncio.sleep(MEMORY_POLL_INTERVAL)

    def kill_seen(self):
        for proc in self.seen.values():
            try:
                proc.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue


def kill_marked(token: str) -> int:
    """Kill every process carrying the sandbox marker ``token``."""
    killed = 0
    for proc in psutil.process_iter():
        if proc.pid == os.getpid():
            continue
        try:
            if proc.environ().get(MARKER_ENV) != token:
                continue
            proc.kill()
            killed += 1
        except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
            continue
    return killed


class Sandbox:
    """Runs exactly one process. Instances are not reusable."""

    def __init__(self, work_dir: Path, limits: ResourceLimits,
                 limit_address_space: bool = True, memory_headroom: int = 0,
                 env: Optional[Dict[str, str]] = None):
        self.work_dir = Path(work_dir)
        self.limits = limits
        # JVM and V8 reserve far more address space than they touch, so they
        # are held to RSS only
        self.limit_address_space = limit_address_space
        self.memory_headroom = memory_headroom
        self.extra_env = env or {}
        self.token = uuid.uuid4().hex
        self._used = False
        self._output_exceeded = False

    def _command(self, argv: List[str]) -> Tuple[List[str], bool]:
        """The command to spawn and whether it runs inside namespaces."""
        if SANDBOX_NAMESPACES == "off":
            return argv, False
        if namespaces_available():
            return isolated_command(argv, self.work_dir, self.limits.no_network), True
        if SANDBOX_NAMESPACES == "on":
            raise SandboxError("Namespaces are required but unavailable on this host")
        return argv, False

    def _environment(self) -> Dict[str, str]:
        env = {
            "PATH": os.environ.get("PATH", "/usr/local/bin:/usr/bin:/bin"),
            "HOME": str(self.work_dir),
            "TMPDIR": str(self.work_dir),
            "LANG": "C.UTF-8",
            MARKER_ENV: self.token,
        }
        if "JAVA_HOME" in os.environ:
            env["JAVA_HOME"] = os.environ["JAVA_HOME"]
        env.update(self.extra_env)
        return env

    def _apply_limits(self):
        # Runs in the child between fork and exec
        cpu_seconds = max(1, math.ceil(self.limits.cpu_time_ms / 1000))
        # Backstop for the watchdog: SIGXCPU first, SIGKILL a second later
        _lower_limit(resource.RLIMIT_CPU, cpu_seconds + 1, cpu_seconds + 2)
        _lower_limit(resource.RLIMIT_CORE, 0)
        _lower_limit(resource.RLIMIT_FSIZE, self.limits.max_output_bytes)
        if self.limit_address_space:
            memory = self.limits.memory_bytes + self.memory_headroom
            _lower_limit(resource.RLIMIT_AS, memory)
            _lower_limit(resource.RLIMIT_STACK, memory)

    @staticmethod
    def _kill(process: asyncio.subprocess.Process):
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    @staticmethod
    async def _feed(stream: asyncio.StreamWriter, data: bytes):
        try:
            if data:
                stream.write(data)
                await stream.drain()
            stream.close()
        except (BrokenPipeError, ConnectionResetError):
            # Program exited without reading all of its input
            pass

    async def _drain(self, stream: asyncio.StreamReader, sink: bytearray,
                     process: asyncio.subprocess.Process):
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                return
            if self._output_exceeded:
                continue
            if len(sink) + len(chunk) > self.limits.max_output_bytes:
                self._output_exceeded = True
                self._kill(process)
                continue
            sink.extend(chunk)

    @staticmethod
    async def _wait_exit(process: asyncio.subprocess.Process, watchdog: ResourceWatchdog):
        # Exit of the process itself; descendants may still hold its pipes
        while process.returncode is None and not watchdog.exited():
            await asyncio.sleep(EXIT_POLL_INTERVAL)

    def _destroy(self, process: asyncio.subprocess.Process, watchdog: ResourceWatchdog, isolated: bool):
        self._kill(process)
        watchdog.kill_seen()
        if not isolated:
            killed = kill_marked(self.token)
            if killed:
                logger.info("[Sandbox] Killed %d detached process(es)", killed)

    async def execute(self, argv: Sequence[str], stdin: bytes = b"") -> RunResult:
        if self._used:
            raise SandboxError("Sandbox instances are single use")
        self._used = True

        command, isolated = self._command(list(argv))
        start_time = time.perf_counter()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.work_dir),
                env=self._environment(),
                preexec_fn=self._apply_limits,
                start_new_session=True,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SandboxError(f"Failed to start {argv[0]}: {e}") from e

        watchdog = ResourceWatchdog(
            process.pid,
            self.limits.memory_bytes + self.memory_headroom,
            self.limits.cpu_time_ms,
        )
        stdout, stderr = bytearray(), bytearray()
        feeder = asyncio.ensure_future(self._feed(process.stdin, stdin))
        monitor = asyncio.ensure_future(watchdog.watch(lambda: self._kill(process)))
        readers = [
            asyncio.ensure_future(self._drain(process.stdout, stdout, process)),
            asyncio.ensure_future(self._drain(process.stderr, stderr, process)),
        ]

        timed_out = False
        try:
            try:
                await asyncio.wait_for(self._wait_exit(process, watchdog),
                                       timeout=self.limits.wall_time_ms / 1000.0)
            except asyncio.TimeoutError:
                timed_out = True
            wall_time_ms = int((time.perf_counter() - start_time) * 1000)

            # Take down anything the program left running
            self._destroy(process, watchdog, isolated)
            try:
                await asyncio.wait_for(process.wait(), timeout=DRAIN_GRACE)
            except asyncio.TimeoutError:
                raise SandboxError(f"{argv[0]} left processes that could not be killed") from None
            done, pending = await asyncio.wait(readers, timeout=DRAIN_GRACE)
            for task in done:
                task.result()
        finally:
            if process.returncode is None:
                self._kill(process)
            for task in [feeder, monitor] + readers:
                if not task.done():
                    task.cancel()

        returncode = process.returncode
        stderr_text = stderr.decode("utf-8", errors="replace")
        if isolated:
            if returncode == SETUP_FAILED and stderr_text.startswith(SETUP_FAILED_MESSAGE):
                raise SandboxError("Failed to set up the sandbox mounts")
            # The namespace shell reports a signal death as 128 + signal
            if returncode is not None and returncode > 128:
                returncode = 128 - returncode
        if returncode == -signal.SIGXCPU or watchdog.cpu_exceeded:
            timed_out = True
        if wall_time_ms > self.limits.wall_time_ms:
            timed_out = True

        return RunResult(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr_text,
            exit_code=returncode,
            wall_time_ms=wall_time_ms,
            peak_memory_bytes=watchdog.peak_memory_bytes,
            timed_out=timed_out,
            killed_for_memory=watchdog.memory_exceeded and not timed_out,
            output_limit_exceeded=self._output_exceeded,
        )
