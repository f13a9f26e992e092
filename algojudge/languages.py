import enum
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from algojudge.config import COMPILE_MEMORY_LIMIT, COMPILE_TIME_LIMIT, LANGUAGES
from algojudge.sandbox import ResourceLimits, RunResult, Sandbox, SandboxError

logger = logging.getLogger(__name__)

# Compiler diagnostics kept on a failed build
MAX_COMPILE_MESSAGE = 2000

JAVA_PUBLIC_CLASS = re.compile(r"public\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([A-Za-z_$][\w$]*)")
# Comments and string/char literals, blanked out before looking for the class
JAVA_NOISE = re.compile(r'//[^\n]*|/\*.*?\*/|"(?:\\.|[^"\\])*"|\'(?:\\.|[^\'\\])*\'', re.S)


class Language(str, enum.Enum):
    JAVASCRIPT = "javascript"
    PYTHON = "python"
    JAVA = "java"
    CPP = "cpp"


@dataclass(frozen=True)
class Artifact:
    language: Language
    work_dir: Path
    entry: str
    compile_time_ms: int = 0


@dataclass(frozen=True)
class CompileFailure:
    stderr: str
    exit_code: int
    compile_time_ms: int


def compile_limits() -> ResourceLimits:
    return ResourceLimits(
        cpu_time_ms=COMPILE_TIME_LIMIT * 2,
        wall_time_ms=COMPILE_TIME_LIMIT,
        memory_bytes=COMPILE_MEMORY_LIMIT * 1024 * 1024,
        max_output_bytes=64 * 1024 * 1024,
    )


class LanguageAdapter:
    language: Language
    limit_address_space = True
    memory_headroom = 0
    # Runtime messages printed when an allocation fails
    oom_markers: Tuple[str, ...] = ()

    def __init__(self, toolchain: Dict):
        self.toolchain = toolchain

    def source_name(self, source: str) -> str:
        return self.toolchain["source"]

    def compile_command(self, source_file: Path) -> List[str]:
        raise NotImplementedError

    def run_command(self, artifact: Artifact, limits: ResourceLimits) -> List[str]:
        raise NotImplementedError

    def entry_point(self, source_file: Path) -> str:
        return source_file.name

    def environment(self) -> Dict[str, str]:
        return {}

    def _sandbox(self, work_dir: Path, limits: ResourceLimits) -> Sandbox:
        return Sandbox(
            work_dir,
            limits,
            limit_address_space=self.limit_address_space,
            memory_headroom=self.memory_headroom,
            env=self.environment(),
        )

    async def compile(self, source: str, work_dir: Path) -> Union[Artifact, CompileFailure]:
        """Build the artifact, or syntax-check it for interpreted languages."""
        source_file = work_dir / self.source_name(source)
        try:
            source_file.write_text(source, encoding="utf-8")
        except OSError as e:
            raise SandboxError(f"Failed to write source: {e}") from e

        result = await self._sandbox(work_dir, compile_limits()).execute(self.compile_command(source_file))

        if result.timed_out:
            return CompileFailure("Compilation timeout", result.exit_code, result.wall_time_ms)
        if not result.succeeded:
            message = result.stderr or result.stdout
            if result.killed_for_memory:
                message = "Compiler exceeded the memory limit"
            return CompileFailure(message[:MAX_COMPILE_MESSAGE], result.exit_code, result.wall_time_ms)

        return Artifact(self.language, work_dir, self.entry_point(source_file), result.wall_time_ms)

    async def run(self, artifact: Artifact, stdin: str, limits: ResourceLimits) -> RunResult:
        """Execute the artifact on one input. Program failures come back in the result."""
        sandbox = self._sandbox(artifact.work_dir, limits)
        result = await sandbox.execute(self.run_command(artifact, limits), stdin.encode("utf-8"))
        if not result.succeeded and not result.timed_out and self.out_of_memory(result.stderr):
            result.killed_for_memory = True
        return result

    def out_of_memory(self, stderr: str) -> bool:
        return any(marker in stderr for marker in self.oom_markers)


class CppAdapter(LanguageAdapter):
    language = Language.CPP
    oom_markers = ("std::bad_alloc",)

    def compile_command(self, source_file: Path) -> List[str]:
        exe_file = source_file.with_suffix("")
        return [self.toolchain["compiler"]] + self.toolchain["args"] + [str(source_file), "-o", str(exe_file)]

    def entry_point(self, source_file: Path) -> str:
        return source_file.with_suffix("").name

    def run_command(self, artifact: Artifact, limits: ResourceLimits) -> List[str]:
        return [str(artifact.work_dir / artifact.entry)]


class JavaAdapter(LanguageAdapter):
    language = Language.JAVA
    limit_address_space = False
    # Metaspace, code cache and thread stacks live outside -Xmx
    memory_headroom = 128 * 1024 * 1024
    oom_markers = ("java.lang.OutOfMemoryError",)

    def main_class(self, source: str) -> str:
        match = JAVA_PUBLIC_CLASS.search(JAVA_NOISE.sub(" ", source))
        return match.group(1) if match else Path(self.toolchain["source"]).stem

    def source_name(self, source: str) -> str:
        return f"{self.main_class(source)}.java"

    def compile_command(self, source_file: Path) -> List[str]:
        return [self.toolchain["compiler"], "-encoding", "UTF-8", "-d", ".", source_file.name]

    def entry_point(self, source_file: Path) -> str:
        return source_file.stem

    def run_command(self, artifact: Artifact, limits: ResourceLimits) -> List[str]:
        heap_mb = max(16, limits.memory_bytes // (1024 * 1024))
        return ([self.toolchain["path"], f"-Xmx{heap_mb}m"] + self.toolchain["args"]
                + ["-cp", ".", artifact.entry])


class PythonAdapter(LanguageAdapter):
    language = Language.PYTHON
    oom_markers = ("MemoryError",)

    def environment(self) -> Dict[str, str]:
        return {"PYTHONIOENCODING": "utf-8", "PYTHONDONTWRITEBYTECODE": "1"}

    def compile_command(self, source_file: Path) -> List[str]:
        return [self.toolchain["path"], "-I", "-m", "py_compile", source_file.name]

    def run_command(self, artifact: Artifact, limits: ResourceLimits) -> List[str]:
        return [self.toolchain["path"], "-I", artifact.entry]


class JavaScriptAdapter(LanguageAdapter):
    language = Language.JAVASCRIPT
    limit_address_space = False
    memory_headroom = 64 * 1024 * 1024
    oom_markers = ("JavaScript heap out of memory", "Allocation failed")

    def compile_command(self, source_file: Path) -> List[str]:
        return [self.toolchain["path"], "--check", source_file.name]

    def run_command(self, artifact: Artifact, limits: ResourceLimits) -> List[str]:
        heap_mb = max(16, limits.memory_bytes // (1024 * 1024))
        return [self.toolchain["path"], f"--max-old-space-size={heap_mb}", artifact.entry]


ADAPTERS = {
    Language.JAVASCRIPT: JavaScriptAdapter,
    Language.PYTHON: PythonAdapter,
    Language.JAVA: JavaAdapter,
    Language.CPP: CppAdapter,
}


def get_adapter(language: Union[str, Language], toolchain: Optional[Dict] = None) -> LanguageAdapter:
    """Adapter for a supported language; ValueError for anything else."""
    language = Language(language)
    return ADAPTERS[language](toolchain or LANGUAGES[language.value])
