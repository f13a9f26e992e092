import os
from pathlib import Path

# Base paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.environ.get("OJ_DATA_DIR", str(BASE_DIR / "data")))
WORK_DIR = Path(os.environ.get("OJ_WORK_DIR", str(DATA_DIR / "work")))

# Create directories
DATA_DIR.mkdir(parents=True, exist_ok=True)
WORK_DIR.mkdir(parents=True, exist_ok=True)

# Toolchain configurations
LANGUAGES = {
    "javascript": {
        "path": os.environ.get("OJ_NODE", "node"),
        "source": "main.js",
    },
    "python": {
        "path": os.environ.get("OJ_PYTHON", "python3"),
        "source": "main.py",
    },
    "java": {
        "path": os.environ.get("OJ_JAVA", "java"),
        "compiler": os.environ.get("OJ_JAVAC", "javac"),
        "args": ["-Xss64m", "-XX:+UseSerialGC", "-XX:TieredStopAtLevel=1"],
        "source": "Main.java",
    },
    "cpp": {
        "compiler": os.environ.get("OJ_GXX", "g++"),
        "args": ["-std=c++17", "-O2", "-DONLINE_JUDGE"],
        "source": "main.cpp",
    },
}

# Judge settings
MAX_CONCURRENT_JUDGES = int(os.environ.get("OJ_MAX_CONCURRENT_JUDGES", 4))
MAX_QUEUED_SUBMISSIONS = int(os.environ.get("OJ_MAX_QUEUED_SUBMISSIONS", 256))
MAX_JUDGE_RETRIES = int(os.environ.get("OJ_MAX_JUDGE_RETRIES", 2))
JUDGE_RETRY_DELAY = float(os.environ.get("OJ_JUDGE_RETRY_DELAY", 1.0))  # seconds
PRIORITIZE_CONTESTS = os.environ.get("OJ_PRIORITIZE_CONTESTS", "1") != "0"

DEFAULT_TIME_LIMIT = 1000  # ms
DEFAULT_MEMORY_LIMIT = 256  # MB
MAX_OUTPUT_SIZE = 10 * 1024 * 1024  # 10MB
MAX_CODE_LENGTH = 64 * 1024

# Compile step limits
COMPILE_TIME_LIMIT = 30000  # ms
COMPILE_MEMORY_LIMIT = 2048  # MB

# auto: run programs in user, mount, pid and network namespaces when the
# host allows it; on: refuse to judge without them; off: never
SANDBOX_NAMESPACES = os.environ.get("OJ_SANDBOX_NAMESPACES", "auto").lower()
# Masked with an empty tmpfs inside the namespaces (test data, other workspaces)
SANDBOX_HIDDEN_PATHS = [DATA_DIR, WORK_DIR] + [
    Path(p) for p in os.environ.get("OJ_SANDBOX_HIDDEN_PATHS", "").split(os.pathsep) if p
]
# Sampling period of the memory watchdog
MEMORY_POLL_INTERVAL = 0.01  # seconds

# Prize split for ranks 1..3 (percent of the pool)
DEFAULT_PRIZE_DISTRIBUTION = {1: 50, 2: 30, 3: 20}
MAX_RESULTS_PAGE_SIZE = 200

# Database
DATABASE_URL = os.environ.get("OJ_DATABASE_URL", f"sqlite+aiosqlite:///{DATA_DIR}/oj.db")
