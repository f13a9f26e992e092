import os
import sys
import tempfile

# Configuration is read at import time, so point it at a scratch directory
# and at this interpreter before anything imports algojudge
DATA_DIR = tempfile.mkdtemp(prefix="algojudge_test_")
os.environ.setdefault("OJ_DATA_DIR", DATA_DIR)
os.environ.setdefault("OJ_PYTHON", sys.executable)
os.environ.setdefault("OJ_SANDBOX_NAMESPACES", "off")
os.environ.setdefault("OJ_JUDGE_RETRY_DELAY", "0")

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import shutil

import pytest

from algojudge.sandbox import ResourceLimits


def has_tool(name):
    return shutil.which(name) is not None


requires_gxx = pytest.mark.skipif(not has_tool("g++"), reason="g++ not installed")
requires_java = pytest.mark.skipif(not (has_tool("javac") and has_tool("java")), reason="JDK not installed")
requires_node = pytest.mark.skipif(not has_tool("node"), reason="node not installed")


@pytest.fixture
def limits():
    return ResourceLimits(cpu_time_ms=4000, wall_time_ms=3000, memory_bytes=512 * 1024 * 1024)


@pytest.fixture
def work_dir(tmp_path):
    return tmp_path
