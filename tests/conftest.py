import sys
import time
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from software.toy_bridge.audit import AuditLogger


@pytest.fixture(autouse=True)
def isolated_log_dir(tmp_path, monkeypatch):
    """Keep every test's ops events out of the repo's logs/ directory."""

    log_dir = tmp_path / "ops_logs"
    monkeypatch.setenv("TOY_BRIDGE_LOG_DIR", str(log_dir))
    return log_dir


@pytest.fixture
def audit(isolated_log_dir):
    return AuditLogger(isolated_log_dir)


def wait_until(predicate, timeout=2.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
