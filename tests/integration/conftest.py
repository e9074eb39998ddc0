from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _docker_daemon_available() -> bool:
    if shutil.which("docker") is None:
        return False
    result = subprocess.run(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        check=False,
        text=True,
        capture_output=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


@pytest.fixture(scope="session")
def docker_daemon_available() -> bool:
    return _docker_daemon_available()


@pytest.fixture()
def require_docker(docker_daemon_available: bool) -> None:
    if not docker_daemon_available:
        pytest.skip("docker daemon is not available")


@pytest.fixture()
def integration_tmp_dir() -> Iterator[Path]:
    tmp = tempfile.TemporaryDirectory(prefix="xgo-int-")
    try:
        yield Path(tmp.name).resolve()
    finally:
        tmp.cleanup()
