"""Run every scripts/smoke_*.py in a fresh interpreter.

Each smoke script reads configuration from the environment at import time,
so they are isolated per process rather than imported into one session.
"""

import subprocess
import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
SMOKE_SCRIPTS = sorted((REPO_ROOT / "scripts").glob("smoke_*.py"))


@pytest.mark.parametrize("script", SMOKE_SCRIPTS, ids=lambda path: path.stem)
def test_smoke_script(script: Path) -> None:
    result = subprocess.run(
        [sys.executable, str(script)],
        cwd=REPO_ROOT,
        capture_output=True,
        text=True,
        timeout=120,
    )
    assert result.returncode == 0, f"{script.name} failed:\n{result.stdout}\n{result.stderr}"
    assert result.stdout.strip().startswith("OK:"), result.stdout
