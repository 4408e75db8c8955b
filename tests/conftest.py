"""Shared test fixtures for ralph tests."""

from __future__ import annotations

import io
import os
import stat
import sys
from pathlib import Path
from typing import Callable

import pytest
from rich.console import Console

from ralphloop.config import ENV_NAMES, RalphConfig
from ralphloop.ledger import PROGRESS_HEADER

SAMPLE_PRD = """# Test PRD

## Tasks
- [ ] task alpha
- [ ] task alpha extended
- [ ] task beta
"""

# Prelude shared by every fake agent: parses the prompt the way the real CLI receives it.
AGENT_PRELUDE = '''import re
import sys
from pathlib import Path

prompt = sys.argv[sys.argv.index("-p") + 1]
planning = "REWRITE the Tasks" in prompt
prd = Path("PRD.md")
progress = Path("progress.txt")
'''

NOOP_AGENT = 'print("mock-claude: no-op")\n'

# Marks the first pending task done; prints the completion token when none remain.
# Planning calls replace the task list with two fresh tasks.
PROGRESS_AGENT = '''
if planning:
    prd.write_text("# PRD\\n\\n## Tasks\\n- [ ] new task one\\n- [ ] new task two\\n")
    print("planned new tasks")
    sys.exit(0)
tasks = re.findall(r"^- \\[[ x]\\] (.*)$", prd.read_text(), re.M)
done = set(progress.read_text().splitlines())
for task in tasks:
    if "[DONE] " + task not in done:
        with progress.open("a") as f:
            f.write("[DONE] " + task + "\\n")
        print("finished " + task)
        break
else:
    print("All done. <promise>COMPLETE</promise>")
'''


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip ralph settings from the environment and stop .env loading."""
    for name in list(ENV_NAMES.values()) + ["GH_TOKEN", "GITHUB_TOKEN"]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("ralphloop.config.load_dotenv", lambda: None)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create a project directory with PRD.md and an empty progress log."""
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    (project_dir / "PRD.md").write_text(SAMPLE_PRD, encoding="utf-8")
    (project_dir / "progress.txt").write_text(PROGRESS_HEADER, encoding="utf-8")
    return project_dir


@pytest.fixture
def quiet_console() -> Console:
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def make_config(project: Path) -> Callable[..., RalphConfig]:
    """Build a RalphConfig for the sample project with git disabled."""

    def _make(**overrides) -> RalphConfig:
        settings = {
            "project_dir": project,
            "no_git": True,
            "max_retries": 1,
            "retry_delay": 1,
            "credit_wait_seconds": 0,
        }
        settings.update(overrides)
        return RalphConfig(**settings)

    return _make


@pytest.fixture
def agent_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Callable[[str], Path]:
    """Install a fake ``claude`` executable on PATH running the given Python body."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _install(body: str) -> Path:
        script = bin_dir / "fake_claude.py"
        script.write_text(AGENT_PRELUDE + body, encoding="utf-8")
        wrapper = bin_dir / "claude"
        wrapper.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
        wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return wrapper

    return _install
