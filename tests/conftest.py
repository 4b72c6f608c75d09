from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from cinderci.executors import LocalExecutor
from cinderci.model import Executor
from cinderci.ui.console import Console, set_console


SH = "/bin/sh -e"


def git(cwd: Path, *args: str) -> str:
    out = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return out.stdout.strip()


@pytest.fixture(autouse=True)
def console() -> Console:
    c = Console(quiet=True)
    set_console(c)
    return c


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    h = tmp_path / "home"
    h.mkdir()
    monkeypatch.setenv("HOME", str(h))
    return h


@pytest.fixture
def repo(tmp_path: Path, home: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """A committed git repository on branch main."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "cinderci")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "ci@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.delenv("CIRCLE_BRANCH", raising=False)

    root = tmp_path / "repo"
    root.mkdir()
    git(root, "init", "-q")
    git(root, "checkout", "-q", "-b", "main")
    (root / "hello.txt").write_text("hello\n")
    git(root, "add", ".")
    git(root, "commit", "-q", "-m", "init")
    return root


@pytest.fixture
def make_executor(tmp_path: Path, home: Path):
    started = []

    def _make(name: str = "job") -> LocalExecutor:
        ex = LocalExecutor(
            Executor(name="host", kind="local"),
            name,
            workspace=tmp_path / "work" / name,
            repo_root=tmp_path,
            shell=SH,
        )
        ex.start()
        started.append(ex)
        return ex

    yield _make
    for ex in started:
        ex.close()
