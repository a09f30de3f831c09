import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Union

import pytest

from mstl.config import parse_config
from mstl.errors import CommandError
from mstl.git_ops import CommandRunner

Response = Union[str, CommandError, Callable[[list[str]], str]]


class FakeRunner(CommandRunner):
    """
    In-memory command runner. Rules match on an argv prefix; the most recently
    registered matching rule wins. Unmatched commands return "".
    """

    def __init__(self) -> None:
        super().__init__(git_path="git", gh_path="gh", verbose=False)
        self.calls: list[tuple[str, list[str]]] = []
        self._rules: list[tuple[tuple[str, ...], Response]] = []

    def on(self, *prefix: str, out: Response = "", fail: str | None = None, returncode: int = 1) -> "FakeRunner":
        response: Response = out
        if fail is not None:
            response = CommandError(list(prefix), returncode, "", fail)
        self._rules.append((tuple(prefix), response))
        return self

    def run(self, cwd, args):
        self.calls.append((str(cwd) if cwd else "", list(args)))
        for prefix, response in reversed(self._rules):
            if tuple(args[: len(prefix)]) == prefix:
                if isinstance(response, CommandError):
                    raise CommandError(list(args), response.returncode, "", response.stderr)
                if callable(response):
                    return response(list(args))
                return response
        return ""

    def run_interactive(self, cwd, args):
        self.run(cwd, args)

    def commands(self, *prefix: str) -> list[list[str]]:
        return [args for _, args in self.calls if tuple(args[: len(prefix)]) == prefix]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


def make_config(base_dir: Path, *repos: dict, jobs: int | None = None):
    payload: dict = {"repositories": list(repos)}
    if jobs is not None:
        payload["jobs"] = jobs
    return parse_config(payload, base_dir=base_dir)


# -----------------------------
# real git repositories
# -----------------------------

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def git(cwd: Path, *args: str) -> str:
    p = subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True, check=True)
    return p.stdout.strip()


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content, encoding="utf-8")
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture
def git_env(monkeypatch):
    for key, value in {
        "GIT_AUTHOR_NAME": "Test Author",
        "GIT_AUTHOR_EMAIL": "author@example.com",
        "GIT_COMMITTER_NAME": "Test Author",
        "GIT_COMMITTER_EMAIL": "author@example.com",
        "GIT_CONFIG_NOSYSTEM": "1",
    }.items():
        monkeypatch.setenv(key, value)
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)


@pytest.fixture
def remote_repo(tmp_path, git_env) -> Path:
    """A bare repository on branch main holding one commit of a.txt."""
    seed = tmp_path / "seed"
    seed.mkdir()
    git(seed, "init", "-q")
    git(seed, "symbolic-ref", "HEAD", "refs/heads/main")
    commit_file(seed, "a.txt", "line1\nline2\nline3\n", "initial")
    bare = tmp_path / "origin.git"
    git(tmp_path, "clone", "-q", "--bare", str(seed), str(bare))
    return bare


@pytest.fixture
def workspace(tmp_path, remote_repo):
    """(config, base_dir) with repository "alpha" cloned from remote_repo."""
    base = tmp_path / "ws"
    base.mkdir()
    git(base, "clone", "-q", str(remote_repo), "alpha")
    config = make_config(base, {"id": "alpha", "url": str(remote_repo), "branch": "main"})
    return config, base


@pytest.fixture
def other_clone(tmp_path, remote_repo) -> Path:
    """A second clone of remote_repo, used to publish commits behind the workspace's back."""
    other = tmp_path / "other"
    git(tmp_path, "clone", "-q", str(remote_repo), str(other))
    return other
