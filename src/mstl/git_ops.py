# src/mstl/git_ops.py
from __future__ import annotations

import os
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from mstl.errors import CommandError
from mstl.logging import get_logger

log = get_logger(__name__)

# Held for the whole command in verbose mode so the "[CMD]" start line and the
# completion line of one invocation are never interleaved with another task's.
_verbose_lock = threading.Lock()


def default_git_path() -> str:
    env_path = os.environ.get("GIT_EXEC_PATH")
    if env_path:
        return str(Path(env_path) / "git")
    return "git"


def default_gh_path() -> str:
    env_path = os.environ.get("GH_EXEC_PATH")
    if env_path:
        return str(Path(env_path) / "gh")
    return "gh"


@dataclass
class CommandRunner:
    """
    Narrow capability for running external commands.

    Contract:
    - run() returns stripped stdout, or raises CommandError (exit status + stderr).
    - run_interactive() inherits stdin and the terminal (stdout redirected to stderr)
      and only reports failure.
    - No timeouts: a hung external process blocks its caller.
    """

    git_path: str = "git"
    gh_path: str = "gh"
    verbose: bool = False

    def run(self, cwd: str | Path | None, args: list[str]) -> str:
        return self._execute(cwd, args, capture=True)

    def run_interactive(self, cwd: str | Path | None, args: list[str]) -> None:
        self._execute(cwd, args, capture=False)

    def git(self, cwd: str | Path | None, *args: str) -> str:
        return self.run(cwd, [self.git_path, *args])

    def git_interactive(self, cwd: str | Path | None, *args: str) -> None:
        self.run_interactive(cwd, [self.git_path, *args])

    def gh(self, *args: str, cwd: str | Path | None = None) -> str:
        return self.run(cwd, [self.gh_path, *args])

    def _execute(self, cwd: str | Path | None, args: list[str], *, capture: bool) -> str:
        if not self.verbose:
            return _spawn(cwd, args, capture=capture)

        with _verbose_lock:
            start = time.monotonic()
            log.debug("[CMD] %s", " ".join(args))
            try:
                return _spawn(cwd, args, capture=capture)
            finally:
                elapsed_ms = int((time.monotonic() - start) * 1000)
                log.debug("[CMD] %s (%sms)", " ".join(args), f"{elapsed_ms:,}")


def _spawn(cwd: str | Path | None, args: list[str], *, capture: bool) -> str:
    try:
        if capture:
            p = subprocess.run(
                args,
                cwd=str(cwd) if cwd else None,
                capture_output=True,
                text=True,
                stdin=subprocess.DEVNULL,
            )
        else:
            # stdout is reserved for the JSON result, so progress goes to fd 2
            p = subprocess.run(args, cwd=str(cwd) if cwd else None, text=True, stdout=2)
    except OSError as e:
        # Binary missing or cwd unusable: same failure channel as a non-zero exit.
        raise CommandError(args, -1, "", str(e)) from e

    if p.returncode != 0:
        raise CommandError(args, p.returncode, p.stdout or "", p.stderr or "")
    return (p.stdout or "").strip()


def resolve_remote_branch_hash(runner: CommandRunner, repo_dir: str | Path, branch: str, *, allow_network: bool = True) -> str:
    """
    Resolve origin/<branch> to a commit hash.

    The local remote-tracking ref is tried first (no network I/O). When it is absent
    and allow_network is set, `git ls-remote --heads` is asked instead. Returns "" when
    the branch does not exist remotely. Network failures propagate as CommandError.
    """
    try:
        out = runner.git(repo_dir, "rev-parse", "--verify", "--quiet", f"refs/remotes/origin/{branch}")
        if out:
            return out.strip()
    except CommandError:
        pass

    if not allow_network:
        return ""

    out = runner.git(repo_dir, "ls-remote", "--heads", "origin", branch)
    for line in out.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == f"refs/heads/{branch}":
            return parts[0]
    return ""


def remote_branch_exists(runner: CommandRunner, repo_dir: str | Path, branch: str) -> bool:
    """Network probe: does refs/heads/<branch> exist on origin right now?"""
    out = runner.git(repo_dir, "ls-remote", "--heads", "origin", branch)
    return any(
        len(parts) >= 2 and parts[1] == f"refs/heads/{branch}"
        for parts in (line.split() for line in out.splitlines())
    )
