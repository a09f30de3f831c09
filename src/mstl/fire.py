# src/mstl/fire.py
"""
Emergency "save everything" command: in every repository, commit all changes onto a
freshly named branch and push it.

Branch names can collide with a concurrent actor, so each repository runs a small
state machine:

    GENERATE_NAME -> CHECKOUT_LOCAL -> COMMIT -> PUSH -> SUCCESS
                                                   +-> RETRY -> GENERATE_NAME
                                                   +-> FAIL
"""
from __future__ import annotations

import getpass
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

from mstl.config import Config
from mstl.errors import CommandError
from mstl.git_ops import CommandRunner, remote_branch_exists
from mstl.logging import get_logger
from mstl.tasks import BoundedTaskRunner
from mstl.utils import sanitize_name, utc_ts

log = get_logger(__name__)

BRANCH_PREFIX = "mstl-fire"
MAX_ATTEMPTS = 5
COMMIT_MESSAGE = "Emergency commit triggered by mstl fire command."

# push stderr fragments meaning "that ref is taken"
_COLLISION_MARKERS = ("rejected", "already exists", "fetch first", "non-fast-forward")


class FireState(str, Enum):
    GENERATE_NAME = "generate_name"
    CHECKOUT_LOCAL = "checkout_local"
    COMMIT = "commit"
    PUSH = "push"
    RETRY = "retry"
    SUCCESS = "success"
    FAIL = "fail"


TERMINAL_STATES = (FireState.SUCCESS, FireState.FAIL)


def current_user() -> str:
    try:
        name = getpass.getuser()
    except (KeyError, OSError):
        name = os.environ.get("USER") or os.environ.get("USERNAME") or ""
    if not name:
        return "unknown"
    # DOMAIN\user
    return sanitize_name(name.split("\\")[-1])


def fire_branch_name(repo_id: str, user: str, token: str, attempt: int) -> str:
    base = f"{BRANCH_PREFIX}-{repo_id}-{user}-{token}"
    return base if attempt == 0 else f"{base}-{attempt}"


@dataclass
class FireResult:
    repo_id: str
    state: FireState
    branch: str = ""
    attempts: int = 0
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.state is FireState.SUCCESS

    def to_dict(self) -> dict:
        return {
            "repo_id": self.repo_id,
            "state": self.state.value,
            "branch": self.branch,
            "attempts": self.attempts,
            "reason": self.reason,
        }


@dataclass
class FireMachine:
    repo_id: str
    repo_dir: Path
    runner: CommandRunner
    user: str
    token: str
    max_attempts: int = MAX_ATTEMPTS

    state: FireState = FireState.GENERATE_NAME
    attempt: int = 0
    branch: str = ""
    reason: str = ""
    history: list[FireState] = field(default_factory=list)

    def step(self) -> FireState:
        """Run the current state's action and move to the next state."""
        self.history.append(self.state)
        handler: Callable[[], FireState] = {
            FireState.GENERATE_NAME: self._generate_name,
            FireState.CHECKOUT_LOCAL: self._checkout_local,
            FireState.COMMIT: self._commit,
            FireState.PUSH: self._push,
            FireState.RETRY: self._retry,
        }[self.state]
        self.state = handler()
        return self.state

    def run(self) -> FireResult:
        while self.state not in TERMINAL_STATES:
            self.step()
        return FireResult(
            repo_id=self.repo_id,
            state=self.state,
            branch=self.branch if self.state is FireState.SUCCESS else "",
            attempts=self.attempt + 1,
            reason=self.reason,
        )

    # -----------------------------
    # states
    # -----------------------------

    def _generate_name(self) -> FireState:
        self.branch = fire_branch_name(self.repo_id, self.user, self.token, self.attempt)
        try:
            taken = remote_branch_exists(self.runner, self.repo_dir, self.branch)
        except CommandError as e:
            # no reachable remote: the push will tell
            log.debug("[%s] remote probe for %s failed: %s", self.repo_id, self.branch, e)
            taken = False
        if taken:
            self.reason = f"branch {self.branch} already exists on origin"
            return FireState.RETRY
        return FireState.CHECKOUT_LOCAL

    def _checkout_local(self) -> FireState:
        try:
            self.runner.git(self.repo_dir, "checkout", "-b", self.branch)
        except CommandError as e:
            self.reason = f"error creating branch {self.branch}: {e}"
            return FireState.FAIL
        return FireState.COMMIT

    def _commit(self) -> FireState:
        try:
            self.runner.git(self.repo_dir, "add", ".")
        except CommandError as e:
            log.warning("[%s] error staging changes: %s", self.repo_id, e)
        try:
            self.runner.git(self.repo_dir, "commit", "-m", COMMIT_MESSAGE, "--no-gpg-sign")
        except CommandError as e:
            # nothing to commit is fine: the branch is still worth pushing
            log.info("[%s] commit skipped: %s", self.repo_id, e)
        return FireState.PUSH

    def _push(self) -> FireState:
        try:
            self.runner.git(self.repo_dir, "push", "-u", "origin", self.branch)
            return FireState.SUCCESS
        except CommandError as e:
            if self._is_collision(e):
                self.reason = f"push of {self.branch} rejected: {e.stderr.strip()}"
                return FireState.RETRY
            self.reason = f"push of {self.branch} failed: {e}"
            return FireState.FAIL

    def _is_collision(self, e: CommandError) -> bool:
        stderr = e.stderr.lower()
        if any(m in stderr for m in _COLLISION_MARKERS):
            return True
        try:
            return remote_branch_exists(self.runner, self.repo_dir, self.branch)
        except CommandError:
            return False

    def _retry(self) -> FireState:
        log.warning("[%s] %s; retrying with a new branch name", self.repo_id, self.reason)
        if self.attempt + 1 >= self.max_attempts:
            self.reason = f"failed to find an available branch name after {self.max_attempts} attempts"
            return FireState.FAIL
        self.attempt += 1
        return FireState.GENERATE_NAME


def run_fire(
        config: Config,
        runner: CommandRunner,
        *,
        jobs: int = 1,
        user: str | None = None,
        token: str | None = None,
) -> list[FireResult]:
    """Run the machine in every repository present on disk. Results sorted by id."""
    user = user or current_user()
    token = token or utc_ts()
    log.warning("FIRE command initiated. Branch suffix: %s-%s", user, token)

    present = [r for r in config.repositories if config.repo_dir(r).exists()]

    def fire(repo) -> FireResult:
        machine = FireMachine(repo.repo_id, config.repo_dir(repo), runner, user, token)
        result = machine.run()
        if result.ok:
            log.warning("[%s] secured in %s", repo.repo_id, result.branch)
        else:
            log.error("[%s] %s", repo.repo_id, result.reason)
        return result

    outcome = BoundedTaskRunner(jobs).run(present, fire)
    results = list(outcome.results)
    for repo, err in outcome.errors:
        results.append(FireResult(repo.repo_id, FireState.FAIL, reason=str(err)))
    return sorted(results, key=lambda r: r.repo_id)
