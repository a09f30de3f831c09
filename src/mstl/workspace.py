# src/mstl/workspace.py
from __future__ import annotations

from dataclasses import dataclass

from mstl.config import Config, Repository
from mstl.errors import CommandError, MstlError, MutationError, PreconditionError
from mstl.git_ops import CommandRunner
from mstl.logging import get_logger
from mstl.pr import push_repositories
from mstl.status import StatusRecord, collect_status, validate_integrity, validate_status_for_action
from mstl.tasks import BoundedTaskRunner

log = get_logger(__name__)

SYNC_MERGE = "merge"
SYNC_REBASE = "rebase"


# -----------------------------
# init
# -----------------------------

def _checkout(runner: CommandRunner, repo: Repository, repo_dir, depth: int | None) -> None:
    """
    Contract:
    - branch only: check it out (git creates the local branch from origin/<branch>).
    - revision only: detached checkout of that commit.
    - both: the branch is (re)set to the revision, so HEAD is the pinned commit even
      when the remote branch has moved on.
    """
    rid = repo.repo_id
    if repo.revision and depth:
        # a shallow clone may not contain the pinned commit
        try:
            runner.git(repo_dir, "fetch", "--depth", str(depth), "origin", repo.revision)
        except CommandError as e:
            log.debug("[%s] fetching %s failed: %s", rid, repo.revision, e)

    if repo.branch and repo.revision:
        try:
            runner.git(repo_dir, "checkout", "-B", repo.branch, repo.revision)
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to set branch {repo.branch} to {repo.revision}: {e}") from e
        return

    if repo.branch:
        try:
            runner.git(repo_dir, "checkout", repo.branch)
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to checkout branch {repo.branch}: {e}") from e
        return

    if repo.revision:
        try:
            runner.git(repo_dir, "checkout", repo.revision)
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to checkout revision {repo.revision}: {e}") from e


def perform_init(
        config: Config,
        runner: CommandRunner,
        *,
        jobs: int = 1,
        depth: int | None = None,
) -> list[str]:
    """
    Clone every missing repository into the base directory and check out its ref.
    Existing directories are validated, never re-cloned. Returns the cloned ids.
    """
    if depth is not None and depth < 1:
        raise PreconditionError(f"depth must be a positive integer, got {depth}")
    validate_integrity(config, runner)

    def init(repo: Repository) -> str | None:
        repo_dir = config.repo_dir(repo)
        if repo_dir.exists():
            log.info("[%s] already present, skipping clone", repo.repo_id)
            return None

        args = ["clone"]
        if depth:
            args += ["--depth", str(depth), "--no-single-branch"]
        args += [repo.url, str(repo_dir)]
        log.info("[%s] cloning %s", repo.repo_id, repo.url)
        try:
            runner.git(config.base_dir, *args)
        except CommandError as e:
            raise MstlError(f"[{repo.repo_id}] clone failed: {e}") from e

        _checkout(runner, repo, repo_dir, depth)
        return repo.repo_id

    outcome = BoundedTaskRunner(jobs).run(config.repositories, init)
    if not outcome.ok:
        raise MutationError("init", [str(err) for _, err in outcome.errors])
    return sorted(outcome.results)


# -----------------------------
# push
# -----------------------------

@dataclass
class PushPlan:
    records: list[StatusRecord]
    targets: list[str]


def plan_push(config: Config, runner: CommandRunner, *, jobs: int = 1) -> PushPlan:
    validate_integrity(config, runner)
    records = collect_status(config, runner, jobs=jobs)
    validate_status_for_action(records)
    targets = [r.repo_id for r in records if r.ahead and not r.detached]
    return PushPlan(records=records, targets=targets)


def push_ahead(config: Config, runner: CommandRunner, *, jobs: int = 1, dry_run: bool = False) -> PushPlan:
    """Push every repository with unpushed commits, refusing when any is behind or conflicted."""
    plan = plan_push(config, runner, jobs=jobs)
    if dry_run or not plan.targets:
        return plan
    push_repositories(config, plan.targets, plan.records, runner, jobs=jobs)
    return plan


# -----------------------------
# sync
# -----------------------------

@dataclass
class SyncResult:
    pulled: list[str]
    skipped: list[str]


def sync_repositories(
        config: Config,
        runner: CommandRunner,
        *,
        jobs: int = 1,
        strategy: str | None = None,
) -> SyncResult:
    """
    `git pull` every repository whose branch exists on the remote, one at a time.

    When a repository is both ahead and behind, a strategy (merge or rebase) is
    required; without one nothing is pulled.
    """
    validate_integrity(config, runner)
    records = collect_status(config, runner, jobs=jobs)

    needs_strategy = any(r.behind and r.ahead for r in records)
    if needs_strategy and strategy not in (SYNC_MERGE, SYNC_REBASE):
        diverged = ", ".join(r.repo_id for r in records if r.behind and r.ahead)
        raise PreconditionError(f"diverged repositories ({diverged}): choose --merge or --rebase")

    pull_args = ["pull"]
    if strategy == SYNC_REBASE:
        pull_args.append("--rebase")
    elif strategy == SYNC_MERGE:
        pull_args.append("--no-rebase")

    result = SyncResult(pulled=[], skipped=[])
    for rec in records:
        if not rec.remote_head:
            log.info("[%s] remote branch not found, skipping", rec.repo_id)
            result.skipped.append(rec.repo_id)
            continue
        log.info("[%s] syncing", rec.repo_id)
        try:
            runner.git_interactive(rec.repo_dir, *pull_args)
        except CommandError as e:
            raise MutationError("sync", [f"[{rec.repo_id}] pull failed: {e}"]) from e
        result.pulled.append(rec.repo_id)
    return result

