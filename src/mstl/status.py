# src/mstl/status.py
from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from mstl.config import Config, Repository
from mstl.errors import CommandError, ConfigError, PreconditionError
from mstl.git_ops import CommandRunner, resolve_remote_branch_hash
from mstl.logging import get_logger
from mstl.tasks import BoundedTaskRunner

log = get_logger(__name__)

# What `git rev-parse --abbrev-ref HEAD` prints when there is no symbolic branch.
DETACHED = "HEAD"

CONFLICT_MARKER = "<<<<<<<"
# `git fetch origin <branch>` stderr when the branch does not exist remotely
MISSING_REMOTE_REF = "couldn't find remote ref"


@dataclass
class StatusRecord:
    repo_id: str
    repo_dir: str
    config_ref: str = ""
    branch: str = ""
    local_head: str = ""
    local_head_short: str = ""
    remote_head: str = ""
    # True / False, or None when the query deciding it failed.
    ahead: bool | None = False
    behind: bool | None = False
    conflict: bool | None = False

    @property
    def detached(self) -> bool:
        return self.branch == DETACHED

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["detached"] = self.detached
        return out


def _config_ref(repo: Repository) -> str:
    ref = repo.branch or ""
    if repo.revision:
        ref = f"{ref}:{repo.revision}" if ref else repo.revision
    return ref


def _try_git(runner: CommandRunner, repo_dir: Path, *args: str) -> str | None:
    try:
        return runner.git(repo_dir, *args)
    except CommandError as e:
        log.debug("git %s failed in %s: %s", " ".join(args), repo_dir, e)
        return None


def _rev_count_nonzero(runner: CommandRunner, repo_dir: Path, rng: str) -> bool | None:
    out = _try_git(runner, repo_dir, "rev-list", "--count", rng)
    if out is None:
        return None
    return out.strip() != "0"


def fetch_branch(runner: CommandRunner, repo_id: str, repo_dir: Path, branch: str) -> None:
    """
    Refresh refs/remotes/origin/<branch>. When the branch is gone from the remote the
    tracking ref is deleted, so it no longer stands in for a remote head.
    """
    try:
        runner.git(repo_dir, "fetch", "origin", branch)
    except CommandError as e:
        if MISSING_REMOTE_REF not in e.stderr:
            log.debug("[%s] fetch of %s failed: %s", repo_id, branch, e)
            return
        ref = f"refs/remotes/origin/{branch}"
        if not _try_git(runner, repo_dir, "rev-parse", "--verify", "--quiet", ref):
            return
        if _try_git(runner, repo_dir, "update-ref", "-d", ref) is not None:
            log.info("[%s] origin/%s no longer exists, dropped the tracking ref", repo_id, branch)


def repair_stale_upstream(runner: CommandRunner, repo_id: str, repo_dir: Path, branch: str) -> bool:
    """
    Clear the upstream of <branch> when it points at a remote branch that no longer
    exists (renamed or deleted). Returns True when a repair happened.
    """
    track = _try_git(runner, repo_dir, "for-each-ref", "--format=%(upstream:track)", f"refs/heads/{branch}")
    if not track or "[gone]" not in track:
        return False

    upstream = _try_git(runner, repo_dir, "for-each-ref", "--format=%(upstream:short)", f"refs/heads/{branch}") or "?"
    if _try_git(runner, repo_dir, "branch", "--unset-upstream", branch) is None:
        return False
    log.warning(
        "[%s] upstream %s of branch %s no longer exists on the remote; tracking configuration cleared",
        repo_id,
        upstream,
        branch,
    )
    return True


def get_repo_status(
        config: Config,
        repo: Repository,
        runner: CommandRunner,
        *,
        no_fetch: bool = False,
) -> StatusRecord | None:
    """
    Compute one StatusRecord. Returns None when the working directory is absent
    (the repository has not been initialized yet). Never raises for git failures:
    each failing query degrades only the field it decides.
    """
    repo_dir = config.repo_dir(repo)
    if not repo_dir.exists():
        return None

    rec = StatusRecord(repo_id=repo.repo_id, repo_dir=str(repo_dir), config_ref=_config_ref(repo))

    branch = _try_git(runner, repo_dir, "rev-parse", "--abbrev-ref", "HEAD")
    if branch is None:
        # Unborn branch: HEAD has no commit yet but still names a branch.
        branch = _try_git(runner, repo_dir, "symbolic-ref", "--short", "-q", "HEAD")
    rec.branch = branch or ""

    rec.local_head = _try_git(runner, repo_dir, "rev-parse", "HEAD") or ""
    rec.local_head_short = _try_git(runner, repo_dir, "rev-parse", "--short", "HEAD") or ""

    if rec.detached or not rec.branch:
        rec.ahead = False
        return rec

    if not no_fetch:
        fetch_branch(runner, rec.repo_id, repo_dir, rec.branch)

    repair_stale_upstream(runner, rec.repo_id, repo_dir, rec.branch)

    try:
        rec.remote_head = resolve_remote_branch_hash(runner, repo_dir, rec.branch, allow_network=not no_fetch)
    except CommandError as e:
        log.debug("[%s] remote lookup failed: %s", rec.repo_id, e)
        rec.remote_head = ""
        rec.ahead = None
        return rec

    if not rec.remote_head:
        # No remote counterpart: everything local is unpushed.
        rec.ahead = True
        return rec

    if not rec.local_head:
        rec.ahead = None
        rec.behind = None
        rec.conflict = None
        return rec

    if rec.remote_head == rec.local_head:
        return rec

    rec.ahead = _rev_count_nonzero(runner, repo_dir, f"{rec.remote_head}..{rec.local_head}")
    rec.behind = _rev_count_nonzero(runner, repo_dir, f"{rec.local_head}..{rec.remote_head}")

    if rec.ahead and rec.behind:
        rec.conflict = _detect_conflict(runner, repo_dir, rec.local_head, rec.remote_head)

    return rec


def _detect_conflict(runner: CommandRunner, repo_dir: Path, local: str, remote: str) -> bool | None:
    base = _try_git(runner, repo_dir, "merge-base", local, remote)
    if not base:
        return None
    out = _try_git(runner, repo_dir, "merge-tree", base.strip(), local, remote)
    if out is None:
        return None
    return CONFLICT_MARKER in out


def collect_status(
        config: Config,
        runner: CommandRunner,
        *,
        jobs: int = 1,
        no_fetch: bool = False,
) -> list[StatusRecord]:
    """One record per present repository, sorted by repository id."""
    outcome = BoundedTaskRunner(jobs).run(
        config.repositories,
        lambda repo: get_repo_status(config, repo, runner, no_fetch=no_fetch),
    )
    for repo, err in outcome.errors:
        # get_repo_status only degrades; anything here is a bug worth seeing.
        log.warning("[%s] status collection failed: %s", repo.repo_id, err)
    return sorted(outcome.results, key=lambda r: r.repo_id)


def validate_integrity(config: Config, runner: CommandRunner) -> None:
    """
    Every repository directory that exists must be a git work tree whose origin
    matches the configured URL. Missing directories are fine (not initialized yet).
    """
    for repo in config.repositories:
        target = config.repo_dir(repo)
        if not target.exists():
            continue
        if not target.is_dir():
            raise ConfigError(f"target {target} exists and is not a directory")
        if not (target / ".git").exists():
            raise ConfigError(f"directory {target} exists but is not a git repository")
        try:
            current_url = runner.git(target, "config", "--get", "remote.origin.url")
        except CommandError as e:
            raise ConfigError(f"directory {target} is a git repo but failed to get remote origin: {e}") from e
        if current_url != repo.url:
            raise ConfigError(
                f"directory {target} exists with different remote origin: {current_url} (expected {repo.url})"
            )


def validate_status_for_action(records: list[StatusRecord], *, allow_detached: bool = False) -> None:
    """Refuse to mutate anything on top of an inconsistent local state."""
    problems: list[str] = []
    for rec in records:
        if rec.conflict:
            problems.append(f"[{rec.repo_id}] has conflicts with its remote branch")
        elif rec.behind:
            problems.append(f"[{rec.repo_id}] is behind its remote branch (sync required)")
        if rec.detached and not allow_detached:
            problems.append(f"[{rec.repo_id}] is in detached HEAD state")
        elif not rec.detached and (rec.ahead is None or rec.behind is None):
            problems.append(f"[{rec.repo_id}] status against its remote branch could not be determined")
    if problems:
        raise PreconditionError("cannot proceed:\n" + "\n".join(problems))


def verify_revisions_unchanged(config: Config, records: list[StatusRecord], runner: CommandRunner) -> None:
    by_id = {r.repo_id: r for r in records}
    for repo in config.repositories:
        original = by_id.get(repo.repo_id)
        if original is None:
            continue
        try:
            current = runner.git(config.repo_dir(repo), "rev-parse", "HEAD")
        except CommandError as e:
            raise PreconditionError(f"failed to get current revision for {repo.repo_id}: {e}") from e
        if current.strip() != original.local_head:
            raise PreconditionError(
                f"repository '{repo.repo_id}' has changed since status collection "
                f"(expected {original.local_head}, got {current.strip()})"
            )
