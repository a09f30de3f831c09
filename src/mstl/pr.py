# src/mstl/pr.py
"""
Mutation phases of the pull request workflow: push, create, update descriptions.

Every phase attempts all of its repositories and raises one MutationError listing
every failure afterwards. Work already done in a phase is not rolled back.
"""
from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from typing import Mapping

from mstl.body import embed_block, generate_block
from mstl.config import Config
from mstl.dependency import DependencyGraph
from mstl.errors import CommandError, MstlError, MutationError
from mstl.git_ops import CommandRunner
from mstl.github import PR_STATE_CLOSED, PR_STATE_MERGED, PrLookup, validate_pr_permission_and_overwrite
from mstl.logging import get_logger
from mstl.status import StatusRecord
from mstl.tasks import BoundedTaskRunner
from mstl.utils import last_line

log = get_logger(__name__)

DRAFT_UNSUPPORTED_MARKERS = ("Draft pull requests are not supported", "Draft pull requests cannot be created")
ALREADY_EXISTS_MARKER = "already exists"
NO_COMMITS_MARKER = "No commits between"


def _raise_collected(phase: str, errors: list) -> None:
    if errors:
        raise MutationError(phase, [str(err) for _, err in errors])


# -----------------------------
# push
# -----------------------------

def push_repositories(
        config: Config,
        repo_ids: list[str],
        records: list[StatusRecord],
        runner: CommandRunner,
        *,
        jobs: int = 1,
) -> list[str]:
    """`git push origin <branch>` for each listed repository. Returns the pushed ids."""
    repos = config.by_id()
    branches = {r.repo_id: r.branch for r in records}

    def push(rid: str) -> str:
        repo_dir = config.repo_dir(repos[rid])
        branch = branches.get(rid) or ""
        if not branch:
            try:
                branch = runner.git(repo_dir, "rev-parse", "--abbrev-ref", "HEAD")
            except CommandError as e:
                raise MstlError(f"[{rid}] failed to get branch: {e}") from e
        log.info("[%s] pushing to origin/%s", rid, branch)
        try:
            runner.git(repo_dir, "push", "origin", branch)
        except CommandError as e:
            raise MstlError(f"[{rid}] push failed: {e}") from e
        return rid

    outcome = BoundedTaskRunner(jobs).run([rid for rid in repo_ids if rid in repos], push)
    _raise_collected("push", outcome.errors)
    return outcome.results


# -----------------------------
# create
# -----------------------------

@dataclass
class CreateRequest:
    title: str = ""
    body: str = ""
    draft: bool = False


def _create_args(url: str, branch: str, base: str | None, req: CreateRequest) -> list[str]:
    args = ["pr", "create", "--repo", url, "--head", branch]
    if req.title or req.body:
        if req.title:
            args += ["--title", req.title]
        if req.body:
            args += ["--body", req.body]
    else:
        args.append("--fill")
    if base:
        args += ["--base", base]
    return args


def create_pull_requests(
        config: Config,
        repo_ids: list[str],
        records: list[StatusRecord],
        runner: CommandRunner,
        request: CreateRequest,
        *,
        jobs: int = 1,
) -> dict[str, str]:
    """
    Open one PR per listed repository. Returns {repo_id: url}.

    Contract:
    - Draft requests fall back to a normal PR when the repository does not support drafts.
    - "already exists" reuses the existing PR's URL.
    - "No commits between" skips the repository without error.
    """
    repos = config.by_id()
    branches = {r.repo_id: r.branch for r in records}
    created: dict[str, str] = {}
    lock = threading.Lock()

    def create(rid: str) -> None:
        repo = repos[rid]
        branch = branches.get(rid) or ""
        if not branch:
            return
        base = repo.pr_base_branch()
        args = _create_args(repo.url, branch, base, request)

        log.info("[%s] creating pull request", rid)
        try:
            try:
                out = runner.gh(*(args + ["--draft"] if request.draft else args))
            except CommandError as e:
                if request.draft and any(m in e.stderr for m in DRAFT_UNSUPPORTED_MARKERS):
                    log.info("[%s] draft PRs not supported, retrying as a normal PR", rid)
                    out = runner.gh(*args)
                else:
                    raise
        except CommandError as e:
            if ALREADY_EXISTS_MARKER in e.stderr:
                existing = _existing_pr_url(runner, repo.url, branch)
                if existing:
                    log.info("[%s] pull request already exists: %s", rid, existing)
                    with lock:
                        created[rid] = existing
                    return
            if NO_COMMITS_MARKER in e.stderr:
                log.info("[%s] no commits between %s and %s, skipping", rid, base, branch)
                return
            raise MstlError(f"[{rid}] PR create failed: {e.stderr.strip() or e}") from e

        with lock:
            created[rid] = last_line(out)

    outcome = BoundedTaskRunner(jobs).run([rid for rid in repo_ids if rid in repos], create)
    _raise_collected("PR creation", outcome.errors)
    return dict(sorted(created.items()))


def _existing_pr_url(runner: CommandRunner, url: str, branch: str) -> str:
    try:
        return runner.gh("pr", "list", "--repo", url, "--head", branch, "--json", "url", "-q", ".[0].url").strip()
    except CommandError as e:
        log.debug("existing PR lookup failed for %s: %s", url, e)
        return ""


# -----------------------------
# permissions
# -----------------------------

def validate_update_permissions(
        lookups: Mapping[str, PrLookup],
        repo_ids: list[str],
        current_user: str,
        overwrite: bool,
) -> None:
    """Check every open PR that the description update will touch, before anything is mutated."""
    problems: list[str] = []
    for rid in repo_ids:
        lookup = lookups.get(rid)
        if lookup is None:
            continue
        for pr in lookup.open_prs:
            try:
                validate_pr_permission_and_overwrite(rid, pr, current_user, overwrite)
            except MstlError as e:
                problems.append(f"[{rid}] {e}")
    if problems:
        raise MutationError("permission check", problems)


# -----------------------------
# update descriptions
# -----------------------------

def update_pr_descriptions(
        pr_map: Mapping[str, list[str]],
        runner: CommandRunner,
        snapshot_data: str,
        snapshot_filename: str,
        *,
        deps: DependencyGraph | None = None,
        dependency_content: str = "",
        jobs: int = 1,
        rng: random.Random | None = None,
) -> list[str]:
    """
    Embed a fresh metadata block into every PR in pr_map ({repo_id: [url, ...]}).
    Merged or closed PRs are left alone. Returns the updated URLs.
    """
    tasks = [(rid, url) for rid in sorted(pr_map) for url in pr_map[rid]]
    if not tasks:
        return []

    rng_lock = threading.Lock()

    def update(task: tuple[str, str]) -> str | None:
        rid, url = task
        try:
            state = runner.gh("pr", "view", url, "--json", "state", "-q", ".state").strip()
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to check state for PR {url}: {e}") from e
        if state in (PR_STATE_MERGED, PR_STATE_CLOSED):
            return None

        try:
            original = runner.gh("pr", "view", url, "--json", "body", "-q", ".body").strip()
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to view PR {url}: {e}") from e

        with rng_lock:
            block = generate_block(snapshot_data, snapshot_filename, rid, pr_map, deps, dependency_content, rng=rng)

        try:
            runner.gh("pr", "edit", url, "--body", embed_block(original, block))
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to edit PR {url}: {e}") from e
        log.info("[%s] updated description of %s", rid, url)
        return url

    outcome = BoundedTaskRunner(jobs).run(tasks, update)
    _raise_collected("description update", outcome.errors)
    return outcome.results
