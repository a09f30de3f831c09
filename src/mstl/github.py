# src/mstl/github.py
from __future__ import annotations

import json
import shutil
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from mstl.body import has_block
from mstl.config import Config, Repository
from mstl.errors import CommandError, MstlError, PreconditionError
from mstl.git_ops import CommandRunner, resolve_remote_branch_hash
from mstl.logging import get_logger
from mstl.status import StatusRecord
from mstl.tasks import BoundedTaskRunner

log = get_logger(__name__)

PR_STATE_OPEN = "OPEN"
PR_STATE_MERGED = "MERGED"
PR_STATE_CLOSED = "CLOSED"

PR_JSON_FIELDS = "number,state,isDraft,url,baseRefName,headRefOid,author,viewerCanEditFiles,body"

WRITE_PERMISSIONS = ("ADMIN", "MAINTAIN", "WRITE")


class PrAuthor(BaseModel):
    model_config = ConfigDict(extra="ignore")

    login: str = ""


class PullRequestRecord(BaseModel):
    """One PR as reported by `gh ... --json` (camelCase keys on the wire)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: int = 0
    state: str = ""
    is_draft: bool = Field(default=False, alias="isDraft")
    url: str = ""
    base_ref_name: str = Field(default="", alias="baseRefName")
    head_ref_oid: str = Field(default="", alias="headRefOid")
    author: PrAuthor = Field(default_factory=PrAuthor)
    viewer_can_edit_files: bool = Field(default=False, alias="viewerCanEditFiles")
    body: str = ""

    @property
    def is_open(self) -> bool:
        return self.state.upper() == PR_STATE_OPEN

    @property
    def display_state(self) -> str:
        if self.is_draft and self.is_open:
            return "Draft"
        return {
            PR_STATE_OPEN: "Open",
            PR_STATE_MERGED: "Merged",
            PR_STATE_CLOSED: "Closed",
        }.get(self.state.upper(), self.state)

    def summary(self) -> dict:
        return {
            "number": self.number,
            "state": self.state,
            "draft": self.is_draft,
            "url": self.url,
            "base": self.base_ref_name,
            "display": self.display_state,
        }


# -----------------------------
# lookup outcome
# -----------------------------

class PrLookupKind(str, Enum):
    NOT_CHECKED = "not_checked"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    FOUND = "found"


@dataclass(frozen=True)
class PrLookup:
    """
    Outcome of asking GitHub for a repository's pull requests.

    Closed set of kinds; `prs` is non-empty only for FOUND, `error` only for FAILED.
    """

    kind: PrLookupKind
    prs: tuple[PullRequestRecord, ...] = ()
    error: str = ""

    @classmethod
    def not_checked(cls) -> "PrLookup":
        return cls(PrLookupKind.NOT_CHECKED)

    @classmethod
    def not_found(cls) -> "PrLookup":
        return cls(PrLookupKind.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> "PrLookup":
        return cls(PrLookupKind.FAILED, error=error)

    @classmethod
    def found(cls, prs: list[PullRequestRecord]) -> "PrLookup":
        if not prs:
            return cls.not_found()
        return cls(PrLookupKind.FOUND, prs=tuple(prs))

    @property
    def open_prs(self) -> list[PullRequestRecord]:
        return [p for p in self.prs if p.is_open]

    @property
    def has_open(self) -> bool:
        return bool(self.open_prs)

    def to_dict(self) -> dict:
        out: dict = {"lookup": self.kind.value}
        if self.kind is PrLookupKind.FAILED:
            out["error"] = self.error
        if self.prs:
            out["prs"] = [p.summary() for p in self.prs]
        return out


def _state_rank(pr: PullRequestRecord) -> int:
    if pr.is_draft and pr.is_open:
        return 1
    return {PR_STATE_OPEN: 0, PR_STATE_MERGED: 2, PR_STATE_CLOSED: 3}.get(pr.state.upper(), 4)


def sort_prs(prs: list[PullRequestRecord]) -> list[PullRequestRecord]:
    """Open, draft, merged, closed; newest (highest number) first within a state."""
    return sorted(prs, key=lambda p: (_state_rank(p), -p.number))


def filter_prs(prs: list[PullRequestRecord], local_head: str) -> list[PullRequestRecord]:
    """
    Keep every open PR. A merged/closed PR is kept only when its head is the current
    local head, or when an open PR exists alongside it.
    """
    any_open = any(p.is_open for p in prs)
    return [
        p for p in prs
        if p.is_open or any_open or (local_head and p.head_ref_oid == local_head)
    ]


def _parse_pr_list(raw: str) -> list[PullRequestRecord]:
    try:
        payload = json.loads(raw or "[]")
        return [PullRequestRecord.model_validate(item) for item in payload]
    except (json.JSONDecodeError, ValidationError, TypeError) as e:
        raise MstlError(f"unexpected gh output: {e}") from e


def _parse_pr(raw: str, url: str) -> PullRequestRecord:
    try:
        pr = PullRequestRecord.model_validate_json(raw)
    except ValidationError as e:
        raise MstlError(f"unexpected gh output: {e}") from e
    if not pr.url:
        pr.url = url
    return pr


# -----------------------------
# lookups
# -----------------------------

def lookup_repo_prs(
        runner: CommandRunner,
        repo: Repository,
        record: StatusRecord,
        known_urls: list[str] | None = None,
) -> PrLookup:
    """
    PR lookup for one repository. Never raises: failures become PrLookup.failed.

    With known_urls (PRs created earlier in the same run) each URL is viewed
    directly instead of listing by head branch.
    """
    if known_urls:
        prs: list[PullRequestRecord] = []
        errors: list[str] = []
        for url in known_urls:
            try:
                raw = runner.gh("pr", "view", url, "--json", PR_JSON_FIELDS)
                prs.append(_parse_pr(raw, url))
            except MstlError as e:
                errors.append(str(e))
        if not prs:
            return PrLookup.failed("; ".join(errors))
        return PrLookup.found(prs)

    if record.detached or not record.branch:
        return PrLookup.not_checked()

    args = ["pr", "list", "--repo", repo.url, "--head", record.branch, "--state", "all", "--json", PR_JSON_FIELDS]
    if repo.base_branch:
        args += ["--base", repo.base_branch]

    try:
        prs = _parse_pr_list(runner.gh(*args))
    except MstlError as e:
        log.debug("[%s] PR lookup failed: %s", record.repo_id, e)
        return PrLookup.failed(str(e))

    return PrLookup.found(sort_prs(filter_prs(prs, record.local_head)))


def collect_pr_status(
        config: Config,
        records: list[StatusRecord],
        runner: CommandRunner,
        *,
        jobs: int = 1,
        known_prs: Mapping[str, list[str]] | None = None,
) -> dict[str, PrLookup]:
    """Concurrent PR lookups, one per status record, keyed by repository id."""
    repos = config.by_id()
    known = known_prs or {}
    out: dict[str, PrLookup] = {}

    def one(rec: StatusRecord) -> tuple[str, PrLookup]:
        repo = repos.get(rec.repo_id)
        if repo is None:
            return rec.repo_id, PrLookup.not_checked()
        return rec.repo_id, lookup_repo_prs(runner, repo, rec, known.get(rec.repo_id))

    outcome = BoundedTaskRunner(jobs).run(records, one)
    for repo_id, lookup in outcome.results:
        out[repo_id] = lookup
    for rec, err in outcome.errors:
        out[rec.repo_id] = PrLookup.failed(str(err))
    return out


# -----------------------------
# pre-flight / permissions
# -----------------------------

def check_gh_availability(runner: CommandRunner) -> None:
    if shutil.which(runner.gh_path) is None:
        raise PreconditionError("'gh' command not found. Please install GitHub CLI")
    try:
        runner.gh("auth", "status")
    except CommandError as e:
        raise PreconditionError("'gh' is not authenticated. Please run 'gh auth login'") from e


def get_gh_user(runner: CommandRunner) -> str:
    try:
        return runner.gh("api", "user", "--jq", ".login").strip()
    except CommandError as e:
        raise MstlError(f"failed to get GitHub user: {e}") from e


def validate_pr_permission_and_overwrite(
        repo_id: str,
        pr: PullRequestRecord,
        current_user: str,
        overwrite: bool,
) -> None:
    """
    Contract:
    - No edit permission on the PR: always refused.
    - A PR that already carries a metadata block, or that the current user
      authored, may be updated.
    - Someone else's PR without a block needs `overwrite`.
    """
    if not pr.viewer_can_edit_files:
        raise PreconditionError(f"permission denied: you do not have edit permission for PR {pr.url} (Repo: {repo_id})")
    if has_block(pr.body):
        return
    if pr.author.login.lower() == current_user.lower():
        return
    if overwrite:
        return
    raise PreconditionError(
        f"PR {pr.url} (Repo: {repo_id}) was created by {pr.author.login} and does not have "
        f"a Mistletoe block. Use --overwrite (-w) to force update"
    )


def verify_github_requirements(
        config: Config,
        repo_ids: list[str],
        runner: CommandRunner,
        *,
        jobs: int = 1,
) -> None:
    """
    Each listed repository must be hosted on GitHub, grant the viewer at least WRITE,
    and have its PR base branch on the remote. All problems are reported together.
    """
    repos = config.by_id()
    targets = [repos[rid] for rid in repo_ids if rid in repos]

    def check(repo: Repository) -> None:
        rid = repo.repo_id
        if "github.com" not in repo.url:
            raise MstlError(f"repository {rid} is not a GitHub repository")

        try:
            perm = runner.gh("repo", "view", repo.url, "--json", "viewerPermission", "-q", ".viewerPermission").strip()
        except CommandError as e:
            raise MstlError(f"failed to check permission for {rid}: {e}") from e
        if perm not in WRITE_PERMISSIONS:
            raise MstlError(f"insufficient permission for {rid}: {perm} (need WRITE or better)")

        base = repo.pr_base_branch()
        if not base:
            return
        try:
            tip = resolve_remote_branch_hash(runner, config.repo_dir(repo), base)
        except CommandError as e:
            raise MstlError(f"[{rid}] failed to check base branch '{base}': {e}") from e
        if not tip:
            raise MstlError(f"[{rid}] base branch '{base}' does not exist on remote")

    outcome = BoundedTaskRunner(jobs).run(targets, check)
    if not outcome.ok:
        lines = [str(err) for _, err in outcome.errors]
        raise PreconditionError("GitHub validation failed:\n" + "\n".join(lines))
