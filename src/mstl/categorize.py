# src/mstl/categorize.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Mapping

from mstl.config import Config, Repository
from mstl.errors import CommandError
from mstl.git_ops import CommandRunner
from mstl.github import PrLookup
from mstl.logging import get_logger
from mstl.status import StatusRecord

log = get_logger(__name__)

MODE_CREATE = "create"
MODE_UPDATE = "update"

# (repository, base branch) -> commit hash of origin/<base>, "" when unknown
BaseTipResolver = Callable[[Repository, str], str]


@dataclass
class Categorization:
    push: list[str] = field(default_factory=list)
    create: list[str] = field(default_factory=list)
    update: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def active(self) -> list[str]:
        return sorted(set(self.create) | set(self.update))

    @property
    def empty(self) -> bool:
        return not (self.push or self.create or self.update)

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "push": list(self.push),
            "create": list(self.create),
            "update": list(self.update),
            "skipped": list(self.skipped),
        }


def local_base_tip_resolver(config: Config, runner: CommandRunner) -> BaseTipResolver:
    """Resolve origin/<base> from the local remote-tracking ref only."""

    def resolve(repo: Repository, base: str) -> str:
        try:
            return runner.git(config.repo_dir(repo), "rev-parse", f"origin/{base}").strip()
        except CommandError as e:
            log.debug("[%s] origin/%s not resolvable: %s", repo.repo_id, base, e)
            return ""

    return resolve


def categorize(
        repositories: list[Repository],
        records: list[StatusRecord],
        lookups: Mapping[str, PrLookup],
        base_tip: BaseTipResolver,
        *,
        mode: str = MODE_CREATE,
) -> Categorization:
    """
    Decide push / create / update / skip per repository.

    | open PR | ahead | action                                                   |
    |---------|-------|----------------------------------------------------------|
    | yes     | yes   | push + update                                            |
    | yes     | no    | update                                                   |
    | no      | yes   | push + create (skip: never pushed and still at base tip) |
    | no      | no    | create (skip: current branch is the base branch)         |

    In update mode nothing is created: repositories without an open PR are skipped.
    Repositories without a status record (not initialized) are ignored entirely.
    """
    by_id = {r.repo_id: r for r in repositories}
    out = Categorization()

    for rec in sorted(records, key=lambda r: r.repo_id):
        repo = by_id.get(rec.repo_id)
        if repo is None:
            continue

        lookup = lookups.get(rec.repo_id, PrLookup.not_checked())
        has_open = lookup.has_open
        ahead = bool(rec.ahead)

        if has_open:
            if ahead:
                out.push.append(rec.repo_id)
            out.update.append(rec.repo_id)
            continue

        if mode == MODE_UPDATE:
            out.skipped.append(rec.repo_id)
            continue

        base = repo.base_branch_or_default()
        if ahead:
            # a branch created from the base tip but never committed to
            if not rec.remote_head and rec.local_head and base_tip(repo, base) == rec.local_head:
                out.skipped.append(rec.repo_id)
                continue
            out.push.append(rec.repo_id)
            out.create.append(rec.repo_id)
            continue

        if rec.branch == base:
            out.skipped.append(rec.repo_id)
            continue
        out.create.append(rec.repo_id)

    return out
