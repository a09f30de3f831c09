# src/mstl/snapshot.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field

from mstl.config import Config
from mstl.errors import CommandError
from mstl.git_ops import CommandRunner
from mstl.logging import get_logger
from mstl.status import DETACHED
from mstl.utils import sha256_text

log = get_logger(__name__)

SNAPSHOT_PREFIX = "mistletoe-snapshot-"


class SnapshotRepository(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    url: str
    branch: str | None = None
    revision: str | None = None
    base_branch: str | None = Field(default=None, alias="base-branch")


class Snapshot(BaseModel):
    """
    Repository identity only: operational settings such as `jobs` are not part of it.
    Immutable once generated; the identifier is derived, never stored in the document.
    """

    repositories: list[SnapshotRepository]

    @property
    def identifier(self) -> str:
        return snapshot_identifier(self.repositories)

    @property
    def filename(self) -> str:
        return snapshot_filename(self.identifier)

    def to_json(self) -> str:
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(payload, indent=2, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Snapshot":
        return cls.model_validate_json(raw)

    def to_config_payload(self) -> dict[str, Any]:
        """The snapshot doubles as a configuration (used by `pr checkout`)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def snapshot_identifier(repositories: Iterable[SnapshotRepository]) -> str:
    """
    sha256 over the comma-joined "branch if non-empty else revision" values, taken in
    id order. Invariant under permutation of the input.
    """
    ordered = sorted(repositories, key=lambda r: r.id)
    refs = [(r.branch or r.revision or "") for r in ordered]
    return sha256_text(",".join(refs))


def snapshot_filename(identifier: str) -> str:
    return f"{SNAPSHOT_PREFIX}{identifier}.json"


def _git_or_none(runner: CommandRunner, repo_dir: Path, *args: str) -> str | None:
    try:
        return runner.git(repo_dir, *args)
    except CommandError:
        return None


def generate_snapshot(config: Config, runner: CommandRunner) -> Snapshot:
    """
    Capture the actual state of every non-private repository present on disk.

    Contract:
    - url: remote.origin.url, falling back to the configured URL.
    - branch: current branch, cleared when detached.
    - revision: current HEAD commit.
    - base-branch: configured base-branch, else configured branch.
    """
    repos: list[SnapshotRepository] = []
    for repo in config.repositories:
        if repo.private:
            continue
        repo_dir = config.repo_dir(repo)
        if not repo_dir.exists():
            continue

        url = _git_or_none(runner, repo_dir, "config", "--get", "remote.origin.url") or repo.url
        branch = _git_or_none(runner, repo_dir, "rev-parse", "--abbrev-ref", "HEAD") or ""
        if branch == DETACHED:
            branch = ""
        revision = _git_or_none(runner, repo_dir, "rev-parse", "HEAD") or ""

        repos.append(
            SnapshotRepository(
                id=repo.repo_id,
                url=url,
                branch=branch or None,
                revision=revision or None,
                base_branch=repo.pr_base_branch(),
            )
        )

    repos.sort(key=lambda r: r.id)
    return Snapshot(repositories=repos)


def write_snapshot(snapshot: Snapshot, out_dir: str | Path = ".") -> Path:
    path = Path(out_dir) / snapshot.filename
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(snapshot.to_json(), encoding="utf-8")
    log.info("Snapshot saved to %s", path)
    return path
