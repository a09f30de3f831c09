# src/mstl/config.py
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mstl.errors import CommandError, ConfigError
from mstl.logging import get_logger
from mstl.utils import repo_id_from_url

log = get_logger(__name__)

CONFIG_DIR = ".mstl"
DEFAULT_CONFIG_FILE = f"{CONFIG_DIR}/config.json"
DEFAULT_DEPENDENCIES_FILE = f"{CONFIG_DIR}/dependencies.md"

MIN_JOBS = 1
MAX_JOBS = 128
DEFAULT_JOBS = 1

DEFAULT_BASE_BRANCH = "main"

# Safe characters for directory names.
_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")
# A subset of what git allows, but safe to pass as an argument.
_SAFE_REF_RE = re.compile(r"^[A-Za-z0-9./_-]+$")


def _check_ref(value: str | None) -> str | None:
    if value is None or value == "":
        return value
    if value.startswith("-") or not _SAFE_REF_RE.match(value):
        raise ValueError(f"Invalid git reference: {value}")
    return value


class Repository(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    url: str
    branch: str | None = None
    base_branch: str | None = Field(default=None, alias="base-branch")
    revision: str | None = None
    # Excluded from snapshots and from the published dependency graph.
    private: bool = False

    @field_validator("url")
    @classmethod
    def _check_url(cls, v: str) -> str:
        if v.startswith("ext::"):
            raise ValueError(f"Invalid repository URL: {v} (ext:: protocol not allowed)")
        if any(c in v for c in "\n\r\t"):
            raise ValueError(f"Invalid repository URL: {v!r} (contains control characters)")
        return v

    @field_validator("branch", "base_branch", "revision")
    @classmethod
    def _check_refs(cls, v: str | None) -> str | None:
        return _check_ref(v)

    @property
    def repo_id(self) -> str:
        return self.id or repo_id_from_url(self.url)

    def pr_base_branch(self) -> str | None:
        """Base for pull requests: base-branch, else branch, else None."""
        return self.base_branch or self.branch or None

    def base_branch_or_default(self) -> str:
        return self.pr_base_branch() or DEFAULT_BASE_BRANCH


class Config(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    repositories: list[Repository]
    jobs: int | None = None

    # derived at load time, never serialized
    base_dir: Path = Field(default_factory=Path.cwd, exclude=True)

    @field_validator("jobs")
    @classmethod
    def _check_jobs(cls, v: int | None) -> int | None:
        if v is None:
            return v
        if v < MIN_JOBS:
            raise ValueError(f"Jobs must be at least {MIN_JOBS}.")
        if v > MAX_JOBS:
            raise ValueError(f"Jobs must be at most {MAX_JOBS}.")
        return v

    def finalize(self) -> "Config":
        """
        Contract:
        - Every repository gets an id (derived from the URL when missing).
        - Ids are directory-safe and unique.
        """
        seen: set[str] = set()
        for repo in self.repositories:
            if not repo.id:
                repo.id = repo_id_from_url(repo.url)
            rid = repo.id
            if not _ID_RE.match(rid):
                raise ConfigError(f"Invalid repository ID: {rid} (contains unsafe characters)")
            if rid in (".", ".."):
                raise ConfigError(f"Invalid repository ID: {rid} (cannot be . or ..)")
            if rid in seen:
                raise ConfigError(f"Duplicate repository ID: {rid}")
            seen.add(rid)
        return self

    def repo_dir(self, repo: Repository) -> Path:
        return self.base_dir / repo.repo_id

    def repository_ids(self) -> list[str]:
        return [r.repo_id for r in self.repositories]

    def public_repository_ids(self) -> list[str]:
        return [r.repo_id for r in self.repositories if not r.private]

    def by_id(self) -> dict[str, Repository]:
        return {r.repo_id: r for r in self.repositories}


def resolve_jobs(jobs_flag: int | None, config: Config | None) -> int:
    jobs = jobs_flag
    if jobs is None:
        jobs = config.jobs if config is not None and config.jobs is not None else DEFAULT_JOBS
    if jobs < MIN_JOBS:
        raise ConfigError(f"Jobs must be at least {MIN_JOBS}.")
    if jobs > MAX_JOBS:
        raise ConfigError(f"Jobs must be at most {MAX_JOBS}.")
    return jobs


def parse_config(payload: Any, *, base_dir: Path | None = None) -> Config:
    try:
        config = Config.model_validate(payload)
    except ValidationError as e:
        raise ConfigError(f"Invalid data format: {e}") from e
    if base_dir is not None:
        config.base_dir = base_dir
    return config.finalize()


def _base_dir_for(config_path: Path) -> Path:
    parent = config_path.resolve().parent
    if parent.name == CONFIG_DIR:
        return parent.parent
    return parent


def load_config(path: str | Path | None = None, data: bytes | str | None = None) -> Config:
    """
    Load and validate a configuration from raw data (e.g. stdin) or from a file.
    Raw data wins when both are given; its base directory is the current directory.
    """
    if data:
        raw = data.decode("utf-8") if isinstance(data, bytes) else data
        base_dir = Path.cwd()
    else:
        if not path:
            raise ConfigError("Specify configuration file using --file or -f.")
        p = Path(path)
        if not p.is_file():
            raise ConfigError(f"Configuration file {p} not found.")
        raw = p.read_text(encoding="utf-8")
        base_dir = _base_dir_for(p)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid data format: {e}") from e

    return parse_config(payload, base_dir=base_dir)


def find_config(runner: Any, start: str | Path | None = None) -> Path | None:
    """
    Locate the default configuration file.

    Looks in <start>/.mstl/config.json first; when <start> sits inside a git work
    tree, falls back to the .mstl directory next to that work tree's top level
    (the layout `mstl init` produces).
    """
    start_dir = Path(start) if start else Path.cwd()
    candidate = start_dir / DEFAULT_CONFIG_FILE
    if candidate.is_file():
        return candidate

    try:
        if runner.git(start_dir, "rev-parse", "--is-inside-work-tree") != "true":
            return None
        top = runner.git(start_dir, "rev-parse", "--show-toplevel")
    except CommandError:
        return None

    parent_candidate = Path(top).parent / DEFAULT_CONFIG_FILE
    if parent_candidate.is_file():
        log.info("Using configuration found in %s", parent_candidate.parent.parent)
        return parent_candidate
    return None
