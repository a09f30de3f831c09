# src/mstl/main.py
from __future__ import annotations

import functools
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from mstl.body import parse_block, parse_title_body
from mstl.categorize import MODE_CREATE, MODE_UPDATE
from mstl.config import Config, find_config, load_config, parse_config, resolve_jobs
from mstl.errors import CommandError, ConfigError, MstlError, StageError
from mstl.fire import run_fire
from mstl.git_ops import CommandRunner
from mstl.github import check_gh_availability, collect_pr_status
from mstl.snapshot import Snapshot, generate_snapshot, write_snapshot
from mstl.status import collect_status, validate_integrity
from mstl.workspace import perform_init, push_ahead, sync_repositories

STAGE_LOAD_CONFIG = "load_config"

STDIN_MARKER = "-"


def resolve_config(runner: CommandRunner, file_arg: Optional[str]) -> Config:
    """
    -f PATH reads that file, -f - reads the configuration from stdin, and no flag
    searches for .mstl/config.json (see find_config).
    """
    try:
        if file_arg == STDIN_MARKER:
            return load_config(data=sys.stdin.read())
        if file_arg:
            return load_config(path=file_arg)
        found = find_config(runner)
        if found is None:
            raise ConfigError("Specify configuration file using --file or -f.")
        return load_config(path=found)
    except ConfigError as e:
        raise StageError(STAGE_LOAD_CONFIG, e) from e


def _staged(stage: str):
    """Re-raise mstl errors from a plain command as StageError(stage, ...)."""

    def wrap(fn):
        @functools.wraps(fn)
        def inner(*args, **kwargs):
            try:
                return fn(*args, **kwargs)
            except StageError:
                raise
            except MstlError as e:
                raise StageError(stage, e) from e

        return inner

    return wrap


# -----------------------------
# workspace commands
# -----------------------------

@_staged("init")
def run_init(config: Config, runner: CommandRunner, *, jobs: int, depth: Optional[int] = None) -> Dict[str, Any]:
    cloned = perform_init(config, runner, jobs=jobs, depth=depth)
    return {"ok": True, "stage": "done", "cloned": cloned}


@_staged("status")
def run_status(config: Config, runner: CommandRunner, *, jobs: int, no_fetch: bool = False) -> Dict[str, Any]:
    validate_integrity(config, runner)
    records = collect_status(config, runner, jobs=jobs, no_fetch=no_fetch)
    return {"ok": True, "stage": "done", "status": [r.to_dict() for r in records]}


@_staged("snapshot")
def run_snapshot(config: Config, runner: CommandRunner, *, out_dir: Optional[str] = None) -> Dict[str, Any]:
    snapshot = generate_snapshot(config, runner)
    path = write_snapshot(snapshot, out_dir or ".")
    return {
        "ok": True,
        "stage": "done",
        "snapshot": {"identifier": snapshot.identifier, "path": str(path)},
    }


@_staged("push")
def run_push(config: Config, runner: CommandRunner, *, jobs: int, dry_run: bool = False) -> Dict[str, Any]:
    plan = push_ahead(config, runner, jobs=jobs, dry_run=dry_run)
    return {
        "ok": True,
        "stage": "done_dry_run" if dry_run else "done",
        "push": plan.targets,
    }


@_staged("sync")
def run_sync(config: Config, runner: CommandRunner, *, jobs: int, strategy: Optional[str] = None) -> Dict[str, Any]:
    result = sync_repositories(config, runner, jobs=jobs, strategy=strategy)
    return {"ok": True, "stage": "done", "pulled": result.pulled, "skipped": result.skipped}


@_staged("fire")
def run_fire_command(config: Config, runner: CommandRunner, *, jobs: int) -> Dict[str, Any]:
    results = run_fire(config, runner, jobs=jobs)
    return {
        "ok": all(r.ok for r in results),
        "stage": "done",
        "results": [r.to_dict() for r in results],
    }


# -----------------------------
# pull request commands
# -----------------------------

@_staged("pr_status")
def run_pr_status(config: Config, runner: CommandRunner, *, jobs: int) -> Dict[str, Any]:
    validate_integrity(config, runner)
    records = collect_status(config, runner, jobs=jobs)
    lookups = collect_pr_status(config, records, runner, jobs=jobs)
    return {
        "ok": True,
        "stage": "done",
        "status": [r.to_dict() for r in records],
        "prs": {rid: lookup.to_dict() for rid, lookup in sorted(lookups.items())},
    }


def read_message(message: Optional[str], message_file: Optional[str]) -> tuple[str, str]:
    """(title, body) from -m text or --message-file; ("", "") when neither is given."""
    text = message or ""
    if message_file:
        try:
            text = Path(message_file).read_text(encoding="utf-8")
        except OSError as e:
            raise StageError(STAGE_LOAD_CONFIG, ConfigError(f"failed to read message file: {e}")) from e
    if not text:
        return "", ""
    return parse_title_body(text)


def run_pr_workflow_command(
        config: Config,
        runner: CommandRunner,
        *,
        mode: str,
        jobs: int,
        title: str = "",
        body: str = "",
        draft: bool = False,
        overwrite: bool = False,
        dependency_file: Optional[str] = None,
        dry_run: bool = False,
        out_dir: Optional[str] = None,
) -> Dict[str, Any]:
    from mstl.graph import WorkflowOptions, run_pr_workflow

    options = WorkflowOptions(
        mode=mode,
        jobs=jobs,
        dry_run=dry_run,
        title=title,
        body=body,
        draft=draft,
        overwrite=overwrite,
        dependency_file=dependency_file,
        out_dir=out_dir,
    )
    # StageError bubbles up so the CLI can render stage-aware JSON.
    return run_pr_workflow(config=config, runner=runner, options=options)


def run_pr_create(config: Config, runner: CommandRunner, **kwargs: Any) -> Dict[str, Any]:
    return run_pr_workflow_command(config, runner, mode=MODE_CREATE, **kwargs)


def run_pr_update(config: Config, runner: CommandRunner, **kwargs: Any) -> Dict[str, Any]:
    kwargs.pop("title", None)
    kwargs.pop("body", None)
    kwargs.pop("draft", None)
    return run_pr_workflow_command(config, runner, mode=MODE_UPDATE, **kwargs)


@_staged("pr_checkout")
def run_pr_checkout(
        runner: CommandRunner,
        url: str,
        *,
        jobs: Optional[int] = None,
        depth: Optional[int] = None,
        base_dir: Optional[Path] = None,
) -> Dict[str, Any]:
    """Recreate the workspace described by the snapshot embedded in a PR description."""
    check_gh_availability(runner)
    try:
        pr_body = runner.gh("pr", "view", url, "--json", "body", "-q", ".body")
    except CommandError as e:
        raise MstlError(f"failed to fetch PR body: {e}") from e

    parsed = parse_block(pr_body)
    try:
        snapshot = Snapshot.model_validate(parsed.snapshot)
    except ValidationError as e:
        raise ConfigError(f"Invalid snapshot in PR description: {e}") from e
    config = parse_config(snapshot.to_config_payload(), base_dir=base_dir or Path.cwd())
    jobs = resolve_jobs(jobs, config)

    cloned = perform_init(config, runner, jobs=jobs, depth=depth)
    records = collect_status(config, runner, jobs=jobs)
    lookups = collect_pr_status(config, records, runner, jobs=jobs)
    return {
        "ok": True,
        "stage": "done",
        "snapshot": {"identifier": snapshot.identifier},
        "related": parsed.related,
        "cloned": cloned,
        "status": [r.to_dict() for r in records],
        "prs": {rid: lookup.to_dict() for rid, lookup in sorted(lookups.items())},
    }
