# src/mstl/graph.py
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, TypedDict

from mstl.body import generate_placeholder_block
from mstl.categorize import MODE_CREATE, MODE_UPDATE, Categorization, categorize, local_base_tip_resolver
from mstl.config import DEFAULT_DEPENDENCIES_FILE, Config
from mstl.dependency import DependencyGraph, filter_dependency_content, load_dependencies
from mstl.errors import StageError
from mstl.git_ops import CommandRunner
from mstl.github import (
    PrLookup,
    check_gh_availability,
    collect_pr_status,
    get_gh_user,
    verify_github_requirements,
)
from mstl.logging import get_logger
from mstl.pr import (
    CreateRequest,
    create_pull_requests,
    push_repositories,
    update_pr_descriptions,
    validate_update_permissions,
)
from mstl.snapshot import Snapshot, generate_snapshot, write_snapshot
from mstl.status import (
    StatusRecord,
    collect_status,
    validate_integrity,
    validate_status_for_action,
    verify_revisions_unchanged,
)

try:
    from langgraph.graph import END, StateGraph
except Exception as e:  # pragma: no cover
    raise RuntimeError("LangGraph is required. Install 'langgraph'.") from e

log = get_logger(__name__)


# -----------------------------
# Stages (canonical)
# -----------------------------
STAGE_INIT = "init"
STAGE_LOAD_DEPENDENCIES = "load_dependencies"
STAGE_COLLECT = "collect"
STAGE_CATEGORIZE = "categorize"
STAGE_VERIFY_GITHUB = "verify_github"
STAGE_VERIFY_REVISIONS = "verify_revisions"
STAGE_PUSH = "push"
STAGE_CREATE = "create"
STAGE_SNAPSHOT = "snapshot"
STAGE_UPDATE_DESCRIPTIONS = "update_descriptions"
STAGE_EMIT_RESULT = "emit_result"
STAGE_DONE = "done"
STAGE_DONE_DRY_RUN = "done_dry_run"
STAGE_DONE_NOTHING = "done_nothing_to_do"


@dataclass(frozen=True)
class WorkflowOptions:
    mode: str = MODE_CREATE
    jobs: int = 1
    dry_run: bool = False
    title: str = ""
    body: str = ""
    draft: bool = False
    overwrite: bool = False
    # None: use the default file when present; a given path must exist.
    dependency_file: Optional[str] = None
    out_dir: Optional[str] = None
    check_gh: bool = True


class WorkflowState(TypedDict, total=False):
    config: Config
    runner: CommandRunner
    options: WorkflowOptions
    stage: str

    deps: Optional[DependencyGraph]
    dependency_content: str

    records: list[StatusRecord]
    lookups: dict[str, PrLookup]
    categorization: Categorization

    pushed: list[str]
    created: dict[str, str]
    snapshot: Snapshot
    snapshot_path: str
    pr_map: dict[str, list[str]]
    updated: list[str]

    result: dict[str, Any]


# -----------------------------
# Nodes
# -----------------------------

def node_load_dependencies(state: WorkflowState) -> WorkflowState:
    stage = STAGE_LOAD_DEPENDENCIES
    try:
        config = state["config"]
        opts = state["options"]

        path: Path | None
        if opts.dependency_file:
            path = Path(opts.dependency_file)
        else:
            default = config.base_dir / DEFAULT_DEPENDENCIES_FILE
            path = default if default.is_file() else None

        deps: DependencyGraph | None = None
        content = ""
        if path is not None:
            deps, raw = load_dependencies(path, config.repository_ids())
            # private repositories never leave the machine
            content = filter_dependency_content(raw, config.public_repository_ids())
            log.info("loaded dependency graph from %s", path)

        state["stage"] = stage
        state["deps"] = deps
        state["dependency_content"] = content
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_collect(state: WorkflowState) -> WorkflowState:
    stage = STAGE_COLLECT
    try:
        config = state["config"]
        runner = state["runner"]
        opts = state["options"]

        validate_integrity(config, runner)
        records = collect_status(config, runner, jobs=opts.jobs)
        lookups = collect_pr_status(config, records, runner, jobs=opts.jobs)

        state["stage"] = stage
        state["records"] = records
        state["lookups"] = lookups
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_categorize(state: WorkflowState) -> WorkflowState:
    stage = STAGE_CATEGORIZE
    try:
        config = state["config"]
        opts = state["options"]
        records = state["records"]

        validate_status_for_action(records)
        cat = categorize(
            config.repositories,
            records,
            state["lookups"],
            local_base_tip_resolver(config, state["runner"]),
            mode=opts.mode,
        )
        log.info("categorized: %s", cat.to_dict())

        state["stage"] = stage
        state["categorization"] = cat
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def route_after_categorize(state: WorkflowState) -> str:
    if state["options"].dry_run or state["categorization"].empty:
        return "emit_result"
    return "verify_github"


def node_verify_github(state: WorkflowState) -> WorkflowState:
    stage = STAGE_VERIFY_GITHUB
    try:
        config = state["config"]
        runner = state["runner"]
        opts = state["options"]
        cat = state["categorization"]

        if opts.check_gh:
            check_gh_availability(runner)
        verify_github_requirements(config, cat.active, runner, jobs=opts.jobs)

        if cat.update:
            validate_update_permissions(state["lookups"], cat.update, get_gh_user(runner), opts.overwrite)

        state["stage"] = stage
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_verify_revisions(state: WorkflowState) -> WorkflowState:
    stage = STAGE_VERIFY_REVISIONS
    try:
        verify_revisions_unchanged(state["config"], state["records"], state["runner"])
        state["stage"] = stage
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_push(state: WorkflowState) -> WorkflowState:
    stage = STAGE_PUSH
    try:
        cat = state["categorization"]
        pushed: list[str] = []
        if cat.push:
            pushed = push_repositories(
                state["config"], cat.push, state["records"], state["runner"], jobs=state["options"].jobs
            )
        state["stage"] = stage
        state["pushed"] = pushed
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_create(state: WorkflowState) -> WorkflowState:
    stage = STAGE_CREATE
    try:
        opts = state["options"]
        cat = state["categorization"]

        created: dict[str, str] = {}
        if opts.mode == MODE_CREATE and cat.create:
            body = opts.body
            if opts.title or opts.body:
                body = body + generate_placeholder_block()
            request = CreateRequest(title=opts.title, body=body, draft=opts.draft)
            created = create_pull_requests(
                state["config"], cat.create, state["records"], state["runner"], request, jobs=opts.jobs
            )

        state["stage"] = stage
        state["created"] = created
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_snapshot(state: WorkflowState) -> WorkflowState:
    stage = STAGE_SNAPSHOT
    try:
        config = state["config"]
        opts = state["options"]

        snapshot = generate_snapshot(config, state["runner"])
        path = write_snapshot(snapshot, opts.out_dir or config.base_dir)

        state["stage"] = stage
        state["snapshot"] = snapshot
        state["snapshot_path"] = str(path)
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def _active_pr_map(state: WorkflowState) -> dict[str, list[str]]:
    """Open PR URLs of every active repository, plus the ones created in this run."""
    cat = state["categorization"]
    lookups = state["lookups"]
    created = state.get("created", {})

    pr_map: dict[str, list[str]] = {}
    for rid in cat.active:
        urls: list[str] = []
        if rid in lookups:
            urls.extend(pr.url for pr in lookups[rid].open_prs)
        if rid in created and created[rid] not in urls:
            urls.append(created[rid])
        if urls:
            pr_map[rid] = urls
    return pr_map


def node_update_descriptions(state: WorkflowState) -> WorkflowState:
    stage = STAGE_UPDATE_DESCRIPTIONS
    try:
        snapshot = state["snapshot"]
        pr_map = _active_pr_map(state)

        updated = update_pr_descriptions(
            pr_map,
            state["runner"],
            snapshot.to_json(),
            snapshot.filename,
            deps=state.get("deps"),
            dependency_content=state.get("dependency_content", ""),
            jobs=state["options"].jobs,
        )

        state["stage"] = stage
        state["pr_map"] = pr_map
        state["updated"] = updated
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def node_emit_result(state: WorkflowState) -> WorkflowState:
    stage = STAGE_EMIT_RESULT
    try:
        opts = state["options"]
        cat = state["categorization"]

        if opts.dry_run:
            done = STAGE_DONE_DRY_RUN
        elif cat.empty:
            done = STAGE_DONE_NOTHING
        else:
            done = STAGE_DONE

        result: dict[str, Any] = {
            "ok": True,
            "stage": done,
            "mode": opts.mode,
            "categorization": cat.to_dict(),
            "status": [r.to_dict() for r in state.get("records", [])],
            "prs": {rid: lookup.to_dict() for rid, lookup in sorted(state.get("lookups", {}).items())},
        }
        if done == STAGE_DONE:
            snapshot = state.get("snapshot")
            result.update(
                {
                    "pushed": state.get("pushed", []),
                    "created": state.get("created", {}),
                    "updated": state.get("updated", []),
                    "snapshot": {
                        "identifier": snapshot.identifier if snapshot else None,
                        "path": state.get("snapshot_path"),
                    },
                }
            )

        state["stage"] = stage
        state["result"] = result
        return state
    except Exception as e:
        raise StageError(stage, e) from e


def build_pr_graph():
    g = StateGraph(WorkflowState)

    g.add_node("load_dependencies", node_load_dependencies)
    g.add_node("collect", node_collect)
    g.add_node("categorize", node_categorize)
    g.add_node("verify_github", node_verify_github)
    g.add_node("verify_revisions", node_verify_revisions)
    g.add_node("push", node_push)
    g.add_node("create", node_create)
    g.add_node("snapshot", node_snapshot)
    g.add_node("update_descriptions", node_update_descriptions)
    g.add_node("emit_result", node_emit_result)

    g.set_entry_point("load_dependencies")
    g.add_edge("load_dependencies", "collect")
    g.add_edge("collect", "categorize")
    g.add_conditional_edges(
        "categorize",
        route_after_categorize,
        {"emit_result": "emit_result", "verify_github": "verify_github"},
    )
    g.add_edge("verify_github", "verify_revisions")
    g.add_edge("verify_revisions", "push")
    g.add_edge("push", "create")
    g.add_edge("create", "snapshot")
    g.add_edge("snapshot", "update_descriptions")
    g.add_edge("update_descriptions", "emit_result")
    g.add_edge("emit_result", END)

    return g.compile()


def run_pr_workflow(
        *,
        config: Config,
        runner: CommandRunner,
        options: WorkflowOptions,
) -> dict[str, Any]:
    if options.mode not in (MODE_CREATE, MODE_UPDATE):
        raise ValueError(f"unknown workflow mode: {options.mode}")
    app = build_pr_graph()
    state: WorkflowState = {
        "config": config,
        "runner": runner,
        "options": options,
        "stage": STAGE_INIT,
    }
    final_state = app.invoke(state)
    return final_state["result"]
