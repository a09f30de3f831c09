# src/mstl/cli.py
from __future__ import annotations

import argparse
import json
import sys
from typing import Any

from . import __version__
from . import main as main_module
from .config import resolve_jobs
from .errors import MstlError, StageError
from .git_ops import CommandRunner, default_gh_path, default_git_path
from .logging import set_verbose

STAGE_PARSE_ARGS = "parse_args"


def _print_success(obj: dict[str, Any]) -> None:
    # Keep output schema stable: command results are already structured.
    print(json.dumps(obj, separators=(",", ":")), file=sys.stdout)


def _print_failure(stage: str, err: Exception) -> None:
    out = {
        "ok": False,
        "stage": stage,
        "error_code": f"MSTL_FAILED_{stage.upper()}",
        "error_message": str(err),
    }
    print(json.dumps(out, separators=(",", ":")), file=sys.stdout)


def _positive_int(v: str) -> int:
    try:
        n = int(v)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {v!r}") from None
    if n < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {n}")
    return n


def _add_global_args(p: argparse.ArgumentParser, *, suppress: bool) -> None:
    # Subcommands accept the global flags too; SUPPRESS keeps them from resetting
    # a value already given before the subcommand.
    default = argparse.SUPPRESS if suppress else None
    p.add_argument("-f", "--file", default=default, metavar="PATH", help="Configuration file ('-' reads stdin).")
    p.add_argument("-j", "--jobs", type=int, default=default, metavar="N", help="Concurrent tasks (1-128).")
    p.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=argparse.SUPPRESS if suppress else False,
        help="Log every external command (forces --jobs 1).",
    )


def _add_pr_workflow_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("-d", "--dependencies", metavar="PATH", help="Mermaid dependency graph file.")
    p.add_argument("-w", "--overwrite", action="store_true", help="Update PRs authored by others.")
    p.add_argument("--dry-run", action="store_true", help="Report the plan without mutating anything.")
    p.add_argument("-o", "--out-dir", metavar="DIR", help="Where to write the snapshot file.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mstl",
        description="Manage a fleet of git repositories as one change set.",
    )
    _add_global_args(parser, suppress=False)
    parser.add_argument("--version", action="version", version=f"mstl {__version__}")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p_init = sub.add_parser("init", help="Clone missing repositories and check out their refs.")
    _add_global_args(p_init, suppress=True)
    p_init.add_argument("--depth", type=_positive_int, metavar="N", help="Shallow clone depth.")

    p_status = sub.add_parser("status", help="Ahead / behind / conflict state of every repository.")
    _add_global_args(p_status, suppress=True)
    p_status.add_argument("--no-fetch", action="store_true", help="Do not contact the remotes.")

    p_snapshot = sub.add_parser("snapshot", help="Write a snapshot of every repository's ref.")
    _add_global_args(p_snapshot, suppress=True)
    p_snapshot.add_argument("-o", "--out-dir", metavar="DIR", help="Output directory (default: cwd).")

    p_push = sub.add_parser("push", help="Push every repository with unpushed commits.")
    _add_global_args(p_push, suppress=True)
    p_push.add_argument("--dry-run", action="store_true", help="Only list what would be pushed.")

    p_sync = sub.add_parser("sync", help="Pull every repository whose branch exists on the remote.")
    _add_global_args(p_sync, suppress=True)
    strategy = p_sync.add_mutually_exclusive_group()
    strategy.add_argument("--merge", dest="strategy", action="store_const", const="merge")
    strategy.add_argument("--rebase", dest="strategy", action="store_const", const="rebase")

    p_fire = sub.add_parser("fire", help="Commit everything and push it to a fresh branch, everywhere.")
    _add_global_args(p_fire, suppress=True)

    p_pr = sub.add_parser("pr", help="Pull request workflow.")
    pr_sub = p_pr.add_subparsers(dest="pr_command", metavar="PR_COMMAND")
    pr_sub.required = True

    p_pr_status = pr_sub.add_parser("status", help="Status plus existing pull requests.")
    _add_global_args(p_pr_status, suppress=True)

    p_pr_create = pr_sub.add_parser("create", help="Push, open and link one PR per repository.")
    _add_global_args(p_pr_create, suppress=True)
    p_pr_create.add_argument("-t", "--title", default="", help="PR title.")
    msg = p_pr_create.add_mutually_exclusive_group()
    msg.add_argument("-b", "--body", default="", help="PR body.")
    msg.add_argument("-m", "--message", help="Title and body: first line, blank line, body.")
    msg.add_argument("--message-file", metavar="PATH", help="Read the message from a file.")
    p_pr_create.add_argument("--draft", action="store_true", help="Open draft PRs where supported.")
    _add_pr_workflow_args(p_pr_create)

    p_pr_update = pr_sub.add_parser("update", help="Push and refresh descriptions of existing PRs.")
    _add_global_args(p_pr_update, suppress=True)
    _add_pr_workflow_args(p_pr_update)

    p_pr_checkout = pr_sub.add_parser("checkout", help="Recreate the workspace recorded in a PR.")
    _add_global_args(p_pr_checkout, suppress=True)
    p_pr_checkout.add_argument("-u", "--url", required=True, help="Pull request URL.")
    p_pr_checkout.add_argument("--depth", type=_positive_int, metavar="N", help="Shallow clone depth.")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def _dispatch(args: argparse.Namespace, runner: CommandRunner) -> dict[str, Any]:
    if args.command == "pr" and args.pr_command == "checkout":
        jobs = 1 if args.verbose else args.jobs
        return main_module.run_pr_checkout(runner, args.url, jobs=jobs, depth=args.depth)

    config = main_module.resolve_config(runner, args.file)
    try:
        jobs = 1 if args.verbose else resolve_jobs(args.jobs, config)
    except MstlError as e:
        raise StageError(main_module.STAGE_LOAD_CONFIG, e) from e

    if args.command == "init":
        return main_module.run_init(config, runner, jobs=jobs, depth=args.depth)
    if args.command == "status":
        return main_module.run_status(config, runner, jobs=jobs, no_fetch=args.no_fetch)
    if args.command == "snapshot":
        return main_module.run_snapshot(config, runner, out_dir=args.out_dir)
    if args.command == "push":
        return main_module.run_push(config, runner, jobs=jobs, dry_run=args.dry_run)
    if args.command == "sync":
        return main_module.run_sync(config, runner, jobs=jobs, strategy=args.strategy)
    if args.command == "fire":
        return main_module.run_fire_command(config, runner, jobs=jobs)

    if args.pr_command == "status":
        return main_module.run_pr_status(config, runner, jobs=jobs)

    workflow = dict(
        jobs=jobs,
        overwrite=args.overwrite,
        dependency_file=args.dependencies,
        dry_run=args.dry_run,
        out_dir=args.out_dir,
    )
    if args.pr_command == "create":
        title, body = args.title, args.body
        if args.message or args.message_file:
            title, body = main_module.read_message(args.message, args.message_file)
            title = args.title or title
        return main_module.run_pr_create(config, runner, title=title, body=body, draft=args.draft, **workflow)
    return main_module.run_pr_update(config, runner, **workflow)


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(argv)
    except SystemExit as e:
        # --help / --version exit 0; usage errors are reported as JSON
        if e.code in (0, None):
            raise
        _print_failure(STAGE_PARSE_ARGS, RuntimeError("invalid command line arguments"))
        return 1

    verbose = bool(args.verbose)
    if verbose:
        set_verbose(True)

    runner = CommandRunner(git_path=default_git_path(), gh_path=default_gh_path(), verbose=verbose)

    try:
        result = _dispatch(args, runner)
        _print_success(result)
        return 0 if result.get("ok", True) else 1

    except StageError as e:
        _print_failure(e.stage, e)
        return 1

    except Exception as e:  # noqa: BLE001 - top-level CLI error handler
        # Everything else: unknown stage
        _print_failure("unknown", e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
