import json

import pytest

from conftest import FakeRunner, make_config
from mstl.errors import PreconditionError, StageError
from mstl.graph import WorkflowOptions, run_pr_workflow

URL = "https://github.com/org/api.git"
LOCAL = "1" * 40
BASE_TIP = "b" * 40
PR_URL = "https://github.com/org/api/pull/3"


@pytest.fixture
def config(tmp_path):
    (tmp_path / "api" / ".git").mkdir(parents=True)
    return make_config(tmp_path, {"id": "api", "url": URL, "branch": "feature", "base-branch": "main"})


def _remote_ref(args):
    # only the base branch exists on the remote
    return BASE_TIP if args[-1].endswith("/main") else ""


def _feature_runner():
    def view(args):
        return "OPEN" if args[5] == "state" else "Work in progress"

    return (
        FakeRunner()
        .on("git", "config", "--get", "remote.origin.url", out=URL)
        .on("git", "rev-parse", "--abbrev-ref", "HEAD", out="feature")
        .on("git", "rev-parse", "HEAD", out=LOCAL)
        .on("git", "rev-parse", "--short", "HEAD", out=LOCAL[:7])
        .on("git", "rev-parse", "--verify", out=_remote_ref)
        .on("git", "rev-parse", "origin/main", out=BASE_TIP)
        .on("gh", "pr", "list", out="[]")
        .on("gh", "repo", "view", out="WRITE")
        .on("gh", "pr", "create", out=PR_URL)
        .on("gh", "pr", "view", out=view)
    )


def test_dry_run_reports_plan_without_mutating(config):
    runner = _feature_runner()
    result = run_pr_workflow(config=config, runner=runner, options=WorkflowOptions(dry_run=True, check_gh=False))

    assert result["ok"] is True
    assert result["stage"] == "done_dry_run"
    assert result["categorization"] == {"push": ["api"], "create": ["api"], "update": [], "skipped": []}
    assert result["prs"]["api"] == {"lookup": "not_found"}
    assert result["status"][0]["ahead"] is True
    assert runner.commands("git", "push") == []
    assert runner.commands("gh", "pr", "create") == []


def test_full_create_run(config, tmp_path):
    runner = _feature_runner()
    out_dir = tmp_path / "out"
    options = WorkflowOptions(title="Add login", body="Details", check_gh=False, out_dir=str(out_dir))

    result = run_pr_workflow(config=config, runner=runner, options=options)

    assert result["stage"] == "done"
    assert result["pushed"] == ["api"]
    assert result["created"] == {"api": PR_URL}
    assert result["updated"] == [PR_URL]

    snapshot_path = out_dir / f"mistletoe-snapshot-{result['snapshot']['identifier']}.json"
    assert result["snapshot"]["path"] == str(snapshot_path)
    doc = json.loads(snapshot_path.read_text())
    assert doc["repositories"] == [
        {"id": "api", "url": URL, "branch": "feature", "revision": LOCAL, "base-branch": "main"}
    ]

    (create,) = runner.commands("gh", "pr", "create")
    body = create[create.index("--body") + 1]
    assert body.startswith("Details\n\n")
    assert "(snapshot pending)" in body

    (edit,) = runner.commands("gh", "pr", "edit")
    assert edit[3] == PR_URL
    assert "mistletoe-snapshot-" in edit[-1]
    assert edit[-1].startswith("Work in progress\n\n")


def test_nothing_to_do_on_base_branch(tmp_path):
    (tmp_path / "api" / ".git").mkdir(parents=True)
    config = make_config(tmp_path, {"id": "api", "url": URL, "branch": "main"})
    runner = _feature_runner().on("git", "rev-parse", "--abbrev-ref", "HEAD", out="main")
    runner.on("git", "rev-parse", "--verify", out=LOCAL)

    result = run_pr_workflow(config=config, runner=runner, options=WorkflowOptions(check_gh=False))
    assert result["stage"] == "done_nothing_to_do"
    assert result["categorization"]["skipped"] == ["api"]
    assert "pushed" not in result


def test_behind_repository_aborts_before_mutation(config):
    runner = (
        _feature_runner()
        .on("git", "rev-parse", "--verify", out="9" * 40)
        .on("git", "rev-list", "--count", out="1")
    )
    with pytest.raises(StageError) as exc:
        run_pr_workflow(config=config, runner=runner, options=WorkflowOptions(check_gh=False))
    assert exc.value.stage == "categorize"
    assert isinstance(exc.value.inner, PreconditionError)
    assert runner.commands("git", "push") == []


def test_changed_head_aborts_before_push(config):
    heads = iter([LOCAL, "2" * 40])

    runner = _feature_runner().on("git", "rev-parse", "HEAD", out=lambda args: next(heads))
    with pytest.raises(StageError) as exc:
        run_pr_workflow(config=config, runner=runner, options=WorkflowOptions(check_gh=False))
    assert exc.value.stage == "verify_revisions"
    assert "has changed since status collection" in str(exc.value)
    assert runner.commands("git", "push") == []


def test_unknown_id_in_default_dependency_file(config, tmp_path):
    (tmp_path / ".mstl").mkdir()
    (tmp_path / ".mstl" / "dependencies.md").write_text("graph TD\napi --> ghost\n")
    with pytest.raises(StageError) as exc:
        run_pr_workflow(config=config, runner=_feature_runner(), options=WorkflowOptions(check_gh=False))
    assert exc.value.stage == "load_dependencies"
    assert "ghost" in str(exc.value)
