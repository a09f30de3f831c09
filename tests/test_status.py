import pytest

from conftest import FakeRunner, commit_file, git, make_config, requires_git
from mstl.errors import ConfigError, PreconditionError
from mstl.git_ops import CommandRunner
from mstl.status import (
    StatusRecord,
    collect_status,
    get_repo_status,
    repair_stale_upstream,
    validate_integrity,
    validate_status_for_action,
    verify_revisions_unchanged,
)


@requires_git
def test_fresh_clone_is_clean(workspace):
    config, base = workspace
    records = collect_status(config, CommandRunner())
    assert len(records) == 1
    rec = records[0]
    assert rec.repo_id == "alpha"
    assert rec.branch == "main"
    assert rec.local_head == rec.remote_head
    assert (rec.ahead, rec.behind, rec.conflict) == (False, False, False)


@requires_git
def test_local_only_commit_is_ahead(workspace):
    config, base = workspace
    commit_file(base / "alpha", "b.txt", "new\n", "local work")
    rec = collect_status(config, CommandRunner())[0]
    assert rec.ahead is True
    assert rec.behind is False
    assert rec.conflict is False


@requires_git
def test_remote_only_commit_is_behind(workspace, other_clone):
    config, base = workspace
    commit_file(other_clone, "c.txt", "remote\n", "remote work")
    git(other_clone, "push", "-q", "origin", "main")

    rec = collect_status(config, CommandRunner())[0]
    assert rec.behind is True
    assert rec.ahead is False
    assert rec.conflict is False


@requires_git
def test_diverged_same_region_is_conflict(workspace, other_clone):
    config, base = workspace
    commit_file(other_clone, "a.txt", "remote change\nline2\nline3\n", "remote edit")
    git(other_clone, "push", "-q", "origin", "main")
    commit_file(base / "alpha", "a.txt", "local change\nline2\nline3\n", "local edit")

    rec = collect_status(config, CommandRunner())[0]
    assert (rec.ahead, rec.behind, rec.conflict) == (True, True, True)


@requires_git
def test_diverged_disjoint_files_is_not_conflict(workspace, other_clone):
    config, base = workspace
    commit_file(other_clone, "remote.txt", "r\n", "remote add")
    git(other_clone, "push", "-q", "origin", "main")
    commit_file(base / "alpha", "local.txt", "l\n", "local add")

    rec = collect_status(config, CommandRunner())[0]
    assert (rec.ahead, rec.behind, rec.conflict) == (True, True, False)


@requires_git
def test_branch_without_remote_counterpart_is_ahead(workspace):
    config, base = workspace
    git(base / "alpha", "checkout", "-q", "-b", "feature")
    rec = collect_status(config, CommandRunner())[0]
    assert rec.branch == "feature"
    assert rec.remote_head == ""
    assert rec.ahead is True


@requires_git
def test_detached_head(workspace):
    config, base = workspace
    head = git(base / "alpha", "rev-parse", "HEAD")
    git(base / "alpha", "checkout", "-q", head)
    rec = collect_status(config, CommandRunner())[0]
    assert rec.detached
    assert rec.ahead is False


@requires_git
def test_no_fetch_does_not_see_new_remote_commits(workspace, other_clone):
    config, base = workspace
    commit_file(other_clone, "c.txt", "remote\n", "remote work")
    git(other_clone, "push", "-q", "origin", "main")

    rec = collect_status(config, CommandRunner(), no_fetch=True)[0]
    assert rec.behind is False


@requires_git
def test_stale_upstream_is_repaired(workspace, other_clone, caplog):
    config, base = workspace
    alpha = base / "alpha"
    git(other_clone, "checkout", "-q", "-b", "topic")
    git(other_clone, "push", "-q", "origin", "topic")
    git(alpha, "fetch", "-q", "origin")
    git(alpha, "checkout", "-q", "-b", "topic", "--track", "origin/topic")

    git(other_clone, "push", "-q", "origin", "--delete", "topic")
    git(alpha, "fetch", "-q", "--prune", "origin")

    with caplog.at_level("WARNING", logger="mstl"):
        assert repair_stale_upstream(CommandRunner(), "alpha", alpha, "topic") is True
    assert "no longer exists" in caplog.text
    assert git(alpha, "for-each-ref", "--format=%(upstream:short)", "refs/heads/topic") == ""


@requires_git
def test_branch_deleted_on_remote_counts_as_unpushed(workspace, other_clone, caplog):
    config, base = workspace
    alpha = base / "alpha"
    git(other_clone, "checkout", "-q", "-b", "topic")
    git(other_clone, "push", "-q", "origin", "topic")
    git(alpha, "fetch", "-q", "origin")
    git(alpha, "checkout", "-q", "-b", "topic", "--track", "origin/topic")

    # deleted behind the workspace's back, nothing pruned locally
    git(other_clone, "push", "-q", "origin", "--delete", "topic")

    with caplog.at_level("WARNING", logger="mstl"):
        (rec,) = collect_status(config, CommandRunner())
    assert rec.branch == "topic"
    assert rec.remote_head == ""
    assert rec.ahead is True
    assert "no longer exists" in caplog.text
    assert git(alpha, "for-each-ref", "--format=%(upstream:short)", "refs/heads/topic") == ""
    assert git(alpha, "for-each-ref", "refs/remotes/origin/topic") == ""


def test_missing_directory_is_excluded(tmp_path):
    config = make_config(tmp_path, {"url": "https://github.com/org/ghost.git"})
    assert get_repo_status(config, config.repositories[0], FakeRunner()) is None
    assert collect_status(config, FakeRunner()) == []


def test_records_sorted_by_id(tmp_path):
    for name in ("zeta", "alpha", "mid"):
        (tmp_path / name).mkdir()
    config = make_config(
        tmp_path,
        {"url": "https://github.com/org/zeta.git"},
        {"url": "https://github.com/org/alpha.git"},
        {"url": "https://github.com/org/mid.git"},
    )
    runner = FakeRunner().on("git", "rev-parse", "--abbrev-ref", "HEAD", out="HEAD")
    records = collect_status(config, runner, jobs=3)
    assert [r.repo_id for r in records] == ["alpha", "mid", "zeta"]


def test_failing_query_degrades_field(tmp_path):
    (tmp_path / "alpha").mkdir()
    config = make_config(tmp_path, {"url": "https://github.com/org/alpha.git"})
    runner = (
        FakeRunner()
        .on("git", "rev-parse", "--abbrev-ref", "HEAD", out="main")
        .on("git", "rev-parse", "HEAD", out="a" * 40)
        .on("git", "rev-parse", "--short", "HEAD", out="aaaaaaa")
        .on("git", "rev-parse", "--verify", fail="missing")
        .on("git", "ls-remote", "--heads", "origin", "main", out=f"{'b' * 40}\trefs/heads/main")
        .on("git", "rev-list", fail="boom")
    )
    rec = get_repo_status(config, config.repositories[0], runner)
    assert rec.remote_head == "b" * 40
    assert rec.ahead is None
    assert rec.behind is None


def test_validate_status_for_action_names_every_problem():
    records = [
        StatusRecord(repo_id="a", repo_dir="a", branch="main", behind=True),
        StatusRecord(repo_id="b", repo_dir="b", branch="main", ahead=True, behind=True, conflict=True),
        StatusRecord(repo_id="c", repo_dir="c", branch="HEAD"),
        StatusRecord(repo_id="d", repo_dir="d", branch="main", ahead=True),
    ]
    with pytest.raises(PreconditionError) as exc:
        validate_status_for_action(records)
    msg = str(exc.value)
    assert "[a] is behind" in msg
    assert "[b] has conflicts" in msg
    assert "[c] is in detached HEAD" in msg
    assert "[d]" not in msg


def test_unknown_ahead_or_behind_blocks_action():
    records = [
        StatusRecord(repo_id="a", repo_dir="a", branch="main", ahead=None),
        StatusRecord(repo_id="b", repo_dir="b", branch="main", ahead=True, behind=None),
        StatusRecord(repo_id="c", repo_dir="c", branch="main", ahead=True),
    ]
    with pytest.raises(PreconditionError) as exc:
        validate_status_for_action(records)
    msg = str(exc.value)
    assert "[a] status against its remote branch could not be determined" in msg
    assert "[b] status against" in msg
    assert "[c]" not in msg


def test_verify_revisions_unchanged(tmp_path):
    (tmp_path / "alpha").mkdir()
    config = make_config(tmp_path, {"url": "https://github.com/org/alpha.git"})
    records = [StatusRecord(repo_id="alpha", repo_dir=str(tmp_path / "alpha"), local_head="1" * 40)]

    verify_revisions_unchanged(config, records, FakeRunner().on("git", "rev-parse", "HEAD", out="1" * 40))
    with pytest.raises(PreconditionError, match="has changed"):
        verify_revisions_unchanged(config, records, FakeRunner().on("git", "rev-parse", "HEAD", out="2" * 40))


@requires_git
def test_validate_integrity_rejects_foreign_origin(workspace):
    config, base = workspace
    validate_integrity(config, CommandRunner())

    git(base / "alpha", "remote", "set-url", "origin", "https://github.com/someone/else.git")
    with pytest.raises(ConfigError, match="different remote origin"):
        validate_integrity(config, CommandRunner())


def test_validate_integrity_rejects_plain_directory(tmp_path):
    (tmp_path / "alpha").mkdir()
    config = make_config(tmp_path, {"url": "https://github.com/org/alpha.git"})
    with pytest.raises(ConfigError, match="not a git repository"):
        validate_integrity(config, FakeRunner())
