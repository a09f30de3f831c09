from conftest import make_config
from mstl.categorize import MODE_UPDATE, categorize
from mstl.github import PrLookup, PullRequestRecord
from mstl.status import StatusRecord


def _open_pr(n=1):
    return PullRequestRecord(number=n, state="OPEN", url=f"https://github.com/org/r/pull/{n}")


def _rec(rid, *, branch="feature", ahead=False, local="l" * 40, remote="r" * 40):
    return StatusRecord(repo_id=rid, repo_dir=f"/ws/{rid}", branch=branch, ahead=ahead, local_head=local, remote_head=remote)


def _no_tip(repo, base):
    return ""


def _config(tmp_path, *ids, **extra):
    return make_config(tmp_path, *({"id": rid, "url": f"https://github.com/org/{rid}.git", **extra} for rid in ids))


def test_decision_table(tmp_path):
    config = _config(tmp_path, "a", "b", "c", "d", base_branch="main")
    records = [
        _rec("a", ahead=True),
        _rec("b", ahead=False),
        _rec("c", ahead=True),
        _rec("d", ahead=False),
    ]
    lookups = {
        "a": PrLookup.found([_open_pr(1)]),
        "b": PrLookup.found([_open_pr(2)]),
        "c": PrLookup.not_found(),
        "d": PrLookup.failed("boom"),
    }
    result = categorize(config.repositories, records, lookups, _no_tip)
    assert result.push == ["a", "c"]
    assert result.update == ["a", "b"]
    assert result.create == ["c", "d"]
    assert result.skipped == []
    assert result.active == ["a", "b", "c", "d"]


def test_on_base_branch_without_changes_is_skipped(tmp_path):
    config = _config(tmp_path, "a", branch="main")
    result = categorize(config.repositories, [_rec("a", branch="main")], {}, _no_tip)
    assert result.skipped == ["a"]
    assert result.create == []
    assert result.empty


def test_fresh_branch_at_base_tip_is_skipped(tmp_path):
    config = _config(tmp_path, "a", "b", base_branch="main")
    records = [
        _rec("a", ahead=True, local="t" * 40, remote=""),
        _rec("b", ahead=True, local="n" * 40, remote=""),
    ]
    asked = []

    def tip(repo, base):
        asked.append((repo.repo_id, base))
        return "t" * 40

    result = categorize(config.repositories, records, {}, tip)
    assert result.skipped == ["a"]
    assert result.push == ["b"]
    assert result.create == ["b"]
    assert asked == [("a", "main"), ("b", "main")]


def test_merged_pr_does_not_count_as_open(tmp_path):
    config = _config(tmp_path, "a", base_branch="main")
    merged = PullRequestRecord(number=4, state="MERGED", url="u")
    result = categorize(config.repositories, [_rec("a", ahead=True)], {"a": PrLookup.found([merged])}, _no_tip)
    assert result.update == []
    assert result.create == ["a"]


def test_update_mode_never_creates(tmp_path):
    config = _config(tmp_path, "a", "b", base_branch="main")
    records = [_rec("a", ahead=True), _rec("b", ahead=True)]
    result = categorize(
        config.repositories, records, {"a": PrLookup.found([_open_pr()])}, _no_tip, mode=MODE_UPDATE
    )
    assert result.push == ["a"]
    assert result.update == ["a"]
    assert result.create == []
    assert result.skipped == ["b"]


def test_uninitialized_repositories_are_ignored(tmp_path):
    config = _config(tmp_path, "a", "b", base_branch="main")
    result = categorize(config.repositories, [_rec("a")], {}, _no_tip)
    assert result.to_dict() == {"push": [], "create": ["a"], "update": [], "skipped": []}


def test_diverged_pr_repo_and_clean_feature_repo(tmp_path):
    config = make_config(
        tmp_path,
        {"id": "x", "url": "https://github.com/org/x.git", "branch": "feature", "base-branch": "main"},
        {"id": "y", "url": "https://github.com/org/y.git", "branch": "feature", "base-branch": "main"},
    )
    records = [_rec("x", ahead=True), _rec("y", ahead=False)]
    lookups = {"x": PrLookup.found([_open_pr()]), "y": PrLookup.not_found()}

    result = categorize(config.repositories, records, lookups, _no_tip)
    assert result.push == ["x"]
    assert result.update == ["x"]
    assert result.create == ["y"]
    assert result.skipped == []
