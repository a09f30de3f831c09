import json
import random

import pytest

from mstl.body import (
    HEADER,
    closing_delimiter_length,
    embed_block,
    find_block,
    generate_block,
    generate_placeholder_block,
    has_block,
    parse_block,
    parse_title_body,
)
from mstl.dependency import parse_dependencies
from mstl.errors import BlockNotFoundError

SNAPSHOT = json.dumps(
    {"repositories": [{"id": "api", "url": "https://github.com/org/api.git", "branch": "feature"}]},
    indent=2,
)
FILENAME = "mistletoe-snapshot-abc.json"

PRS = {
    "api": ["https://github.com/org/api/pull/1"],
    "lib": ["https://github.com/org/lib/pull/7"],
    "web": ["https://github.com/org/web/pull/3"],
    "docs": ["https://github.com/org/docs/pull/9"],
}


@pytest.mark.parametrize("n, expected", [(4, 7), (5, 8), (6, 11), (15, 28), (16, 31)])
def test_closing_delimiter_never_mirrors_opening(n, expected):
    assert closing_delimiter_length(n) == expected
    assert closing_delimiter_length(n) != n


def test_block_layout_and_delimiters():
    block = generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(3))
    lines = block.split("\n")
    assert block.startswith("\n\n")
    assert block.endswith("\n")

    top, bottom = lines[2], lines[-2]
    assert set(top) == {"-"} and 4 <= len(top) <= 16
    assert len(bottom) == closing_delimiter_length(len(top))
    assert lines[3] == HEADER

    assert "<summary>mistletoe-related-pr-abc.json</summary>" in block
    assert "<summary>mistletoe-snapshot-abc.json</summary>" in block
    assert "https://github.com/org/api/pull/1" not in block
    # without a dependency graph related PRs form one flat sorted list
    assert " * https://github.com/org/docs/pull/9\n * https://github.com/org/lib/pull/7" in block
    assert "#### Others" not in block


def test_block_sections_follow_dependency_direction():
    deps = parse_dependencies("api --> lib\nweb --> api", {"api", "lib", "web", "docs"})
    block = generate_block(
        SNAPSHOT, FILENAME, "api", PRS, deps, "graph TD\napi --> lib\nweb --> api\n", rng=random.Random(1)
    )
    assert "#### Dependencies\n * https://github.com/org/lib/pull/7" in block
    assert "#### Dependents\n * https://github.com/org/web/pull/3" in block
    assert "#### Others\n * https://github.com/org/docs/pull/9" in block
    assert "<summary>mistletoe-dependencies-abc.mmd</summary>" in block
    assert "```mermaid\ngraph TD\napi --> lib" in block

    parsed = parse_block("Some description" + block)
    assert parsed.related == {
        "dependencies": ["https://github.com/org/lib/pull/7"],
        "dependents": ["https://github.com/org/web/pull/3"],
        "others": ["https://github.com/org/docs/pull/9"],
    }
    assert parsed.dependency_content.startswith("graph TD")


def test_parse_reads_json_snapshot():
    parsed = parse_block("Intro\n" + generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(5)))
    assert parsed.snapshot == json.loads(SNAPSHOT)
    assert parsed.snapshot_raw == SNAPSHOT


def test_parse_falls_back_to_base64_copy():
    block = generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(5))
    damaged = block.replace(SNAPSHOT, '{"repositories": [', 1)
    parsed = parse_block(damaged)
    assert parsed.snapshot == json.loads(SNAPSHOT)


def test_parse_without_block_raises():
    with pytest.raises(BlockNotFoundError):
        parse_block("just a description")
    with pytest.raises(BlockNotFoundError):
        parse_block("----\n## Mistletoe\nno closing line here")


def test_replace_equals_removing_old_block_then_appending():
    old = generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(7))
    new = generate_block(SNAPSHOT, FILENAME, "api", {"api": [], "lib": ["x"]}, rng=random.Random(8))
    description = "Fixes the login flow.\n\nMore details."
    assert embed_block(description + old, new) == description + new


def test_replace_keeps_text_after_block():
    old = generate_placeholder_block(rng=random.Random(2))
    new = generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(4))
    result = embed_block("Before" + old + "\nAfter", new)
    assert result.startswith("Before\n\n")
    assert result.endswith(new + "After")
    assert "(snapshot pending)" not in result
    assert result.count(HEADER) == 1


def test_heading_without_closing_line_is_appended_to():
    text = "Title text\n\n## Mistletoe\nnotes without a closing rule"
    new = generate_block(SNAPSHOT, FILENAME, "api", PRS, rng=random.Random(4))
    assert not has_block(text)
    assert embed_block(text, new) == text + new


def test_find_block_spans_delimiters():
    text = "a\n\n-----\n## Mistletoe\nbody\n--------\ntail"
    assert find_block(text) == (2, 5)


def test_placeholder_is_recognized():
    block = generate_placeholder_block(rng=random.Random(0))
    assert has_block("Description" + block)
    assert "(snapshot pending)" in block


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Add feature", ("Add feature", "")),
        ("Add feature\n\nLong body\nsecond line", ("Add feature", "Long body\nsecond line")),
        ("Add feature\r\n\r\nBody", ("Add feature", "Body")),
        ("Add feature\nno blank line", ("Add feature", "Add feature\nno blank line")),
    ],
)
def test_parse_title_body(text, expected):
    assert parse_title_body(text) == expected


def test_long_title_is_truncated_and_kept_in_body():
    text = "x" * 300 + "\n\nbody"
    title, body = parse_title_body(text)
    assert title == "x" * 253 + "..."
    assert len(title) == 256
    assert body == text
