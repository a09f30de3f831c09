# src/mstl/body.py
"""
Metadata block embedded in pull request descriptions.

Layout (N random in [4, 16]; the closing rule is 2N-2 dashes for odd N, 2N-1 for
even N so it never mirrors the opening one):

    ----                      N dashes
    ## Mistletoe
    ... related PRs, related-PR JSON, snapshot JSON + base64, dependency graph
    -------                   closing dashes

Recognition is line based: a `#... Mistletoe` heading, an optional dash line right
above it, and a mandatory dash line somewhere below it.
"""
from __future__ import annotations

import base64
import binascii
import json
import random
import re
from dataclasses import dataclass, field
from typing import Any, Mapping

from mstl.dependency import DependencyGraph
from mstl.errors import BlockNotFoundError
from mstl.logging import get_logger

log = get_logger(__name__)

HEADER = "## Mistletoe"
DISCLAIMER = "This content is auto-generated. Manual edits may be lost."
RELATED_HEADING = "### Related Pull Request(s)"
SNAPSHOT_HEADING = "### snapshot"

MIN_DELIM = 4
MAX_DELIM = 16
MAX_TITLE_LEN = 256

_HEADER_RE = re.compile(r"^#+\s+Mistletoe")
_FENCE_RE = re.compile(r"^```(\w*)\s*$")


def closing_delimiter_length(n: int) -> int:
    return n * 2 - 2 if n % 2 else n * 2 - 1


def _is_dash_line(line: str) -> bool:
    s = line.strip()
    return len(s) >= 3 and set(s) == {"-"}


# -----------------------------
# encode
# -----------------------------

@dataclass
class RelatedPrs:
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)
    others: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, list[str]]:
        # empty categories are omitted from the JSON document
        out: dict[str, list[str]] = {}
        if self.dependencies:
            out["dependencies"] = self.dependencies
        if self.dependents:
            out["dependents"] = self.dependents
        if self.others:
            out["others"] = self.others
        return out


def categorize_related(
        current_repo_id: str,
        all_prs: Mapping[str, list[str]],
        deps: DependencyGraph | None,
) -> RelatedPrs:
    """Split every other repository's PR URLs by dependency direction (all URLs sorted)."""
    related = RelatedPrs()
    forward = set(deps.dependencies_of(current_repo_id)) if deps else set()
    reverse = set(deps.dependents_of(current_repo_id)) if deps else set()

    for repo_id, urls in all_prs.items():
        if repo_id == current_repo_id:
            continue
        for url in urls:
            if repo_id in forward:
                related.dependencies.append(url)
            if repo_id in reverse:
                related.dependents.append(url)
            if repo_id not in forward and repo_id not in reverse:
                related.others.append(url)

    related.dependencies.sort()
    related.dependents.sort()
    related.others.sort()
    return related


def _related_filename(snapshot_filename: str) -> str:
    return snapshot_filename.replace("snapshot", "related-pr", 1)


def _dependencies_filename(snapshot_filename: str) -> str:
    return snapshot_filename.replace("snapshot", "dependencies", 1).replace(".json", ".mmd", 1)


def _bullets(urls: list[str]) -> list[str]:
    return [f" * {u}" for u in urls]


def generate_block(
        snapshot_data: str,
        snapshot_filename: str,
        current_repo_id: str,
        all_prs: Mapping[str, list[str]],
        deps: DependencyGraph | None = None,
        dependency_content: str = "",
        *,
        rng: random.Random | None = None,
) -> str:
    """
    Render the full metadata block for one repository's PR.

    Contract:
    - Output starts with two newlines and ends with the closing delimiter line.
    - With a dependency graph, related PRs are split into Dependencies / Dependents /
      Others; without one they form a flat list.
    - The current repository's own PRs are never listed as related.
    """
    n = (rng or random).randint(MIN_DELIM, MAX_DELIM)
    top = "-" * n
    bottom = "-" * closing_delimiter_length(n)

    related = categorize_related(current_repo_id, all_prs, deps)

    out: list[str] = ["", "", top, HEADER, DISCLAIMER, "", RELATED_HEADING, ""]

    if deps is None:
        out.extend(_bullets(related.others))
    else:
        if related.dependencies:
            out.append("#### Dependencies")
            out.extend(_bullets(related.dependencies))
            out.append("")
        if related.dependents:
            out.append("#### Dependents")
            out.extend(_bullets(related.dependents))
            out.append("")
        if related.others:
            out.append("#### Others")
            out.extend(_bullets(related.others))
    out.append("")

    out += [
        "<details>",
        f"<summary>{_related_filename(snapshot_filename)}</summary>",
        "",
        "```json",
        json.dumps(related.to_dict(), indent=4, ensure_ascii=False),
        "```",
        "</details>",
        "",
    ]

    encoded = base64.b64encode(snapshot_data.encode("utf-8")).decode("ascii")
    out += [
        SNAPSHOT_HEADING,
        "",
        "<details>",
        f"<summary>{snapshot_filename}</summary>",
        "",
        "```json",
        snapshot_data,
        "```",
        "",
        "```",
        encoded,
        "```",
        "</details>",
        "",
    ]

    if dependency_content:
        out += [
            "<details>",
            f"<summary>{_dependencies_filename(snapshot_filename)}</summary>",
            "",
        ]
        content = dependency_content.rstrip("\n")
        if dependency_content.strip().startswith("```mermaid"):
            out.append(content)
        else:
            out += ["```mermaid", content, "```"]
        out += ["</details>", ""]

    out.append(bottom)
    return "\n".join(out) + "\n"


def generate_placeholder_block(*, rng: random.Random | None = None) -> str:
    """
    Minimal recognizable block used as the initial PR body, so that the description
    update that follows replaces it instead of appending a second block.
    """
    n = (rng or random).randint(MIN_DELIM, MAX_DELIM)
    return "\n".join(
        ["", "", "-" * n, HEADER, DISCLAIMER, "", "(snapshot pending)", "", "-" * closing_delimiter_length(n)]
    ) + "\n"


# -----------------------------
# decode
# -----------------------------

def find_block(text: str) -> tuple[int, int] | None:
    """
    Locate the metadata block as (start_line, end_line) indices into text.split("\n"),
    both inclusive. A heading without a closing dash line is not a block.
    """
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if not _HEADER_RE.match(line.strip()):
            continue
        start = i - 1 if i > 0 and _is_dash_line(lines[i - 1]) else i
        for j in range(i + 1, len(lines)):
            if _is_dash_line(lines[j]):
                return start, j
    return None


def embed_block(original: str, new_block: str) -> str:
    """Replace the recognized block in place, or append new_block when none is found."""
    span = find_block(original)
    if span is None:
        return original.rstrip("\n") + new_block

    lines = original.split("\n")
    start, end = span
    pre = "\n".join(lines[:start]).rstrip("\n")
    post = "\n".join(lines[end + 1:]).lstrip("\n")
    return pre + new_block + post


def has_block(text: str) -> bool:
    return find_block(text) is not None


@dataclass
class ParsedBlock:
    snapshot: dict[str, Any]
    snapshot_raw: str
    related: dict[str, list[str]] = field(default_factory=dict)
    dependency_content: str = ""


def _fences(lines: list[str]) -> list[tuple[str, str]]:
    """(language, body) for every fenced code block, in order."""
    found: list[tuple[str, str]] = []
    i = 0
    while i < len(lines):
        m = _FENCE_RE.match(lines[i].strip())
        if not m:
            i += 1
            continue
        lang = m.group(1)
        body: list[str] = []
        j = i + 1
        while j < len(lines) and lines[j].strip() != "```":
            body.append(lines[j])
            j += 1
        found.append((lang, "\n".join(body)))
        i = j + 1
    return found


def _loads_object(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def parse_block(text: str) -> ParsedBlock:
    """
    Extract the snapshot (and related PR links) from a PR description.

    The JSON fence under the snapshot heading is preferred; when it is missing or
    unreadable, the base64 duplicate that follows it is decoded instead.
    """
    span = find_block(text)
    if span is None:
        raise BlockNotFoundError("no Mistletoe block found in text")

    lines = text.split("\n")[span[0]: span[1] + 1]

    try:
        split_at = next(i for i, line in enumerate(lines) if line.strip() == SNAPSHOT_HEADING)
    except StopIteration:
        raise BlockNotFoundError("Mistletoe block has no snapshot section") from None

    related: dict[str, list[str]] = {}
    for lang, body in _fences(lines[:split_at]):
        if lang == "json":
            related = _loads_object(body) or {}
            break

    snapshot_fences = _fences(lines[split_at:])
    snapshot_raw = ""
    snapshot: dict[str, Any] | None = None

    for lang, body in snapshot_fences:
        if lang == "json":
            snapshot = _loads_object(body)
            if snapshot is not None:
                snapshot_raw = body
            break

    if snapshot is None:
        for lang, body in snapshot_fences:
            if lang:
                continue
            try:
                decoded = base64.b64decode("".join(body.split()), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                continue
            snapshot = _loads_object(decoded)
            if snapshot is not None:
                log.info("snapshot JSON unreadable, used base64 copy")
                snapshot_raw = decoded
                break

    if snapshot is None:
        raise BlockNotFoundError("Mistletoe block has no readable snapshot")

    dependency_content = ""
    for lang, body in snapshot_fences:
        if lang == "mermaid":
            dependency_content = body
            break

    return ParsedBlock(snapshot=snapshot, snapshot_raw=snapshot_raw, related=related, dependency_content=dependency_content)


# -----------------------------
# title / body input
# -----------------------------

def parse_title_body(text: str) -> tuple[str, str]:
    """
    Split user-supplied PR text into (title, body).

    - First line is the title; a blank second line separates it from the body.
    - Without that blank line the whole text is the body.
    - Titles longer than 256 characters are truncated (253 + "...") and the whole
      text becomes the body.
    """
    text = text.replace("\r\n", "\n")
    lines = text.split("\n")
    title = lines[0]

    if len(title) > MAX_TITLE_LEN:
        return title[: MAX_TITLE_LEN - 3] + "...", text

    if len(lines) == 1:
        return title, ""
    if lines[1].strip() == "":
        return title, "\n".join(lines[2:])
    return title, text
