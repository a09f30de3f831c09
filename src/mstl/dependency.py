# src/mstl/dependency.py
"""
Restricted Mermaid flowchart parser for repository dependencies.

Supported per line: `A --> B`, `A --- B`, `A -.-> B`, `A ==> B`, labelled forms
(`A -- text --> B`, `A == text ==> B`, `A -->|text| B`), and bidirectional `A <--> B`.
Node labels (`A[...]`, `A(...)`, `A{...}`) are ignored; only the leading id counts.

Only the first arrow of a line is read: `A --> B --> C` yields A -> B alone.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from mstl.errors import DependencyError

# First alternative: arrows ending in '>' (preferred); second: open links ending in '-'.
_ARROW_RE = re.compile(r"\s*(?:<?(?:--|==|-\.)(?:.*?)>|<?(?:--|==|-\.)(?:.*?)-)")
_ID_RE = re.compile(r"^([A-Za-z0-9._-]+)")


@dataclass
class DependencyGraph:
    # forward[a] = ids that a depends on; reverse[a] = ids that depend on a
    forward: dict[str, list[str]] = field(default_factory=dict)
    reverse: dict[str, list[str]] = field(default_factory=dict)

    def add(self, src: str, dst: str) -> None:
        targets = self.forward.setdefault(src, [])
        if dst in targets:
            return
        targets.append(dst)
        self.reverse.setdefault(dst, []).append(src)

    def dependencies_of(self, repo_id: str) -> list[str]:
        return list(self.forward.get(repo_id, []))

    def dependents_of(self, repo_id: str) -> list[str]:
        return list(self.reverse.get(repo_id, []))


def _is_structural(trimmed: str) -> bool:
    return (
        not trimmed
        or trimmed.startswith("%%")
        or trimmed.startswith("graph ")
        or trimmed.startswith("flowchart ")
        or trimmed.startswith("```")
    )


def _strip_pipe_label(part: str) -> str:
    # "|calls| B" -> "B"
    if part.startswith("|"):
        end = part.find("|", 1)
        if end != -1:
            return part[end + 1 :].strip()
    return part


def _extract_id(raw: str) -> str:
    m = _ID_RE.match(raw)
    return m.group(1) if m else ""


def parse_dependencies(content: str, valid_ids: Iterable[str]) -> DependencyGraph:
    """
    Contract:
    - Every endpoint must be in valid_ids, else DependencyError naming the id and line.
    - All-or-nothing: no partial graph escapes on error.
    - Duplicate edges collapse, first-seen order is kept.
    """
    valid = set(valid_ids)
    graph = DependencyGraph()

    for line_num, raw_line in enumerate(content.splitlines(), start=1):
        line = raw_line.strip()
        if _is_structural(line):
            continue

        m = _ARROW_RE.search(line)
        if m is None:
            continue

        arrow = m.group(0).strip()
        left_raw = line[: m.start()].strip()
        right_raw = _strip_pipe_label(line[m.end() :].strip())
        # single hop: anything from a second arrow on is ignored
        nxt = _ARROW_RE.search(right_raw)
        if nxt is not None:
            right_raw = right_raw[: nxt.start()].strip()

        left_id = _extract_id(left_raw)
        right_id = _extract_id(right_raw)
        if not left_id or not right_id:
            continue

        for rid in (left_id, right_id):
            if rid not in valid:
                raise DependencyError(f"line {line_num}: repository ID '{rid}' not found in configuration")

        graph.add(left_id, right_id)
        if arrow.startswith("<"):
            graph.add(right_id, left_id)

    return graph


def load_dependencies(path: str | Path, valid_ids: Iterable[str]) -> tuple[DependencyGraph, str]:
    """Read and parse a dependency file. Returns (graph, raw content)."""
    p = Path(path)
    try:
        content = p.read_text(encoding="utf-8")
    except OSError as e:
        raise DependencyError(f"failed to read dependency file: {e}") from e
    return parse_dependencies(content, valid_ids), content


def filter_dependency_content(content: str, valid_ids: Iterable[str]) -> str:
    """
    Drop every node definition or edge line that references an id outside valid_ids
    (used to strip private repositories before the graph is published). Structural
    lines pass through untouched.
    """
    valid = set(valid_ids)
    out: list[str] = []

    for line in content.splitlines():
        trimmed = line.strip()
        if _is_structural(trimmed):
            out.append(line)
            continue

        keep = True
        for part in _ARROW_RE.split(trimmed):
            rid = _extract_id(_strip_pipe_label(part.strip()))
            if rid and rid not in valid:
                keep = False
                break
        if keep:
            out.append(line)

    return "".join(f"{line}\n" for line in out)
