# src/mstl/utils.py
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone


def utc_ts() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


def sha256_bytes(b: bytes) -> str:
    h = hashlib.sha256()
    h.update(b)
    return h.hexdigest()


def sha256_text(s: str) -> str:
    return sha256_bytes(s.encode("utf-8"))


def repo_id_from_url(repo_url: str) -> str:
    # "https://github.com/org/repo.git" -> "repo"
    s = (repo_url or "").rstrip("/")
    base = s.rsplit("/", 1)[-1]
    if base.endswith(".git"):
        base = base[: -len(".git")]
    return base


_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9_-]")


def sanitize_name(s: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with '_' (branch-name safe)."""
    return _UNSAFE_NAME_RE.sub("_", s)


def last_line(text: str) -> str:
    lines = (text or "").strip().splitlines()
    return lines[-1].strip() if lines else ""
