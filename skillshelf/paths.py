"""Path confinement and naming helpers shared by acquisition and installation."""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path

from skillshelf.exceptions import InvalidSkillIdError, PathEscapeError

_FOLDER_NAME_INVALID_RE = re.compile(r"[^a-zA-Z0-9_-]+")


def resolve_within(root: str | Path, target: str | Path) -> Path:
    """Resolve ``target`` relative to ``root`` and refuse anything outside it."""
    resolved_root = Path(os.path.abspath(root))
    resolved_target = Path(os.path.abspath(os.path.join(resolved_root, target)))
    if resolved_target == resolved_root:
        return resolved_target
    try:
        resolved_target.relative_to(resolved_root)
    except ValueError as exc:
        raise PathEscapeError(str(resolved_root), str(target)) from exc
    return resolved_target


def normalize_folder_name(name: str) -> str:
    normalized = _FOLDER_NAME_INVALID_RE.sub("-", str(name or "")).strip("-")
    return normalized or "skill"


def validate_skill_id(skill_id: str) -> str:
    """Return ``skill_id`` unchanged if it is a plain basename, else raise."""
    text = str(skill_id or "")
    if not text or text in {".", ".."}:
        raise InvalidSkillIdError(text)
    if "/" in text or "\\" in text or os.path.basename(text) != text:
        raise InvalidSkillIdError(text)
    return text


def append_env_path(current: str | None, entries: list[str]) -> str:
    """Append directories to a PATH-style string, skipping duplicates."""
    delimiter = ";" if sys.platform == "win32" else ":"
    merged = [part for part in (current or "").split(delimiter) if part]
    for entry in entries:
        if not entry or entry in merged:
            continue
        merged.append(entry)
    return delimiter.join(merged)
