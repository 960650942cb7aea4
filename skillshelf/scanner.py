"""Discovery of skill directories beneath roots and acquired source trees."""

from __future__ import annotations

import os
import stat
from collections import deque
from pathlib import Path

from skillshelf.logging import get_logger
from skillshelf.manifest import SKILL_FILE_NAME

log = get_logger(__name__)

SKILLS_DIR_NAME = "SKILLs"
PRUNED_DIR_NAMES = frozenset({".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv"})


def _has_manifest(directory: Path) -> bool:
    return (directory / SKILL_FILE_NAME).exists()


def list_skill_dirs(root: str | Path) -> list[Path]:
    """List skill directories directly under ``root``.

    A root that is itself a skill yields only itself. Children may be real
    directories or symlinks to directories.
    """
    root_path = Path(os.path.abspath(root))
    if not root_path.exists():
        return []
    if _has_manifest(root_path):
        return [root_path]

    try:
        children = sorted(root_path.iterdir(), key=lambda entry: entry.name)
    except OSError as exc:
        log.warning("Failed to list skills root", root=str(root_path), error=str(exc))
        return []

    skill_dirs: list[Path] = []
    for child in children:
        try:
            mode = child.lstat().st_mode
            if not stat.S_ISDIR(mode) and not stat.S_ISLNK(mode):
                continue
            if _has_manifest(child):
                skill_dirs.append(child)
        except OSError:
            continue
    return skill_dirs


def collect_skill_dirs_recursively(root: str | Path) -> list[Path]:
    """Breadth-first search for skill directories without following symlinks."""
    resolved_root = Path(os.path.abspath(root))
    if not resolved_root.exists():
        return []

    matched: list[Path] = []
    queue: deque[Path] = deque([resolved_root])
    seen: set[Path] = set()

    while queue:
        current = Path(os.path.abspath(queue.popleft()))
        if current in seen:
            continue
        seen.add(current)

        try:
            mode = current.lstat().st_mode
        except OSError:
            continue
        if not stat.S_ISDIR(mode):
            continue

        if _has_manifest(current):
            matched.append(current)
            continue

        try:
            entries = sorted(current.iterdir(), key=lambda entry: entry.name)
        except OSError:
            continue
        for entry in entries:
            if entry.name in PRUNED_DIR_NAMES:
                continue
            queue.append(entry)

    return matched


def collect_skill_dirs_from_source(source: str | Path) -> list[Path]:
    """Find installable skill directories inside an acquired source tree."""
    resolved = Path(os.path.abspath(source))
    if _has_manifest(resolved):
        return [resolved]

    nested_root = resolved / SKILLS_DIR_NAME
    if nested_root.is_dir():
        nested_skills = list_skill_dirs(nested_root)
        if nested_skills:
            return nested_skills

    direct_skills = list_skill_dirs(resolved)
    if direct_skills:
        return direct_skills

    return collect_skill_dirs_recursively(resolved)
