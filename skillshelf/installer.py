"""Copying skills into the managed root and syncing bundled skills."""

from __future__ import annotations

import shutil
import sys
import time
from pathlib import Path

from skillshelf.logging import get_logger
from skillshelf.paths import normalize_folder_name, resolve_within
from skillshelf.registry import SKILLS_CONFIG_FILE
from skillshelf.scanner import list_skill_dirs

log = get_logger(__name__)

WEB_SEARCH_SKILL_ID = "web-search"

# (relative file, markers that must all appear in it)
_WEB_SEARCH_REQUIRED_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("scripts/start-server.sh", ("WEB_SEARCH_FORCE_REPAIR", "detect_healthy_bridge_server")),
    (
        "scripts/search.sh",
        ("ACTIVE_SERVER_URL", "try_switch_to_local_server", "build_search_payload", "@query_file"),
    ),
    ("dist/server/index.js", ("decodeJsonRequestBody", "TextDecoder('gb18030'")),
    ("node_modules/iconv-lite/encodings/index.js", ()),
)


def choose_install_target(managed_root: Path, folder_name: str) -> Path:
    """First free ``name``, ``name-1``, ``name-2``... directory under the root."""
    target = resolve_within(managed_root, folder_name)
    suffix = 1
    while target.exists():
        target = resolve_within(managed_root, f"{folder_name}-{suffix}")
        suffix += 1
    return target


def install_skill_dirs(skill_dirs: list[Path], managed_root: Path) -> list[Path]:
    """Copy each skill directory into the managed root without clobbering.

    Symlinks are copied as links, never dereferenced.
    """
    installed: list[Path] = []
    for skill_dir in skill_dirs:
        folder_name = normalize_folder_name(skill_dir.name)
        target = choose_install_target(managed_root, folder_name)
        try:
            shutil.copytree(
                skill_dir,
                target,
                symlinks=True,
                ignore=shutil.ignore_patterns(".git"),
            )
        except (OSError, shutil.Error):
            shutil.rmtree(target, ignore_errors=True)
            raise
        log.info("Installed skill", source=str(skill_dir), destination=str(target))
        installed.append(target)
    return installed


def cleanup_path_safely(target: Path | None) -> None:
    """Remove a temporary tree, logging instead of raising on failure."""
    if target is None:
        return
    attempts = 5 if sys.platform == "win32" else 1
    for attempt in range(attempts):
        try:
            shutil.rmtree(target)
            return
        except FileNotFoundError:
            return
        except OSError as exc:
            if attempt + 1 < attempts:
                time.sleep(0.2)
                continue
            log.warning("Failed to cleanup temporary directory", path=str(target), error=str(exc))


def is_web_search_skill_broken(skill_root: Path) -> bool:
    """True when an installed web-search skill lacks files or markers it needs."""
    for relative, markers in _WEB_SEARCH_REQUIRED_MARKERS:
        path = skill_root / relative
        if not path.exists():
            return True
        if not markers:
            continue
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError):
            return True
        if any(marker not in content for marker in markers):
            return True
    return False


def sync_bundled_skills(bundled_root: Path, user_root: Path) -> list[str]:
    """Copy bundled skills missing from the user root; repair a broken web-search.

    Returns the ids that were copied or repaired.
    """
    if bundled_root == user_root or not bundled_root.exists():
        return []

    synced: list[str] = []
    for skill_dir in list_skill_dirs(bundled_root):
        skill_id = skill_dir.name
        target = user_root / skill_id
        target_exists = target.exists()
        should_repair = (
            skill_id == WEB_SEARCH_SKILL_ID and target_exists and is_web_search_skill_broken(target)
        )
        if target_exists and not should_repair:
            continue
        try:
            shutil.copytree(skill_dir, target, symlinks=False, dirs_exist_ok=should_repair)
        except (OSError, shutil.Error) as exc:
            log.warning("Failed to sync bundled skill", skill=skill_id, error=str(exc))
            continue
        if should_repair:
            log.info("Repaired bundled skill in user root", skill=skill_id)
        synced.append(skill_id)

    bundled_config = bundled_root / SKILLS_CONFIG_FILE
    target_config = user_root / SKILLS_CONFIG_FILE
    if bundled_config.is_file() and not target_config.exists():
        try:
            shutil.copyfile(bundled_config, target_config)
        except OSError as exc:
            log.warning("Failed to sync bundled skills config", error=str(exc))
    return synced
