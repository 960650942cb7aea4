"""Skill roots, defaults merging and registry construction."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from skillshelf.config import SkillsConfig
from skillshelf.logging import get_logger
from skillshelf.manifest import SKILL_FILE_NAME, extract_description, is_truthy, parse_manifest
from skillshelf.scanner import SKILLS_DIR_NAME, list_skill_dirs
from skillshelf.state import SkillStateMap

log = get_logger(__name__)

SKILLS_CONFIG_FILE = "skills.config.json"
DEFAULT_SKILL_ORDER = 999


class SkillDefaults(BaseModel):
    """Per-skill defaults declared by a root."""

    order: int | None = None
    enabled: bool | None = None


class SkillsDefaultsFile(BaseModel):
    """Contents of a root's skills.config.json."""

    version: Any = None
    description: Any = None
    defaults: dict[str, Any] = Field(default_factory=dict)


@dataclass
class SkillRecord:
    id: str
    name: str
    description: str
    enabled: bool
    is_official: bool
    is_built_in: bool
    updated_at: int
    prompt: str
    skill_path: str

    def to_dict(self) -> dict[str, Any]:
        """Render the record in the host's camelCase shape."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "isOfficial": self.is_official,
            "isBuiltIn": self.is_built_in,
            "updatedAt": self.updated_at,
            "prompt": self.prompt,
            "skillPath": self.skill_path,
        }


def resolve_bundled_skills_root(settings: SkillsConfig) -> Path:
    """Locate the read-only bundled skills directory.

    Packaged builds look in the resources dir first, then next to the app;
    development builds use the SKILLs directory at the project root.
    """
    if settings.bundled_dir:
        return Path(settings.bundled_dir).expanduser().resolve()
    if settings.packaged:
        if settings.resources_dir:
            resources_root = (Path(settings.resources_dir).expanduser() / SKILLS_DIR_NAME).resolve()
            if resources_root.exists():
                return resources_root
        app_dir = Path(settings.app_dir).expanduser() if settings.app_dir else Path.cwd()
        return (app_dir / SKILLS_DIR_NAME).resolve()
    project_root = Path(__file__).resolve().parent.parent
    return (project_root / SKILLS_DIR_NAME).resolve()


def resolve_external_skills_root(settings: SkillsConfig) -> Path | None:
    if not settings.external_dir:
        return None
    return Path(settings.external_dir).expanduser().resolve()


def resolve_skill_roots(primary_root: Path, settings: SkillsConfig) -> list[Path]:
    """Return skill roots, highest priority first: primary, external, bundled."""
    roots: list[Path] = [primary_root]

    external_root = resolve_external_skills_root(settings)
    if external_root and external_root != primary_root and external_root.exists():
        roots.append(external_root)

    bundled_root = resolve_bundled_skills_root(settings)
    if bundled_root != primary_root and bundled_root not in roots and bundled_root.exists():
        roots.append(bundled_root)
    return roots


def load_skills_defaults(roots: list[Path]) -> dict[str, dict[str, Any]]:
    """Merge each root's skills.config.json, lowest priority first.

    A root only overrides the keys it declares for a skill.
    """
    merged: dict[str, dict[str, Any]] = {}
    for root in reversed(roots):
        config_path = root / SKILLS_CONFIG_FILE
        if not config_path.is_file():
            continue
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
            config = SkillsDefaultsFile.model_validate(payload)
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            log.warning("Failed to load skills config", path=str(config_path), error=str(exc))
            continue
        for skill_id, entry in config.defaults.items():
            try:
                settings = SkillDefaults.model_validate(entry)
            except ValidationError as exc:
                log.warning(
                    "Skipping invalid skill defaults",
                    path=str(config_path),
                    skill=skill_id,
                    error=str(exc),
                )
                continue
            merged[skill_id] = {**merged.get(skill_id, {}), **settings.model_dump(exclude_unset=True)}
    return merged


def list_built_in_skill_ids(bundled_root: Path | None) -> set[str]:
    if bundled_root is None or not bundled_root.exists():
        return set()
    return {skill_dir.name for skill_dir in list_skill_dirs(bundled_root)}


def parse_skill_dir(
    skill_dir: Path,
    state: SkillStateMap,
    defaults: dict[str, dict[str, Any]],
    is_built_in: bool,
) -> SkillRecord | None:
    """Project a skill directory into a record; None if it cannot be read."""
    skill_file = skill_dir / SKILL_FILE_NAME
    if not skill_file.exists():
        return None
    try:
        manifest = parse_manifest(skill_file.read_text(encoding="utf-8"))
        header = manifest.header
        skill_id = skill_dir.name
        name = (header.get("name") or skill_id).strip() or skill_id
        description = (header.get("description") or extract_description(manifest.body) or name).strip()
        is_official = is_truthy(header.get("official")) or is_truthy(header.get("isOfficial"))
        updated_at = skill_file.stat().st_mtime_ns // 1_000_000
        default_enabled = defaults.get(skill_id, {}).get("enabled")
        if default_enabled is None:
            default_enabled = True
        enabled = state.get(skill_id, {}).get("enabled", default_enabled)
        return SkillRecord(
            id=skill_id,
            name=name,
            description=description,
            enabled=bool(enabled),
            is_official=is_official,
            is_built_in=is_built_in,
            updated_at=updated_at,
            prompt=manifest.body.strip(),
            skill_path=os.path.abspath(skill_file),
        )
    except (OSError, UnicodeDecodeError) as exc:
        log.warning("Failed to parse skill", dir=str(skill_dir), error=str(exc))
        return None


def _sort_key(record: SkillRecord, defaults: dict[str, dict[str, Any]]) -> tuple[int, str]:
    order = defaults.get(record.id, {}).get("order")
    return (DEFAULT_SKILL_ORDER if order is None else int(order), record.name.casefold())


def build_registry(
    roots: list[Path],
    state: SkillStateMap,
    bundled_root: Path | None,
) -> list[SkillRecord]:
    """Fold per-root scans into one list; higher priority roots win on id.

    ``roots`` is ordered highest priority first, so the fold walks it reversed.
    """
    defaults = load_skills_defaults(roots)
    built_in_ids = list_built_in_skill_ids(bundled_root)
    records: dict[str, SkillRecord] = {}

    for root in reversed(roots):
        if not root.exists():
            continue
        for skill_dir in list_skill_dirs(root):
            record = parse_skill_dir(skill_dir, state, defaults, skill_dir.name in built_in_ids)
            if record is None:
                continue
            records[record.id] = record

    return sorted(records.values(), key=lambda record: _sort_key(record, defaults))


def build_auto_routing_prompt(records: list[SkillRecord]) -> str | None:
    """Render the skill-routing system prompt block for enabled skills."""
    enabled = [record for record in records if record.enabled and record.prompt]
    if not enabled:
        return None

    skill_entries = "\n".join(
        f"  <skill><id>{record.id}</id><name>{record.name}</name>"
        f"<description>{record.description}</description>"
        f"<location>{record.skill_path}</location></skill>"
        for record in enabled
    )
    return "\n".join([
        "## Skills (mandatory)",
        "Before replying: scan <available_skills> <description> entries.",
        "- If exactly one skill clearly applies: read its SKILL.md at <location> with the Read tool, then follow it.",
        "- If multiple could apply: choose the most specific one, then read/follow it.",
        "- If none clearly apply: do not read any SKILL.md.",
        "- For the selected skill, treat <location> as the canonical SKILL.md path.",
        "- Resolve relative paths mentioned by that SKILL.md against its directory "
        "(dirname(<location>)), not the workspace root.",
        "Constraints: never read more than one skill up front; only read additional skills "
        "if the first one explicitly references them.",
        "",
        "<available_skills>",
        skill_entries,
        "</available_skills>",
    ])
