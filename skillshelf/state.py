"""Persisted per-skill enable state."""

from __future__ import annotations

from typing import Any

from skillshelf.logging import get_logger
from skillshelf.store import KeyValueStore

log = get_logger(__name__)

SKILL_STATE_KEY = "skills_state"

SkillStateMap = dict[str, dict[str, bool]]


def _coerce_state_map(raw: Any) -> SkillStateMap:
    if not isinstance(raw, dict):
        return {}
    state: SkillStateMap = {}
    for skill_id, entry in raw.items():
        if isinstance(entry, dict) and isinstance(entry.get("enabled"), bool):
            state[str(skill_id)] = {"enabled": entry["enabled"]}
    return state


def migrate_legacy_state(raw: list[Any]) -> SkillStateMap:
    """Convert the legacy list of skill snapshots into the id-keyed mapping."""
    migrated: SkillStateMap = {}
    for item in raw:
        if not isinstance(item, dict):
            continue
        skill_id = str(item.get("id") or "").strip()
        if not skill_id:
            continue
        migrated[skill_id] = {"enabled": bool(item.get("enabled", True))}
    return migrated


async def load_skill_state_map(store: KeyValueStore) -> SkillStateMap:
    raw = await store.get(SKILL_STATE_KEY)
    if isinstance(raw, list):
        migrated = migrate_legacy_state(raw)
        await store.set(SKILL_STATE_KEY, migrated)
        log.info("Migrated legacy skill state", skills=len(migrated))
        return migrated
    return _coerce_state_map(raw)


async def save_skill_state_map(store: KeyValueStore, state: SkillStateMap) -> None:
    await store.set(SKILL_STATE_KEY, state)
