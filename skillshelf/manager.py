"""Skill inventory operations: listing, toggling, installing, deleting, probing."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

from skillshelf.acquisition import acquire_source
from skillshelf.config import Config, get_config
from skillshelf.connectivity import (
    CONNECTIVITY_TESTS,
    missing_scripts,
    run_connectivity_test,
)
from skillshelf.envfile import read_skill_env, write_skill_env
from skillshelf.exceptions import (
    BuiltInSkillError,
    SkillNotFoundError,
    SkillShelfError,
)
from skillshelf.installer import cleanup_path_safely, install_skill_dirs, sync_bundled_skills
from skillshelf.logging import get_logger
from skillshelf.paths import resolve_within, validate_skill_id
from skillshelf.registry import (
    SkillRecord,
    build_auto_routing_prompt,
    build_registry,
    list_built_in_skill_ids,
    resolve_bundled_skills_root,
    resolve_skill_roots,
)
from skillshelf.scanner import collect_skill_dirs_from_source
from skillshelf.scripts import (
    ScriptRunResult,
    ScriptRuntime,
    default_script_runtimes,
    run_skill_script,
)
from skillshelf.sources import LocalSource, normalize_source
from skillshelf.state import load_skill_state_map, save_skill_state_map
from skillshelf.store import KeyValueStore, get_store
from skillshelf.watcher import SkillWatcher

log = get_logger(__name__)

SkillsListener = Callable[[], None]


class SkillManager:
    """Owns the skill roots, the enable-state map and the directory watcher.

    Mutating operations are serialized with one lock; reads recompute from disk
    and are never cached.
    """

    def __init__(
        self,
        config: Config | None = None,
        store: KeyValueStore | None = None,
        runtimes: list[ScriptRuntime] | None = None,
    ):
        self.config = config or get_config()
        self.settings = self.config.skills
        self._store = store
        self._runtimes = runtimes
        self._listeners: list[SkillsListener] = []
        self._mutation_lock = asyncio.Lock()
        self._watcher = SkillWatcher(
            roots_provider=self.skill_roots,
            on_change=self._notify_skills_changed,
            debounce_ms=self.settings.watch_debounce_ms,
        )

    @property
    def store(self) -> KeyValueStore:
        return self._store or get_store()

    @property
    def watcher(self) -> SkillWatcher:
        return self._watcher

    # Roots

    def get_skills_root(self) -> Path:
        return self.config.resolved_managed_dir()

    def ensure_skills_root(self) -> Path:
        root = self.get_skills_root()
        root.mkdir(parents=True, exist_ok=True)
        return root

    def bundled_skills_root(self) -> Path:
        return resolve_bundled_skills_root(self.settings)

    def skill_roots(self) -> list[Path]:
        """Roots ordered highest priority first."""
        return resolve_skill_roots(self.ensure_skills_root(), self.settings)

    def is_built_in_skill_id(self, skill_id: str) -> bool:
        return skill_id in list_built_in_skill_ids(self.bundled_skills_root())

    # Change notification

    def subscribe(self, listener: SkillsListener) -> Callable[[], None]:
        """Register a change listener and return a function that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify_skills_changed(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception as exc:
                log.warning("Skills change listener failed", error=str(exc))

    # Registry

    async def list_skills(self) -> list[SkillRecord]:
        state = await load_skill_state_map(self.store)
        return build_registry(self.skill_roots(), state, self.bundled_skills_root())

    async def build_auto_routing_prompt(self) -> str | None:
        return build_auto_routing_prompt(await self.list_skills())

    def sync_bundled_skills(self) -> list[str]:
        """Seed the user root from the bundled root (packaged builds only)."""
        if not self.settings.packaged:
            return []
        return sync_bundled_skills(self.bundled_skills_root(), self.ensure_skills_root())

    # Mutations

    async def set_skill_enabled(self, skill_id: str, enabled: bool) -> list[SkillRecord]:
        validate_skill_id(skill_id)
        async with self._mutation_lock:
            state = await load_skill_state_map(self.store)
            state[skill_id] = {"enabled": bool(enabled)}
            await save_skill_state_map(self.store, state)
        self._notify_skills_changed()
        return await self.list_skills()

    async def delete_skill(self, skill_id: str) -> list[SkillRecord]:
        """Remove a user-installed skill directory and its persisted state.

        Raises:
            InvalidSkillIdError: if ``skill_id`` is not a plain directory name.
            BuiltInSkillError: if the id belongs to a bundled skill.
            SkillNotFoundError: if the managed root has no such directory.
        """
        validate_skill_id(skill_id)
        if self.is_built_in_skill_id(skill_id):
            raise BuiltInSkillError(skill_id)

        async with self._mutation_lock:
            root = self.ensure_skills_root()
            target_dir = resolve_within(root, skill_id)
            if target_dir == root or not (target_dir.exists() or target_dir.is_symlink()):
                raise SkillNotFoundError(skill_id)

            if target_dir.is_symlink():
                target_dir.unlink()
            else:
                shutil.rmtree(target_dir)
            state = await load_skill_state_map(self.store)
            state.pop(skill_id, None)
            await save_skill_state_map(self.store, state)
            log.info("Deleted skill", skill=skill_id)

        self._refresh_watcher()
        self._notify_skills_changed()
        return await self.list_skills()

    async def download_skill(self, source: str) -> dict[str, Any]:
        """Acquire a skill from ``source`` and install it into the managed root."""
        async with self._mutation_lock:
            cleanup_path: Path | None = None
            try:
                plan = normalize_source(source)
                root = self.ensure_skills_root()
                if not isinstance(plan, LocalSource) or plan.is_archive:
                    temp_parent = None
                    if self.settings.temp_dir:
                        temp_parent = Path(self.settings.temp_dir).expanduser()
                        temp_parent.mkdir(parents=True, exist_ok=True)
                    cleanup_path = Path(tempfile.mkdtemp(prefix="skillshelf-skill-", dir=temp_parent))
                local_source = await acquire_source(plan, cleanup_path or root, self.settings)

                skill_dirs = collect_skill_dirs_from_source(local_source)
                if not skill_dirs:
                    return {"success": False, "error": "No SKILL.md found in source"}

                installed = install_skill_dirs(skill_dirs, root)
                log.info("Downloaded skills", source=source, count=len(installed))
            except (SkillShelfError, OSError, shutil.Error) as exc:
                log.warning("Skill download failed", source=source, error=str(exc))
                return {"success": False, "error": str(exc) or "Failed to download skill"}
            finally:
                cleanup_path_safely(cleanup_path)

        self._refresh_watcher()
        self._notify_skills_changed()
        return {"success": True, "skills": [skill.to_dict() for skill in await self.list_skills()]}

    # Per-skill configuration

    async def _resolve_skill_dir(self, skill_id: str) -> Path:
        for skill in await self.list_skills():
            if skill.id == skill_id:
                return Path(skill.skill_path).parent
        raise SkillNotFoundError(skill_id)

    async def get_skill_config(self, skill_id: str) -> dict[str, Any]:
        try:
            skill_dir = await self._resolve_skill_dir(skill_id)
            return {"success": True, "config": read_skill_env(skill_dir)}
        except (SkillShelfError, OSError, UnicodeDecodeError) as exc:
            return {"success": False, "error": str(exc) or "Failed to read skill config"}

    async def set_skill_config(self, skill_id: str, config: dict[str, str]) -> dict[str, Any]:
        async with self._mutation_lock:
            try:
                skill_dir = await self._resolve_skill_dir(skill_id)
                write_skill_env(skill_dir, config)
                return {"success": True}
            except (SkillShelfError, OSError) as exc:
                return {"success": False, "error": str(exc) or "Failed to write skill config"}

    # Connectivity

    def script_runtimes(self) -> list[ScriptRuntime]:
        if self._runtimes is not None:
            return list(self._runtimes)
        return default_script_runtimes(self.settings)

    async def test_connectivity(
        self,
        skill_id: str,
        test_name: str,
        config: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Run a named connectivity test using the skill's own scripts."""
        spec = CONNECTIVITY_TESTS.get(test_name)
        if spec is None:
            return {"success": False, "error": f"Unknown connectivity test: {test_name}"}
        try:
            skill_dir = await self._resolve_skill_dir(skill_id)
            if missing_scripts(skill_dir, spec):
                return {"success": False, "error": spec.missing_scripts_error}

            env_overrides = {
                str(key): "" if value is None else str(value)
                for key, value in (config or {}).items()
                if str(key).strip()
            }
            runtimes = self.script_runtimes()
            scripts = self.settings.scripts

            async def _execute(script_path: Path, args: list[str]) -> ScriptRunResult:
                return await run_skill_script(
                    skill_dir,
                    script_path,
                    args,
                    env_overrides,
                    timeout_ms=scripts.connectivity_timeout_ms,
                    runtimes=runtimes,
                    kill_grace_ms=scripts.kill_grace_ms,
                )

            result = await run_connectivity_test(skill_dir, spec, _execute)
            return {"success": True, "result": result.to_dict()}
        except (SkillShelfError, OSError) as exc:
            return {"success": False, "error": str(exc) or f"Failed to test {test_name} connectivity"}

    async def test_email_connectivity(self, skill_id: str, config: dict[str, str]) -> dict[str, Any]:
        return await self.test_connectivity(skill_id, "email", config)

    # Watching

    def start_watching(self) -> None:
        self.ensure_skills_root()
        self._watcher.start()

    def stop_watching(self) -> None:
        self._watcher.stop()

    def _refresh_watcher(self) -> None:
        if self._watcher.is_running:
            self._watcher.start()

    def handle_working_directory_change(self) -> None:
        self.start_watching()
        self._notify_skills_changed()

    async def close(self) -> None:
        self.stop_watching()
