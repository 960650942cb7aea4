"""Request handlers exposing skill operations as ``{"success": ...}`` payloads.

Every handler returns a plain dict so it can be serialized straight onto an
IPC or HTTP channel. Failures never propagate to the caller.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from skillshelf.exceptions import SkillShelfError
from skillshelf.logging import get_logger
from skillshelf.manager import SkillManager

log = get_logger(__name__)

Handler = Callable[..., Awaitable[dict[str, Any]]]


def _failure(error: Exception | str, fallback: str) -> dict[str, Any]:
    message = str(error).strip() if error else ""
    return {"success": False, "error": message or fallback}


class SkillHandlers:
    """Thin request layer over a :class:`SkillManager`."""

    def __init__(self, manager: SkillManager):
        self.manager = manager

    def routes(self) -> dict[str, Handler]:
        return {
            "skills:list": self.list_skills,
            "skills:setEnabled": self.set_enabled,
            "skills:delete": self.delete,
            "skills:download": self.download,
            "skills:getRoot": self.get_root,
            "skills:autoRoutingPrompt": self.auto_routing_prompt,
            "skills:getConfig": self.get_config,
            "skills:setConfig": self.set_config,
            "skills:testEmailConnectivity": self.test_email_connectivity,
            "skills:testConnectivity": self.test_connectivity,
            "skills:startWatching": self.start_watching,
            "skills:stopWatching": self.stop_watching,
            "skills:workingDirectoryChanged": self.working_directory_changed,
        }

    async def dispatch(self, channel: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        handler = self.routes().get(channel)
        if handler is None:
            return {"success": False, "error": f"Unknown channel: {channel}"}
        try:
            return await handler(**(payload or {}))
        except TypeError as e:
            log.warning("Invalid request payload", channel=channel, error=str(e))
            return _failure(e, "Invalid request")

    async def list_skills(self) -> dict[str, Any]:
        try:
            skills = await self.manager.list_skills()
            return {"success": True, "skills": [skill.to_dict() for skill in skills]}
        except Exception as e:
            log.error("Failed to list skills", error=str(e))
            return _failure(e, "Failed to load skills")

    async def set_enabled(self, id: str, enabled: bool) -> dict[str, Any]:
        try:
            skills = await self.manager.set_skill_enabled(id, enabled)
            return {"success": True, "skills": [skill.to_dict() for skill in skills]}
        except SkillShelfError as e:
            return _failure(e, "Failed to update skill")
        except Exception as e:
            log.error("Failed to update skill", skill=id, error=str(e))
            return _failure(e, "Failed to update skill")

    async def delete(self, id: str) -> dict[str, Any]:
        try:
            skills = await self.manager.delete_skill(id)
            return {"success": True, "skills": [skill.to_dict() for skill in skills]}
        except SkillShelfError as e:
            return _failure(e, "Failed to delete skill")
        except Exception as e:
            log.error("Failed to delete skill", skill=id, error=str(e))
            return _failure(e, "Failed to delete skill")

    async def download(self, source: str) -> dict[str, Any]:
        try:
            return await self.manager.download_skill(source)
        except Exception as e:
            log.error("Failed to download skill", source=source, error=str(e))
            return _failure(e, "Failed to download skill")

    async def get_root(self) -> dict[str, Any]:
        try:
            return {"success": True, "path": str(self.manager.ensure_skills_root())}
        except Exception as e:
            return _failure(e, "Failed to resolve skills root")

    async def auto_routing_prompt(self) -> dict[str, Any]:
        try:
            return {"success": True, "prompt": await self.manager.build_auto_routing_prompt()}
        except Exception as e:
            log.error("Failed to build auto-routing prompt", error=str(e))
            return _failure(e, "Failed to build auto-routing prompt")

    async def get_config(self, skill_id: str) -> dict[str, Any]:
        try:
            return await self.manager.get_skill_config(skill_id)
        except Exception as e:
            return _failure(e, "Failed to read skill config")

    async def set_config(self, skill_id: str, config: dict[str, str]) -> dict[str, Any]:
        try:
            return await self.manager.set_skill_config(skill_id, config)
        except Exception as e:
            return _failure(e, "Failed to write skill config")

    async def test_email_connectivity(self, skill_id: str, config: dict[str, str]) -> dict[str, Any]:
        try:
            return await self.manager.test_email_connectivity(skill_id, config)
        except Exception as e:
            log.error("Email connectivity test failed", skill=skill_id, error=str(e))
            return _failure(e, "Failed to test email connectivity")

    async def test_connectivity(
        self,
        skill_id: str,
        test_name: str,
        config: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            return await self.manager.test_connectivity(skill_id, test_name, config)
        except Exception as e:
            log.error("Connectivity test failed", skill=skill_id, test=test_name, error=str(e))
            return _failure(e, f"Failed to test {test_name} connectivity")

    async def start_watching(self) -> dict[str, Any]:
        try:
            self.manager.start_watching()
            return {"success": True}
        except Exception as e:
            log.error("Failed to start skills watcher", error=str(e))
            return _failure(e, "Failed to start watching skills")

    async def stop_watching(self) -> dict[str, Any]:
        try:
            self.manager.stop_watching()
            return {"success": True}
        except Exception as e:
            return _failure(e, "Failed to stop watching skills")

    async def working_directory_changed(self) -> dict[str, Any]:
        try:
            self.manager.handle_working_directory_change()
            return {"success": True}
        except Exception as e:
            log.error("Failed to reload skills after working directory change", error=str(e))
            return _failure(e, "Failed to reload skills")
