import io
import sys
import zipfile
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

from skillshelf.acquisition import CommandError
from skillshelf.config import Config
from skillshelf.exceptions import BuiltInSkillError, InvalidSkillIdError, SkillNotFoundError
from skillshelf.manager import SkillManager
from skillshelf.scripts import ScriptRuntime
from skillshelf.sources import INVALID_SOURCE_MESSAGE
from skillshelf.state import SKILL_STATE_KEY
from skillshelf.store import KeyValueStore
from skillshelf.watcher import SkillWatcher


def _write_skill(root: Path, skill_id: str, name: str | None = None) -> Path:
    skill_dir = root / skill_id
    skill_dir.mkdir(parents=True, exist_ok=True)
    (skill_dir / "SKILL.md").write_text(
        f"---\nname: {name or skill_id}\ndescription: {skill_id} skill\n---\nUse {skill_id}.\n",
        encoding="utf-8",
    )
    return skill_dir


def _make_config(tmp_path: Path) -> Config:
    cfg = Config()
    cfg.skills.managed_dir = str(tmp_path / "managed")
    cfg.skills.bundled_dir = str(tmp_path / "bundled")
    cfg.skills.external_dir = ""
    cfg.skills.temp_dir = str(tmp_path / "tmp")
    cfg.store.path = str(tmp_path / "state.db")
    return cfg


@pytest_asyncio.fixture
async def manager(tmp_path: Path):
    _write_skill(tmp_path / "bundled", "bundled-one", "Bundled One")
    store = KeyValueStore(tmp_path / "state.db")
    skill_manager = SkillManager(
        config=_make_config(tmp_path),
        store=store,
        runtimes=[ScriptRuntime(command=sys.executable)],
    )
    yield skill_manager
    await skill_manager.close()
    await store.close()


@pytest.mark.asyncio
async def test_list_skills_merges_bundled_and_managed(manager: SkillManager, tmp_path: Path):
    _write_skill(tmp_path / "managed", "mine", "Mine")

    skills = await manager.list_skills()

    by_id = {skill.id: skill for skill in skills}
    assert set(by_id) == {"bundled-one", "mine"}
    assert by_id["bundled-one"].is_built_in is True
    assert by_id["mine"].is_built_in is False
    assert manager.get_skills_root() == (tmp_path / "managed").resolve()


@pytest.mark.asyncio
async def test_download_skill_from_local_directory(manager: SkillManager, tmp_path: Path):
    source = tmp_path / "source"
    _write_skill(source / "SKILLs", "alpha")
    _write_skill(source / "SKILLs", "beta")
    changes: list[str] = []
    manager.subscribe(lambda: changes.append("changed"))

    result = await manager.download_skill(str(source))

    assert result["success"] is True
    ids = {skill["id"] for skill in result["skills"]}
    assert {"alpha", "beta", "bundled-one"} <= ids
    assert (tmp_path / "managed" / "alpha" / "SKILL.md").is_file()
    assert (source / "SKILLs" / "alpha" / "SKILL.md").is_file()
    assert changes == ["changed"]


@pytest.mark.asyncio
async def test_download_same_skill_twice_gets_suffixed_folder(manager: SkillManager, tmp_path: Path):
    source = _write_skill(tmp_path / "source", "demo")

    first = await manager.download_skill(str(source))
    second = await manager.download_skill(str(source / "SKILL.md"))

    assert first["success"] is True and second["success"] is True
    assert (tmp_path / "managed" / "demo").is_dir()
    assert (tmp_path / "managed" / "demo-1").is_dir()


@pytest.mark.asyncio
async def test_download_skill_from_archive_cleans_temp(manager: SkillManager, tmp_path: Path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("pack/demo/SKILL.md", "---\nname: Demo\n---\n# Hello\n")
    archive_path = tmp_path / "pack.zip"
    archive_path.write_bytes(buffer.getvalue())

    result = await manager.download_skill(str(archive_path))

    assert result["success"] is True
    assert (tmp_path / "managed" / "demo" / "SKILL.md").is_file()
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_download_skill_from_remote_uses_clone(manager: SkillManager, tmp_path: Path, monkeypatch):
    async def _fake_clone(git, repo_url, destination, ref, timeout_seconds):
        assert repo_url == "https://github.com/octo/skills.git"
        assert ref == "main"
        _write_skill(destination / "skills", "remote-skill")
        _write_skill(destination / "skills", "ignored")

    monkeypatch.setattr("skillshelf.acquisition._run_git_clone", _fake_clone)

    result = await manager.download_skill("https://github.com/octo/skills/tree/main/skills/remote-skill")

    assert result["success"] is True
    assert (tmp_path / "managed" / "remote-skill").is_dir()
    assert not (tmp_path / "managed" / "ignored").exists()
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_download_skill_failures_are_reported(manager: SkillManager, tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    empty = tmp_path / "empty"
    (empty / "docs").mkdir(parents=True)

    assert await manager.download_skill("") == {"success": False, "error": "Missing skill source"}
    assert await manager.download_skill("not a source") == {"success": False, "error": INVALID_SOURCE_MESSAGE}
    assert await manager.download_skill(str(empty)) == {
        "success": False,
        "error": "No SKILL.md found in source",
    }
    assert not any((tmp_path / "managed").iterdir())


@pytest.mark.asyncio
async def test_archive_without_skills_cleans_temp(manager: SkillManager, tmp_path: Path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("pack/README.md", "# Nothing here\n")
    archive_path = tmp_path / "pack.zip"
    archive_path.write_bytes(buffer.getvalue())

    result = await manager.download_skill(str(archive_path))

    assert result == {"success": False, "error": "No SKILL.md found in source"}
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_failed_remote_fetch_cleans_temp(manager: SkillManager, tmp_path: Path, monkeypatch):
    async def _partial_clone(git, repo_url, destination, ref, timeout_seconds):
        _write_skill(destination, "half-cloned")
        raise CommandError("fatal: early EOF", returncode=128)

    def _not_found_client(timeout_seconds: int) -> httpx.AsyncClient:
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        return httpx.AsyncClient(transport=transport, follow_redirects=True)

    monkeypatch.setattr("skillshelf.acquisition._run_git_clone", _partial_clone)
    monkeypatch.setattr("skillshelf.acquisition._create_http_client", _not_found_client)

    monkeypatch.chdir(tmp_path)
    result = await manager.download_skill("octo/skills")

    assert result["success"] is False
    assert "Git clone failed: fatal: early EOF" in result["error"]
    assert list((tmp_path / "tmp").iterdir()) == []
    assert not any((tmp_path / "managed").iterdir())


@pytest.mark.asyncio
async def test_dot_segment_subpath_is_rejected_before_fetching(
    manager: SkillManager, tmp_path: Path, monkeypatch
):
    clones: list[str] = []

    async def _recording_clone(git, repo_url, destination, ref, timeout_seconds):
        clones.append(repo_url)

    monkeypatch.setattr("skillshelf.acquisition._run_git_clone", _recording_clone)

    result = await manager.download_skill("https://github.com/o/r/tree/main/a/%2e%2e/b")

    assert result["success"] is False
    assert clones == []
    assert not (tmp_path / "tmp").exists()


@pytest.mark.asyncio
async def test_set_skill_enabled_persists_state(manager: SkillManager):
    changes: list[str] = []
    unsubscribe = manager.subscribe(lambda: changes.append("changed"))

    skills = await manager.set_skill_enabled("bundled-one", False)

    assert [skill.enabled for skill in skills if skill.id == "bundled-one"] == [False]
    assert await manager.store.get(SKILL_STATE_KEY) == {"bundled-one": {"enabled": False}}
    assert changes == ["changed"]

    unsubscribe()
    await manager.set_skill_enabled("bundled-one", True)
    assert changes == ["changed"]


@pytest.mark.asyncio
async def test_set_skill_enabled_rejects_bad_ids(manager: SkillManager):
    with pytest.raises(InvalidSkillIdError):
        await manager.set_skill_enabled("../escape", True)


@pytest.mark.asyncio
async def test_delete_skill(manager: SkillManager, tmp_path: Path):
    _write_skill(tmp_path / "managed", "mine")
    await manager.set_skill_enabled("mine", False)

    skills = await manager.delete_skill("mine")

    assert "mine" not in {skill.id for skill in skills}
    assert not (tmp_path / "managed" / "mine").exists()
    assert "mine" not in await manager.store.get(SKILL_STATE_KEY)


@pytest.mark.asyncio
async def test_delete_symlinked_skill_removes_only_the_link(manager: SkillManager, tmp_path: Path):
    real_dir = _write_skill(tmp_path / "elsewhere", "linked")
    managed = manager.ensure_skills_root()
    (managed / "linked").symlink_to(real_dir, target_is_directory=True)
    assert "linked" in {skill.id for skill in await manager.list_skills()}
    await manager.set_skill_enabled("linked", False)

    skills = await manager.delete_skill("linked")

    assert "linked" not in {skill.id for skill in skills}
    assert not (managed / "linked").is_symlink()
    assert (real_dir / "SKILL.md").is_file()
    assert "linked" not in await manager.store.get(SKILL_STATE_KEY)


@pytest.mark.asyncio
async def test_delete_skill_refusals(manager: SkillManager, tmp_path: Path):
    _write_skill(tmp_path / "managed", "bundled-one", "User copy")

    with pytest.raises(BuiltInSkillError, match="Built-in skills cannot be deleted"):
        await manager.delete_skill("bundled-one")
    with pytest.raises(InvalidSkillIdError):
        await manager.delete_skill("..")
    with pytest.raises(SkillNotFoundError):
        await manager.delete_skill("missing")

    assert (tmp_path / "managed" / "bundled-one").is_dir()


@pytest.mark.asyncio
async def test_skill_config_round_trip(manager: SkillManager, tmp_path: Path):
    skill_dir = _write_skill(tmp_path / "managed", "mailer")

    assert await manager.get_skill_config("mailer") == {"success": True, "config": {}}
    assert await manager.set_skill_config("mailer", {"IMAP_HOST": "imap.example.com", " ": "skip"}) == {
        "success": True
    }

    assert (skill_dir / ".env").read_text(encoding="utf-8") == "IMAP_HOST=imap.example.com\n"
    assert await manager.get_skill_config("mailer") == {
        "success": True,
        "config": {"IMAP_HOST": "imap.example.com"},
    }
    assert await manager.get_skill_config("missing") == {"success": False, "error": "Skill not found"}


@pytest.mark.asyncio
async def test_email_connectivity_runs_skill_scripts(manager: SkillManager, tmp_path: Path):
    skill_dir = _write_skill(tmp_path / "managed", "mailer")
    scripts = skill_dir / "scripts"
    scripts.mkdir()
    # Executed by the configured runtime, which is the test interpreter.
    (scripts / "imap.js").write_text(
        "import json, os\nprint(json.dumps({'message': 'IMAP ok ' + os.environ['IMAP_HOST']}))\n",
        encoding="utf-8",
    )
    (scripts / "smtp.js").write_text(
        "import sys\nsys.stderr.write('SMTP login rejected\\n')\nsys.exit(1)\n",
        encoding="utf-8",
    )

    response = await manager.test_email_connectivity("mailer", {"IMAP_HOST": "mail.test"})

    assert response["success"] is True
    result = response["result"]
    assert result["verdict"] == "fail"
    assert [(check["code"], check["level"], check["message"]) for check in result["checks"]] == [
        ("imap_connection", "pass", "IMAP ok mail.test"),
        ("smtp_connection", "fail", "SMTP login rejected"),
    ]


@pytest.mark.asyncio
async def test_connectivity_precondition_errors(manager: SkillManager, tmp_path: Path):
    _write_skill(tmp_path / "managed", "mailer")

    assert await manager.test_email_connectivity("mailer", {}) == {
        "success": False,
        "error": "Email connectivity scripts not found",
    }
    assert await manager.test_connectivity("mailer", "carrier-pigeon") == {
        "success": False,
        "error": "Unknown connectivity test: carrier-pigeon",
    }
    assert await manager.test_email_connectivity("missing", {}) == {
        "success": False,
        "error": "Skill not found",
    }


@pytest.mark.asyncio
async def test_build_auto_routing_prompt(manager: SkillManager):
    prompt = await manager.build_auto_routing_prompt()
    assert "<id>bundled-one</id>" in prompt

    await manager.set_skill_enabled("bundled-one", False)
    assert await manager.build_auto_routing_prompt() is None


@pytest.mark.asyncio
async def test_sync_bundled_skills_only_when_packaged(manager: SkillManager, tmp_path: Path):
    assert manager.sync_bundled_skills() == []

    manager.settings.packaged = True
    assert manager.sync_bundled_skills() == ["bundled-one"]
    assert (tmp_path / "managed" / "bundled-one" / "SKILL.md").is_file()


@pytest.mark.asyncio
async def test_working_directory_change_restarts_watcher(manager: SkillManager, tmp_path: Path):
    started: list[str] = []

    class _Observer:
        def start(self):
            started.append("start")

        def schedule(self, handler, path, recursive=False):
            pass

        def stop(self):
            pass

        def join(self, timeout=None):
            pass

    manager._watcher = SkillWatcher(
        roots_provider=manager.skill_roots,
        on_change=manager._notify_skills_changed,
        observer_factory=_Observer,
    )
    changes: list[str] = []
    manager.subscribe(lambda: changes.append("changed"))

    manager.start_watching()
    manager.handle_working_directory_change()

    assert started == ["start", "start"]
    assert changes == ["changed"]
    assert manager.watcher.is_running is True

    manager.stop_watching()
    assert manager.watcher.is_running is False


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_notification(manager: SkillManager):
    calls: list[str] = []

    def _broken():
        raise RuntimeError("listener failed")

    manager.subscribe(_broken)
    manager.subscribe(lambda: calls.append("second"))

    await manager.set_skill_enabled("bundled-one", True)

    assert calls == ["second"]
