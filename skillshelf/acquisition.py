"""Materialize acquisition plans into local directories (clone, download, extract)."""

from __future__ import annotations

import asyncio
import os
import posixpath
import shutil
import subprocess
import sys
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import httpx

from skillshelf.config import SkillsConfig
from skillshelf.exceptions import AcquisitionError, PathEscapeError
from skillshelf.logging import get_logger
from skillshelf.manifest import SKILL_FILE_NAME
from skillshelf.paths import append_env_path, normalize_folder_name, resolve_within
from skillshelf.sources import (
    GitHubRepo,
    LocalSource,
    RemoteSource,
    derive_repo_name,
    parse_github_repo_source,
)

log = get_logger(__name__)

_USER_AGENT = "Skillshelf Skill Downloader"
_GITHUB_API_VERSION = "2022-11-28"
GIT_NOT_FOUND_MESSAGE = (
    "Git executable not found. Please install Git for Windows or reinstall with the bundled PortableGit."
)


@dataclass
class GitCommand:
    command: str
    env: dict[str, str] | None = None


@dataclass
class ArchiveCandidate:
    url: str
    headers: dict[str, str]


class CommandError(RuntimeError):
    """Child process exited with a non-zero status."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


def _normalize_archive_member_path(raw: str) -> str | None:
    cleaned = str(raw or "").replace("\\", "/")
    if not cleaned:
        return None
    if cleaned.startswith("/"):
        raise AcquisitionError(f"Archive member escapes target directory: {raw}")
    parts = [part for part in cleaned.split("/") if part and part != "."]
    if not parts:
        return None
    normalized = posixpath.normpath("/".join(parts))
    if not normalized or normalized in {".", ".."}:
        return None
    if normalized.startswith("../") or any(part in {"..", ""} for part in normalized.split("/")):
        raise AcquisitionError(f"Archive member escapes target directory: {raw}")
    return normalized


def extract_zip_archive(archive_path: Path, target_dir: Path) -> None:
    with zipfile.ZipFile(archive_path, "r") as archive:
        for member in archive.infolist():
            rel_path = _normalize_archive_member_path(member.filename)
            if not rel_path:
                continue
            destination = resolve_within(target_dir, rel_path)
            if member.is_dir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            with archive.open(member, "r") as source_file:
                with destination.open("wb") as out_file:
                    shutil.copyfileobj(source_file, out_file)


def extract_tar_archive(archive_path: Path, target_dir: Path) -> None:
    with tarfile.open(archive_path, "r:*") as archive:
        for member in archive.getmembers():
            if member.issym() or member.islnk():
                raise AcquisitionError("Archive contains symbolic or hard links; refusing extraction.")
            rel_path = _normalize_archive_member_path(member.name)
            if not rel_path:
                continue
            destination = resolve_within(target_dir, rel_path)
            if member.isdir():
                destination.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            destination.parent.mkdir(parents=True, exist_ok=True)
            source_file = archive.extractfile(member)
            if source_file is None:
                continue
            with source_file:
                with destination.open("wb") as out_file:
                    shutil.copyfileobj(source_file, out_file)


def extract_archive(archive_path: Path, target_dir: Path) -> Path:
    """Extract a zip or tar archive into ``target_dir`` and return it."""
    target_dir.mkdir(parents=True, exist_ok=True)
    lower = archive_path.name.lower()
    try:
        if lower.endswith(".zip"):
            extract_zip_archive(archive_path, target_dir)
        else:
            extract_tar_archive(archive_path, target_dir)
    except (zipfile.BadZipFile, tarfile.TarError, OSError, PathEscapeError) as exc:
        raise AcquisitionError(f"Failed to extract archive {archive_path.name}: {exc}") from exc
    return target_dir


def _list_windows_command_paths(command: str) -> list[str]:
    if sys.platform != "win32":
        return []
    try:
        completed = subprocess.run(
            ["cmd.exe", "/d", "/s", "/c", command],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return []
    if completed.returncode != 0:
        return []
    return [line.strip() for line in (completed.stdout or "").splitlines() if line.strip()]


def _bundled_git_roots(settings: SkillsConfig) -> list[Path]:
    if settings.packaged and settings.resources_dir:
        return [Path(settings.resources_dir).expanduser() / "mingit"]
    project_root = Path(__file__).resolve().parent.parent
    return [project_root / "resources" / "mingit", Path.cwd() / "resources" / "mingit"]


def resolve_windows_git_executable(settings: SkillsConfig) -> Path | None:
    """Locate git.exe: install dirs, then ``where git``, then bundled MinGit."""
    if sys.platform != "win32":
        return None

    program_files = os.environ.get("ProgramFiles") or "C:\\Program Files"
    program_files_x86 = os.environ.get("ProgramFiles(x86)") or "C:\\Program Files (x86)"
    local_app_data = os.environ.get("LOCALAPPDATA") or ""
    user_profile = os.environ.get("USERPROFILE") or ""

    installed_candidates = [
        Path(program_files, "Git", "cmd", "git.exe"),
        Path(program_files, "Git", "bin", "git.exe"),
        Path(program_files_x86, "Git", "cmd", "git.exe"),
        Path(program_files_x86, "Git", "bin", "git.exe"),
    ]
    if local_app_data:
        installed_candidates.extend([
            Path(local_app_data, "Programs", "Git", "cmd", "git.exe"),
            Path(local_app_data, "Programs", "Git", "bin", "git.exe"),
        ])
    if user_profile:
        installed_candidates.extend([
            Path(user_profile, "scoop", "apps", "git", "current", "cmd", "git.exe"),
            Path(user_profile, "scoop", "apps", "git", "current", "bin", "git.exe"),
        ])
    installed_candidates.extend([Path("C:\\Git\\cmd\\git.exe"), Path("C:\\Git\\bin\\git.exe")])

    for candidate in installed_candidates:
        if candidate.exists():
            return candidate

    for line in _list_windows_command_paths("where git"):
        candidate = Path(line)
        if line.lower().endswith("git.exe") and candidate.exists():
            return candidate

    for root in _bundled_git_roots(settings):
        for candidate in (
            root / "cmd" / "git.exe",
            root / "bin" / "git.exe",
            root / "mingw64" / "bin" / "git.exe",
            root / "usr" / "bin" / "git.exe",
        ):
            if candidate.exists():
                return candidate

    return None


def resolve_git_command(settings: SkillsConfig) -> GitCommand:
    if sys.platform != "win32":
        return GitCommand(command="git")

    git_exe = resolve_windows_git_executable(settings)
    if git_exe is None:
        return GitCommand(command="git")

    git_dir = git_exe.parent
    git_root = git_dir.parent
    candidate_dirs = [
        str(path)
        for path in (
            git_dir,
            git_root / "cmd",
            git_root / "bin",
            git_root / "mingw64" / "bin",
            git_root / "usr" / "bin",
        )
        if path.exists()
    ]
    env = dict(os.environ)
    env["PATH"] = append_env_path(env.get("PATH"), candidate_dirs)
    return GitCommand(command=str(git_exe), env=env)


async def run_command(
    command: str,
    args: list[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> None:
    """Run a command, discarding stdout; raise CommandError with stderr on failure.

    Spawn errors (e.g. FileNotFoundError for a missing executable) propagate.
    """
    process = await asyncio.create_subprocess_exec(
        command,
        *args,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        process.kill()
        await process.wait()
        raise CommandError(f"Command timed out after {timeout_seconds}s") from exc
    if process.returncode == 0:
        return
    details = (stderr or b"").decode("utf-8", errors="replace").strip()
    raise CommandError(
        details or f"Command failed with exit code {process.returncode}",
        returncode=process.returncode,
    )


async def _run_git_clone(
    git: GitCommand,
    repo_url: str,
    destination: Path,
    ref: str | None,
    timeout_seconds: int,
) -> None:
    args = ["clone", "--depth", "1"]
    if ref:
        args.extend(["--branch", ref])
    args.extend([repo_url, str(destination)])
    await run_command(git.command, args, env=git.env, timeout_seconds=max(1, int(timeout_seconds)))


def build_archive_candidates(source: GitHubRepo, ref: str | None) -> list[ArchiveCandidate]:
    """Ordered download URLs: branch, tag, generic archive, then the API zipball."""
    encoded_ref = quote(ref, safe="") if ref else ""
    base = f"https://github.com/{source.owner}/{source.repo}"
    web_headers = {"User-Agent": _USER_AGENT}
    candidates: list[ArchiveCandidate] = []
    if encoded_ref:
        candidates.extend([
            ArchiveCandidate(url=f"{base}/archive/refs/heads/{encoded_ref}.zip", headers=web_headers),
            ArchiveCandidate(url=f"{base}/archive/refs/tags/{encoded_ref}.zip", headers=web_headers),
            ArchiveCandidate(url=f"{base}/archive/{encoded_ref}.zip", headers=web_headers),
        ])
    zipball = f"https://api.github.com/repos/{source.owner}/{source.repo}/zipball"
    if encoded_ref:
        zipball = f"{zipball}/{encoded_ref}"
    candidates.append(
        ArchiveCandidate(
            url=zipball,
            headers={
                "Accept": "application/vnd.github+json",
                "User-Agent": _USER_AGENT,
                "X-GitHub-Api-Version": _GITHUB_API_VERSION,
            },
        )
    )
    return candidates


def _create_http_client(timeout_seconds: int) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=max(1, int(timeout_seconds)), follow_redirects=True)


async def download_github_archive(
    source: GitHubRepo,
    temp_root: Path,
    ref: str | None,
    timeout_seconds: int,
) -> Path:
    """Download the first available repository archive and return its root."""
    payload: bytes | None = None
    last_error: str | None = None

    async with _create_http_client(timeout_seconds) as client:
        for candidate in build_archive_candidates(source, ref):
            try:
                response = await client.get(candidate.url, headers=candidate.headers)
            except httpx.HTTPError as exc:
                last_error = str(exc) or exc.__class__.__name__
                continue
            if not response.is_success:
                detail = (response.text or "").strip()
                last_error = f"Archive download failed ({response.status_code} {response.reason_phrase})"
                if detail:
                    last_error = f"{last_error}: {detail[:500]}"
                continue
            payload = response.content
            break

    if payload is None:
        raise AcquisitionError(last_error or "Archive download failed")

    zip_path = temp_root / "github-archive.zip"
    extract_root = temp_root / "github-archive"
    zip_path.write_bytes(payload)
    extract_archive(zip_path, extract_root)

    extracted_dirs = [entry for entry in extract_root.iterdir() if entry.is_dir()]
    if len(extracted_dirs) == 1:
        return extracted_dirs[0]
    return extract_root


def scope_to_subpath(root: Path, subpath: str) -> Path:
    """Confine ``subpath`` beneath ``root``; a file must be the skill manifest."""
    scoped = resolve_within(root, subpath)
    if not scoped.exists():
        raise AcquisitionError(f'Path "{subpath}" not found in repository')
    if scoped.is_file():
        if scoped.name == SKILL_FILE_NAME:
            return scoped.parent
        raise AcquisitionError("GitHub path must point to a directory or SKILL.md file")
    return scoped


async def fetch_remote_source(plan: RemoteSource, temp_root: Path, settings: SkillsConfig) -> Path:
    """Clone ``plan.repo_url``, falling back to a GitHub archive download."""
    repo_name = normalize_folder_name(plan.repo_name_hint or derive_repo_name(plan.repo_url))
    clone_path = temp_root / repo_name
    git = resolve_git_command(settings)
    github = parse_github_repo_source(plan.repo_url)

    try:
        await _run_git_clone(git, plan.repo_url, clone_path, plan.ref, settings.clone_timeout_seconds)
        return clone_path
    except (CommandError, OSError) as exc:
        git_missing = isinstance(exc, FileNotFoundError) and sys.platform == "win32"
        if github is None:
            if git_missing:
                raise AcquisitionError(GIT_NOT_FOUND_MESSAGE) from exc
            raise AcquisitionError(f"Git clone failed: {exc}") from exc
        log.warning(
            "git clone failed; falling back to archive download",
            repo=f"{github.owner}/{github.repo}",
            ref=plan.ref,
            error=str(exc),
        )
        try:
            return await download_github_archive(
                github,
                temp_root,
                plan.ref,
                settings.download_timeout_seconds,
            )
        except (AcquisitionError, OSError) as archive_exc:
            if git_missing:
                raise AcquisitionError(
                    f"{GIT_NOT_FOUND_MESSAGE} Archive fallback also failed: {archive_exc}"
                ) from archive_exc
            raise AcquisitionError(
                f"Git clone failed: {exc}. Archive fallback failed: {archive_exc}"
            ) from archive_exc


async def acquire_source(
    plan: LocalSource | RemoteSource,
    temp_root: Path,
    settings: SkillsConfig,
) -> Path:
    """Return a local directory holding the plan's content.

    Anything materialized lives under ``temp_root``; the caller owns its cleanup.
    """
    if isinstance(plan, LocalSource):
        if not plan.is_archive:
            return plan.path
        return extract_archive(plan.path, temp_root / "archive")

    downloaded_root = await fetch_remote_source(plan, temp_root, settings)
    if plan.source_subpath:
        return scope_to_subpath(downloaded_root, plan.source_subpath)
    return downloaded_root
