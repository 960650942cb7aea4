"""Classification of skill source strings into acquisition plans."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

from skillshelf.exceptions import InvalidSourceError
from skillshelf.manifest import SKILL_FILE_NAME
from skillshelf.paths import normalize_folder_name

GITHUB_HOSTS = {"github.com", "www.github.com"}
ARCHIVE_SUFFIXES: tuple[str, ...] = (".zip", ".tar.gz", ".tgz", ".tar.bz2", ".tbz2", ".tar")

_SHORTHAND_RE = re.compile(r"^[\w.-]+/[\w.-]+$")
_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_SSH_REMOTE_RE = re.compile(r"^[\w.-]+@[\w.-]+:")
_GITHUB_SSH_RE = re.compile(r"^git@github\.com:([^/]+)/([^/]+?)(?:\.git)?/?$", re.IGNORECASE)

INVALID_SOURCE_MESSAGE = "Invalid skill source. Use owner/repo, repo URL, or a GitHub tree/blob URL."


@dataclass
class LocalSource:
    path: Path
    is_archive: bool = False


@dataclass
class RemoteSource:
    repo_url: str
    ref: str | None = None
    source_subpath: str | None = None
    repo_name_hint: str | None = None


@dataclass
class GitHubRepo:
    owner: str
    repo: str


AcquisitionPlan = LocalSource | RemoteSource


def is_archive_file(path: str | Path) -> bool:
    name = Path(path).name.lower()
    return any(name.endswith(suffix) for suffix in ARCHIVE_SUFFIXES)


def normalize_github_subpath(value: str) -> str:
    """Decode and validate a repository subpath.

    Raises:
        InvalidSourceError: if a segment is ``.``/``..`` or nothing remains.
    """
    trimmed = str(value or "").strip().strip("/")
    segments = [unquote(segment) for segment in trimmed.split("/") if segment]
    if any(segment in {".", ".."} for segment in segments):
        raise InvalidSourceError("Skill path cannot contain '.' or '..' path segments.", value)
    parts: list[str] = []
    for segment in segments:
        parts.extend(part for part in segment.replace("\\", "/").split("/") if part)
    if any(part in {".", ".."} for part in parts):
        raise InvalidSourceError("Skill path cannot contain '.' or '..' path segments.", value)
    if not parts:
        raise InvalidSourceError("Skill path is empty.", value)
    return "/".join(parts)


def parse_github_tree_or_blob_url(source: str) -> RemoteSource | None:
    """Parse ``https://github.com/<owner>/<repo>/(tree|blob)/<ref>/<path>`` URLs."""
    try:
        parsed = urlparse(source)
    except ValueError:
        return None
    if parsed.scheme.lower() not in {"http", "https"}:
        return None
    if (parsed.hostname or "").lower() not in GITHUB_HOSTS:
        return None

    segments = [segment for segment in parsed.path.split("/") if segment]
    if len(segments) < 4:
        return None
    owner, repo_raw, mode, ref, *rest = segments
    if mode not in {"tree", "blob"}:
        return None
    repo = re.sub(r"\.git$", "", repo_raw, flags=re.IGNORECASE)
    if not owner or not repo or not ref:
        return None

    source_subpath: str | None = None
    if rest:
        source_subpath = normalize_github_subpath("/".join(rest))
    elif mode == "blob":
        raise InvalidSourceError("Blob URL must include a path to SKILL.md.", source)

    return RemoteSource(
        repo_url=f"https://github.com/{owner}/{repo}.git",
        ref=unquote(ref),
        source_subpath=source_subpath,
        repo_name_hint=repo,
    )


def parse_github_repo_source(repo_url: str) -> GitHubRepo | None:
    """Extract owner/repo from a GitHub clone URL, or None for other hosts."""
    trimmed = str(repo_url or "").strip()

    ssh_match = _GITHUB_SSH_RE.match(trimmed)
    if ssh_match:
        return GitHubRepo(owner=ssh_match.group(1), repo=ssh_match.group(2))

    try:
        parsed = urlparse(trimmed)
    except ValueError:
        return None
    if (parsed.hostname or "").lower() not in GITHUB_HOSTS:
        return None
    path = re.sub(r"\.git$", "", parsed.path, flags=re.IGNORECASE)
    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:
        return None
    return GitHubRepo(owner=segments[0], repo=segments[1])


def normalize_git_source(source: str) -> RemoteSource | None:
    github_tree_or_blob = parse_github_tree_or_blob_url(source)
    if github_tree_or_blob:
        return github_tree_or_blob
    if _SHORTHAND_RE.match(source):
        return RemoteSource(repo_url=f"https://github.com/{source}.git")
    if _SCHEME_RE.match(source) or _SSH_REMOTE_RE.match(source):
        return RemoteSource(repo_url=source)
    if source.endswith(".git"):
        return RemoteSource(repo_url=source)
    return None


def normalize_source(source: str) -> AcquisitionPlan:
    """Classify a user-supplied skill source.

    Existing local paths win over every remote interpretation.

    Raises:
        InvalidSourceError: for empty or unrecognized sources.
    """
    trimmed = str(source or "").strip()
    if not trimmed:
        raise InvalidSourceError("Missing skill source", trimmed)

    local = Path(trimmed).expanduser()
    if local.exists():
        if local.is_dir():
            return LocalSource(path=local.resolve())
        if is_archive_file(local):
            return LocalSource(path=local.resolve(), is_archive=True)
        if local.name == SKILL_FILE_NAME:
            return LocalSource(path=local.resolve().parent)
        raise InvalidSourceError(
            "Skill source must be a directory, archive file, or SKILL.md file",
            trimmed,
        )

    remote = normalize_git_source(trimmed)
    if remote is None:
        raise InvalidSourceError(INVALID_SOURCE_MESSAGE, trimmed)
    return remote


def derive_repo_name(repo_url: str) -> str:
    cleaned = re.sub(r"[#?].*$", "", str(repo_url or ""))
    parts = [part for part in re.split(r"[/:]", cleaned) if part]
    base = parts[-1] if parts else "skill"
    return normalize_folder_name(re.sub(r"\.git$", "", base))
