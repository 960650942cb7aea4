"""Per-skill ``.env`` configuration files."""

from __future__ import annotations

from pathlib import Path

SKILL_ENV_FILE = ".env"


def parse_env_text(raw: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines; blanks, comments and lines without ``=`` are skipped."""
    config: dict[str, str] = {}
    for line in (raw or "").splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        key, sep, value = trimmed.partition("=")
        if not sep:
            continue
        config[key.strip()] = value.strip()
    return config


def render_env_text(config: dict[str, str]) -> str:
    lines = [f"{key}={value}" for key, value in config.items() if str(key).strip()]
    return "\n".join(lines) + "\n"


def read_skill_env(skill_dir: Path) -> dict[str, str]:
    env_path = skill_dir / SKILL_ENV_FILE
    if not env_path.exists():
        return {}
    return parse_env_text(env_path.read_text(encoding="utf-8"))


def write_skill_env(skill_dir: Path, config: dict[str, str]) -> None:
    (skill_dir / SKILL_ENV_FILE).write_text(render_env_text(config), encoding="utf-8")
