"""SKILL.md header/body parsing."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

SKILL_FILE_NAME = "SKILL.md"

_HEADER_BLOCK_RE = re.compile(r"^---\r?\n(.*?)\r?\n---(?:\r?\n)?", re.DOTALL)
_HEADER_LINE_RE = re.compile(r"^([A-Za-z0-9_-]+):\s*(.*)$")
_LINE_SPLIT_RE = re.compile(r"\r?\n")
_QUOTE_CHARS = "'\""


@dataclass
class Manifest:
    header: dict[str, str] = field(default_factory=dict)
    body: str = ""


def _strip_quotes(value: str) -> str:
    if value[:1] in _QUOTE_CHARS:
        value = value[1:]
    if value[-1:] in _QUOTE_CHARS:
        value = value[:-1]
    return value


def parse_manifest(raw: str) -> Manifest:
    """Split manifest text into its ``key: value`` header and body.

    Text without a ``---`` delimited header block yields an empty header and the
    whole (BOM-stripped) text as body. Malformed header lines are skipped.
    """
    text = str(raw or "")
    if text.startswith("\ufeff"):
        text = text[1:]
    match = _HEADER_BLOCK_RE.match(text)
    if not match:
        return Manifest(header={}, body=text)

    header: dict[str, str] = {}
    for line in _LINE_SPLIT_RE.split(match.group(1)):
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        kv = _HEADER_LINE_RE.match(trimmed)
        if not kv:
            continue
        header[kv.group(1)] = _strip_quotes((kv.group(2) or "").strip())

    return Manifest(header=header, body=text[match.end():])


def is_truthy(value: str | None) -> bool:
    if not value:
        return False
    return value.strip().lower() in {"true", "yes", "1"}


def extract_description(body: str) -> str:
    """Return the first non-empty body line without markdown heading markers."""
    for line in _LINE_SPLIT_RE.split(body or ""):
        trimmed = line.strip()
        if not trimmed:
            continue
        return re.sub(r"^#+\s*", "", trimmed)
    return ""
