"""Connectivity checks built from skill scripts."""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from skillshelf.scripts import ScriptRunResult

CheckLevel = Literal["pass", "fail"]

ScriptExecutor = Callable[[Path, list[str]], Awaitable[ScriptRunResult]]


@dataclass
class ConnectivityCheckSpec:
    code: str
    label: str
    script: str
    args: list[str] = field(default_factory=list)


@dataclass
class ConnectivityTestSpec:
    name: str
    checks: list[ConnectivityCheckSpec]
    missing_scripts_error: str


@dataclass
class ConnectivityCheck:
    code: str
    level: CheckLevel
    message: str
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "level": self.level,
            "message": self.message,
            "durationMs": self.duration_ms,
        }


@dataclass
class ConnectivityTestResult:
    tested_at: int
    verdict: CheckLevel
    checks: list[ConnectivityCheck]

    def to_dict(self) -> dict[str, Any]:
        return {
            "testedAt": self.tested_at,
            "verdict": self.verdict,
            "checks": [check.to_dict() for check in self.checks],
        }


CONNECTIVITY_TESTS: dict[str, ConnectivityTestSpec] = {
    "email": ConnectivityTestSpec(
        name="email",
        checks=[
            ConnectivityCheckSpec(
                code="imap_connection",
                label="IMAP",
                script="scripts/imap.js",
                args=["list-mailboxes"],
            ),
            ConnectivityCheckSpec(
                code="smtp_connection",
                label="SMTP",
                script="scripts/smtp.js",
                args=["verify"],
            ),
        ],
        missing_scripts_error="Email connectivity scripts not found",
    ),
}


def parse_script_message(stdout: str) -> str | None:
    """Return the ``message`` field of a JSON stdout payload, if any."""
    if not stdout:
        return None
    try:
        parsed = json.loads(stdout)
    except json.JSONDecodeError:
        return None
    if isinstance(parsed, dict):
        message = parsed.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return None


def last_output_line(text: str) -> str:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return lines[-1] if lines else ""


def classify_check(spec: ConnectivityCheckSpec, result: ScriptRunResult) -> ConnectivityCheck:
    if result.success:
        return ConnectivityCheck(
            code=spec.code,
            level="pass",
            message=parse_script_message(result.stdout) or f"{spec.label} connection successful",
            duration_ms=result.duration_ms,
        )

    if result.timed_out:
        message = f"{spec.label} connectivity check timed out"
    else:
        message = (
            result.error
            or last_output_line(result.stderr)
            or last_output_line(result.stdout)
            or f"{spec.label} connection failed"
        )
    return ConnectivityCheck(
        code=spec.code,
        level="fail",
        message=message,
        duration_ms=result.duration_ms,
    )


def missing_scripts(skill_dir: Path, spec: ConnectivityTestSpec) -> list[str]:
    return [check.script for check in spec.checks if not (skill_dir / check.script).exists()]


async def run_connectivity_test(
    skill_dir: Path,
    spec: ConnectivityTestSpec,
    execute: ScriptExecutor,
) -> ConnectivityTestResult:
    """Run every check in order; the verdict passes only if all checks pass."""
    checks: list[ConnectivityCheck] = []
    for check_spec in spec.checks:
        result = await execute(skill_dir / check_spec.script, list(check_spec.args))
        checks.append(classify_check(check_spec, result))

    verdict: CheckLevel = "pass" if all(check.level == "pass" for check in checks) else "fail"
    return ConnectivityTestResult(
        tested_at=int(time.time() * 1000),
        verdict=verdict,
        checks=checks,
    )
