import json
from pathlib import Path

import pytest

from skillshelf.connectivity import (
    CONNECTIVITY_TESTS,
    missing_scripts,
    parse_script_message,
    run_connectivity_test,
)
from skillshelf.scripts import ScriptRunResult


def _result(**overrides) -> ScriptRunResult:
    values = {
        "success": True,
        "exit_code": 0,
        "stdout": "",
        "stderr": "",
        "duration_ms": 12,
        "timed_out": False,
    }
    values.update(overrides)
    return ScriptRunResult(**values)


def test_parse_script_message():
    assert parse_script_message(json.dumps({"message": "  Connected  "})) == "Connected"
    assert parse_script_message(json.dumps({"message": ""})) is None
    assert parse_script_message(json.dumps(["message"])) is None
    assert parse_script_message("plain text") is None
    assert parse_script_message("") is None


@pytest.mark.asyncio
async def test_email_connectivity_passes_when_all_checks_pass(tmp_path: Path):
    calls: list[tuple[Path, list[str]]] = []

    async def _execute(script_path: Path, args: list[str]) -> ScriptRunResult:
        calls.append((script_path, args))
        if script_path.name == "imap.js":
            return _result(stdout=json.dumps({"message": "Found 4 mailboxes"}))
        return _result(stdout="not json")

    result = await run_connectivity_test(tmp_path, CONNECTIVITY_TESTS["email"], _execute)

    assert calls == [
        (tmp_path / "scripts" / "imap.js", ["list-mailboxes"]),
        (tmp_path / "scripts" / "smtp.js", ["verify"]),
    ]
    assert result.verdict == "pass"
    assert [(check.code, check.level, check.message) for check in result.checks] == [
        ("imap_connection", "pass", "Found 4 mailboxes"),
        ("smtp_connection", "pass", "SMTP connection successful"),
    ]
    payload = result.to_dict()
    assert payload["verdict"] == "pass"
    assert payload["checks"][0]["durationMs"] == 12
    assert isinstance(payload["testedAt"], int)


@pytest.mark.asyncio
async def test_email_connectivity_fails_on_timeout_or_error(tmp_path: Path):
    async def _execute(script_path: Path, args: list[str]) -> ScriptRunResult:
        if script_path.name == "imap.js":
            return _result(success=False, exit_code=None, timed_out=True, error="Command timed out after 20000ms")
        return _result(success=False, exit_code=1, stderr="connecting...\nAuthentication failed\n")

    result = await run_connectivity_test(tmp_path, CONNECTIVITY_TESTS["email"], _execute)

    assert result.verdict == "fail"
    assert [(check.level, check.message) for check in result.checks] == [
        ("fail", "IMAP connectivity check timed out"),
        ("fail", "Authentication failed"),
    ]


@pytest.mark.asyncio
async def test_failure_message_fallbacks(tmp_path: Path):
    async def _execute(script_path: Path, args: list[str]) -> ScriptRunResult:
        if script_path.name == "imap.js":
            return _result(success=False, exit_code=1, stdout="last stdout line")
        return _result(success=False, exit_code=1)

    result = await run_connectivity_test(tmp_path, CONNECTIVITY_TESTS["email"], _execute)

    assert [check.message for check in result.checks] == [
        "last stdout line",
        "SMTP connection failed",
    ]


@pytest.mark.asyncio
async def test_mixed_results_fail_the_verdict(tmp_path: Path):
    async def _execute(script_path: Path, args: list[str]) -> ScriptRunResult:
        if script_path.name == "smtp.js":
            return _result(success=False, exit_code=None, error="spawn node ENOENT")
        return _result()

    result = await run_connectivity_test(tmp_path, CONNECTIVITY_TESTS["email"], _execute)

    assert result.verdict == "fail"
    assert result.checks[0].level == "pass"
    assert result.checks[1].message == "spawn node ENOENT"


def test_missing_scripts(tmp_path: Path):
    spec = CONNECTIVITY_TESTS["email"]
    assert missing_scripts(tmp_path, spec) == ["scripts/imap.js", "scripts/smtp.js"]

    (tmp_path / "scripts").mkdir()
    (tmp_path / "scripts" / "imap.js").write_text("", encoding="utf-8")
    assert missing_scripts(tmp_path, spec) == ["scripts/smtp.js"]
