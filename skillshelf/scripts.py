"""Running skill-provided scripts as supervised subprocesses."""

from __future__ import annotations

import asyncio
import errno
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from skillshelf.config import SkillsConfig
from skillshelf.logging import get_logger

log = get_logger(__name__)

DEFAULT_KILL_GRACE_MS = 2000


@dataclass
class ScriptRunResult:
    success: bool
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool
    error: str | None = None
    spawn_error_code: str | None = None


@dataclass
class ScriptRuntime:
    """An interpreter that can execute skill scripts."""

    command: str
    extra_env: dict[str, str] = field(default_factory=dict)


def _elapsed_ms(started_at: float) -> int:
    return int((time.monotonic() - started_at) * 1000)


def _signal_process(process: asyncio.subprocess.Process, force: bool) -> None:
    if process.returncode is not None:
        return
    try:
        if force:
            process.kill()
        else:
            process.terminate()
    except ProcessLookupError:
        pass


async def run_script_with_timeout(
    command: str,
    args: list[str],
    cwd: str | Path,
    env: dict[str, str],
    timeout_ms: int,
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
) -> ScriptRunResult:
    """Run ``command`` with captured output under a hard timeout.

    On timeout the process receives SIGTERM, then SIGKILL once ``kill_grace_ms``
    has passed. Spawn failures, timeouts and non-zero exits are reported in the
    result rather than raised.
    """
    loop = asyncio.get_running_loop()
    started_at = time.monotonic()
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return ScriptRunResult(
            success=False,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started_at),
            timed_out=False,
            error=str(exc),
            spawn_error_code=errno.errorcode.get(exc.errno) if exc.errno else None,
        )

    timed_out = False
    force_kill_handle: asyncio.TimerHandle | None = None

    def _on_timeout() -> None:
        nonlocal timed_out, force_kill_handle
        timed_out = True
        _signal_process(process, force=False)
        force_kill_handle = loop.call_later(
            max(0, kill_grace_ms) / 1000,
            _signal_process,
            process,
            True,
        )

    timeout_handle = loop.call_later(max(0, timeout_ms) / 1000, _on_timeout)
    try:
        stdout_bytes, stderr_bytes = await process.communicate()
    except asyncio.CancelledError:
        _signal_process(process, force=True)
        raise
    finally:
        timeout_handle.cancel()
        if force_kill_handle is not None:
            force_kill_handle.cancel()

    exit_code = process.returncode
    return ScriptRunResult(
        success=not timed_out and exit_code == 0,
        exit_code=exit_code,
        stdout=stdout_bytes.decode("utf-8", errors="replace").strip(),
        stderr=stderr_bytes.decode("utf-8", errors="replace").strip(),
        duration_ms=_elapsed_ms(started_at),
        timed_out=timed_out,
        error=f"Command timed out after {timeout_ms}ms" if timed_out else None,
    )


def default_script_runtimes(settings: SkillsConfig) -> list[ScriptRuntime]:
    """Development interpreter first (unpackaged only), then the host executable."""
    runtimes: list[ScriptRuntime] = []
    scripts = settings.scripts
    if not settings.packaged and scripts.interpreter:
        runtimes.append(ScriptRuntime(command=scripts.interpreter))
    if scripts.host_executable:
        runtimes.append(
            ScriptRuntime(command=scripts.host_executable, extra_env=dict(scripts.host_env))
        )
    if not runtimes:
        log.warning(
            "No skill script runtime configured",
            packaged=settings.packaged,
            hint="set skills.scripts.host_executable",
        )
    return runtimes


async def run_skill_script(
    skill_dir: Path,
    script_path: Path,
    script_args: list[str],
    env_overrides: dict[str, str],
    timeout_ms: int,
    runtimes: list[ScriptRuntime],
    kill_grace_ms: int = DEFAULT_KILL_GRACE_MS,
) -> ScriptRunResult:
    """Try each runtime in order, moving on only when its executable is missing."""
    last_result: ScriptRunResult | None = None

    for runtime in runtimes:
        env = {**os.environ, **runtime.extra_env, **env_overrides}
        result = await run_script_with_timeout(
            runtime.command,
            [str(script_path), *script_args],
            cwd=skill_dir,
            env=env,
            timeout_ms=timeout_ms,
            kill_grace_ms=kill_grace_ms,
        )
        last_result = result
        if result.spawn_error_code == "ENOENT":
            log.debug("Script runtime not found, trying next", runtime=runtime.command)
            continue
        return result

    if last_result is not None:
        return last_result
    return ScriptRunResult(
        success=False,
        exit_code=None,
        stdout="",
        stderr="",
        duration_ms=0,
        timed_out=False,
        error="Failed to run skill script",
    )
