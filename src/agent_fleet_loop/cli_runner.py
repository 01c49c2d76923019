"""Subprocess plumbing shared by the CLI backends and the delegate tools.

Each coding CLI (claude, codex, opencode) takes the prompt either on stdin or
as an argument and prints JSON lines; we pull the final assistant text and a
resume identifier out of whatever it printed.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from dataclasses import dataclass

from loguru import logger

_KILL_GRACE_SECONDS = 5
_OUTPUT_TAIL_CHARS = 1500

CLI_BINARIES = {
    "claude-cli": "claude",
    "codex-cli": "codex",
    "opencode-cli": "opencode",
}

_RESUME_ID_KEYS = ("session_id", "sessionID", "sessionId", "thread_id")


@dataclass(frozen=True)
class CliResult:
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False


@dataclass(frozen=True)
class CliReply:
    text: str
    resume_token: str | None = None


def build_command(
    provider_id: str,
    prompt: str,
    *,
    resume_token: str | None = None,
    model: str | None = None,
) -> tuple[list[str], str | None]:
    """Return (argv, stdin_text) for one non-interactive CLI run."""
    binary = CLI_BINARIES.get(provider_id)
    if binary is None:
        raise ValueError(f"Unknown CLI provider: {provider_id!r}")

    if provider_id == "claude-cli":
        argv = [binary, "--print", "--output-format", "json", "--dangerously-skip-permissions"]
        if model:
            argv += ["--model", model]
        if resume_token:
            argv += ["--resume", resume_token]
        return argv, prompt

    if provider_id == "codex-cli":
        argv = [binary, "exec"]
        if resume_token:
            argv += ["resume", resume_token]
        argv += ["--json", "--full-auto", "--skip-git-repo-check"]
        if model:
            argv += ["--model", model]
        argv.append("-")
        return argv, prompt

    argv = [binary, "run", prompt, "--format", "json"]
    if model:
        argv += ["--model", model]
    if resume_token:
        argv += ["--session", resume_token]
    return argv, None


def _text_from_event(event: dict) -> str | None:
    kind = event.get("type")
    if kind == "result" and isinstance(event.get("result"), str):
        return event["result"]
    if kind == "assistant":
        content = (event.get("message") or {}).get("content")
        if isinstance(content, list):
            text = "".join(
                block.get("text", "") for block in content if isinstance(block, dict) and block.get("type") == "text"
            )
            return text or None
    if kind == "item.completed":
        item = event.get("item") or {}
        if item.get("type") in ("agent_message", "assistant_message") and isinstance(item.get("text"), str):
            return item["text"]
    if kind == "text":
        part = event.get("part") or {}
        if isinstance(part.get("text"), str):
            return part["text"]
    return None


def parse_output(stdout: str) -> CliReply:
    """Extract the final assistant text and resume id from JSON or JSON-lines output."""
    text: str | None = None
    resume_token: str | None = None
    parsed_any = False

    for line in stdout.splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        parsed_any = True
        for key in _RESUME_ID_KEYS:
            value = event.get(key)
            if isinstance(value, str) and value.strip():
                resume_token = value.strip()
                break
        found = _text_from_event(event)
        if found:
            text = found

    if not parsed_any or text is None:
        return CliReply(text=stdout.strip(), resume_token=resume_token)
    return CliReply(text=text.strip(), resume_token=resume_token)


def tail(text: str, limit: int = _OUTPUT_TAIL_CHARS) -> str:
    return text if len(text) <= limit else text[-limit:]


async def run_cli(
    argv: list[str],
    *,
    cwd: str | None,
    stdin_text: str | None = None,
    timeout: float = 600,
) -> CliResult:
    """Run a CLI to completion. Raises FileNotFoundError when the binary is missing."""
    logger.debug(f"CLI spawn: {argv[0]} args={len(argv) - 1} cwd={cwd}")
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    payload = stdin_text.encode() if stdin_text is not None else None

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        await _terminate(proc)
        return CliResult(returncode=proc.returncode, stdout="", stderr="", timed_out=True)
    except asyncio.CancelledError:
        await _terminate(proc)
        raise

    return CliResult(
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=_KILL_GRACE_SECONDS)
    except asyncio.TimeoutError:
        logger.warning(f"CLI process {proc.pid} did not exit after kill")
