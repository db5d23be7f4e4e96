"""Spawning and supervising the agent CLI process."""

from __future__ import annotations

import os
import shutil
import signal
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import anyio
from anyio.abc import ByteReceiveStream, ByteSendStream

from .errors import SpawnError
from .logging import get_logger
from .settings import ClaudeLinkSettings

logger = get_logger(__name__)

ENTRYPOINT = "sdk-py"
DEFAULT_CLI = "claude"

INSTALL_HINT = (
    "Install it with:\n"
    "  npm install -g @anthropic-ai/claude-code\n"
    "or point CLAUDELINK__CLI_PATH (or CLAUDE_BINARY) at the claude executable."
)


class ProcessHandle(Protocol):
    @property
    def pid(self) -> int: ...

    @property
    def returncode(self) -> int | None: ...

    @property
    def stdin(self) -> ByteSendStream | None: ...

    @property
    def stdout(self) -> ByteReceiveStream | None: ...

    @property
    def stderr(self) -> ByteReceiveStream | None: ...

    async def wait(self) -> int: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...


class ProcessSpawner(Protocol):
    async def spawn(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str] | None,
        cwd: str | None,
    ) -> ProcessHandle: ...


@dataclass(frozen=True, slots=True)
class ExitStatus:
    code: int | None
    signal: signal.Signals | None = None

    @property
    def ok(self) -> bool:
        return self.code == 0

    def label(self) -> str:
        if self.signal is not None:
            return f"signal {self.signal.name}"
        if self.code is None:
            return "still running"
        return f"rc={self.code}"


def exit_status(returncode: int | None) -> ExitStatus:
    if returncode is not None and returncode < 0:
        try:
            return ExitStatus(code=returncode, signal=signal.Signals(-returncode))
        except ValueError:
            pass
    return ExitStatus(code=returncode)


class AnyioProcessSpawner:
    """Launch the CLI with three pipes via ``anyio.open_process``."""

    async def spawn(
        self,
        cmd: Sequence[str],
        *,
        env: Mapping[str, str] | None,
        cwd: str | None,
    ) -> ProcessHandle:
        if not cmd:
            raise SpawnError("empty command")
        executable = resolve_executable(cmd[0])
        try:
            proc = await anyio.open_process(
                [executable, *cmd[1:]],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
        except FileNotFoundError as exc:
            raise SpawnError(f"executable not found: {cmd[0]}\n{INSTALL_HINT}") from exc
        except PermissionError as exc:
            raise SpawnError(f"executable is not runnable: {cmd[0]}") from exc
        except OSError as exc:
            raise SpawnError(f"failed to launch {cmd[0]}: {exc}") from exc
        logger.info(
            "subprocess.spawn",
            cmd=executable,
            args=list(cmd[1:]),
            pid=proc.pid,
            cwd=cwd,
        )
        return proc


def _validate_executable(value: str) -> str:
    path = Path(value).expanduser().resolve()
    if not path.exists():
        raise SpawnError(f"claude CLI path does not exist: {value}")
    if not path.is_file():
        raise SpawnError(f"claude CLI path is not a file: {value}")
    if not os.access(path, os.X_OK):
        raise SpawnError(f"claude CLI path is not executable: {value}")
    return str(path)


def resolve_executable(value: str) -> str:
    """Validate a path, or look a bare command name up on ``PATH``."""
    if os.sep in value or value.startswith("~") or Path(value).is_absolute():
        return _validate_executable(value)
    found = shutil.which(value)
    if found:
        return found
    raise SpawnError(f"{value} CLI not found.\n{INSTALL_HINT}")


def cli_name(
    cli_path: str | None = None,
    *,
    settings: ClaudeLinkSettings | None = None,
) -> str:
    return cli_path or (settings.cli_path if settings is not None else None) or DEFAULT_CLI


def find_claude_binary(
    cli_path: str | None = None,
    *,
    settings: ClaudeLinkSettings | None = None,
) -> str:
    """Resolve the CLI executable: explicit path, then env, then ``PATH``."""
    return resolve_executable(cli_name(cli_path, settings=settings))


def build_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ)
    if extra:
        env.update(extra)
    env.setdefault("CLAUDE_CODE_ENTRYPOINT", ENTRYPOINT)
    env.pop("NODE_OPTIONS", None)
    if env.get("DEBUG_CLAUDE_AGENT_SDK"):
        env["DEBUG"] = "1"
    return env
