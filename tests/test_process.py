from __future__ import annotations

import signal
from pathlib import Path

import pytest

from claudelink.errors import SpawnError
from claudelink.process import (
    AnyioProcessSpawner,
    build_env,
    cli_name,
    exit_status,
    find_claude_binary,
    resolve_executable,
)
from claudelink.settings import ClaudeLinkSettings
from claudelink.utils.subprocess import manage_subprocess, terminate_process
from tests.fakes import FakeClaude, FakeSpawner


def _executable(path: Path) -> Path:
    path.write_text("#!/bin/sh\nexit 0\n")
    path.chmod(0o755)
    return path


# ---------------------------------------------------------------------------
# Executable discovery
# ---------------------------------------------------------------------------


def test_explicit_path_is_validated(tmp_path: Path) -> None:
    binary = _executable(tmp_path / "claude")

    assert find_claude_binary(str(binary)) == str(binary.resolve())


def test_missing_explicit_path_raises(tmp_path: Path) -> None:
    with pytest.raises(SpawnError, match="does not exist"):
        find_claude_binary(str(tmp_path / "nope" / "claude"))


def test_non_executable_path_raises(tmp_path: Path) -> None:
    binary = tmp_path / "claude"
    binary.write_text("not a program")
    binary.chmod(0o644)

    with pytest.raises(SpawnError, match="not executable"):
        find_claude_binary(str(binary))


def test_settings_path_is_used(tmp_path: Path) -> None:
    binary = _executable(tmp_path / "claude-dev")
    settings = ClaudeLinkSettings(cli_path=str(binary))

    assert find_claude_binary(settings=settings) == str(binary.resolve())
    assert cli_name("/explicit/claude", settings=settings) == "/explicit/claude"
    assert cli_name() == "claude"


def test_path_lookup(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    binary = _executable(tmp_path / "claude")
    monkeypatch.setenv("PATH", str(tmp_path))

    assert resolve_executable("claude") == str(binary)


def test_path_lookup_failure_mentions_install(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("PATH", str(tmp_path))

    with pytest.raises(SpawnError, match="npm install"):
        resolve_executable("claude")


@pytest.mark.anyio
async def test_default_spawner_raises_spawn_error(tmp_path: Path) -> None:
    spawner = AnyioProcessSpawner()

    with pytest.raises(SpawnError):
        await spawner.spawn([str(tmp_path / "missing-claude")], env=None, cwd=None)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


def test_build_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NODE_OPTIONS", "--inspect")
    monkeypatch.setenv("DEBUG_CLAUDE_AGENT_SDK", "1")
    monkeypatch.delenv("CLAUDE_CODE_ENTRYPOINT", raising=False)

    env = build_env({"ANTHROPIC_MODEL": "opus"})

    assert env["ANTHROPIC_MODEL"] == "opus"
    assert env["CLAUDE_CODE_ENTRYPOINT"] == "sdk-py"
    assert env["DEBUG"] == "1"
    assert "NODE_OPTIONS" not in env


def test_build_env_keeps_caller_entrypoint() -> None:
    env = build_env({"CLAUDE_CODE_ENTRYPOINT": "custom"})

    assert env["CLAUDE_CODE_ENTRYPOINT"] == "custom"


# ---------------------------------------------------------------------------
# Exit status and termination
# ---------------------------------------------------------------------------


def test_exit_status_labels() -> None:
    assert exit_status(0).ok
    assert exit_status(2).label() == "rc=2"
    killed = exit_status(-signal.SIGKILL)
    assert killed.signal is signal.SIGKILL
    assert killed.label() == "signal SIGKILL"
    assert exit_status(None).label() == "still running"


@pytest.mark.anyio
async def test_terminate_process_is_polite_first() -> None:
    proc = FakeClaude()

    status = await terminate_process(proc, grace_period=1.0)

    assert proc.terminated
    assert not proc.killed
    assert status.signal is signal.SIGTERM


class _StubbornClaude(FakeClaude):
    def terminate(self) -> None:
        self.terminated = True


@pytest.mark.anyio
async def test_terminate_process_kills_after_grace_period() -> None:
    proc = _StubbornClaude()

    status = await terminate_process(proc, grace_period=0.05)

    assert proc.terminated
    assert proc.killed
    assert status.signal is signal.SIGKILL


@pytest.mark.anyio
async def test_terminate_process_skips_exited_process() -> None:
    proc = FakeClaude()
    proc.exit(0)

    status = await terminate_process(proc, grace_period=1.0)

    assert not proc.terminated
    assert status.ok


@pytest.mark.anyio
async def test_manage_subprocess_always_reaps() -> None:
    proc = FakeClaude()
    spawner = FakeSpawner(proc)

    with pytest.raises(RuntimeError):
        async with manage_subprocess(
            spawner, ["claude", "--verbose"], env={"A": "1"}, cwd="/repo", grace_period=1.0
        ):
            raise RuntimeError("caller failed")

    assert spawner.calls == [(["claude", "--verbose"], {"A": "1"}, "/repo")]
    assert proc.returncode is not None
