from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import anyio

from ..logging import get_logger
from ..process import ExitStatus, ProcessHandle, ProcessSpawner, exit_status

logger = get_logger(__name__)


async def terminate_process(
    proc: ProcessHandle,
    *,
    grace_period: float,
    log: Any = logger,
) -> ExitStatus:
    """Terminate politely, kill after ``grace_period``, always reap."""
    with anyio.CancelScope(shield=True):
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            with anyio.move_on_after(grace_period):
                await proc.wait()
            if proc.returncode is None:
                log.warning(
                    "subprocess.kill",
                    pid=proc.pid,
                    grace_period=grace_period,
                )
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        return exit_status(proc.returncode)


@contextlib.asynccontextmanager
async def manage_subprocess(
    spawner: ProcessSpawner,
    cmd: Sequence[str],
    *,
    env: Mapping[str, str] | None,
    cwd: str | None,
    grace_period: float,
) -> AsyncIterator[ProcessHandle]:
    proc = await spawner.spawn(cmd, env=env, cwd=cwd)
    try:
        yield proc
    finally:
        status = await terminate_process(proc, grace_period=grace_period)
        logger.info("subprocess.exit", pid=proc.pid, status=status.label())
