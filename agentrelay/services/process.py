"""
Bounded external-process execution.

Both the workspace provisioner (git) and the tool executor (AI CLIs) run
through ``run_process`` so they share one timeout discipline: on expiry the
process is killed and ``ProcessTimeout`` is raised, which callers can tell
apart from a non-zero exit.
"""
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional, Sequence

from agentrelay.errors import ProcessTimeout

logger = logging.getLogger(__name__)


@dataclass
class ProcessOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_process(
    args: Sequence[str],
    cwd: Optional[str] = None,
    timeout: float = 120,
    env: Optional[dict[str, str]] = None,
) -> ProcessOutput:
    """
    Run ``args`` to completion and capture its output.

    Raises ``ProcessTimeout`` if it runs longer than ``timeout`` seconds and
    ``FileNotFoundError`` / ``OSError`` if it cannot be spawned. If the
    caller is cancelled, the process is killed and reaped before the
    cancellation propagates.
    """
    proc = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env if env is not None else os.environ.copy(),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(f"Process timed out after {timeout}s, killing: {args[0]} (pid={proc.pid})")
        await _kill(proc)
        raise ProcessTimeout(f"Command timed out after {timeout}s: {' '.join(args[:2])}", timeout=timeout)
    finally:
        # Cancelled callers must not leave the child running.
        if proc.returncode is None:
            logger.warning(f"Process abandoned, killing: {args[0]} (pid={proc.pid})")
            await _kill(proc)
    return ProcessOutput(
        returncode=proc.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )


async def _kill(proc: asyncio.subprocess.Process) -> None:
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()
