"""
Runs the AI command-line tools against an agent workspace.

The tools are opaque: given a prompt and a working directory they produce
stdout / stderr / exit code. Failures are reported in the ``CommandResult``
rather than raised, so the dispatcher can stream them like any other outcome.
"""
import logging
import time
from typing import Optional

from agentrelay.config import CLAUDE_CODE_PATH, COMMAND_TIMEOUT, GEMINI_CLI_PATH
from agentrelay.db.models import CommandResult
from agentrelay.errors import ProcessTimeout
from agentrelay.services.process import run_process

logger = logging.getLogger(__name__)


class CommandExecutor:
    def __init__(
        self,
        tool_paths: Optional[dict[str, str]] = None,
        timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        self.tool_paths = tool_paths or {"claude": CLAUDE_CODE_PATH, "gemini": GEMINI_CLI_PATH}
        self.timeout = timeout

    async def execute(self, command: str, args: list[str], working_dir: str) -> CommandResult:
        started = time.monotonic()
        logger.info(f"Executing {command} in {working_dir}")

        def _elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        try:
            out = await run_process([command, *args], cwd=working_dir, timeout=self.timeout)
        except ProcessTimeout as e:
            return CommandResult(success=False, error=str(e), execution_time_ms=_elapsed(), timed_out=True)
        except OSError as e:
            logger.error(f"Could not start {command}: {e}")
            return CommandResult(success=False, error=str(e), execution_time_ms=_elapsed())

        elapsed = _elapsed()
        if out.returncode == 0:
            logger.info(f"{command} succeeded in {elapsed}ms")
            return CommandResult(success=True, output=out.stdout, exit_code=0, execution_time_ms=elapsed)

        logger.error(f"{command} failed with exit code {out.returncode}: {out.stderr.strip()[:500]}")
        return CommandResult(
            success=False,
            output=out.stdout,
            error=out.stderr.strip() or f"Process exited with code {out.returncode}",
            exit_code=out.returncode,
            execution_time_ms=elapsed,
        )

    async def run_tool(self, kind: str, prompt: str, working_dir: str) -> CommandResult:
        """Run the AI CLI for ``kind`` (claude | gemini) with ``prompt``."""
        path = self.tool_paths.get(kind)
        if path is None:
            return CommandResult(success=False, error=f"Unknown tool kind: {kind}", execution_time_ms=0)
        return await self.execute(path, [prompt], working_dir)
