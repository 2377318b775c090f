"""
Workspace provisioning: clone, update and switch git working trees.

Pure external-process orchestration with no shared state. Every git call is
bounded by a timeout (``GIT_TIMEOUT``, default 120s).

Note on ``update``: uncommitted local changes are stashed before pulling and
the stash is never re-applied. From the caller's point of view those changes
are gone; this is lossy by default, not a data-preservation feature.
"""
import asyncio
import logging
import os
import shutil
from pathlib import Path
from typing import Optional

from agentrelay.config import GIT_TIMEOUT
from agentrelay.errors import (
    BranchSwitchFailed,
    CloneFailed,
    DirectoryExists,
    ExecutionError,
    ProcessFailed,
    ProcessTimeout,
    UpdateFailed,
    WorkspaceNotFound,
)
from agentrelay.services.process import run_process

logger = logging.getLogger(__name__)


async def remove_tree(path) -> bool:
    """
    Best-effort recursive delete.

    Never raises: a cleanup failure must not mask the error that triggered the
    cleanup. Returns True if the path is gone afterwards.
    """
    p = Path(path)
    try:
        await asyncio.to_thread(shutil.rmtree, p)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(f"Cleanup of {p} failed: {e}")
        return False
    return True


def _git_env() -> dict[str, str]:
    env = os.environ.copy()
    # Never block on credential prompts; fail instead.
    env["GIT_TERMINAL_PROMPT"] = "0"
    # Auto-stash creates a commit object and needs an identity.
    env.setdefault("GIT_AUTHOR_NAME", "agentrelay")
    env.setdefault("GIT_AUTHOR_EMAIL", "agentrelay@localhost")
    env.setdefault("GIT_COMMITTER_NAME", env["GIT_AUTHOR_NAME"])
    env.setdefault("GIT_COMMITTER_EMAIL", env["GIT_AUTHOR_EMAIL"])
    return env


class WorkspaceProvisioner:
    def __init__(self, git_binary: str = "git", timeout: float = GIT_TIMEOUT) -> None:
        self.git_binary = git_binary
        self.timeout = timeout

    async def _git(self, args: list[str], cwd, timeout: Optional[float] = None) -> str:
        """Run one git command; returns stdout, raises ProcessFailed / ProcessTimeout."""
        out = await run_process(
            [self.git_binary, *args],
            cwd=str(cwd),
            timeout=timeout or self.timeout,
            env=_git_env(),
        )
        if out.returncode != 0:
            raise ProcessFailed(
                f"git {args[0]} failed ({out.returncode}): {(out.stderr or out.stdout).strip()}",
                returncode=out.returncode,
                stdout=out.stdout,
                stderr=out.stderr,
            )
        return out.stdout

    # ─────────────────────────────────────────────
    # Clone
    # ─────────────────────────────────────────────

    async def clone(self, repo_url: str, target_dir, branch: Optional[str] = None) -> None:
        """
        Shallow, single-branch clone of ``repo_url`` into ``target_dir``.

        ``target_dir`` must not exist. On failure every directory this call
        created (the target and any missing parents) is removed again.
        """
        target = Path(target_dir)
        if target.exists():
            raise DirectoryExists(f"Target directory already exists: {target}")

        # Highest ancestor that does not exist yet; removing it undoes mkdir.
        created_root = target
        while not created_root.parent.exists():
            created_root = created_root.parent

        logger.info(f"Cloning {repo_url} -> {target} (branch={branch or 'default'})")
        args = ["clone", "--depth", "1", "--single-branch"]
        if branch:
            args += ["-b", branch]
        args += [repo_url, str(target)]

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._git(args, cwd=target.parent)
        except (ProcessTimeout, asyncio.CancelledError):
            await remove_tree(created_root)
            raise
        except (ProcessFailed, OSError) as e:
            await remove_tree(created_root)
            raise CloneFailed(f"Repository clone failed: {e}") from e

        logger.info(f"Clone complete: {target}")

    # ─────────────────────────────────────────────
    # Update
    # ─────────────────────────────────────────────

    async def update(self, workspace_dir) -> str:
        """
        Fast-forward the current branch to its upstream tip.

        Uncommitted changes are stashed first (see module docstring).
        Returns the branch that was updated.
        """
        repo = Path(workspace_dir)
        if not repo.is_dir():
            raise WorkspaceNotFound(f"Workspace directory not found: {repo}")

        logger.info(f"Updating workspace {repo}")
        try:
            branch = (await self._git(["rev-parse", "--abbrev-ref", "HEAD"], repo)).strip()
            if branch == "HEAD":
                raise UpdateFailed(f"Workspace {repo} is in detached HEAD state")
            logger.info(f"Current branch: {branch}")

            status = await self._git(["status", "--porcelain"], repo)
            if status.strip():
                logger.warning(f"Local changes found in {repo}, stashing (they will not be re-applied)")
                try:
                    await self._git(["stash", "push", "-m", "agentrelay auto-stash"], repo)
                except ProcessFailed as e:
                    logger.warning(f"Auto-stash failed, continuing with pull: {e}")

            await self._git(["fetch", "origin", branch], repo)
            await self._git(["pull", "--ff-only", "origin", branch], repo)
        except (ProcessTimeout, UpdateFailed):
            raise
        except ProcessFailed as e:
            raise UpdateFailed(f"Repository update failed: {e}") from e

        logger.info(f"Workspace {repo} updated on branch {branch}")
        return branch

    # ─────────────────────────────────────────────
    # Branch switching
    # ─────────────────────────────────────────────

    async def switch_branch(self, workspace_dir, branch: str) -> None:
        """Check out ``branch`` (tracking the remote one if needed), then pull."""
        repo = Path(workspace_dir)
        if not repo.is_dir():
            raise WorkspaceNotFound(f"Workspace directory not found: {repo}")

        logger.info(f"Switching {repo} to branch {branch}")
        try:
            # Single-branch clones only fetch their own refspec, so ask for this one explicitly.
            await self._git(
                ["fetch", "--depth", "1", "origin", f"+refs/heads/{branch}:refs/remotes/origin/{branch}"],
                repo,
            )
            try:
                await self._git(["checkout", branch], repo)
            except ProcessFailed:
                await self._git(["checkout", "-b", branch, f"origin/{branch}"], repo)
            await self._git(["pull", "--ff-only", "origin", branch], repo)
        except ProcessTimeout:
            raise
        except ProcessFailed as e:
            raise BranchSwitchFailed(f"Branch switch failed: {e}") from e

        logger.info(f"Switched {repo} to {branch}")

    # ─────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────

    async def repository_info(self, workspace_dir) -> dict:
        repo = Path(workspace_dir)
        if not repo.is_dir():
            raise WorkspaceNotFound(f"Workspace directory not found: {repo}")
        try:
            remote = await self._git(["config", "--get", "remote.origin.url"], repo)
            branch = await self._git(["rev-parse", "--abbrev-ref", "HEAD"], repo)
            last_commit = await self._git(["log", "-1", "--oneline"], repo)
            status = await self._git(["status", "--porcelain"], repo)
        except ProcessFailed as e:
            raise ExecutionError(f"Repository info failed: {e}", code="INFO_FAILED") from e
        return {
            "remote": remote.strip(),
            "branch": branch.strip(),
            "lastCommit": last_commit.strip(),
            "isDirty": bool(status.strip()),
        }

    async def check_git_installed(self) -> bool:
        try:
            await self._git(["--version"], Path.cwd(), timeout=5)
            return True
        except (ProcessFailed, ProcessTimeout, OSError) as e:
            logger.error(f"git is not available: {e}")
            return False
