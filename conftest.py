"""
Shared fixtures for the AgentRelay test suite.

Everything runs in-process: no server subprocess, no network. Git-backed tests
use throwaway bare repositories under ``tmp_path`` and are skipped when git is
not installed.
"""
import asyncio
import shutil
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from agentrelay.db.models import CommandResult
from agentrelay.errors import CloneFailed, DirectoryExists, WorkspaceNotFound

GIT_IDENTITY = ["-c", "user.name=AgentRelay Test", "-c", "user.email=test@example.com"]


def run_git(*args, cwd) -> str:
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=str(cwd),
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout


def commit_file(repo: Path, name: str, content: str, message: str) -> None:
    (repo / name).write_text(content)
    run_git("add", name, cwd=repo)
    run_git("commit", "-m", message, cwd=repo)


# ─────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────

class FakeProvisioner:
    """Stands in for git: creates/removes directories only."""

    def __init__(self, fail_clone: bool = False):
        self.fail_clone = fail_clone
        self.calls: list[tuple] = []

    async def clone(self, repo_url, target_dir, branch=None):
        self.calls.append(("clone", repo_url, str(target_dir), branch))
        target = Path(target_dir)
        if target.exists():
            raise DirectoryExists(f"Target directory already exists: {target}")
        if self.fail_clone:
            raise CloneFailed(f"Repository clone failed: could not read from {repo_url}")
        target.mkdir(parents=True)

    async def update(self, workspace_dir):
        self.calls.append(("update", str(workspace_dir)))
        if not Path(workspace_dir).is_dir():
            raise WorkspaceNotFound(f"Workspace directory not found: {workspace_dir}")
        return "main"

    async def switch_branch(self, workspace_dir, branch):
        self.calls.append(("switch_branch", str(workspace_dir), branch))

    async def repository_info(self, workspace_dir):
        return {"remote": "https://example.com/r.git", "branch": "main",
                "lastCommit": "abc1234 initial", "isDirty": False}

    async def check_git_installed(self):
        return True


class GatedProvisioner(FakeProvisioner):
    """Clone creates the directory, then blocks until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def clone(self, repo_url, target_dir, branch=None):
        await super().clone(repo_url, target_dir, branch)
        self.started.set()
        await self.release.wait()


class FakeExecutor:
    """Records prompts and answers with a canned result."""

    def __init__(self, result: CommandResult = None):
        self.result = result
        self.calls: list[tuple[str, str, str]] = []

    async def run_tool(self, kind, prompt, working_dir):
        self.calls.append((kind, prompt, working_dir))
        if self.result is not None:
            return self.result
        return CommandResult(success=True, output=f"ran: {prompt}", exit_code=0, execution_time_ms=5)


# ─────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────

@pytest.fixture
def workspace(tmp_path):
    return tmp_path / "workspace"


@pytest.fixture
def fake_provisioner():
    return FakeProvisioner()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def origin_repo(tmp_path):
    """
    A bare ``origin`` with one commit on ``main`` and a ``feature`` branch,
    plus the seed clone used to push further commits.
    """
    if shutil.which("git") is None:
        pytest.skip("git is not installed")

    bare = tmp_path / "origin.git"
    seed = tmp_path / "seed"
    run_git("init", "--bare", str(bare), cwd=tmp_path)
    run_git("symbolic-ref", "HEAD", "refs/heads/main", cwd=bare)
    run_git("init", str(seed), cwd=tmp_path)
    run_git("symbolic-ref", "HEAD", "refs/heads/main", cwd=seed)
    commit_file(seed, "README.md", "hello\n", "initial")
    run_git("remote", "add", "origin", bare.as_uri(), cwd=seed)
    run_git("push", "origin", "main", cwd=seed)

    run_git("checkout", "-b", "feature", cwd=seed)
    commit_file(seed, "feature.txt", "feature work\n", "feature commit")
    run_git("push", "origin", "feature", cwd=seed)
    run_git("checkout", "main", cwd=seed)

    return SimpleNamespace(url=bare.as_uri(), bare=bare, seed=seed)
