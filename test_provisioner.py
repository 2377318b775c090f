"""
Workspace provisioner tests against real git and local bare repositories.
"""
import asyncio
import sys

import pytest

from agentrelay.db.agents import AgentRegistry
from agentrelay.errors import (
    AgentCreateFailed,
    CloneFailed,
    DirectoryExists,
    ProcessTimeout,
    WorkspaceNotFound,
)
from agentrelay.services.process import run_process
from agentrelay.services.provisioner import WorkspaceProvisioner, remove_tree
from conftest import commit_file, run_git


# ─────────────────────────────────────────────
# Process runner
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_process_captures_output():
    out = await run_process([sys.executable, "-c", "print('hi')"], timeout=30)
    assert out.returncode == 0
    assert out.stdout.strip() == "hi"


@pytest.mark.asyncio
async def test_run_process_timeout_kills_and_raises():
    with pytest.raises(ProcessTimeout) as exc_info:
        await run_process([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.5)
    assert exc_info.value.code == "TIMEOUT"
    assert exc_info.value.timeout == 0.5


@pytest.mark.asyncio
async def test_cancelled_run_process_kills_child(tmp_path):
    started, finished = tmp_path / "started", tmp_path / "finished"
    script = (
        "import pathlib, sys, time\n"
        "pathlib.Path(sys.argv[1]).touch()\n"
        "time.sleep(1)\n"
        "pathlib.Path(sys.argv[2]).touch()\n"
    )
    task = asyncio.create_task(run_process([sys.executable, "-c", script, str(started), str(finished)], timeout=30))
    for _ in range(200):
        if started.exists():
            break
        await asyncio.sleep(0.025)
    assert started.exists()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await asyncio.sleep(1.5)
    assert not finished.exists()


@pytest.mark.asyncio
async def test_remove_tree_is_silent_for_missing_path(tmp_path):
    assert await remove_tree(tmp_path / "does-not-exist") is True


# ─────────────────────────────────────────────
# Clone
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_clone_default_and_named_branch(origin_repo, tmp_path):
    prov = WorkspaceProvisioner()
    main_dir = tmp_path / "w" / "main"
    await prov.clone(origin_repo.url, main_dir)
    assert (main_dir / "README.md").exists()
    assert run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=main_dir).strip() == "main"

    feature_dir = tmp_path / "w" / "feature"
    await prov.clone(origin_repo.url, feature_dir, branch="feature")
    assert (feature_dir / "feature.txt").exists()


@pytest.mark.asyncio
async def test_clone_into_existing_directory_fails(origin_repo, tmp_path):
    target = tmp_path / "exists"
    target.mkdir()
    with pytest.raises(DirectoryExists):
        await WorkspaceProvisioner().clone(origin_repo.url, target)
    assert target.exists()


@pytest.mark.asyncio
async def test_failed_clone_removes_created_directories(origin_repo, tmp_path):
    target = tmp_path / "agents" / "x" / "repo"
    with pytest.raises(CloneFailed):
        await WorkspaceProvisioner().clone((tmp_path / "missing.git").as_uri(), target)
    assert not target.exists()
    assert not (tmp_path / "agents").exists()


@pytest.mark.asyncio
async def test_registry_clone_failure_leaves_no_workspace(origin_repo, tmp_path):
    registry = AgentRegistry(tmp_path / "ws")
    await registry.initialize()

    with pytest.raises(AgentCreateFailed) as exc_info:
        await registry.create_agent("u1", (tmp_path / "missing.git").as_uri(), name="bad")

    agent = registry.get_agent(exc_info.value.details["agentId"])
    assert agent.status == "error"
    assert not (tmp_path / "ws" / "agents" / agent.id).exists()
    assert list((tmp_path / "ws" / "agents").iterdir()) == []


# ─────────────────────────────────────────────
# Update
# ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_with_dirty_workspace_stashes_and_fast_forwards(origin_repo, tmp_path):
    prov = WorkspaceProvisioner()
    repo = tmp_path / "clone"
    await prov.clone(origin_repo.url, repo)

    commit_file(origin_repo.seed, "NEW.md", "upstream\n", "upstream change")
    run_git("push", "origin", "main", cwd=origin_repo.seed)
    upstream_tip = run_git("rev-parse", "HEAD", cwd=origin_repo.seed).strip()

    (repo / "README.md").write_text("local edit\n")

    branch = await prov.update(repo)

    assert branch == "main"
    assert run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo).strip() == "main"
    assert run_git("rev-parse", "HEAD", cwd=repo).strip() == upstream_tip
    assert (repo / "NEW.md").exists()
    assert (repo / "README.md").read_text() == "hello\n"
    assert run_git("stash", "list", cwd=repo).strip() != ""


@pytest.mark.asyncio
async def test_update_missing_workspace(tmp_path):
    with pytest.raises(WorkspaceNotFound):
        await WorkspaceProvisioner().update(tmp_path / "nowhere")


@pytest.mark.asyncio
async def test_switch_branch_on_single_branch_clone(origin_repo, tmp_path):
    prov = WorkspaceProvisioner()
    repo = tmp_path / "clone"
    await prov.clone(origin_repo.url, repo)

    await prov.switch_branch(repo, "feature")

    assert run_git("rev-parse", "--abbrev-ref", "HEAD", cwd=repo).strip() == "feature"
    assert (repo / "feature.txt").exists()


@pytest.mark.asyncio
async def test_repository_info(origin_repo, tmp_path):
    prov = WorkspaceProvisioner()
    repo = tmp_path / "clone"
    await prov.clone(origin_repo.url, repo)

    info = await prov.repository_info(repo)
    assert info["remote"] == origin_repo.url
    assert info["branch"] == "main"
    assert "initial" in info["lastCommit"]
    assert info["isDirty"] is False

    (repo / "scratch.txt").write_text("x")
    assert (await prov.repository_info(repo))["isDirty"] is True
