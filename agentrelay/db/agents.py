"""
Agent registry: the catalog of agents and their workspace lifecycle.

All mutations go through this class. The in-memory map is the working copy;
the JSON catalog is rewritten after every mutation through ``AgentCatalog``,
which serializes writers. Provisioner work on a single agent is serialized by
a per-agent lock.
"""
import asyncio
import json
import logging
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Optional

from agentrelay.config import WORKSPACE_DIR
from agentrelay.db.catalog import AgentCatalog
from agentrelay.db.models import AGENT_KINDS, AGENT_STATUSES, Agent, utcnow
from agentrelay.errors import (
    AgentCreateFailed,
    AgentNameTaken,
    AgentNotFound,
    ExecutionError,
    InvalidParams,
    Unauthorized,
)
from agentrelay.security import is_within
from agentrelay.services.provisioner import WorkspaceProvisioner, remove_tree

logger = logging.getLogger(__name__)


class AgentRegistry:
    def __init__(
        self,
        workspace_dir=WORKSPACE_DIR,
        provisioner: Optional[WorkspaceProvisioner] = None,
    ) -> None:
        self.workspace_dir = Path(workspace_dir)
        self.agents_dir = self.workspace_dir / "agents"
        self.provisioner = provisioner or WorkspaceProvisioner()
        self.catalog = AgentCatalog(self.workspace_dir)
        self._agents: dict[str, Agent] = {}
        self._agent_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        """Create the workspace layout and load the persisted catalog."""
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self._agents = {a.id: a for a in self.catalog.load()}

    async def _save(self) -> None:
        await self.catalog.save(lambda: list(self._agents.values()))

    def agent_dir(self, agent_id: str) -> Path:
        return self.agents_dir / agent_id

    # ─────────────────────────────────────────────
    # Create
    # ─────────────────────────────────────────────

    async def create_agent(
        self,
        owner: str,
        repo_url: str,
        name: Optional[str] = None,
        kind: str = "claude",
        branch: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> Agent:
        """
        Register an agent and provision its workspace.

        The record is persisted as ``initializing`` before the clone starts. On
        success it becomes ``active``; on failure it stays in the catalog as
        ``error`` with the failure text, the partial workspace is removed and
        ``AgentCreateFailed`` is raised.
        """
        if kind not in AGENT_KINDS:
            raise InvalidParams(f"Unknown agent type '{kind}'. Must be one of {AGENT_KINDS}")

        agent_id = str(uuid.uuid4())
        name = name or f"agent-{agent_id[:8]}"
        if any(a.name == name and a.owner == owner for a in self._agents.values()):
            raise AgentNameTaken(f"You already have an agent named '{name}'")

        now = utcnow()
        agent = Agent(
            id=agent_id,
            name=name,
            kind=kind,
            repo_url=repo_url,
            branch=branch,
            workspace_dir=str(self.agent_dir(agent_id) / "repo"),
            owner=owner,
            channel_id=channel_id,
            created_at=now,
            last_used=now,
            status="initializing",
        )
        self._agents[agent_id] = agent
        await self._save()

        async with self._agent_locks[agent_id]:
            try:
                await self.provisioner.clone(repo_url, agent.workspace_dir, branch)
                config_path = self.agent_dir(agent_id) / "config.json"
                await asyncio.to_thread(
                    config_path.write_text, json.dumps(agent.to_record(), indent=2), "utf-8"
                )
            except asyncio.CancelledError:
                agent.status = "error"
                agent.error = "Agent creation was cancelled"
                await remove_tree(self.agent_dir(agent_id))
                await self._save()
                logger.warning(f"Agent creation cancelled: {name} ({agent_id})")
                raise
            except (ExecutionError, OSError) as e:
                agent.status = "error"
                agent.error = str(e)
                await self._save()
                await remove_tree(self.agent_dir(agent_id))
                logger.error(f"Agent creation failed: {name} ({agent_id}): {e}")
                cause = getattr(e, "code", type(e).__name__)
                raise AgentCreateFailed(
                    f"Agent creation failed: {e}",
                    details={"agentId": agent_id, "cause": cause},
                ) from e

            agent.status = "active"
            await self._save()

        logger.info(f"Agent created: {name} ({agent_id}) for {owner}")
        return agent

    # ─────────────────────────────────────────────
    # Lookup
    # ─────────────────────────────────────────────

    def get_agent(self, agent_id_or_name: str, user_id: Optional[str] = None) -> Optional[Agent]:
        """
        Find an agent by id, then by name.

        Name matching is restricted to ``user_id``'s agents when a user is
        given. A match owned by someone else raises ``Unauthorized``.
        """
        agent = self._agents.get(agent_id_or_name)
        if agent is None:
            agent = next(
                (a for a in self._agents.values()
                 if a.name == agent_id_or_name and (user_id is None or a.owner == user_id)),
                None,
            )
        if agent is not None and user_id is not None and agent.owner != user_id:
            raise Unauthorized("You do not have permission to access this agent")
        return agent

    def require_agent(self, agent_id_or_name: str, user_id: Optional[str] = None) -> Agent:
        agent = self.get_agent(agent_id_or_name, user_id)
        if agent is None:
            raise AgentNotFound(f"Agent not found: {agent_id_or_name}")
        return agent

    def list_agents(self, owner: Optional[str] = None, channel_id: Optional[str] = None) -> list[Agent]:
        """Agents filtered by owner / channel, most recently used first."""
        agents = list(self._agents.values())
        if owner:
            agents = [a for a in agents if a.owner == owner]
        if channel_id:
            agents = [a for a in agents if a.channel_id == channel_id]
        return sorted(agents, key=lambda a: a.last_used, reverse=True)

    # ─────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────

    async def update_last_used(self, agent_id: str) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        agent.last_used = utcnow()
        await self._save()

    async def update_status(self, agent_id: str, status: str, error: Optional[str] = None) -> None:
        if status not in AGENT_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Must be one of {AGENT_STATUSES}")
        agent = self._agents.get(agent_id)
        if agent is None:
            return
        agent.status = status
        agent.error = error
        await self._save()

    async def delete_agent(self, agent_id: str, user_id: str) -> Agent:
        """
        Remove the agent record and its workspace directory.

        Directory removal is best-effort: a failure is logged and the record is
        removed regardless of the agent's prior status.
        """
        agent = self.require_agent(agent_id, user_id)
        async with self._agent_locks[agent.id]:
            agent_dir = self.agent_dir(agent.id)
            if is_within(self.agents_dir, agent_dir):
                await remove_tree(agent_dir)
            else:
                logger.error(f"Refusing to remove {agent_dir}: outside {self.agents_dir}")
            self._agents.pop(agent.id, None)
            await self._save()
        self._agent_locks.pop(agent.id, None)
        logger.info(f"Agent deleted: {agent.name} ({agent.id})")
        return agent

    async def update_repository(
        self,
        agent_id: str,
        user_id: str,
        pull_latest: bool = True,
        branch: Optional[str] = None,
    ) -> Agent:
        """
        Refresh an agent's workspace, optionally switching branch first.

        Success leaves the agent ``active``; a failure records the error text,
        sets ``error`` and re-raises.
        """
        agent = self.require_agent(agent_id, user_id)
        async with self._agent_locks[agent.id]:
            try:
                if branch and branch != agent.branch:
                    await self.provisioner.switch_branch(agent.workspace_dir, branch)
                    agent.branch = branch
                elif pull_latest:
                    agent.branch = await self.provisioner.update(agent.workspace_dir)
            except ExecutionError as e:
                agent.status = "error"
                agent.error = str(e)
                await self._save()
                logger.error(f"Workspace update failed for {agent.name} ({agent.id}): {e}")
                raise
            agent.status = "active"
            agent.error = None
            agent.last_used = utcnow()
            await self._save()
        return agent

    async def repository_info(self, agent_id: str, user_id: str) -> dict:
        agent = self.require_agent(agent_id, user_id)
        return await self.provisioner.repository_info(agent.workspace_dir)
