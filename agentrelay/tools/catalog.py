"""
Tool catalogue shared by the HTTP dispatcher's ``tools/list`` and the stdio
MCP server.
"""
import mcp.types as types

from agentrelay.db.models import AGENT_KINDS

_EXECUTE_SCHEMA = {
    "type": "object",
    "properties": {
        "agentId":   {"type": "string", "description": "Agent id or name."},
        "command":   {"type": "string", "description": "Prompt handed to the agent's AI CLI."},
        "userId":    {"type": "string", "description": "Caller id. Defaults to the session's caller."},
        "streaming": {"type": "boolean", "default": True,
                      "description": "Publish status/output/complete events on the session's event stream."},
    },
    "required": ["agentId", "command"],
}


def tool_definitions() -> list[types.Tool]:
    return [
        # ── Execution ─────────────────────────
        types.Tool(
            name="execute_tool",
            description="Run the agent's AI CLI with a prompt inside its workspace and return the output.",
            inputSchema=_EXECUTE_SCHEMA,
        ),
        types.Tool(
            name="execute_claude",
            description="Deprecated alias of execute_tool.",
            inputSchema=_EXECUTE_SCHEMA,
        ),

        # ── Agent lifecycle ───────────────────
        types.Tool(
            name="create_agent",
            description="Create an agent: clone a git repository into a fresh, isolated workspace.",
            inputSchema={
                "type": "object",
                "properties": {
                    "userId":    {"type": "string", "description": "Owner of the new agent."},
                    "repoUrl":   {"type": "string", "description": "Git repository URL (https, ssh, git@host:owner/repo)."},
                    "branch":    {"type": "string", "description": "Branch to clone. Defaults to the remote's default branch."},
                    "name":      {"type": "string", "description": "Agent name, unique per owner. Generated when omitted."},
                    "type":      {"type": "string", "enum": list(AGENT_KINDS), "default": "claude"},
                    "channelId": {"type": "string", "description": "Optional channel the agent belongs to."},
                },
                "required": ["userId", "repoUrl"],
            },
        ),
        types.Tool(
            name="list_agents",
            description="List the caller's agents, most recently used first.",
            inputSchema={
                "type": "object",
                "properties": {
                    "userId":    {"type": "string"},
                    "channelId": {"type": "string", "description": "Only agents in this channel."},
                },
                "required": ["userId"],
            },
        ),
        types.Tool(
            name="get_agent",
            description="Get one agent with its live repository state (remote, branch, last commit, dirty flag).",
            inputSchema={
                "type": "object",
                "properties": {
                    "agentId": {"type": "string", "description": "Agent id or name."},
                    "userId":  {"type": "string"},
                },
                "required": ["agentId", "userId"],
            },
        ),
        types.Tool(
            name="delete_agent",
            description="Delete an agent and its workspace. Only the owner may delete.",
            inputSchema={
                "type": "object",
                "properties": {
                    "agentId": {"type": "string"},
                    "userId":  {"type": "string"},
                },
                "required": ["agentId", "userId"],
            },
        ),
        types.Tool(
            name="update_agent",
            description=(
                "Fast-forward the agent's workspace to its upstream branch tip. "
                "Uncommitted local changes are stashed and not re-applied. "
                "Passing a different `branch` switches the workspace to it."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "agentId":    {"type": "string"},
                    "userId":     {"type": "string"},
                    "pullLatest": {"type": "boolean", "default": True},
                    "branch":     {"type": "string"},
                },
                "required": ["agentId", "userId"],
            },
        ),
    ]
