import argparse
import asyncio

from mcp.server.stdio import stdio_server

from agentrelay.config import WORKSPACE_DIR
from agentrelay.db.agents import AgentRegistry
from agentrelay.mcp_server import bind, server
from agentrelay.services.executor import CommandExecutor


async def main():
    parser = argparse.ArgumentParser(description="AgentRelay MCP stdio mode")
    parser.add_argument("--workspace", default=WORKSPACE_DIR, help="Root directory for agent workspaces")
    parser.add_argument("--user", default=None, help="Caller id used when a tool call omits userId")
    args = parser.parse_args()

    registry = AgentRegistry(args.workspace)
    await registry.initialize()
    bind(registry, CommandExecutor(), user_id=args.user)

    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options()
        )


def run():
    # Disable logging to stdout to avoid corrupting MCP JSON-RPC
    import logging
    logging.getLogger().setLevel(logging.CRITICAL)
    asyncio.run(main())


if __name__ == "__main__":
    run()
