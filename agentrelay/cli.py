import argparse
import os
from typing import Optional, Sequence

import uvicorn

from agentrelay.config import HOST, PORT, WORKSPACE_DIR


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run AgentRelay HTTP/SSE server")
    parser.add_argument("--host", default=HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=PORT, help="Bind port")
    parser.add_argument("--workspace", default=WORKSPACE_DIR, help="Root directory for agent workspaces")
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    workspace = os.path.abspath(args.workspace)
    os.environ["AGENTRELAY_WORKSPACE_DIR"] = workspace

    if args.reload:
        # The reloader re-imports the app in a fresh process, which reads the env var.
        target = "agentrelay.main:app"
    else:
        from agentrelay.main import build_services, create_app

        target = create_app(build_services(workspace_dir=workspace))

    uvicorn.run(
        target,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
