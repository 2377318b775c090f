"""
AgentRelay Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}


def _setting(name: str, default):
    return os.getenv(f"AGENTRELAY_{name}", config_data.get(name, default))


# HTTP server - default to localhost only for security
HOST = _setting("HOST", "127.0.0.1")
PORT = int(_setting("PORT", "3001"))
LOG_LEVEL = str(_setting("LOG_LEVEL", "INFO")).upper()

# Root directory holding agents.json and every agent workspace
WORKSPACE_DIR = str(_setting("WORKSPACE_DIR", str(Path.cwd() / "workspace")))

# Sessions idle longer than this (seconds) are reclaimed by the sweep
SESSION_TIMEOUT = int(_setting("SESSION_TIMEOUT", "600"))
# How often the session sweep runs (seconds)
SESSION_SWEEP_INTERVAL = int(_setting("SESSION_SWEEP_INTERVAL", "60"))
# Keep-alive comment interval on the event stream (seconds)
HEARTBEAT_INTERVAL = int(_setting("HEARTBEAT_INTERVAL", "30"))

# Process bounds (seconds)
GIT_TIMEOUT = int(_setting("GIT_TIMEOUT", "120"))
COMMAND_TIMEOUT = int(_setting("COMMAND_TIMEOUT", "600"))

# AI CLI executables
CLAUDE_CODE_PATH = _setting("CLAUDE_CODE_PATH", "claude")
GEMINI_CLI_PATH = _setting("GEMINI_CLI_PATH", "gemini")

# Input guards
MAX_INPUT_SIZE = int(_setting("MAX_INPUT_SIZE", "10000"))
ALLOWED_GIT_SCHEMES = tuple(
    s.strip() for s in str(_setting("ALLOWED_GIT_SCHEMES", "http,https,git,ssh")).split(",") if s.strip()
)

# Remote client stream reconnection
RECONNECT_BASE_DELAY = float(_setting("RECONNECT_BASE_DELAY", "1.0"))
RECONNECT_MAX_DELAY = float(_setting("RECONNECT_MAX_DELAY", "30.0"))
RECONNECT_MAX_ATTEMPTS = int(_setting("RECONNECT_MAX_ATTEMPTS", "5"))

SERVER_NAME = "agentrelay"
SERVER_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "WORKSPACE_DIR": WORKSPACE_DIR,
        "SESSION_TIMEOUT": SESSION_TIMEOUT,
        "HEARTBEAT_INTERVAL": HEARTBEAT_INTERVAL,
        "GIT_TIMEOUT": GIT_TIMEOUT,
        "COMMAND_TIMEOUT": COMMAND_TIMEOUT,
    }
