"""
AgentRelay input guards

Screens prompts and repository URLs before anything is handed to git or an AI
CLI. Only clearly destructive shell idioms are blocked; prompts routinely
mention shell commands.
"""
import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from agentrelay.config import ALLOWED_GIT_SCHEMES, MAX_INPUT_SIZE
from agentrelay.errors import ForbiddenCommand, InvalidParams

logger = logging.getLogger(__name__)


FORBIDDEN_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"rm\s+-rf\s+/"),              "Recursive delete from root"),
    (re.compile(r"chmod\s+777"),               "World-writable permissions"),
    (re.compile(r"\bsudo\b"),                  "Privilege escalation"),
    (re.compile(r"\|\s*nc\s+"),                "Pipe to netcat"),
    (re.compile(r"curl\s+\S+\s*\|\s*sh"),      "Pipe download to shell"),
    (re.compile(r"\beval\s*\("),               "eval call"),
    (re.compile(r"\bexec\s*\("),               "exec call"),
]

SSH_GIT_URL = re.compile(r"^git@([\w.-]+):([\w.-]+)/([\w.-]+?)(\.git)?$")


def check_command(text: str) -> tuple[bool, Optional[str]]:
    """
    Scan a prompt for forbidden patterns.

    Returns:
        (False, None)           if the prompt is acceptable
        (True, pattern_label)   if a forbidden pattern is detected
    """
    for pattern, label in FORBIDDEN_PATTERNS:
        if pattern.search(text):
            return True, label
    return False, None


def ensure_command_allowed(text: str, max_size: int = MAX_INPUT_SIZE) -> None:
    if len(text) > max_size:
        logger.warning(f"Rejected prompt of {len(text)} chars (limit {max_size})")
        raise InvalidParams(f"Command exceeds maximum size of {max_size} characters")
    blocked, label = check_command(text)
    if blocked:
        logger.warning(f"Rejected prompt matching forbidden pattern: {label}")
        raise ForbiddenCommand(f"Command blocked: detected {label}", details={"pattern": label})


def validate_git_url(url: str, allowed_schemes=ALLOWED_GIT_SCHEMES) -> bool:
    """Accept scheme URLs with an allowed scheme, or scp-style ``git@host:owner/repo``."""
    if not isinstance(url, str) or not url.strip():
        return False
    if url.startswith("git@"):
        return bool(SSH_GIT_URL.match(url))
    parsed = urlparse(url)
    if parsed.scheme not in allowed_schemes:
        logger.warning(f"Rejected git URL with scheme {parsed.scheme!r}: {url}")
        return False
    if parsed.scheme != "file" and not parsed.netloc:
        return False
    return True


def is_within(root, path) -> bool:
    """True if ``path`` resolves to ``root`` itself or somewhere below it."""
    try:
        Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        return False
    return True
