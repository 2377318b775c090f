"""
Agent catalog persistence.

The catalog is one JSON file per workspace root holding an array of agent
records. It is rewritten wholesale on every mutation; writes go to a temp file
that is then renamed over the original, so a crash never leaves half a file.
"""
import asyncio
import json
import logging
import os
from pathlib import Path

from agentrelay.db.models import Agent

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "agents.json"


class AgentCatalog:
    """File-backed list of agent records."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.path = self.root / CATALOG_FILENAME
        # Single writer: snapshots are taken and written under this lock so the
        # last write on disk always reflects the latest in-memory state.
        self._lock = asyncio.Lock()

    def load(self) -> list[Agent]:
        """Read every record, creating an empty catalog if none exists yet."""
        self.root.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write_text("[]")
            logger.info(f"Created empty agent catalog at {self.path}")
            return []
        raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
        agents = []
        for record in raw:
            try:
                agents.append(Agent.from_record(record))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed catalog record {record!r}: {e}")
        logger.info(f"Loaded {len(agents)} agent(s) from {self.path}")
        return agents

    async def save(self, snapshot) -> None:
        """
        Persist the agents returned by ``snapshot()``.

        ``snapshot`` is a callable evaluated inside the write lock, so two
        overlapping saves can never write an older view after a newer one.
        """
        async with self._lock:
            records = [a.to_record() for a in snapshot()]
            text = json.dumps(records, indent=2)
            await asyncio.to_thread(self._write_text, text)

    def _write_text(self, text: str) -> None:
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, self.path)
