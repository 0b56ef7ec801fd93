"""
Backfill deduplication.

Remembers which transcript usage entries have already been written to the
event log, so replaying the same transcripts adds nothing.
"""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Set

from ..storage.state_store import load_json_state, remove_file, save_json_state
from .pricing import normalize_model_name

logger = logging.getLogger(__name__)


def compute_event_id(session_id: str, timestamp: str, model_name: str) -> str:
    """Content hash identifying one usage event.

    Two calls of the same model at the same instant in the same session are
    treated as one event.
    """
    key = f"{session_id}:{timestamp}:{normalize_model_name(model_name)}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class BackfillDedup:
    """Set of processed event ids persisted as JSON."""

    def __init__(self, state_path: Path):
        self.state_path = Path(state_path)
        self._processed: Set[str] = set()
        self._last_backfill_time = datetime.now(timezone.utc).isoformat()

    def load(self) -> None:
        """Merge ids from the state file into memory.

        A missing or corrupt file leaves the in-memory state as it is.
        """
        data = load_json_state(self.state_path)
        if not isinstance(data, dict):
            return

        ids = data.get("processedIds")
        if isinstance(ids, list):
            self._processed.update(i for i in ids if isinstance(i, str))
        else:
            logger.debug("Dedup state %s has no id list", self.state_path)

        last = data.get("lastBackfillTime")
        if isinstance(last, str):
            self._last_backfill_time = last

    def save(self) -> bool:
        """Persist the id set; returns False if the write failed."""
        saved = save_json_state(self.state_path, {
            "processedIds": sorted(self._processed),
            "lastBackfillTime": self._last_backfill_time,
        })
        if not saved:
            logger.warning("Could not save backfill state to %s", self.state_path)
        return saved

    def mark_processed(self, event_id: str) -> None:
        self._processed.add(event_id)
        self._last_backfill_time = datetime.now(timezone.utc).isoformat()

    def is_processed(self, event_id: str) -> bool:
        return event_id in self._processed

    def get_stats(self) -> Dict[str, Optional[object]]:
        return {
            "total_processed": len(self._processed),
            "last_backfill_time": self._last_backfill_time,
        }

    def reset(self) -> None:
        """Forget every processed id, in memory and on disk."""
        self._processed.clear()
        self._last_backfill_time = datetime.now(timezone.utc).isoformat()
        remove_file(self.state_path)
