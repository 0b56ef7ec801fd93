"""
Session index over the event log.

Maps each session id to the line count of the log at the time the session
was first seen. The index is a performance hint only: it bounds re-scans
but is never used to decide that a record does not exist.

The file also records how many log lines the index covers. A log holding
lines the index never saw (a lost or overwritten index file) or fewer
lines than it covers (a truncated log) triggers a rebuild, so a stale file
never yields an offset past a session's first record.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .event_log import EventLog
from .state_store import load_json_state, save_json_state

logger = logging.getLogger(__name__)

INDEX_STALE_SECONDS = 5 * 60
# Extra lines scanned past offset + count to absorb index staleness
LOOKUP_SLACK = 10


@dataclass
class SessionIndexEntry:
    """Where a session starts in the log and how often it was seen."""
    offset: int
    count: int
    last_seen: str

    def to_dict(self) -> Dict[str, Any]:
        return {"offset": self.offset, "count": self.count, "lastSeen": self.last_seen}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionIndexEntry":
        return cls(
            offset=max(int(data.get("offset", 0)), 0),
            count=max(int(data.get("count", 0)), 0),
            last_seen=str(data.get("lastSeen", "")),
        )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SessionIndex:
    """Best-effort session -> log offset lookup table.

    Reads are served from an in-memory copy re-read at most every
    ``stale_after`` seconds. Updates always start from the file on disk so
    that entries written by other processes are kept.
    """

    def __init__(self, path: Path, event_log: EventLog, stale_after: float = INDEX_STALE_SECONDS):
        self.path = Path(path)
        self.event_log = event_log
        self.stale_after = stale_after
        self._sessions: Optional[Dict[str, SessionIndexEntry]] = None
        self._loaded_at = 0.0

    def _read(self) -> Tuple[Dict[str, SessionIndexEntry], int]:
        """Entries and covered line count from disk; empty if unreadable."""
        sessions: Dict[str, SessionIndexEntry] = {}
        data = load_json_state(self.path)
        if not isinstance(data, dict) or not isinstance(data.get("sessions"), dict):
            return sessions, 0

        for session_id, raw in data["sessions"].items():
            try:
                sessions[session_id] = SessionIndexEntry.from_dict(raw)
            except (AttributeError, TypeError, ValueError):
                logger.debug("Ignoring malformed index entry for %s", session_id)

        indexed_lines = data.get("indexedLines")
        if isinstance(indexed_lines, bool) or not isinstance(indexed_lines, int) or indexed_lines < 0:
            indexed_lines = 0
        return sessions, indexed_lines

    def _load(self) -> Dict[str, SessionIndexEntry]:
        now = time.monotonic()
        if self._sessions is not None and now - self._loaded_at < self.stale_after:
            return self._sessions

        self._sessions, _ = self._read()
        self._loaded_at = now
        return self._sessions

    def _save(self, sessions: Dict[str, SessionIndexEntry], indexed_lines: int) -> None:
        payload = {
            "sessions": {sid: entry.to_dict() for sid, entry in sessions.items()},
            "indexedLines": indexed_lines,
            "lastUpdated": _now_iso(),
        }
        if not save_json_state(self.path, payload):
            logger.debug("Session index write failed; continuing without it")
        self._sessions = sessions
        self._loaded_at = time.monotonic()

    def _scan(self) -> Tuple[Dict[str, SessionIndexEntry], int]:
        sessions: Dict[str, SessionIndexEntry] = {}
        seen = _now_iso()
        records, total = self.event_log.read_from(0)
        for line_number, record in records:
            entry = sessions.get(record.session_id)
            if entry is None:
                sessions[record.session_id] = SessionIndexEntry(offset=line_number, count=1, last_seen=seen)
            else:
                entry.count += 1
        return sessions, total

    def update(self, session_id: str) -> None:
        """Note one more record for ``session_id``.

        Must run before the record is appended: on the first sighting the
        current line count becomes the session's offset, and no record of
        that session can sit before it. That only holds while the index
        covers every line already in the log, so an index that does not
        is rebuilt first.
        """
        sessions, indexed_lines = self._read()
        line_count = self.event_log.line_count()
        # Writers still between their update and their append account for
        # up to LOOKUP_SLACK lines the log does not hold yet
        if indexed_lines < line_count or indexed_lines > line_count + LOOKUP_SLACK:
            logger.debug(
                "Session index covers %d of %d log lines; rebuilding", indexed_lines, line_count
            )
            sessions, indexed_lines = self._scan()

        entry = sessions.get(session_id)
        if entry is not None:
            entry.count += 1
            entry.last_seen = _now_iso()
        else:
            sessions[session_id] = SessionIndexEntry(
                offset=line_count,
                count=1,
                last_seen=_now_iso(),
            )
        self._save(sessions, max(indexed_lines, line_count) + 1)

    def get(self, session_id: str) -> Optional[SessionIndexEntry]:
        return self._load().get(session_id)

    def lookup(self, session_id: str) -> Optional[Tuple[int, int]]:
        """Candidate line range ``[start, end)`` for a session.

        Returns None when the session is not indexed; callers must then
        scan the whole log.
        """
        entry = self.get(session_id)
        if entry is None:
            return None
        return entry.offset, entry.offset + entry.count + LOOKUP_SLACK

    def rebuild(self) -> None:
        """Recompute every entry from the log, e.g. after it was rewritten."""
        sessions, indexed_lines = self._scan()
        self._save(sessions, indexed_lines)
