"""
Append-only event log of token usage records.

One JSON object per line. The log is the only source of truth; every other
piece of state is derived from it and can be rebuilt.

Offsets are counts of complete, newline-terminated lines. A trailing line
without a newline is a write still in progress: it is not returned and not
counted until its newline lands.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

from .models import RecordValidationError, TokenUsageRecord
from .state_store import file_mtime, locked

logger = logging.getLogger(__name__)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC.

    Raises:
        ValueError: If the value is not ISO-8601
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_line(line: str) -> Optional[TokenUsageRecord]:
    """Decode one log line, or None if it is blank, corrupt or non-conforming."""
    line = line.strip()
    if not line:
        return None
    try:
        return TokenUsageRecord.from_dict(json.loads(line))
    except (json.JSONDecodeError, RecordValidationError) as e:
        logger.debug("Skipping malformed log line: %s", e)
        return None


class EventLog:
    """Line-delimited JSON store of ``TokenUsageRecord``s.

    Appends from several processes are serialized through an advisory lock
    file and land as one ``write`` each, so lines never interleave. Readers
    take no lock and see whatever is complete at the time of reading.
    """

    def __init__(self, path: Path, lock_path: Optional[Path] = None):
        """Initialize the log.

        Args:
            path: Path to the JSONL file (created on first append)
            lock_path: Advisory lock file shared by every writer
        """
        self.path = Path(path)
        self.lock_path = Path(lock_path) if lock_path else self.path.with_name(self.path.name + ".lock")

    def exists(self) -> bool:
        return self.path.is_file()

    def mtime(self) -> Optional[int]:
        """Modification time in nanoseconds, None if the log does not exist."""
        return file_mtime(self.path)

    def append(self, record: TokenUsageRecord) -> None:
        """Append one record as a single JSON line.

        Creates the parent directory and the file if absent.

        Raises:
            OSError: If the line could not be written
        """
        data = (json.dumps(record.to_dict()) + "\n").encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with locked(self.lock_path):
            fd = os.open(str(self.path), os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
            try:
                os.write(fd, data)
            finally:
                os.close(fd)

    def _complete_lines(self) -> Iterator[str]:
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    if not line.endswith("\n"):
                        break
                    yield line
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("Cannot read event log %s: %s", self.path, e)
            return

    def iter_lines(self, offset: int = 0) -> Iterator[Tuple[int, str]]:
        """Yield ``(line_number, text)`` for complete lines from ``offset`` on.

        A missing or unreadable file yields nothing.
        """
        for line_number, line in enumerate(self._complete_lines()):
            if line_number >= offset:
                yield line_number, line

    def line_count(self) -> int:
        """Number of complete lines currently in the log."""
        return sum(1 for _ in self._complete_lines())

    def read_all(self) -> List[TokenUsageRecord]:
        """Read every valid record, skipping corrupt lines."""
        records, _ = self.read_from(0)
        return [record for _, record in records]

    def read_from(self, offset: int) -> Tuple[List[Tuple[int, TokenUsageRecord]], int]:
        """Read valid records from line ``offset`` to the end.

        Args:
            offset: Number of leading lines to skip

        Returns:
            Tuple of (list of (line_number, record), number of complete
            lines in the log). A line count below ``offset`` means the log
            was rewritten since the offset was taken.
        """
        records: List[Tuple[int, TokenUsageRecord]] = []
        total = 0
        for line_number, line in enumerate(self._complete_lines()):
            total = line_number + 1
            if line_number < offset:
                continue
            record = parse_line(line)
            if record is not None:
                records.append((line_number, record))
        return records, total

    def read_range(self, start: int, end: int) -> List[TokenUsageRecord]:
        """Read valid records on lines ``[start, end)``."""
        records = []
        for line_number, line in self.iter_lines(start):
            if line_number >= end:
                break
            record = parse_line(line)
            if record is not None:
                records.append(record)
        return records

    def cleanup_old_logs(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Drop records older than ``retention_days``.

        The only operation that rewrites the log. It holds the writers' lock
        for the whole rewrite and swaps the new file in with ``os.replace``,
        so appends from cooperating processes are never lost. Corrupt lines
        and a trailing partial line are discarded without being counted.

        Args:
            retention_days: Records older than this many days are removed
            now: Reference time (defaults to the current UTC time)

        Returns:
            Number of records removed (0 if the log is missing or the rewrite failed)
        """
        if not self.exists():
            return 0

        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=retention_days)
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)

        try:
            with locked(self.lock_path):
                kept: List[str] = []
                removed = 0
                for _, line in self.iter_lines():
                    record = parse_line(line)
                    if record is None:
                        continue
                    try:
                        recorded_at = parse_timestamp(record.timestamp)
                    except ValueError:
                        logger.debug("Dropping record with invalid timestamp %r", record.timestamp)
                        continue
                    if recorded_at >= cutoff:
                        kept.append(line)
                    else:
                        removed += 1

                fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as f:
                        f.writelines(kept)
                    os.replace(tmp_path, self.path)
                except OSError:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass
                    raise
        except OSError as e:
            logger.warning("Retention cleanup of %s failed: %s", self.path, e)
            return 0

        logger.info("Removed %d records older than %d days from %s", removed, retention_days, self.path)
        return removed
