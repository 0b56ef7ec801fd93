"""
State directory management.

Resolves the files that make up the analytics state, provides portable
file locking and atomic JSON persistence for derived state.
"""

import json
import logging
import os
import re
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, IO, Iterator, List, Optional

from .models import RecordValidationError, SessionTokenStats

logger = logging.getLogger(__name__)

# Writers of the event log serialize on one lock file. Windows has no flock,
# so the first byte of the lock file is locked instead.
if sys.platform == "win32":
    import msvcrt

    def _acquire(handle: IO) -> None:
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)

    def _release(handle: IO) -> None:
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
else:
    import fcntl

    def _acquire(handle: IO) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)

    def _release(handle: IO) -> None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_file_component(value: str) -> str:
    """Make a session id usable inside a file name."""
    return _UNSAFE_CHARS.sub("_", value) or "_"


@dataclass(frozen=True)
class StatePaths:
    """Locations of every file kept in the state directory."""
    state_dir: Path

    @property
    def log_file(self) -> Path:
        return self.state_dir / "token-tracking.jsonl"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "token-tracking.jsonl.lock"

    @property
    def index_file(self) -> Path:
        return self.state_dir / "token-tracking-index.json"

    @property
    def dedup_file(self) -> Path:
        return self.state_dir / "backfill-state.json"

    def session_stats_file(self, session_id: str) -> Path:
        return self.state_dir / f"session-stats-{safe_file_component(session_id)}.json"

    def summary_file(self, session_id: str) -> Path:
        return self.state_dir / f"analytics-summary-{safe_file_component(session_id)}.json"

    def summary_files(self) -> List[Path]:
        if not self.state_dir.is_dir():
            return []
        return sorted(self.state_dir.glob("analytics-summary-*.json"))


@contextmanager
def locked(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``lock_path`` for the block.

    Raises:
        OSError: If the lock file cannot be created or locked
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as handle:
        _acquire(handle)
        try:
            yield
        finally:
            _release(handle)


def load_json_state(path: Path, default_factory: Optional[Callable[[], Any]] = None) -> Any:
    """Load JSON state from file, returning default on any error.

    Args:
        path: Path to the JSON state file
        default_factory: Callable returning the default value.
                         If None, returns None.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        pass
    except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
        logger.debug("Ignoring unreadable state file %s: %s", path, e)
    return default_factory() if default_factory else None


def save_json_state(path: Path, state: Any) -> bool:
    """Atomically persist state - write to temp file, then rename.

    If the process crashes mid-write, the original file is untouched.

    Returns:
        True on success, False on failure (non-fatal)
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    except OSError as e:
        logger.debug("Cannot write state file %s: %s", path, e)
        return False

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
        os.replace(tmp_path, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.debug("Failed to write state file %s: %s", path, e)
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        return False


def remove_file(path: Path) -> bool:
    """Delete ``path`` if present. Returns True if a file was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.debug("Failed to remove %s: %s", path, e)
        return False


def file_mtime(path: Path) -> Optional[int]:
    """Modification time in nanoseconds, or None if the file is missing."""
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


class StateStore:
    """Per-session snapshots of ``SessionTokenStats``.

    Snapshots are a best-effort cache: failed writes are reported by the
    return value and unreadable snapshots read as missing.
    """

    def __init__(self, paths: StatePaths):
        self.paths = paths

    def read_session_stats(self, session_id: str) -> Optional[SessionTokenStats]:
        """Return the snapshot for ``session_id`` if one exists and matches."""
        data: Optional[Dict[str, Any]] = load_json_state(self.paths.session_stats_file(session_id))
        if data is None:
            return None
        try:
            stats = SessionTokenStats.from_dict(data)
        except RecordValidationError as e:
            logger.debug("Discarding malformed snapshot for %s: %s", session_id, e)
            return None
        if stats.session_id != session_id:
            return None
        return stats

    def write_session_stats(self, stats: SessionTokenStats) -> bool:
        return save_json_state(self.paths.session_stats_file(stats.session_id), stats.to_dict())

    def remove_session_stats(self, session_id: str) -> bool:
        return remove_file(self.paths.session_stats_file(session_id))
