"""
Transcript backfill.

Reconstructs usage records from assistant transcripts (one JSON entry per
line) and appends the ones not seen before to the event log. Replaying the
same transcripts is a no-op thanks to ``BackfillDedup``.

Pipeline per file:
1. Parse entries line by line, counting unparseable lines as errors
2. Remember Task tool spawns so sub-agent progress entries can be attributed
3. Extract usage, skip already processed event ids
4. Append through the tracker, keeping each record's own session and time
"""

import json
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from ..storage.models import TokenUsageRecord
from .dedup import BackfillDedup, compute_event_id
from .pricing import calculate_cost, normalize_model_name
from .tracker import TokenTracker

logger = logging.getLogger(__name__)

SYNTHETIC_MODEL = "<synthetic>"
TRANSCRIPT_SUFFIX = ".jsonl"
SESSION_FILE_PATTERN = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$")


@dataclass(frozen=True)
class TaskSpawn:
    """A Task tool call that started a sub-agent."""
    tool_use_id: str
    agent_type: str


@dataclass(frozen=True)
class ExtractedUsage:
    record: TokenUsageRecord
    entry_id: str
    source_file: str


@dataclass
class BackfillResult:
    """Counters of one backfill run."""
    files_processed: int = 0
    entries_added: int = 0
    duplicates_skipped: int = 0
    errors_encountered: int = 0
    total_cost_discovered: float = 0.0
    time_elapsed: float = 0.0


def extract_task_spawns(entry: Dict[str, Any]) -> List[TaskSpawn]:
    """Task tool calls made by an assistant entry."""
    if entry.get("type") != "assistant":
        return []
    message = entry.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return []

    spawns = []
    for block in content:
        if not isinstance(block, dict):
            continue
        if block.get("type") != "tool_use" or block.get("name") != "Task":
            continue
        tool_input = block.get("input")
        agent_type = tool_input.get("subagent_type") if isinstance(tool_input, dict) else None
        if block.get("id") and agent_type:
            spawns.append(TaskSpawn(tool_use_id=block["id"], agent_type=agent_type))
    return spawns


def _detect_agent_name(entry: Dict[str, Any], agent_lookup: Optional[Dict[str, str]]) -> Optional[str]:
    # Assistant entries are billed to the main session, even when they spawn a Task
    if entry.get("type") != "progress":
        return None

    parent_id = entry.get("parentToolUseID")
    if parent_id and agent_lookup is not None:
        return agent_lookup.get(parent_id)

    agent_id = entry.get("agentId")
    if isinstance(agent_id, str) and ":" in agent_id:
        return agent_id
    return None


def _usage_and_model(entry: Dict[str, Any]):
    entry_type = entry.get("type")
    if entry_type == "assistant":
        message = entry.get("message")
    elif entry_type == "progress":
        data = entry.get("data")
        outer = data.get("message") if isinstance(data, dict) else None
        message = outer.get("message") if isinstance(outer, dict) else None
    else:
        return None, None

    if not isinstance(message, dict) or not isinstance(message.get("usage"), dict):
        return None, None
    return message["usage"], message.get("model")


def extract_token_usage(
    entry: Dict[str, Any],
    session_id: Optional[str],
    source_file: str,
    agent_lookup: Optional[Dict[str, str]] = None,
) -> Optional[ExtractedUsage]:
    """Turn one transcript entry into a usage record.

    Args:
        entry: Decoded transcript line
        session_id: Session the transcript belongs to (falls back to the
            entry's own ``sessionId``)
        source_file: Transcript path, kept for reporting
        agent_lookup: Task tool use id -> sub-agent type

    Returns:
        ExtractedUsage, or None if the entry carries no billable usage

    Raises:
        RecordValidationError: If the usage block holds malformed counts
    """
    usage, model = _usage_and_model(entry)
    if usage is None or not model or model == SYNTHETIC_MODEL:
        return None

    record = TokenUsageRecord.from_dict({
        "timestamp": entry.get("timestamp"),
        "sessionId": session_id or entry.get("sessionId"),
        "agentName": _detect_agent_name(entry, agent_lookup),
        "modelName": normalize_model_name(model),
        "inputTokens": usage.get("input_tokens") or 0,
        "outputTokens": usage.get("output_tokens") or 0,
        "cacheCreationTokens": usage.get("cache_creation_input_tokens") or 0,
        "cacheReadTokens": usage.get("cache_read_input_tokens") or 0,
    })
    entry_id = compute_event_id(record.session_id, record.timestamp, record.model_name)
    return ExtractedUsage(record=record, entry_id=entry_id, source_file=source_file)


def session_id_from_path(path: Path) -> str:
    """Transcripts are named ``<session id>.jsonl``."""
    return Path(path).stem


def scan_transcripts(root: Path) -> List[Path]:
    """Find transcript files under ``root``.

    A file is returned as is. A directory is searched recursively for
    ``<uuid>.jsonl`` files. A missing path yields nothing.
    """
    root = Path(root).expanduser()
    if root.is_file():
        return [root]
    if not root.is_dir():
        logger.debug("Transcript path %s does not exist", root)
        return []
    return sorted(
        p for p in root.rglob(f"*{TRANSCRIPT_SUFFIX}")
        if p.is_file() and SESSION_FILE_PATTERN.match(p.stem)
    )


def _iter_entries(path: Path, result: BackfillResult) -> Iterator[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for line_number, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as e:
                result.errors_encountered += 1
                logger.debug("Parse error in %s:%d: %s", path, line_number, e)
                continue
            if isinstance(entry, dict):
                yield entry


class BackfillEngine:
    """Replays transcripts into the event log exactly once."""

    def __init__(self, tracker: TokenTracker, dedup: BackfillDedup):
        self.tracker = tracker
        self.dedup = dedup

    def run(self, paths: Iterable[Path], dry_run: bool = False) -> BackfillResult:
        """Backfill every transcript found under ``paths``.

        Args:
            paths: Transcript files or directories containing them
            dry_run: Count what would be added without writing anything

        Returns:
            BackfillResult with per-run counters
        """
        started = time.monotonic()
        result = BackfillResult()
        self.dedup.load()

        for root in paths:
            for transcript in scan_transcripts(root):
                try:
                    self._process_transcript(transcript, result, dry_run)
                except OSError as e:
                    result.errors_encountered += 1
                    logger.warning("Error processing %s: %s", transcript, e)
                result.files_processed += 1

        if not dry_run:
            self.dedup.save()

        result.time_elapsed = time.monotonic() - started
        logger.info(
            "Backfill %s: %d files, %d added, %d duplicates, %d errors",
            "dry run" if dry_run else "done",
            result.files_processed,
            result.entries_added,
            result.duplicates_skipped,
            result.errors_encountered,
        )
        return result

    def _process_transcript(self, path: Path, result: BackfillResult, dry_run: bool) -> None:
        session_id = session_id_from_path(path)
        agent_lookup: Dict[str, str] = {}
        logger.debug("Backfilling %s", path)

        for entry in _iter_entries(path, result):
            # Spawns first, so progress entries can find their parent
            for spawn in extract_task_spawns(entry):
                agent_lookup[spawn.tool_use_id] = spawn.agent_type

            try:
                extracted = extract_token_usage(entry, session_id, str(path), agent_lookup)
            except ValueError as e:
                result.errors_encountered += 1
                logger.debug("Skipping malformed usage in %s: %s", path, e)
                continue
            if extracted is None:
                continue

            if self.dedup.is_processed(extracted.entry_id):
                result.duplicates_skipped += 1
                continue

            if not dry_run and self.tracker.ingest(extracted.record) is None:
                result.errors_encountered += 1
                continue

            record = extracted.record
            result.total_cost_discovered += calculate_cost(
                record.model_name, record.usage, self.tracker.pricing
            ).total_cost
            self.dedup.mark_processed(extracted.entry_id)
            if not dry_run:
                # Persist before the next append so a crash cannot replay this entry
                self.dedup.save()
            result.entries_added += 1
