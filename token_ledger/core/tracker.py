"""
Session token tracking.

``TokenTracker`` keeps cumulative statistics for the current session,
appends every usage record to the event log and answers per-agent and
cross-session questions from it.
"""

import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..storage.event_log import EventLog
from ..storage.models import (
    AggregateTokenStats,
    RecordValidationError,
    SessionTokenStats,
    TokenUsageRecord,
    UsageBucket,
)
from ..storage.repository import UsageRepository
from ..storage.session_index import SessionIndex
from ..storage.state_store import StateStore, remove_file
from .pricing import ExternalAdapter, PricingSource, calculate_cost, normalize_model_name

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_session_id() -> str:
    """Return an id like ``session-1706000000000-k3j9x0a1b``."""
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session-{int(time.time() * 1000)}-{suffix}"


class TokenTracker:
    """Token usage aggregator for one session.

    Owned by the process's ``AnalyticsContext``; there is no module-level
    instance. Every public method degrades to empty results on I/O errors.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        *,
        event_log: EventLog,
        session_index: SessionIndex,
        state_store: StateStore,
        repository: UsageRepository,
        pricing: Optional[PricingSource] = None,
        report_adapter: Optional[ExternalAdapter] = None,
        skip_restore: bool = False,
    ):
        """Initialize the tracker.

        Args:
            session_id: Session to track (generated if omitted)
            event_log: Shared append-only log
            session_index: Offset hints into the log
            state_store: Where session snapshots are persisted
            repository: Scans used by cross-session statistics
            pricing: Pricing source for cost figures
            report_adapter: Live module able to report model-level totals
            skip_restore: Start empty even if a snapshot exists
        """
        self.session_id = session_id or generate_session_id()
        self.event_log = event_log
        self.session_index = session_index
        self.state_store = state_store
        self.repository = repository
        self.pricing = pricing
        self.report_adapter = report_adapter

        restored = None if skip_restore else self.state_store.read_session_stats(self.session_id)
        self._stats = restored or self._empty_stats(self.session_id)

    @staticmethod
    def _empty_stats(session_id: str) -> SessionTokenStats:
        now = _now_iso()
        return SessionTokenStats(session_id=session_id, start_time=now, last_update=now)

    def _cost(self, record: TokenUsageRecord) -> float:
        return calculate_cost(record.model_name, record.usage, self.pricing).total_cost

    def record_token_usage(
        self,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        cache_creation_tokens: int = 0,
        cache_read_tokens: int = 0,
        agent_name: Optional[str] = None,
        is_estimated: bool = False,
    ) -> Optional[TokenUsageRecord]:
        """Record one model call for the current session.

        The model name is normalized and the record is stamped with the
        session id and the current UTC time before it is appended.

        Returns:
            The appended record, or None if the counts are invalid or the
            log could not be written
        """
        try:
            record = TokenUsageRecord(
                timestamp=_now_iso(),
                session_id=self.session_id,
                model_name=normalize_model_name(model_name),
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cache_creation_tokens=cache_creation_tokens,
                cache_read_tokens=cache_read_tokens,
                agent_name=agent_name or None,
                is_estimated=bool(is_estimated),
            )
        except RecordValidationError as e:
            logger.warning("Rejected token usage for %s: %s", self.session_id, e)
            return None
        return self.ingest(record)

    def ingest(self, record: TokenUsageRecord) -> Optional[TokenUsageRecord]:
        """Append an already stamped record.

        Records of other sessions (e.g. backfilled history) only go to the
        log; records of this session also update and persist the stats.
        """
        # Index first: a new session's offset must not include its own record
        self.session_index.update(record.session_id)
        try:
            self.event_log.append(record)
        except OSError as e:
            logger.warning("Could not append token usage to %s: %s", self.event_log.path, e)
            return None

        if record.session_id == self.session_id:
            self._stats.add(record, self._cost(record))
            if not self.state_store.write_session_stats(self._stats):
                logger.debug("Session snapshot for %s not persisted", self.session_id)
        return record

    def get_session_stats(self) -> SessionTokenStats:
        return self._stats.copy()

    def load_session_stats(self, session_id: Optional[str] = None) -> Optional[SessionTokenStats]:
        """Load statistics for a session.

        Prefers the persisted snapshot when it belongs to ``session_id``;
        otherwise rebuilds from the event log.

        Returns:
            The statistics, or None if the log holds no record of the session
        """
        sid = session_id or self.session_id

        snapshot = self.state_store.read_session_stats(sid)
        if snapshot is not None:
            if sid == self.session_id:
                self._stats = snapshot
            return snapshot.copy()

        rebuilt = self.rebuild_stats_from_log(sid)
        if rebuilt is not None and sid == self.session_id:
            self._stats = rebuilt
            return rebuilt.copy()
        return rebuilt

    def _session_records(self, session_id: str) -> List[TokenUsageRecord]:
        entry = self.session_index.get(session_id)
        if entry is None:
            records = self.event_log.read_all()
            return [r for r in records if r.session_id == session_id]

        start, end = self.session_index.lookup(session_id)
        records = [r for r in self.event_log.read_range(start, end) if r.session_id == session_id]
        if len(records) >= entry.count:
            return records

        # Interleaved sessions pushed records past the hinted range; the
        # offset is still a valid lower bound
        found, _ = self.event_log.read_from(start)
        return [r for _, r in found if r.session_id == session_id]

    def rebuild_stats_from_log(self, session_id: str) -> Optional[SessionTokenStats]:
        """Replay the event log for one session."""
        records = self._session_records(session_id)
        if not records:
            return None

        stats = self._empty_stats(session_id)
        stats.start_time = records[0].timestamp
        for record in records:
            stats.add(record, self._cost(record))
        return stats

    def get_top_agents(self, limit: int = 5) -> List[Dict[str, object]]:
        """Agents of the current session ranked by cost.

        Ties keep first-seen order.

        Returns:
            List of ``{"agent", "tokens", "cost"}`` dicts, at most ``limit`` long
        """
        ranked = []
        for agent, records in self._stats.by_agent.items():
            ranked.append({
                "agent": agent,
                "tokens": sum(r.total_tokens for r in records),
                "cost": sum(self._cost(r) for r in records),
            })
        ranked.sort(key=lambda a: a["cost"], reverse=True)
        return ranked[:limit]

    def get_top_agents_all_sessions(self, limit: int = 5) -> List[Dict[str, object]]:
        """Agents across every logged session ranked by cost."""
        stats = self.get_all_stats()
        ranked = [
            {"agent": agent, "tokens": bucket.tokens, "cost": bucket.cost}
            for agent, bucket in stats.by_agent.items()
        ]
        ranked.sort(key=lambda a: a["cost"], reverse=True)
        return ranked[:limit]

    def get_all_stats(self) -> AggregateTokenStats:
        """Statistics across every session.

        Uses the live module's report when one is available, with agent
        attribution taken from the local log since the module has no notion
        of agents. Falls back to a full local scan.
        """
        if self.report_adapter is not None and self.report_adapter.can_report:
            try:
                return self._get_all_stats_via_report()
            except Exception as e:
                logger.warning("Live usage report failed, scanning local log: %s", e)
        return self.repository.aggregate()

    def _get_all_stats_via_report(self) -> AggregateTokenStats:
        report = self.report_adapter.get_report()
        local = self.repository.aggregate()

        return AggregateTokenStats(
            total_input_tokens=report.total_input_tokens,
            total_output_tokens=report.total_output_tokens,
            total_cache_creation=report.total_cache_creation_tokens,
            total_cache_read=report.total_cache_read_tokens,
            total_cost=report.total_cost,
            by_agent=local.by_agent,
            by_model={
                model: UsageBucket(tokens=int(values["tokens"]), cost=float(values["cost"]))
                for model, values in report.by_model.items()
            },
            session_count=local.session_count or 1,
            entry_count=report.total_entries,
            first_entry=local.first_entry,
            last_entry=local.last_entry,
        )

    def cleanup_old_logs(self, retention_days: int = 30) -> int:
        """Remove records older than ``retention_days`` from the event log.

        The rewrite shifts line offsets, so the session index is rebuilt
        and every cached summary is dropped.

        Returns:
            Number of records removed
        """
        if not self.event_log.exists():
            return 0
        removed = self.event_log.cleanup_old_logs(retention_days)
        self.session_index.rebuild()
        for summary_file in self.state_store.paths.summary_files():
            remove_file(summary_file)
        return removed
