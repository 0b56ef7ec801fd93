"""
Analytics summary cache.

Per-session materialized totals with mtime-based freshness. A summary
remembers how many log lines it has folded in, so a stale summary is
brought up to date by reading only the lines appended since.

Strategy for ``load_analytics_fast``:
1. Summary file exists and its mtime >= log mtime -> return it as is
2. Otherwise fold log lines from ``last_log_offset`` onward and persist
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..storage.event_log import EventLog
from ..storage.state_store import StatePaths, file_mtime, load_json_state, remove_file, save_json_state
from .pricing import PricingSource, calculate_cost

logger = logging.getLogger(__name__)

TOP_AGENTS_LIMIT = 10


@dataclass
class SummaryTotals:
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    estimated_cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
            "estimatedCost": self.estimated_cost,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummaryTotals":
        return cls(
            input_tokens=int(data.get("inputTokens", 0)),
            output_tokens=int(data.get("outputTokens", 0)),
            cache_creation_tokens=int(data.get("cacheCreationTokens", 0)),
            cache_read_tokens=int(data.get("cacheReadTokens", 0)),
            estimated_cost=float(data.get("estimatedCost", 0.0)),
        )


@dataclass
class AgentSummary:
    agent: str
    cost: float = 0.0
    tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"agent": self.agent, "cost": self.cost, "tokens": self.tokens}


@dataclass
class AnalyticsSummary:
    """Materialized per-session analytics.

    ``last_log_offset`` is the number of log lines already folded into
    ``totals``.
    """
    session_id: str
    last_updated: str
    last_log_offset: int = 0
    totals: SummaryTotals = field(default_factory=SummaryTotals)
    top_agents: List[AgentSummary] = field(default_factory=list)
    cache_hit_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "lastUpdated": self.last_updated,
            "lastLogOffset": self.last_log_offset,
            "totals": self.totals.to_dict(),
            "topAgents": [a.to_dict() for a in self.top_agents],
            "cacheHitRate": self.cache_hit_rate,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalyticsSummary":
        """Restore a persisted summary.

        Raises:
            ValueError: If the data is not a summary
        """
        if not isinstance(data, dict) or not isinstance(data.get("sessionId"), str):
            raise ValueError("Not an analytics summary")
        try:
            return cls(
                session_id=data["sessionId"],
                last_updated=str(data.get("lastUpdated", "")),
                last_log_offset=max(int(data.get("lastLogOffset", 0)), 0),
                totals=SummaryTotals.from_dict(data.get("totals") or {}),
                top_agents=[
                    AgentSummary(agent=str(a["agent"]), cost=float(a.get("cost", 0.0)), tokens=int(a.get("tokens", 0)))
                    for a in data.get("topAgents") or []
                ],
                cache_hit_rate=float(data.get("cacheHitRate", 0.0)),
            )
        except (AttributeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed analytics summary: {e}")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_empty_summary(session_id: str) -> AnalyticsSummary:
    """Initialize empty summary for a new session."""
    return AnalyticsSummary(session_id=session_id, last_updated=_now_iso())


def calculate_cache_hit_rate(totals: SummaryTotals) -> float:
    """Cache reads as a percentage of all input-side tokens."""
    total = totals.input_tokens + totals.cache_creation_tokens + totals.cache_read_tokens
    if total == 0:
        return 0.0
    return totals.cache_read_tokens / total * 100


def update_top_agents(
    summary: AnalyticsSummary,
    agent_name: str,
    cost: float,
    tokens: int,
    limit: int = TOP_AGENTS_LIMIT,
) -> None:
    """Add cost and tokens to an agent, then keep the ``limit`` most expensive."""
    for agent in summary.top_agents:
        if agent.agent == agent_name:
            break
    else:
        agent = AgentSummary(agent=agent_name)
        summary.top_agents.append(agent)

    agent.cost += cost
    agent.tokens += tokens

    summary.top_agents.sort(key=lambda a: a.cost, reverse=True)
    del summary.top_agents[limit:]


class SummaryCache:
    """Loads, refreshes and persists ``AnalyticsSummary`` files."""

    def __init__(
        self,
        paths: StatePaths,
        event_log: EventLog,
        pricing: Optional[PricingSource] = None,
        top_agents_limit: int = TOP_AGENTS_LIMIT,
    ):
        self.paths = paths
        self.event_log = event_log
        self.pricing = pricing
        self.top_agents_limit = top_agents_limit

    def _read_summary(self, session_id: str) -> Optional[AnalyticsSummary]:
        data = load_json_state(self.paths.summary_file(session_id))
        if data is None:
            return None
        try:
            summary = AnalyticsSummary.from_dict(data)
        except ValueError as e:
            logger.debug("Discarding cached summary for %s: %s", session_id, e)
            return None
        if summary.session_id != session_id:
            return None
        return summary

    def load_analytics_fast(self, session_id: str) -> AnalyticsSummary:
        """Load the summary for a session, rebuilding only when stale.

        A cached summary is fresh while its file is at least as new as the
        event log. Never raises; an empty summary is returned when nothing
        can be read.
        """
        try:
            log_mtime = self.event_log.mtime()
            if log_mtime is None:
                return create_empty_summary(session_id)

            summary_mtime = file_mtime(self.paths.summary_file(session_id))
            if summary_mtime is not None and summary_mtime >= log_mtime:
                cached = self._read_summary(session_id)
                if cached is not None:
                    return cached

            return self.rebuild_summary_incremental(session_id)
        except Exception as e:
            logger.warning("Could not load analytics summary for %s: %s", session_id, e)
            return create_empty_summary(session_id)

    def rebuild_summary_incremental(self, session_id: str) -> AnalyticsSummary:
        """Fold log lines added since the last rebuild into the summary.

        A previous summary whose offset lies beyond the end of the log
        (the log was rewritten) is discarded and the fold starts over.
        """
        summary = self._read_summary(session_id) or create_empty_summary(session_id)

        records, line_total = self.event_log.read_from(summary.last_log_offset)
        if line_total < summary.last_log_offset:
            logger.info("Event log shrank below summary offset for %s, rebuilding", session_id)
            summary = create_empty_summary(session_id)
            records, line_total = self.event_log.read_from(0)

        for _, record in records:
            if record.session_id != session_id:
                continue

            totals = summary.totals
            totals.input_tokens += record.input_tokens
            totals.output_tokens += record.output_tokens
            totals.cache_creation_tokens += record.cache_creation_tokens
            totals.cache_read_tokens += record.cache_read_tokens

            cost = calculate_cost(record.model_name, record.usage, self.pricing).total_cost
            totals.estimated_cost += cost

            update_top_agents(summary, record.agent_key, cost, record.total_tokens, self.top_agents_limit)

        summary.last_updated = _now_iso()
        summary.last_log_offset = line_total
        summary.cache_hit_rate = calculate_cache_hit_rate(summary.totals)

        if not save_json_state(self.paths.summary_file(session_id), summary.to_dict()):
            logger.debug("Analytics summary for %s not persisted", session_id)
        return summary

    def rebuild_analytics_summary(self, session_id: str) -> AnalyticsSummary:
        """Force rebuild summary from scratch (ignore cache)."""
        remove_file(self.paths.summary_file(session_id))
        return self.rebuild_summary_incremental(session_id)
