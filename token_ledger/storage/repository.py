"""
Repository pattern for data access.

Query and aggregation scans over the event log.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.pricing import PricingSource, calculate_cost
from .event_log import EventLog, parse_timestamp
from .models import AggregateTokenStats, CostReport, TokenUsageRecord, UsageBucket, UsagePatterns

logger = logging.getLogger(__name__)

# Look-back window of each cost report period
REPORT_PERIODS = {"daily": 1, "weekly": 7, "monthly": 30}
PEAK_HOURS_LIMIT = 3
EXPENSIVE_AGENTS_LIMIT = 5


def _within(record: TokenUsageRecord, cutoff: Optional[datetime]) -> bool:
    if cutoff is None:
        return True
    try:
        return parse_timestamp(record.timestamp) >= cutoff
    except ValueError:
        return False


class UsageRepository:
    """Repository for reading and aggregating token usage records.

    Every method scans the event log as it is now; a missing or unreadable
    log behaves like an empty one.
    """

    def __init__(self, event_log: EventLog, pricing: Optional[PricingSource] = None):
        """Initialize the repository.

        Args:
            event_log: Log to read from
            pricing: Pricing source for cost figures
        """
        self.event_log = event_log
        self.pricing = pricing

    def record_cost(self, record: TokenUsageRecord) -> float:
        return calculate_cost(record.model_name, record.usage, self.pricing).total_cost

    def get_recent_events(
        self,
        session_id: Optional[str] = None,
        agent: Optional[str] = None,
        model: Optional[str] = None,
        days: Optional[int] = None,
        limit: Optional[int] = 1000
    ) -> List[TokenUsageRecord]:
        """Get recent usage records with optional filtering.

        Args:
            session_id: Optional filter for a specific session
            agent: Optional filter for an agent key (``(main session)`` included)
            model: Optional filter for a specific (normalized) model
            days: Optional number of days to look back
            limit: Maximum number of records to return (None for all)

        Returns:
            List of records ordered by timestamp (newest first)
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days) if days is not None else None
        matches = [
            record for record in self.event_log.read_all()
            if (session_id is None or record.session_id == session_id)
            and (agent is None or record.agent_key == agent)
            and (model is None or record.model_name == model)
            and _within(record, cutoff)
        ]
        matches.sort(key=lambda r: r.timestamp, reverse=True)
        return matches if limit is None else matches[:limit]

    def get_usage_stats(
        self,
        session_id: Optional[str] = None,
        model: Optional[str] = None,
        days: int = 30
    ) -> Dict[str, float]:
        """Get usage statistics for the specified time period.

        Args:
            session_id: Optional filter for a specific session
            model: Optional filter for a specific model
            days: Number of days to include in the statistics

        Returns:
            Dictionary containing usage statistics
        """
        records = self.get_recent_events(session_id=session_id, model=model, days=days, limit=None)
        total_cost = sum(self.record_cost(r) for r in records)
        return {
            "total_requests": len(records),
            "total_cost": total_cost,
            "avg_cost": total_cost / len(records) if records else 0.0,
            "total_tokens": sum(r.total_tokens for r in records),
        }

    def aggregate(self, records: Optional[Iterable[TokenUsageRecord]] = None) -> AggregateTokenStats:
        """Fold records (default: the whole log) into cross-session totals."""
        stats = AggregateTokenStats()
        sessions = set()

        for record in self.event_log.read_all() if records is None else records:
            stats.entry_count += 1
            sessions.add(record.session_id)
            if stats.first_entry is None or record.timestamp < stats.first_entry:
                stats.first_entry = record.timestamp
            if stats.last_entry is None or record.timestamp > stats.last_entry:
                stats.last_entry = record.timestamp

            stats.total_input_tokens += record.input_tokens
            stats.total_output_tokens += record.output_tokens
            stats.total_cache_creation += record.cache_creation_tokens
            stats.total_cache_read += record.cache_read_tokens

            cost = self.record_cost(record)
            stats.total_cost += cost

            agent = stats.by_agent.setdefault(record.agent_key, UsageBucket())
            agent.tokens += record.total_tokens
            agent.cost += cost

            model = stats.by_model.setdefault(record.model_name, UsageBucket())
            model.tokens += record.total_tokens
            model.cost += cost

        stats.session_count = len(sessions)
        return stats

    def get_cost_report(self, period: str = "daily", now: Optional[datetime] = None) -> CostReport:
        """Cost of the last day, week or month.

        Args:
            period: One of ``daily``, ``weekly`` or ``monthly``
            now: End of the reporting range (defaults to the current time)

        Returns:
            CostReport with totals per agent, model and UTC day

        Raises:
            ValueError: If the period is unknown
        """
        if period not in REPORT_PERIODS:
            raise ValueError(f"Unknown report period {period!r}; expected one of {', '.join(REPORT_PERIODS)}")

        end = now or datetime.now(timezone.utc)
        start = end - timedelta(days=REPORT_PERIODS[period])
        report = CostReport(period=period, start=start.isoformat(), end=end.isoformat())

        for record in self.event_log.read_all():
            try:
                timestamp = parse_timestamp(record.timestamp)
            except ValueError:
                continue
            if timestamp < start or timestamp > end:
                continue

            cost = self.record_cost(record)
            report.total_cost += cost
            if record.agent_name:
                report.by_agent[record.agent_name] = report.by_agent.get(record.agent_name, 0.0) + cost
            report.by_model[record.model_name] = report.by_model.get(record.model_name, 0.0) + cost
            day = timestamp.astimezone(timezone.utc).date().isoformat()
            report.by_day[day] = report.by_day.get(day, 0.0) + cost

        return report

    def get_usage_patterns(self) -> UsagePatterns:
        """Busiest hours of the day and the most expensive agents.

        Peak hours are local-time hours ranked by record count, ties going
        to the earlier hour.
        """
        hour_counts: Dict[int, int] = {}
        agent_costs: Dict[str, float] = {}
        sessions = set()
        total_cost = 0.0

        for record in self.event_log.read_all():
            sessions.add(record.session_id)
            cost = self.record_cost(record)
            total_cost += cost
            if record.agent_name:
                agent_costs[record.agent_name] = agent_costs.get(record.agent_name, 0.0) + cost
            try:
                hour = parse_timestamp(record.timestamp).astimezone().hour
            except ValueError:
                continue
            hour_counts[hour] = hour_counts.get(hour, 0) + 1

        peak: List[Tuple[int, int]] = sorted(hour_counts.items(), key=lambda item: (-item[1], item[0]))
        expensive = sorted(agent_costs.items(), key=lambda item: item[1], reverse=True)
        return UsagePatterns(
            peak_hours=[hour for hour, _ in peak[:PEAK_HOURS_LIMIT]],
            most_expensive_agents=[
                {"agent": agent, "cost": cost} for agent, cost in expensive[:EXPENSIVE_AGENTS_LIMIT]
            ],
            average_cost_per_session=total_cost / len(sessions) if sessions else 0.0,
            total_sessions=len(sessions),
        )
