"""
Data models for storage layer.

Defines the token usage record written to the event log and the
aggregates derived from it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.token_counter import TokenUsage

# Agent key for records without an agent name
MAIN_SESSION = "(main session)"


class RecordValidationError(ValueError):
    """Raised when a log line does not describe a valid token usage record."""


def _require_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise RecordValidationError(f"'{key}' must be a non-empty string")
    return value


def _check_count(key: str, value: Any) -> int:
    # bool is an int subclass; a flag is never a token count
    if isinstance(value, bool) or not isinstance(value, int):
        raise RecordValidationError(f"'{key}' must be an integer")
    if value < 0:
        raise RecordValidationError(f"'{key}' cannot be negative")
    return value


def _require_count(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    if key not in data or data[key] is None:
        if default is None:
            raise RecordValidationError(f"Missing required '{key}'")
        return default
    return _check_count(key, data[key])


@dataclass(frozen=True)
class TokenUsageRecord:
    """Immutable record of one model call.

    Append-only: once written to the event log a record is never modified.
    A record without ``agent_name`` belongs to the main session.
    """
    timestamp: str
    session_id: str
    model_name: str
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    agent_name: Optional[str] = None
    is_estimated: bool = False

    def __post_init__(self):
        for name in ("timestamp", "session_id", "model_name"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise RecordValidationError(f"'{name}' must be a non-empty string")
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens", "cache_read_tokens"):
            _check_count(name, getattr(self, name))
        if self.agent_name is not None and not isinstance(self.agent_name, str):
            raise RecordValidationError("'agent_name' must be a string")

    @property
    def agent_key(self) -> str:
        """Grouping key for per-agent aggregates."""
        return self.agent_name or MAIN_SESSION

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def usage(self) -> TokenUsage:
        """Token counts of this record, for cost calculation."""
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cache_read_tokens=self.cache_read_tokens,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the on-disk (camelCase) representation."""
        data: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
        }
        if self.agent_name:
            data["agentName"] = self.agent_name
        data.update({
            "modelName": self.model_name,
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "cacheCreationTokens": self.cache_creation_tokens,
            "cacheReadTokens": self.cache_read_tokens,
        })
        if self.is_estimated:
            data["isEstimated"] = True
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "TokenUsageRecord":
        """Build a record from its on-disk representation.

        Args:
            data: Decoded JSON value of one log line

        Returns:
            Validated TokenUsageRecord

        Raises:
            RecordValidationError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise RecordValidationError("Record must be a JSON object")

        agent_name = data.get("agentName")
        if agent_name is not None and not isinstance(agent_name, str):
            raise RecordValidationError("'agentName' must be a string")

        return cls(
            timestamp=_require_str(data, "timestamp"),
            session_id=_require_str(data, "sessionId"),
            model_name=_require_str(data, "modelName"),
            input_tokens=_require_count(data, "inputTokens"),
            output_tokens=_require_count(data, "outputTokens"),
            cache_creation_tokens=_require_count(data, "cacheCreationTokens", default=0),
            cache_read_tokens=_require_count(data, "cacheReadTokens", default=0),
            agent_name=agent_name or None,
            is_estimated=bool(data.get("isEstimated", False)),
        )


@dataclass
class UsageBucket:
    """Accumulated tokens and cost for one agent or model."""
    tokens: int = 0
    cost: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"tokens": self.tokens, "cost": self.cost}


@dataclass
class SessionTokenStats:
    """Cumulative token statistics for a single session.

    ``by_agent`` and ``by_model`` keep every contributing record so that
    costs can be recomputed with whichever pricing source is active.
    """
    session_id: str
    start_time: str
    last_update: str
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation: int = 0
    total_cache_read: int = 0
    total_cost: float = 0.0
    by_agent: Dict[str, List[TokenUsageRecord]] = field(default_factory=dict)
    by_model: Dict[str, List[TokenUsageRecord]] = field(default_factory=dict)

    @property
    def record_count(self) -> int:
        return sum(len(records) for records in self.by_agent.values())

    def add(self, record: TokenUsageRecord, cost: float) -> None:
        """Fold one record into the running totals."""
        self.total_input_tokens += record.input_tokens
        self.total_output_tokens += record.output_tokens
        self.total_cache_creation += record.cache_creation_tokens
        self.total_cache_read += record.cache_read_tokens
        self.total_cost += cost
        self.last_update = record.timestamp
        self.by_agent.setdefault(record.agent_key, []).append(record)
        self.by_model.setdefault(record.model_name, []).append(record)

    def copy(self) -> "SessionTokenStats":
        return SessionTokenStats(
            session_id=self.session_id,
            start_time=self.start_time,
            last_update=self.last_update,
            total_input_tokens=self.total_input_tokens,
            total_output_tokens=self.total_output_tokens,
            total_cache_creation=self.total_cache_creation,
            total_cache_read=self.total_cache_read,
            total_cost=self.total_cost,
            by_agent={key: list(records) for key, records in self.by_agent.items()},
            by_model={key: list(records) for key, records in self.by_model.items()},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "totalCacheCreation": self.total_cache_creation,
            "totalCacheRead": self.total_cache_read,
            "totalCost": self.total_cost,
            "byAgent": {
                key: [r.to_dict() for r in records] for key, records in self.by_agent.items()
            },
            "byModel": {
                key: [r.to_dict() for r in records] for key, records in self.by_model.items()
            },
            "startTime": self.start_time,
            "lastUpdate": self.last_update,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionTokenStats":
        """Restore a persisted snapshot.

        Raises:
            RecordValidationError: If the snapshot or any record in it is malformed
        """
        if not isinstance(data, dict):
            raise RecordValidationError("Snapshot must be a JSON object")

        def _groups(key: str) -> Dict[str, List[TokenUsageRecord]]:
            raw = data.get(key) or {}
            if not isinstance(raw, dict):
                raise RecordValidationError(f"'{key}' must be an object")
            return {
                name: [TokenUsageRecord.from_dict(item) for item in items]
                for name, items in raw.items()
            }

        try:
            return cls(
                session_id=_require_str(data, "sessionId"),
                start_time=str(data.get("startTime", "")),
                last_update=str(data.get("lastUpdate", "")),
                total_input_tokens=int(data.get("totalInputTokens", 0)),
                total_output_tokens=int(data.get("totalOutputTokens", 0)),
                total_cache_creation=int(data.get("totalCacheCreation", 0)),
                total_cache_read=int(data.get("totalCacheRead", 0)),
                total_cost=float(data.get("totalCost", 0.0)),
                by_agent=_groups("byAgent"),
                by_model=_groups("byModel"),
            )
        except RecordValidationError:
            raise
        except (TypeError, ValueError) as e:
            raise RecordValidationError(f"Invalid snapshot: {e}")


@dataclass
class AggregateTokenStats:
    """Token statistics across every session in the event log."""
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cache_creation: int = 0
    total_cache_read: int = 0
    total_cost: float = 0.0
    by_agent: Dict[str, UsageBucket] = field(default_factory=dict)
    by_model: Dict[str, UsageBucket] = field(default_factory=dict)
    session_count: int = 0
    entry_count: int = 0
    first_entry: Optional[str] = None
    last_entry: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
            "totalCacheCreation": self.total_cache_creation,
            "totalCacheRead": self.total_cache_read,
            "totalCost": self.total_cost,
            "byAgent": {k: v.to_dict() for k, v in self.by_agent.items()},
            "byModel": {k: v.to_dict() for k, v in self.by_model.items()},
            "sessionCount": self.session_count,
            "entryCount": self.entry_count,
            "firstEntry": self.first_entry,
            "lastEntry": self.last_entry,
        }


@dataclass
class CostReport:
    """Cost of the records inside one reporting period.

    ``by_agent`` only holds named agents; main-session usage counts towards
    the totals but has no agent entry.
    """
    period: str
    start: str
    end: str
    total_cost: float = 0.0
    by_agent: Dict[str, float] = field(default_factory=dict)
    by_model: Dict[str, float] = field(default_factory=dict)
    by_day: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "range": {"start": self.start, "end": self.end},
            "totalCost": self.total_cost,
            "byAgent": dict(self.by_agent),
            "byModel": dict(self.by_model),
            "byDay": dict(self.by_day),
        }


@dataclass
class UsagePatterns:
    """When usage happens and which agents cost the most."""
    peak_hours: List[int] = field(default_factory=list)
    most_expensive_agents: List[Dict[str, Any]] = field(default_factory=list)
    average_cost_per_session: float = 0.0
    total_sessions: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peakHours": list(self.peak_hours),
            "mostExpensiveAgents": [dict(a) for a in self.most_expensive_agents],
            "averageCostPerSession": self.average_cost_per_session,
            "totalSessions": self.total_sessions,
        }
