"""
Token counting and usage tracking.

Holds raw token counts and estimates output tokens when the host only
reports input-side counters.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional


# Output/input ratio per model tier, used when output tokens are not reported
OUTPUT_RATIOS = {
    "haiku": Decimal("0.30"),
    "sonnet": Decimal("0.40"),
    "opus": Decimal("0.50"),
}
DEFAULT_OUTPUT_RATIO = OUTPUT_RATIOS["sonnet"]


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for a single model call.

    Contains exact token counts without pricing or model-specific logic.
    """
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class TokenSnapshot:
    """Cumulative input-side counters seen at a point in time."""
    input_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    timestamp: str


def _output_ratio(model_name: str) -> Decimal:
    lower = (model_name or "").lower()
    for tier, ratio in OUTPUT_RATIOS.items():
        if tier in lower:
            return ratio
    return DEFAULT_OUTPUT_RATIO


def estimate_output_tokens(input_tokens: int, model_name: str) -> int:
    """Estimate output tokens from input tokens using the model tier ratio.

    Haiku 30%, Sonnet 40%, Opus 50%; unknown models use the Sonnet ratio.
    Half values round up (1005 * 0.30 = 301.5 -> 302).
    """
    if input_tokens <= 0:
        return 0
    estimate = Decimal(input_tokens) * _output_ratio(model_name)
    return int(estimate.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _counter(usage: Dict[str, Any], key: str) -> int:
    value = usage.get(key) or 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def extract_tokens(
    stdin: Dict[str, Any],
    previous: Optional[TokenSnapshot],
    model_name: str,
    agent_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Derive one usage entry from the host's statusline payload.

    The host reports cumulative input-side counters under
    ``context_window.current_usage``. The entry holds the delta against
    ``previous`` (never negative) and an estimated output count.

    Args:
        stdin: Decoded statusline JSON payload
        previous: Snapshot from the previous invocation, if any
        model_name: Model identifier to attribute the usage to
        agent_name: Optional agent the usage belongs to

    Returns:
        Keyword arguments for ``TokenTracker.record_token_usage`` plus a
        ``timestamp`` entry
    """
    context_window = stdin.get("context_window") or {}
    current = context_window.get("current_usage") or {}

    input_tokens = _counter(current, "input_tokens")
    cache_creation = _counter(current, "cache_creation_input_tokens")
    cache_read = _counter(current, "cache_read_input_tokens")

    if previous is not None:
        input_tokens = max(input_tokens - previous.input_tokens, 0)
        cache_creation = max(cache_creation - previous.cache_creation_tokens, 0)
        cache_read = max(cache_read - previous.cache_read_tokens, 0)

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "model_name": model_name,
        "agent_name": agent_name,
        "input_tokens": input_tokens,
        "output_tokens": estimate_output_tokens(input_tokens, model_name),
        "cache_creation_tokens": cache_creation,
        "cache_read_tokens": cache_read,
        "is_estimated": True,
    }


def create_snapshot(stdin: Dict[str, Any]) -> TokenSnapshot:
    """Capture the current cumulative counters for the next delta."""
    context_window = stdin.get("context_window") or {}
    current = context_window.get("current_usage") or {}
    return TokenSnapshot(
        input_tokens=_counter(current, "input_tokens"),
        cache_creation_tokens=_counter(current, "cache_creation_input_tokens"),
        cache_read_tokens=_counter(current, "cache_read_input_tokens"),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
