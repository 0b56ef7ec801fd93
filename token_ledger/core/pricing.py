"""
Pricing calculations and rate management.

Resolves a model name to per-token costs. A live pricing module is used
when one can be imported; otherwise a static table keyed by model tier
answers every lookup.
"""

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Tuple

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_CACHE_WRITE_MARKUP = 0.25
DEFAULT_CACHE_READ_DISCOUNT = 0.9
DEFAULT_MODEL = "claude-sonnet-4.5"
DEFAULT_EXTERNAL_MODULE = "litellm"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model tier.

    Cache writes cost ``input * (1 + cache_write_markup)``; cache reads cost
    ``input * (1 - cache_read_discount)``.
    """
    input_per_million: float
    output_per_million: float
    cache_write_markup: float = DEFAULT_CACHE_WRITE_MARKUP
    cache_read_discount: float = DEFAULT_CACHE_READ_DISCOUNT


@dataclass(frozen=True)
class CostBreakdown:
    """Cost of one usage split by token category."""
    input_cost: float
    output_cost: float
    cache_write_cost: float
    cache_read_cost: float

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost + self.cache_write_cost + self.cache_read_cost


# Static fallback table, one entry per tier
PRICING_TABLE: Dict[str, ModelPricing] = {
    "claude-haiku-4": ModelPricing(input_per_million=1.0, output_per_million=5.0),
    "claude-sonnet-4.5": ModelPricing(input_per_million=3.0, output_per_million=15.0),
    "claude-opus-4.6": ModelPricing(input_per_million=5.0, output_per_million=25.0),
}


# Ids a live pricing table (litellm's model_cost) may list for each tier,
# newest first
LIVE_MODEL_IDS: Dict[str, Tuple[str, ...]] = {
    "claude-haiku-4": ("claude-haiku-4-5", "claude-haiku-4-5-20251001"),
    "claude-sonnet-4.5": ("claude-sonnet-4-5", "claude-sonnet-4-5-20250929"),
    "claude-opus-4.6": ("claude-opus-4-6", "claude-opus-4-5", "claude-opus-4-5-20251101"),
}


def normalize_model_name(model_name: str) -> str:
    """Map a raw model id onto a pricing tier key.

    Matching is a case-insensitive substring test on ``haiku``, ``sonnet``
    and ``opus``. Exact table keys are kept; anything else becomes Sonnet.
    """
    lower = (model_name or "").lower()
    if "haiku" in lower:
        return "claude-haiku-4"
    if "sonnet" in lower:
        return "claude-sonnet-4.5"
    if "opus" in lower:
        return "claude-opus-4.6"
    if model_name in PRICING_TABLE:
        return model_name
    return DEFAULT_MODEL


def live_model_ids(model_name: str) -> List[str]:
    """Candidate keys for ``model_name`` in a live pricing table.

    Records carry tier keys such as ``claude-sonnet-4.5``; live tables use
    hyphenated release ids, so the tier's known ids are tried as well.
    """
    candidates = [model_name, (model_name or "").replace(".", "-")]
    candidates.extend(LIVE_MODEL_IDS.get(normalize_model_name(model_name), ()))
    unique: List[str] = []
    for candidate in candidates:
        if candidate and candidate not in unique:
            unique.append(candidate)
    return unique


class PricingSource(Protocol):
    """Something that can price a model."""
    name: str

    def lookup(self, model_name: str) -> Optional[ModelPricing]:
        ...


class StaticTablePricingSource:
    """Prices every model from ``PRICING_TABLE``; never returns None."""
    name = "static"

    def __init__(self, table: Optional[Mapping[str, ModelPricing]] = None):
        self.table = dict(table or PRICING_TABLE)

    def lookup(self, model_name: str) -> ModelPricing:
        key = normalize_model_name(model_name)
        if key in self.table:
            return self.table[key]
        return self.table.get(DEFAULT_MODEL, PRICING_TABLE[DEFAULT_MODEL])


@dataclass(frozen=True)
class ExternalReport:
    """Model-level totals reported by the live pricing module."""
    total_input_tokens: int
    total_output_tokens: int
    total_cache_creation_tokens: int
    total_cache_read_tokens: int
    total_cost: float
    total_entries: int
    by_model: Dict[str, Dict[str, float]]


def _pricing_from_costs(costs: Mapping[str, Any]) -> Optional[ModelPricing]:
    """Convert absolute per-token costs into a ``ModelPricing``.

    The cache markup and discount are ratios against the input price, so
    they are computed rather than read.
    """
    input_cost = float(costs.get("input_cost_per_token") or 0.0)
    output_cost = float(costs.get("output_cost_per_token") or 0.0)
    if input_cost <= 0 and output_cost <= 0:
        return None

    if input_cost > 0:
        creation = costs.get("cache_creation_input_token_cost")
        read = costs.get("cache_read_input_token_cost")
        creation = float(creation) if creation is not None else input_cost * (1 + DEFAULT_CACHE_WRITE_MARKUP)
        read = float(read) if read is not None else input_cost * (1 - DEFAULT_CACHE_READ_DISCOUNT)
        cache_write_markup = creation / input_cost - 1
        cache_read_discount = 1 - read / input_cost
    else:
        cache_write_markup = DEFAULT_CACHE_WRITE_MARKUP
        cache_read_discount = DEFAULT_CACHE_READ_DISCOUNT

    return ModelPricing(
        input_per_million=input_cost * 1_000_000,
        output_per_million=output_cost * 1_000_000,
        cache_write_markup=cache_write_markup,
        cache_read_discount=cache_read_discount,
    )


class ExternalAdapter:
    """Wraps an optionally installed pricing module.

    The module may provide any of:

    - ``health_check()``: falsy result marks the module unusable
    - ``lookup_pricing(model)``: mapping of absolute per-token costs
    - ``model_cost``: mapping of model name to the same cost mapping
    - ``get_model_report()``: mapping with ``totalInput``, ``totalOutput``,
      ``totalCacheWrite``, ``totalCacheRead``, ``totalCost``,
      ``totalMessages`` and ``entries`` (``model``, ``input``, ``output``, ``cost``)
    """

    def __init__(self, module: Any = None, name: str = ""):
        self.module = module
        self.name = name
        self.is_available = module is not None
        version = getattr(module, "__version__", None) or getattr(module, "version", None)
        if callable(version):
            version = version()
        self.version = str(version) if version is not None else "unknown"

    @property
    def can_report(self) -> bool:
        return self.is_available and callable(getattr(self.module, "get_model_report", None))

    def lookup_pricing(self, model_name: str) -> Optional[ModelPricing]:
        """Pricing for ``model_name`` from the module, None if it has none."""
        if not self.is_available:
            return None

        lookup: Optional[Callable[[str], Any]] = getattr(self.module, "lookup_pricing", None)
        table = getattr(self.module, "model_cost", None)
        if not callable(lookup) and not isinstance(table, Mapping):
            return None

        for candidate in live_model_ids(model_name):
            costs = lookup(candidate) if callable(lookup) else table.get(candidate)
            if isinstance(costs, Mapping):
                pricing = _pricing_from_costs(costs)
                if pricing is not None:
                    return pricing
        return None

    def get_report(self) -> ExternalReport:
        """Model-level totals across all sessions.

        Raises:
            RuntimeError: If the module cannot produce a report
        """
        if not self.can_report:
            raise RuntimeError(f"Pricing module {self.name!r} does not provide reports")

        report = self.module.get_model_report() or {}
        by_model: Dict[str, Dict[str, float]] = {}
        for entry in report.get("entries") or []:
            model = entry.get("model") or "unknown"
            by_model[model] = {
                "tokens": (entry.get("input") or 0) + (entry.get("output") or 0),
                "cost": entry.get("cost") or 0.0,
            }

        return ExternalReport(
            total_input_tokens=int(report.get("totalInput") or 0),
            total_output_tokens=int(report.get("totalOutput") or 0),
            total_cache_creation_tokens=int(report.get("totalCacheWrite") or 0),
            total_cache_read_tokens=int(report.get("totalCacheRead") or 0),
            total_cost=float(report.get("totalCost") or 0.0),
            total_entries=int(report.get("totalMessages") or 0),
            by_model=by_model,
        )


# One load attempt per module name per process
_adapter_cache: Dict[str, ExternalAdapter] = {}


def get_external_adapter(module_name: Optional[str] = DEFAULT_EXTERNAL_MODULE) -> ExternalAdapter:
    """Load the live pricing module once and cache the outcome.

    A missing or unhealthy module yields an unavailable adapter; the
    failure is logged once and never raised.
    """
    if not module_name:
        return ExternalAdapter()
    if module_name in _adapter_cache:
        return _adapter_cache[module_name]

    adapter = ExternalAdapter(name=module_name)
    try:
        module = importlib.import_module(module_name)
        health_check = getattr(module, "health_check", None)
        if callable(health_check) and not health_check():
            logger.warning("Pricing module %s is unhealthy, using static pricing", module_name)
        else:
            adapter = ExternalAdapter(module, name=module_name)
    except ImportError:
        logger.debug("Pricing module %s not installed, using static pricing", module_name)
    except Exception as e:
        logger.warning("Failed to load pricing module %s: %s", module_name, e)

    _adapter_cache[module_name] = adapter
    return adapter


def reset_adapter_cache() -> None:
    """Forget loaded pricing modules (useful for testing)."""
    _adapter_cache.clear()


class ExternalPricingSource:
    """Live pricing with the static table behind it."""

    def __init__(self, adapter: ExternalAdapter, fallback: Optional[StaticTablePricingSource] = None):
        self.adapter = adapter
        self.fallback = fallback or StaticTablePricingSource()
        self.name = f"external:{adapter.name}"

    def lookup(self, model_name: str) -> ModelPricing:
        try:
            pricing = self.adapter.lookup_pricing(model_name)
        except Exception as e:
            logger.debug("Live pricing lookup failed for %s: %s", model_name, e)
            pricing = None
        if pricing is not None:
            return pricing
        return self.fallback.lookup(model_name)


def select_pricing_source(external_module: Optional[str] = DEFAULT_EXTERNAL_MODULE) -> PricingSource:
    """Pick the pricing source for this process.

    Args:
        external_module: Importable live pricing module, or None to use
            the static table only

    Returns:
        ExternalPricingSource if the module loaded, else StaticTablePricingSource
    """
    static = StaticTablePricingSource()
    adapter = get_external_adapter(external_module)
    if adapter.is_available:
        return ExternalPricingSource(adapter, static)
    return static


def lookup_pricing(model_name: str, source: Optional[PricingSource] = None) -> ModelPricing:
    """Resolve pricing for a model; always returns a schedule."""
    source = source or select_pricing_source()
    pricing = source.lookup(model_name)
    if pricing is None:
        return StaticTablePricingSource().lookup(model_name)
    return pricing


def calculate_cost(model_name: str, usage: TokenUsage, source: Optional[PricingSource] = None) -> CostBreakdown:
    """Calculate the cost of token usage for a model.

    Args:
        model_name: Model identifier
        usage: Token counts
        source: Pricing source (defaults to the process-wide selection)

    Returns:
        CostBreakdown in dollars, unrounded
    """
    pricing = lookup_pricing(model_name, source)
    input_rate = pricing.input_per_million / 1_000_000

    return CostBreakdown(
        input_cost=usage.input_tokens * input_rate,
        output_cost=usage.output_tokens * pricing.output_per_million / 1_000_000,
        cache_write_cost=usage.cache_creation_tokens * input_rate * (1 + pricing.cache_write_markup),
        cache_read_cost=usage.cache_read_tokens * input_rate * (1 - pricing.cache_read_discount),
    )


def format_cost(cost: float) -> str:
    """Format a dollar amount; sub-cent amounts are shown in cents."""
    if cost < 0.01:
        return f"{cost * 100:.4f}¢"
    return f"${cost:.4f}"


def estimate_daily_cost(tokens_per_hour: float, model_name: str, source: Optional[PricingSource] = None) -> float:
    """Input-token cost of a day at the given hourly rate."""
    pricing = lookup_pricing(model_name, source)
    return tokens_per_hour * 24 / 1_000_000 * pricing.input_per_million


def estimate_monthly_cost(tokens_per_hour: float, model_name: str, source: Optional[PricingSource] = None) -> float:
    return estimate_daily_cost(tokens_per_hour, model_name, source) * 30
