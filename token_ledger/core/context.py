"""
Analytics context.

Wires the storage and core components of one process together from an
``AnalyticsConfig``. Callers that need a tracker create a context and
pass it around; nothing is shared through module globals.
"""

import logging
from typing import Optional

from ..config.loader import AnalyticsConfig
from ..storage.event_log import EventLog
from ..storage.repository import UsageRepository
from ..storage.session_index import SessionIndex
from ..storage.state_store import StatePaths, StateStore
from .dedup import BackfillDedup
from .pricing import get_external_adapter, select_pricing_source
from .summary import SummaryCache
from .tracker import TokenTracker

logger = logging.getLogger(__name__)


class AnalyticsContext:
    """Owner of one process's analytics components."""

    def __init__(
        self,
        config: Optional[AnalyticsConfig] = None,
        session_id: Optional[str] = None,
        skip_restore: bool = False,
    ):
        """Build every component from configuration.

        Args:
            config: Settings (defaults when omitted)
            session_id: Session for the tracker (generated when omitted)
            skip_restore: Start the tracker without its persisted snapshot
        """
        self.config = config or AnalyticsConfig()
        self.paths = StatePaths(self.config.state_dir)

        self.event_log = EventLog(self.paths.log_file, self.paths.lock_file)
        self.session_index = SessionIndex(
            self.paths.index_file, self.event_log, stale_after=self.config.index_stale_seconds
        )
        self.state_store = StateStore(self.paths)

        external_module = self.config.pricing.external_module
        self.pricing = select_pricing_source(external_module)
        self.report_adapter = get_external_adapter(external_module) if external_module else None

        self.repository = UsageRepository(self.event_log, self.pricing)
        self.summaries = SummaryCache(
            self.paths, self.event_log, self.pricing, top_agents_limit=self.config.top_agents_limit
        )
        self.dedup = BackfillDedup(self.paths.dedup_file)

        self._tracker: Optional[TokenTracker] = self._new_tracker(session_id, skip_restore)
        logger.debug("Analytics context ready in %s (pricing: %s)", self.paths.state_dir, self.pricing.name)

    def _new_tracker(self, session_id: Optional[str], skip_restore: bool) -> TokenTracker:
        return TokenTracker(
            session_id,
            event_log=self.event_log,
            session_index=self.session_index,
            state_store=self.state_store,
            repository=self.repository,
            pricing=self.pricing,
            report_adapter=self.report_adapter,
            skip_restore=skip_restore,
        )

    @property
    def tracker(self) -> TokenTracker:
        """The current tracker; a closed context starts a fresh one."""
        if self._tracker is None:
            self._tracker = self._new_tracker(None, skip_restore=True)
        return self._tracker

    def reset(self, session_id: Optional[str] = None) -> TokenTracker:
        """Replace the tracker with an empty one for ``session_id``."""
        self._tracker = self._new_tracker(session_id, skip_restore=True)
        return self._tracker

    def close(self) -> None:
        """Drop the tracker. State on disk is left as it is."""
        self._tracker = None
