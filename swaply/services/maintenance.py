"""
Background maintenance sweep.

WHAT: Periodically expire overdue proposals and archive inactive conversations
WHY: Keeps stored state tidy between reads; correctness never depends on it
HOW: threading.Timer rescheduling itself every PROPOSAL_SWEEP_MINUTES; expired
     proposals are pushed to clients on the app's event loop
"""

import asyncio
import threading
from typing import Optional

from ..core.config import settings
from ..utils.logger import get_logger
from .messaging_service import MessagingService

logger = get_logger(__name__)


class MaintenanceSweeper:
    """Timer-driven sweep over the stores."""

    def __init__(
        self,
        service: MessagingService,
        interval_minutes: Optional[float] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.service = service
        self.interval_minutes = interval_minutes if interval_minutes is not None else settings.PROPOSAL_SWEEP_MINUTES
        self.loop = loop
        self._timer: Optional[threading.Timer] = None
        self._stopped = threading.Event()

    def run_once(self) -> dict:
        """
        One sweep.

        Returns:
            Dict with counts of expired proposals and archived memberships
        """
        expired = self.service.negotiation.expire_overdue()
        archived = self.service.conversations.archive_inactive()

        if expired and self.loop is not None and self.loop.is_running():
            asyncio.run_coroutine_threadsafe(self.service.publish_expired(expired), self.loop)

        if expired or archived:
            logger.info(f"Maintenance sweep: {len(expired)} proposals expired, {archived} memberships archived")
        return {"expired": len(expired), "archived": archived}

    def start(self) -> bool:
        """Start the timer loop; does nothing when the interval is 0."""
        if self.interval_minutes <= 0:
            logger.info("Maintenance sweep disabled (PROPOSAL_SWEEP_MINUTES=0)")
            return False

        self._stopped.clear()
        self._schedule()
        logger.info(f"Started maintenance sweep (interval: {self.interval_minutes}min)")
        return True

    def _schedule(self):
        def sweep_task():
            if self._stopped.is_set():
                return
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Maintenance sweep failed: {e}", exc_info=True)
            if not self._stopped.is_set():
                self._schedule()

        self._timer = threading.Timer(self.interval_minutes * 60, sweep_task)
        self._timer.daemon = True
        self._timer.start()

    def stop(self):
        self._stopped.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
