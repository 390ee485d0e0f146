"""Background thread that syncs the broker while changes are pending."""
from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from . import database, sync_status
from .config import settings
from .sync import BrokerSync, SyncResult, build_syncer


_LOGGER = logging.getLogger(__name__)


class SyncScheduler:
    """Run a broker sync every ``interval`` seconds when work is pending.

    An interval of zero or less leaves the scheduler disabled; ``start`` is
    then a no-op.
    """

    def __init__(
        self,
        interval: float,
        syncer_factory: Callable[[], BrokerSync] = build_syncer,
    ) -> None:
        self.interval = interval
        self._syncer_factory = syncer_factory
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running or not self.enabled:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="mqtt-sync-scheduler",
            daemon=True,
        )
        self._thread.start()
        self._running = True
        _LOGGER.info("Broker sync scheduler started (every %ss)", self.interval)

    def stop(self) -> None:
        if not self._running:
            return
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)
            self._thread = None
        self._running = False

    def run_once(self) -> Optional[SyncResult]:
        """Sync if any change is pending; returns ``None`` when idle."""

        with database.SessionLocal() as session:
            pending = sync_status.get(session).pending_changes
            if pending <= 0:
                return None
            _LOGGER.debug("%d pending broker change(s), syncing", pending)
            return self._syncer_factory().sync(session)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.run_once()
            except Exception:
                _LOGGER.exception("Scheduled broker sync failed")


sync_scheduler = SyncScheduler(settings.MQTT_SYNC_INTERVAL)


__all__ = ["SyncScheduler", "sync_scheduler"]
