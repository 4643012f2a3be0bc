# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""Timer-driven re-invocation of the sync."""

from __future__ import annotations

import logging
import threading
from typing import Optional

from .client import ExportSyncClient, SyncError, SyncOutput, SyncStatus

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Runs client.sync() every `interval_minutes`.

    A tick that finds a sync still running is skipped rather than queued.
    """

    def __init__(self, client: ExportSyncClient, interval_minutes: float = 0):
        self.client = client
        self.interval_minutes = interval_minutes
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._stopped = True

    @property
    def running(self) -> bool:
        return not self._stopped

    def configure(self, interval_minutes: float):
        """Change the interval; 0 disables scheduling."""
        self.stop()
        self.interval_minutes = interval_minutes
        self.start()

    def start(self):
        if self.interval_minutes <= 0:
            logger.debug("Scheduled sync disabled")
            return
        with self._lock:
            self._stopped = False
            self._arm()
        logger.info("Scheduled sync every %s minutes", self.interval_minutes)

    def stop(self):
        with self._lock:
            self._stopped = True
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def _arm(self):
        self._timer = threading.Timer(self.interval_minutes * 60, self._tick)
        self._timer.daemon = True
        self._timer.start()

    def _tick(self) -> Optional[SyncOutput]:
        output = None
        try:
            output = self.client.sync()
            if output.status == SyncStatus.ALREADY_IN_PROGRESS:
                logger.info("Previous sync still running, skipping scheduled sync")
        except SyncError as e:
            logger.error("Scheduled sync failed: %s", e)
        finally:
            with self._lock:
                if not self._stopped:
                    self._arm()
        return output
