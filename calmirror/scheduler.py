from __future__ import annotations

import logging
import threading
from typing import Optional

from calmirror.config_manager import ConfigManager
from calmirror.models import SyncResult
from calmirror.sync_engine import SyncEngine


logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()
        self._run_lock = threading.Lock()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="calmirror-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run_now(
        self,
        trigger: str = "manual",
        *,
        feed_url_override: str | None = None,
        lookahead_override: int | None = None,
    ) -> SyncResult | None:
        # Overlapping runs are refused, never queued.
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already in progress; %s trigger ignored", trigger)
            return None
        try:
            return self.sync_engine.run_once(
                trigger=trigger,
                feed_url_override=feed_url_override,
                lookahead_override=lookahead_override,
            )
        finally:
            self._run_lock.release()

    def _loop(self) -> None:
        self.run_now(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_now(trigger="manual" if manual else "scheduled")
