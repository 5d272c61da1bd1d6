from __future__ import annotations

import logging
import threading
from typing import Optional

from estatesync.config_manager import ConfigManager
from estatesync.token_store import ConfirmationTokenStore

logger = logging.getLogger(__name__)


class MaintenanceScheduler:
    """Background thread that sweeps expired confirmation tokens."""

    def __init__(self, token_store: ConfirmationTokenStore, config_manager: ConfigManager) -> None:
        self.token_store = token_store
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="estatesync-maintenance", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self) -> int:
        try:
            return self.token_store.sweep()
        except Exception:
            logger.exception("Token sweep failed")
            return 0

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(5, int(config.maintenance.sweep_interval_seconds))
            self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_once()
