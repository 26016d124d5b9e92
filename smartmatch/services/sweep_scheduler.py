"""Background thread that runs the periodic matching sweeps."""

from __future__ import annotations

import threading
from typing import Optional

from smartmatch.domain.models import SweepReport
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger


logger = get_logger(__name__)


class SweepScheduler:
    """Calls `SmartMatchService.run_sweeps` every `sweep_interval_seconds`.

    Sweeps stay off the request path; a failing pass is logged and the next
    tick runs as usual.
    """

    def __init__(
        self,
        matching_service: SmartMatchService,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._matching_service = matching_service
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_report: Optional[SweepReport] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_report(self) -> Optional[SweepReport]:
        return self._last_report

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="smartmatch-sweeper", daemon=True)
        self._thread.start()
        logger.info("Sweep scheduler started | interval_seconds=%.1f", self._settings.sweep_interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Sweep scheduler stopped")

    def run_once(self) -> Optional[SweepReport]:
        try:
            self._last_report = self._matching_service.run_sweeps()
        except Exception:
            logger.exception("Sweep pass failed")
            return None
        return self._last_report

    def _run(self) -> None:
        while not self._stop_event.wait(self._settings.sweep_interval_seconds):
            self.run_once()
