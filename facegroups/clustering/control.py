"""Pause / resume / cancel signalling between the control surface and a running scan."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger("facegroups.clustering.control")


class ScanControl:
    def __init__(
        self,
        on_pause: Optional[Callable[[], None]] = None,
        on_resume: Optional[Callable[[], None]] = None,
    ) -> None:
        self.on_pause = on_pause
        self.on_resume = on_resume
        self._resume = threading.Event()
        self._resume.set()
        self._cancel = threading.Event()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def pause(self) -> None:
        self._resume.clear()

    def resume(self) -> None:
        self._resume.set()

    def cancel(self) -> None:
        self._cancel.set()
        # wake a paused worker so it can observe the cancellation
        self._resume.set()

    def checkpoint(self) -> bool:
        """Called between faces. Blocks while paused; returns False once cancelled."""
        if self._cancel.is_set():
            return False
        if not self._resume.is_set():
            LOGGER.info("Scan paused")
            if self.on_pause is not None:
                self.on_pause()
            self._resume.wait()
            if self._cancel.is_set():
                return False
            LOGGER.info("Scan resumed")
            if self.on_resume is not None:
                self.on_resume()
        return not self._cancel.is_set()
