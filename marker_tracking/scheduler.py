from __future__ import annotations

import threading
from enum import Enum
from typing import Optional

from .calibration import CalibrationEngine
from .frame_source import FrameSource
from .logging_utils import component_logger
from .publisher import Publisher
from .tracker import MarkerTracker


class Mode(Enum):
    TRACKING = "tracking"
    CALIBRATION = "calibration"


class PipelineState(Enum):
    DISCONNECTED = "disconnected"
    TRACKING = "tracking"
    CALIBRATING = "calibrating"


class PipelineScheduler:
    """Drives every stage from one background thread.

    Each iteration polls the FrameSource, then either the tracking branch
    (tracker, publisher) or the calibration engine, depending on the mode.
    The branch not polled is paused so its rate reads zero.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        tracker: MarkerTracker,
        publisher: Publisher,
        calibration: CalibrationEngine,
        mode: Mode = Mode.TRACKING,
        disconnected_wait_s: float = 1.0,
        logger=None,
    ):
        self.frame_source = frame_source
        self.tracker = tracker
        self.publisher = publisher
        self.calibration = calibration
        self.disconnected_wait_s = disconnected_wait_s
        self.logger = component_logger("scheduler", logger)

        self._mode_lock = threading.Lock()
        self._mode = mode
        self.frame_source.enable_rotation(mode == Mode.TRACKING)

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.state = PipelineState.DISCONNECTED

    @property
    def mode(self) -> Mode:
        with self._mode_lock:
            return self._mode

    def set_mode(self, mode: Mode) -> None:
        with self._mode_lock:
            changed = mode != self._mode
            self._mode = mode
        # Calibration must see frames in sensor orientation.
        self.frame_source.enable_rotation(mode == Mode.TRACKING)
        if not changed:
            return
        self.logger.info("mode: %s", mode.value)
        if mode == Mode.CALIBRATION:
            self.calibration.begin()
        else:
            # Leaving calibration drops unsaved views and restores the saved profile.
            self.calibration.cancel()

    def _pause_tracking(self) -> None:
        self.tracker.pause()
        self.publisher.pause()

    def step(self) -> PipelineState:
        """Run one iteration of the pipeline and return the resulting state."""
        self.frame_source.poll()

        if not self.frame_source.is_connected:
            self._pause_tracking()
            self.calibration.pause()
            self.state = PipelineState.DISCONNECTED
            return self.state

        if self.mode == Mode.TRACKING:
            self.calibration.pause()
            self.tracker.poll()
            self.publisher.poll()
            self.state = PipelineState.TRACKING
        else:
            self._pause_tracking()
            self.calibration.poll()
            self.state = PipelineState.CALIBRATING
        return self.state

    def run(self) -> None:
        self.logger.info("pipeline started")
        while not self._stop_event.is_set():
            try:
                state = self.step()
            except Exception as exc:
                self.logger.warning("pipeline error: %s", exc)
                state = self.state
            if state == PipelineState.DISCONNECTED:
                self._stop_event.wait(self.disconnected_wait_s)
        self.logger.info("pipeline stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="marker-pipeline", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.frame_source.close()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
