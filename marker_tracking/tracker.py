from __future__ import annotations

import copy
import shutil
import threading
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from .config import DetectorConfig, TrackingArea
from .detect import MarkerDetector, build_dictionary, render_marker
from .frame_source import FrameSource
from .geometry import build_observation
from .logging_utils import component_logger
from .overlay import draw_guides, draw_markers
from .rate import RateTracker
from .tracking_types import MarkerObservation


class MarkerTracker:
    """Detects markers on each new corrected frame and keeps the latest results.

    The pipeline thread calls ``poll()``; any other thread may call the
    setters, ``get_observations()`` and ``snapshot()``.
    """

    def __init__(
        self,
        frame_source: FrameSource,
        detector_config: Optional[DetectorConfig] = None,
        tracking_area: Optional[TrackingArea] = None,
        markers_dir: str | Path = "markers",
        logger=None,
    ):
        self.frame_source = frame_source
        self.logger = component_logger("tracker", logger)
        self.markers_dir = Path(markers_dir)

        self._config_lock = threading.Lock()
        self._detector_config = (detector_config or DetectorConfig()).validated()

        self._area_lock = threading.Lock()
        self._tracking_area = (tracking_area or TrackingArea()).clamped()

        self._detector_lock = threading.Lock()
        self._detector = MarkerDetector(self._detector_config)

        self._data_lock = threading.Lock()
        self._observations: dict[int, MarkerObservation] = {}
        self._output = frame_source.snapshot()

        self._frame_number = 0
        self.rate_tracker = RateTracker()

    # ---------------------------------------------------------------- setters
    def set_detector_config(self, cfg: DetectorConfig) -> None:
        with self._config_lock:
            self._detector_config = cfg.validated()

    def set_tracking_area(self, area: TrackingArea) -> None:
        with self._area_lock:
            self._tracking_area = area.clamped()

    @property
    def detector_config(self) -> DetectorConfig:
        with self._config_lock:
            return self._detector_config

    @property
    def tracking_area(self) -> TrackingArea:
        with self._area_lock:
            return self._tracking_area

    # ---------------------------------------------------------------- readers
    @property
    def frame_number(self) -> int:
        return self._frame_number

    @property
    def frame_rate(self) -> float:
        return self.rate_tracker.rate

    @property
    def dictionary_generation(self) -> int:
        return self._detector.generation

    def get_observations(self) -> dict[int, MarkerObservation]:
        with self._data_lock:
            return copy.deepcopy(self._observations)

    def snapshot(self) -> np.ndarray:
        """Current frame with guides and marker overlays drawn on a private copy."""
        with self._data_lock:
            image = self._output.copy()
            observations = list(self._observations.values())
        draw_guides(image, self.tracking_area)
        draw_markers(image, observations)
        return image

    def snapshot_into(self, dest: np.ndarray) -> np.ndarray:
        image = self.snapshot()
        if dest.shape != image.shape:
            raise ValueError(f"destination {dest.shape} does not match frame {image.shape}")
        np.copyto(dest, image)
        return dest

    # ------------------------------------------------------------------- loop
    def pause(self) -> None:
        self.rate_tracker.reset()

    def poll(self) -> None:
        current = self.frame_source.frame_number
        if current == self._frame_number:
            return

        image = self.frame_source.snapshot()
        h, w = image.shape[:2]

        with self._config_lock:
            cfg = self._detector_config
        with self._detector_lock:
            if self._detector.configure(cfg):
                self.logger.info(
                    "regenerated marker dictionary: %d codes, %d bits",
                    cfg.dictionary_size,
                    cfg.bit_length,
                )
            detector = self._detector

        with self._area_lock:
            area = self._tracking_area
        x, y, rw, rh = area.to_pixels(w, h)

        found = []
        if rw > 0 and rh > 0:
            found = detector.detect(image[y:y + rh, x:x + rw])

        observations = {}
        for marker_id, corners in found:
            observations[marker_id] = build_observation(marker_id, corners, (x, y), w, h)

        with self._data_lock:
            self._observations = observations
            self._output = image
        self._frame_number = current
        self.rate_tracker.update()

    # ---------------------------------------------------------------- markers
    def generate_dictionary_images(self, image_size: int) -> bool:
        """Write ``marker-<id>.png`` for every code of the current dictionary."""
        with self._config_lock:
            cfg = self._detector_config
        try:
            with self._detector_lock:
                dictionary = self._detector.dictionary
                key = self._detector.dictionary_key
            if key != (cfg.dictionary_size, cfg.bit_length):
                # Settings changed since the last pass; render what the next pass will use.
                dictionary = build_dictionary(cfg.dictionary_size, cfg.bit_length)
            if self.markers_dir.exists():
                shutil.rmtree(self.markers_dir)
            self.markers_dir.mkdir(parents=True)
            for marker_id in range(cfg.dictionary_size):
                img = render_marker(dictionary, marker_id, image_size, cfg.marker_border_bits)
                path = self.markers_dir / f"marker-{marker_id}.png"
                if not cv2.imwrite(str(path), img):
                    raise OSError(f"could not write {path}")
        except (cv2.error, OSError) as exc:
            self.logger.warning("generate_marker_images error: %s", exc)
            return False
        self.logger.info("wrote %d marker images to %s", cfg.dictionary_size, self.markers_dir)
        return True
