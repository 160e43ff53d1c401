"""Interactive chessboard lens calibration.

The operator arms a capture, holds the printed board still under the camera
and each sufficiently long, uninterrupted detection adds one view. After
enough views, ``solve()`` computes the intrinsics and installs a preview
correction in the FrameSource; ``commit_saved()`` persists it.
"""

from __future__ import annotations

import shutil
import threading
import time
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import cv2
import numpy as np

from .calib_io import CalibrationFileError, build_profile, load_calib, save_calib
from .config import CalibrationConfig
from .events import Signal
from .frame_source import FrameSource
from .logging_utils import component_logger
from .rate import RateTracker
from .tracking_types import CalibrationKind, CalibrationProfile, CalibrationSession


class CalibrationError(RuntimeError):
    pass


class CaptureState(Enum):
    IDLE = "idle"
    SEEKING = "seeking"
    STABILIZING = "stabilizing"
    ACQUIRED = "acquired"


class LoadResult(Enum):
    SUCCEEDED = "succeeded"
    FILE_DOES_NOT_EXIST = "file_does_not_exist"
    FILE_PARSE_ERROR = "file_parse_error"


class SaveResult(Enum):
    SUCCEEDED = "succeeded"
    CALIBRATION_ERROR = "calibration_error"
    IMAGES_ERROR = "images_error"
    FAILED = "failed"


def board_coordinates(intersections: tuple[int, int], square_size: float) -> np.ndarray:
    """3D board points (Z=0), x varying fastest to match detected corner order."""
    cols, rows = intersections
    objp = np.zeros((rows * cols, 3), np.float32)
    objp[:, :2] = np.mgrid[0:cols, 0:rows].T.reshape(-1, 2)
    objp *= square_size
    return objp


class CalibrationEngine:
    def __init__(
        self,
        frame_source: FrameSource,
        config: Optional[CalibrationConfig] = None,
        logger=None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.frame_source = frame_source
        self.config = config or CalibrationConfig()
        self.logger = component_logger("calibration", logger)
        self._clock = clock
        self._sleep = sleep

        self.images_changed = Signal("images_changed")
        self.minimum_reached = Signal("minimum_reached")
        self.calibration_done = Signal("calibration_done")

        self._board_lock = threading.Lock()
        self._intersections = self.config.intersections
        self._square_size = float(self.config.square_size)

        self._session_lock = threading.Lock()
        self._session = CalibrationSession()
        self._profile: Optional[CalibrationProfile] = None

        self._output_lock = threading.Lock()
        self._output = frame_source.snapshot()
        self._image_size: Optional[tuple[int, int]] = None

        self._armed = False
        self._state = CaptureState.IDLE
        self._detected_previous = False
        self._detected_since = 0.0
        self._calibrated = False

        self._frame_number = 0
        self.rate_tracker = RateTracker()

    # ------------------------------------------------------------------ state
    @property
    def capture_state(self) -> CaptureState:
        return self._state

    @property
    def is_capturing(self) -> bool:
        return self._state in (CaptureState.SEEKING, CaptureState.STABILIZING)

    @property
    def is_calibrated(self) -> bool:
        return self._calibrated

    @property
    def capture_count(self) -> int:
        with self._session_lock:
            return len(self._session)

    @property
    def frame_number(self) -> int:
        return self._frame_number

    @property
    def frame_rate(self) -> float:
        return self.rate_tracker.rate

    def snapshot(self) -> np.ndarray:
        with self._output_lock:
            return self._output.copy()

    def snapshot_into(self, dest: np.ndarray) -> np.ndarray:
        with self._output_lock:
            if dest.shape != self._output.shape:
                raise ValueError(f"destination {dest.shape} does not match frame {self._output.shape}")
            np.copyto(dest, self._output)
        return dest

    # ---------------------------------------------------------------- control
    def set_board(self, intersections: tuple[int, int], square_size: float) -> None:
        with self._board_lock:
            self._intersections = (int(intersections[0]), int(intersections[1]))
            self._square_size = float(square_size)

    def begin(self) -> None:
        """Start a fresh calibration on uncorrected frames.

        Views must be captured on raw sensor images, so both corrections are
        switched off and any earlier views are dropped.
        """
        self._armed = False
        self._detected_previous = False
        self._state = CaptureState.IDLE
        self.frame_source.enable_saved_correction(False)
        self.frame_source.enable_preview_correction(False)
        self.clear_captures()

    def start_capture(self) -> None:
        self._armed = True
        self._detected_previous = False
        self._state = CaptureState.SEEKING

    def clear_captures(self) -> None:
        with self._session_lock:
            self._session.clear()
        self.images_changed.emit(0)

    def add_capture(self, corners: np.ndarray, image: np.ndarray) -> int:
        """Append one view to the session; returns the new view count."""
        with self._session_lock:
            self._session.captured_corners.append(np.asarray(corners, dtype=np.float32))
            self._session.captured_images.append(image.copy())
            return len(self._session)

    def pause(self) -> None:
        self.rate_tracker.reset()

    # ------------------------------------------------------------------- loop
    def poll(self) -> None:
        current = self.frame_source.frame_number
        if current == self._frame_number:
            return

        image = self.frame_source.snapshot()
        h, w = image.shape[:2]
        self._image_size = (w, h)

        # Grayscale round trip so the preview matches what the detector sees.
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        image = cv2.cvtColor(gray, cv2.COLOR_GRAY2BGR)

        acquired_count = 0
        if self._armed:
            with self._board_lock:
                pattern = self._intersections

            if self._detected_previous:
                found, corners = cv2.findChessboardCornersSB(
                    gray, pattern, flags=cv2.CALIB_CB_EXHAUSTIVE | cv2.CALIB_CB_NORMALIZE_IMAGE
                )
            else:
                found, corners = cv2.findChessboardCorners(
                    gray, pattern, flags=cv2.CALIB_CB_FAST_CHECK | cv2.CALIB_CB_NORMALIZE_IMAGE
                )

            now = self._clock()
            if found and not self._detected_previous:
                self._detected_since = now
                self._state = CaptureState.STABILIZING
            elif found:
                held_ms = (now - self._detected_since) * 1000.0
                if held_ms > self.config.capture_hold_ms:
                    acquired_count = self.add_capture(corners, image)
                    image[:] = 0
                    self._state = CaptureState.ACQUIRED
            else:
                self._state = CaptureState.SEEKING

            if corners is not None and len(corners) > 0:
                cv2.drawChessboardCorners(image, pattern, corners, bool(found))
            self._detected_previous = bool(found)

        with self._output_lock:
            self._output = image
        self._frame_number = current
        self.rate_tracker.update()

        if acquired_count:
            self.logger.info("captured calibration image %d", acquired_count)
            self.images_changed.emit(acquired_count)
            if acquired_count >= self.config.min_images:
                self.minimum_reached.emit()
            self._cool_down()

    def _cool_down(self) -> None:
        if self.config.cooldown_s > 0:
            self._sleep(self.config.cooldown_s)
        self._detected_previous = False
        self._armed = False
        self._state = CaptureState.IDLE

    # ------------------------------------------------------------------ solve
    def solve(self) -> float:
        """Calibrate from the captured views; installs the result as a preview."""
        with self._board_lock:
            intersections = self._intersections
            square_size = self._square_size
        objp = board_coordinates(intersections, square_size)

        with self._session_lock:
            corners = list(self._session.captured_corners)
            self._session.captured_coordinates.clear()
            self._session.captured_coordinates.extend(objp for _ in corners)
            coordinates = list(self._session.captured_coordinates)
        if not corners:
            raise CalibrationError("no calibration images captured")

        image_size = self._image_size or self.frame_source.resolution
        rms, K, dist, _rvecs, _tvecs = cv2.calibrateCamera(
            coordinates, corners, image_size, None, None
        )
        profile = build_profile(K, dist, image_size, CalibrationKind.PREVIEW)
        self._profile = profile
        self.frame_source.set_correction(profile)

        self.logger.info("calibration solved from %d images, rms=%.4f", len(corners), rms)
        self.calibration_done.emit(float(rms))
        return float(rms)

    # ------------------------------------------------------------ persistence
    def commit_saved(self) -> SaveResult:
        """Persist the solved profile and the captured images, then apply it.

        The profile is applied and the engine marked calibrated even when
        writing one or both halves fails.
        """
        profile = self._profile
        if profile is None:
            self.logger.warning("save_calibration error: nothing has been solved")
            return SaveResult.FAILED

        result = SaveResult.SUCCEEDED
        try:
            save_calib(
                self.config.profile_path,
                profile.image_size,
                profile.camera_matrix,
                profile.distortion_coefficients,
            )
        except (cv2.error, OSError) as exc:
            result = SaveResult.CALIBRATION_ERROR
            self.logger.warning("save_calibration calibration error: %s", exc)

        with self._session_lock:
            images = list(self._session.captured_images)
        try:
            images_dir = Path(self.config.images_dir)
            if images_dir.exists():
                shutil.rmtree(images_dir)
            images_dir.mkdir(parents=True)
            for i, img in enumerate(images, start=1):
                path = images_dir / f"image_{i:02d}.png"
                if not cv2.imwrite(str(path), img):
                    raise OSError(f"could not write {path}")
        except (cv2.error, OSError) as exc:
            if result == SaveResult.CALIBRATION_ERROR:
                result = SaveResult.FAILED
            else:
                result = SaveResult.IMAGES_ERROR
            self.logger.warning("save_calibration images error: %s", exc)

        self.clear_captures()
        saved = replace(profile, kind=CalibrationKind.SAVED)
        self.frame_source.set_correction(saved)
        self.frame_source.enable_saved_correction(True)
        self.frame_source.enable_preview_correction(False)
        self._calibrated = True
        return result

    def load_saved(self) -> LoadResult:
        path = Path(self.config.profile_path)
        if not path.exists():
            return LoadResult.FILE_DOES_NOT_EXIST

        try:
            K, dist, image_size = load_calib(str(path))
            profile = build_profile(K, dist, image_size, CalibrationKind.SAVED)
        except (CalibrationFileError, cv2.error) as exc:
            self.logger.warning("load_calibration error: %s", exc)
            return LoadResult.FILE_PARSE_ERROR

        self.frame_source.set_correction(profile)
        self.frame_source.enable_saved_correction(True)
        self._calibrated = True
        self.logger.info("loaded calibration %s (%dx%d)", path, *image_size)
        return LoadResult.SUCCEEDED

    def cancel(self) -> LoadResult:
        """Abandon the in-progress calibration and fall back to the saved profile."""
        self._armed = False
        self._detected_previous = False
        self._state = CaptureState.IDLE
        self.frame_source.enable_preview_correction(False)
        result = self.load_saved()
        self.clear_captures()
        return result
