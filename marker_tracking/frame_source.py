"""Camera connection lifecycle and corrected frame production.

FrameSource owns the camera device. Each ``poll()`` either tries to connect
or pulls the newest raster, applies the active lens correction and optional
180 degree rotation, and publishes the result as the current frame.
"""

from __future__ import annotations

import threading
from typing import Optional

import cv2
import numpy as np

from .config import CameraConfig
from .device import CameraDevice, CameraSystem, DeviceError
from .events import Signal
from .logging_utils import component_logger
from .rate import RateTracker
from .tracking_types import CalibrationKind, CalibrationProfile


class FrameSource:
    def __init__(self, system: CameraSystem, config: Optional[CameraConfig] = None, logger=None):
        self.system = system
        self.config = config or CameraConfig()
        self.logger = component_logger("camera", logger)

        self.connected = Signal("camera_connected")
        self.disconnected = Signal("camera_disconnected")

        self._device: Optional[CameraDevice] = None
        self._is_connected = False

        self._frame_lock = threading.Lock()
        self._output = np.zeros((self.config.height, self.config.width, 3), dtype=np.uint8)
        self._frame_number = 0

        self._params_lock = threading.Lock()
        self._gamma = self.config.gamma
        self._rotate = self.config.rotate
        self._apply_rotation = False
        self._apply_saved = False
        self._apply_preview = False
        self._saved: Optional[CalibrationProfile] = None
        self._preview: Optional[CalibrationProfile] = None

        self.rate_tracker = RateTracker()

    # ------------------------------------------------------------------ state
    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def frame_number(self) -> int:
        with self._frame_lock:
            return self._frame_number

    @property
    def resolution(self) -> tuple[int, int]:
        with self._frame_lock:
            h, w = self._output.shape[:2]
        return w, h

    @property
    def frame_rate(self) -> float:
        return self.rate_tracker.rate

    def snapshot(self) -> np.ndarray:
        with self._frame_lock:
            return self._output.copy()

    def snapshot_into(self, dest: np.ndarray) -> np.ndarray:
        with self._frame_lock:
            if dest.shape != self._output.shape or dest.dtype != self._output.dtype:
                raise ValueError(
                    f"destination {dest.shape} does not match frame {self._output.shape}"
                )
            np.copyto(dest, self._output)
        return dest

    # --------------------------------------------------------------- control
    def set_gamma(self, value: float) -> None:
        with self._params_lock:
            self._gamma = float(value)
            device = self._device if self._is_connected else None
        if device is not None:
            try:
                device.set_gamma(float(value))
            except DeviceError as exc:
                self.logger.warning("set_gamma error: %s", exc)

    def set_rotate(self, rotate: bool) -> None:
        with self._params_lock:
            self._rotate = bool(rotate)

    def enable_rotation(self, on: bool) -> None:
        with self._params_lock:
            self._apply_rotation = bool(on)

    def set_correction(self, profile: CalibrationProfile) -> None:
        with self._params_lock:
            if profile.kind == CalibrationKind.PREVIEW:
                self._preview = profile
            elif profile.kind == CalibrationKind.SAVED:
                self._saved = profile
            else:
                raise ValueError(f"cannot install a profile of kind {profile.kind}")

    def enable_saved_correction(self, on: bool) -> None:
        with self._params_lock:
            self._apply_saved = bool(on)

    def enable_preview_correction(self, on: bool) -> None:
        with self._params_lock:
            self._apply_preview = bool(on)

    # ------------------------------------------------------------------ loop
    def poll(self) -> None:
        if self._is_connected:
            self._get_frame()
        else:
            self._connect()

    def _connect(self) -> None:
        self.rate_tracker.reset()
        with self._frame_lock:
            self._output = np.zeros_like(self._output)

        try:
            cameras = self.system.enumerate()
        except DeviceError as exc:
            self.logger.warning("connect error: %s", exc)
            return
        if not cameras:
            return

        # There should only ever be one camera; take the first.
        self.logger.info("connecting to camera %s", cameras[0])
        device: Optional[CameraDevice] = None
        try:
            device = self.system.open(0)
            device.begin_acquisition()
        except DeviceError as exc:
            self.logger.warning("connect error: %s", exc)
            if device is not None:
                self._close_device(device)
            return

        with self._params_lock:
            gamma = self._gamma
            self._device = device
        try:
            device.set_gamma(gamma)
        except DeviceError as exc:
            self.logger.warning("set_gamma error: %s", exc)

        self._is_connected = True
        self.logger.info("camera connected, acquiring images")
        self.connected.emit()

    def _disconnect(self) -> None:
        with self._params_lock:
            device, self._device = self._device, None
        if device is not None:
            self._close_device(device)
        was_connected = self._is_connected
        self._is_connected = False
        if was_connected:
            self.logger.info("camera disconnected")
            self.disconnected.emit()

    def _close_device(self, device: CameraDevice) -> None:
        try:
            device.close()
        except DeviceError as exc:
            self.logger.warning("disconnect error: %s", exc)

    def _get_frame(self) -> None:
        device = self._device
        try:
            if device is None or not device.is_streaming():
                self._disconnect()
                return
        except DeviceError as exc:
            self.logger.warning("get_frame camera error: %s", exc)
            self._disconnect()
            return

        try:
            raw = device.next_image()
        except DeviceError as exc:
            self.logger.warning("get_frame image error: %s", exc)
            return
        if raw is None:
            return

        with self._params_lock:
            preview = self._preview if self._apply_preview else None
            saved = self._saved if self._apply_saved else None
            rotate = self._apply_rotation and self._rotate

        # Correction first: calibration is computed on unrotated images.
        profile = preview or saved
        if profile is not None and profile.distort_map is not None:
            image = cv2.remap(raw, profile.distort_map, profile.undistort_map, cv2.INTER_LINEAR)
        else:
            image = raw

        if rotate:
            image = cv2.rotate(image, cv2.ROTATE_180)
        elif image is raw:
            image = raw.copy()

        with self._frame_lock:
            self._output = image
            self._frame_number += 1
        self.rate_tracker.update()

    def close(self) -> None:
        self._disconnect()
        self.system.release()
