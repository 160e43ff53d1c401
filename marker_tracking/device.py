"""Camera capability used by FrameSource.

A ``CameraSystem`` enumerates attached cameras and opens one of them; the
returned ``CameraDevice`` streams BGR rasters. Two backends are provided:

- OpenCV ``VideoCapture`` devices (USB via V4L2, or any path/URL OpenCV opens)
- Synthetic frames for dry runs and tests
"""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

import cv2
import numpy as np


class DeviceError(RuntimeError):
    """Raised by the camera layer; FrameSource turns it into a disconnect."""


class CameraDevice(ABC):
    @abstractmethod
    def begin_acquisition(self) -> None:
        """Initialize the device and start newest-only streaming."""
        ...

    @abstractmethod
    def is_streaming(self) -> bool: ...

    @abstractmethod
    def next_image(self) -> Optional[np.ndarray]:
        """Next BGR raster, or None when the retrieved image is incomplete."""
        ...

    @abstractmethod
    def set_gamma(self, gamma: float) -> None: ...

    @abstractmethod
    def close(self) -> None: ...


class CameraSystem(ABC):
    @abstractmethod
    def enumerate(self) -> list[str]:
        """Descriptions of the cameras currently available."""
        ...

    @abstractmethod
    def open(self, index: int) -> CameraDevice: ...

    def release(self) -> None:
        return None


class OpenCVCameraDevice(CameraDevice):
    def __init__(self, device: int | str, width: int, height: int, fps: int = 0,
                 max_read_failures: int = 30):
        self.device = device
        self.width = width
        self.height = height
        self.fps = fps
        self.max_read_failures = max_read_failures
        self.cap: Any = None
        self._read_failures = 0

    def begin_acquisition(self) -> None:
        if isinstance(self.device, int):
            self.cap = cv2.VideoCapture(self.device, cv2.CAP_V4L2)
        else:
            dev_str = str(self.device)
            match = re.match(r"^/dev/video(\d+)$", dev_str)
            if match:
                self.cap = cv2.VideoCapture(int(match.group(1)), cv2.CAP_V4L2)
            else:
                self.cap = cv2.VideoCapture(dev_str)

        if not self.cap.isOpened():
            self.cap = None
            raise DeviceError(f"Failed to open camera: {self.device}")

        self.cap.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*"MJPG"))
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        if self.fps > 0:
            self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        # A single-slot buffer makes every read return the newest image.
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        self._read_failures = 0

    def is_streaming(self) -> bool:
        if self.cap is None or not self.cap.isOpened():
            return False
        return self._read_failures < self.max_read_failures

    def next_image(self) -> Optional[np.ndarray]:
        cap = self.cap
        if cap is None:
            raise DeviceError("camera not initialized")
        ok, img = cap.read()
        if not ok or img is None:
            self._read_failures += 1
            return None
        self._read_failures = 0
        if img.shape[1] != self.width or img.shape[0] != self.height:
            img = cv2.resize(img, (self.width, self.height))
        return img

    def set_gamma(self, gamma: float) -> None:
        # Called from the consumer thread; close() may clear self.cap meanwhile.
        cap = self.cap
        if cap is None:
            raise DeviceError("camera not initialized")
        try:
            accepted = cap.set(cv2.CAP_PROP_GAMMA, gamma)
        except cv2.error as exc:
            raise DeviceError(f"gamma {gamma} failed on {self.device}: {exc}") from exc
        if not accepted:
            raise DeviceError(f"gamma {gamma} rejected by {self.device}")

    def close(self) -> None:
        cap, self.cap = self.cap, None
        if cap is not None:
            cap.release()


class OpenCVCameraSystem(CameraSystem):
    """Cameras reachable through ``cv2.VideoCapture``.

    Enumeration reports the configured device list; there is normally exactly
    one overhead camera and only the first entry is ever opened.
    """

    def __init__(self, devices: Sequence[int | str], width: int, height: int,
                 fps: int = 0, max_read_failures: int = 30):
        self.devices = list(devices)
        self.width = width
        self.height = height
        self.fps = fps
        self.max_read_failures = max_read_failures

    def enumerate(self) -> list[str]:
        return [str(d) for d in self.devices]

    def open(self, index: int) -> CameraDevice:
        if index >= len(self.devices):
            raise DeviceError(f"no camera at index {index}")
        return OpenCVCameraDevice(
            self.devices[index],
            self.width,
            self.height,
            self.fps,
            self.max_read_failures,
        )


class SyntheticCameraDevice(CameraDevice):
    def __init__(self, width: int, height: int, fps: int = 30,
                 image: Optional[np.ndarray] = None):
        self.width = width
        self.height = height
        self.fps = fps
        self.image = image
        self.gamma = 0.0
        self.streaming = False
        self._last = 0.0

    def begin_acquisition(self) -> None:
        self.streaming = True
        self._last = time.time()

    def is_streaming(self) -> bool:
        return self.streaming

    def next_image(self) -> Optional[np.ndarray]:
        if self.fps > 0:
            wait = max(0.0, (1.0 / self.fps) - (time.time() - self._last))
            if wait > 0:
                time.sleep(wait)
        self._last = time.time()
        if self.image is not None:
            return self.image.copy()
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def set_gamma(self, gamma: float) -> None:
        self.gamma = gamma

    def close(self) -> None:
        self.streaming = False


class SyntheticCameraSystem(CameraSystem):
    def __init__(self, width: int, height: int, fps: int = 30,
                 image: Optional[np.ndarray] = None):
        self.width = width
        self.height = height
        self.fps = fps
        self.image = image

    def enumerate(self) -> list[str]:
        return ["synthetic"]

    def open(self, index: int) -> CameraDevice:
        return SyntheticCameraDevice(self.width, self.height, self.fps, self.image)


def build_camera_system(camera_cfg) -> CameraSystem:
    if camera_cfg.dry_run:
        return SyntheticCameraSystem(camera_cfg.width, camera_cfg.height, camera_cfg.fps or 30)
    return OpenCVCameraSystem(
        [camera_cfg.device],
        camera_cfg.width,
        camera_cfg.height,
        camera_cfg.fps,
        camera_cfg.max_read_failures,
    )
