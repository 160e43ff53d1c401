from typing import Optional
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

from marker_tracking.device import CameraDevice, CameraSystem, DeviceError
from marker_tracking.detect import build_dictionary, render_marker


class FakeDevice(CameraDevice):
    def __init__(self, image: np.ndarray):
        self.image = image
        self.streaming = False
        self.closed = False
        self.gamma = None
        self.gamma_error = False
        self.incomplete = 0

    def begin_acquisition(self) -> None:
        self.streaming = True

    def is_streaming(self) -> bool:
        return self.streaming

    def next_image(self) -> Optional[np.ndarray]:
        if self.incomplete:
            self.incomplete -= 1
            return None
        return self.image.copy()

    def set_gamma(self, gamma: float) -> None:
        if self.gamma_error:
            raise DeviceError("gamma not supported")
        self.gamma = gamma

    def close(self) -> None:
        self.closed = True
        self.streaming = False


class FakeSystem(CameraSystem):
    def __init__(self, image: np.ndarray, cameras=("fake-0",)):
        self.image = image
        self.cameras = list(cameras)
        self.opened: list[FakeDevice] = []
        self.released = False

    def enumerate(self) -> list[str]:
        return list(self.cameras)

    def open(self, index: int) -> CameraDevice:
        device = FakeDevice(self.image)
        self.opened.append(device)
        return device

    def release(self) -> None:
        self.released = True


class StubFrameSource:
    """Frame source double: hands out a fixed image under a settable frame number."""

    def __init__(self, image: np.ndarray):
        self.image = image
        self.frame_number = 0
        h, w = image.shape[:2]
        self.resolution = (w, h)
        self.set_correction = MagicMock()
        self.enable_saved_correction = MagicMock()
        self.enable_preview_correction = MagicMock()

    def snapshot(self) -> np.ndarray:
        return self.image.copy()

    def advance(self, image: Optional[np.ndarray] = None) -> None:
        if image is not None:
            self.image = image
        self.frame_number += 1


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def marker_scene(placements, size=(640, 480), marker_px=180):
    """White BGR frame with default-dictionary markers pasted at ``(id, x, y, rot90)``."""
    w, h = size
    image = np.full((h, w, 3), 255, dtype=np.uint8)
    dictionary = build_dictionary(24, 4)
    for marker_id, x, y, turns in placements:
        tile = render_marker(dictionary, marker_id, marker_px, 1)
        tile = np.ascontiguousarray(np.rot90(tile, turns))
        image[y:y + marker_px, x:x + marker_px] = cv2.cvtColor(tile, cv2.COLOR_GRAY2BGR)
    return image


def chessboard_scene(squares=(10, 7), square_px=40, size=(640, 480)):
    """White BGR frame with a centered chessboard of ``squares`` (x, y)."""
    w, h = size
    image = np.full((h, w), 255, dtype=np.uint8)
    bw, bh = squares[0] * square_px, squares[1] * square_px
    x0, y0 = (w - bw) // 2, (h - bh) // 2
    for j in range(squares[1]):
        for i in range(squares[0]):
            if (i + j) % 2 == 0:
                y, x = y0 + j * square_px, x0 + i * square_px
                image[y:y + square_px, x:x + square_px] = 0
    # soften the edges like a real lens would
    image = cv2.GaussianBlur(image, (5, 5), 0)
    return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)


@pytest.fixture
def blank_frame():
    return np.zeros((480, 640, 3), dtype=np.uint8)


@pytest.fixture
def fake_system(blank_frame):
    return FakeSystem(blank_frame)
