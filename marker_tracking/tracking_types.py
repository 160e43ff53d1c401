from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class CalibrationKind(Enum):
    NONE = "none"
    PREVIEW = "preview"
    SAVED = "saved"


@dataclass
class CalibrationProfile:
    camera_matrix: Any  # (3,3) ndarray
    distortion_coefficients: Any  # (1,N) ndarray
    distort_map: Any = None  # first remap table (CV_16SC2)
    undistort_map: Any = None  # second remap table
    kind: CalibrationKind = CalibrationKind.NONE
    image_size: Optional[tuple[int, int]] = None  # (width, height)


@dataclass
class MarkerObservation:
    id: int
    corners: list[tuple[float, float]]  # TL, TR, BR, BL normalized
    center: tuple[float, float]
    angle: float  # degrees
    size: float  # normalized square area


@dataclass
class CalibrationSession:
    captured_corners: list = field(default_factory=list)
    captured_images: list = field(default_factory=list)
    captured_coordinates: list = field(default_factory=list)

    def clear(self) -> None:
        self.captured_corners.clear()
        self.captured_images.clear()
        self.captured_coordinates.clear()

    def __len__(self) -> int:
        return len(self.captured_images)
