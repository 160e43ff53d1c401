from __future__ import annotations

from typing import Any, Optional

import cv2
import numpy as np

from .config import DetectorConfig

# DetectorConfig field -> cv2.aruco.DetectorParameters attribute
_PARAMETER_NAMES = {
    "adaptive_thresh_win_size_min": "adaptiveThreshWinSizeMin",
    "adaptive_thresh_win_size_max": "adaptiveThreshWinSizeMax",
    "adaptive_thresh_win_size_step": "adaptiveThreshWinSizeStep",
    "adaptive_thresh_constant": "adaptiveThreshConstant",
    "min_marker_perimeter_rate": "minMarkerPerimeterRate",
    "max_marker_perimeter_rate": "maxMarkerPerimeterRate",
    "polygonal_approx_accuracy_rate": "polygonalApproxAccuracyRate",
    "min_corner_distance_rate": "minCornerDistanceRate",
    "min_marker_distance_rate": "minMarkerDistanceRate",
    "min_distance_to_border": "minDistanceToBorder",
    "marker_border_bits": "markerBorderBits",
    "min_otsu_std_dev": "minOtsuStdDev",
    "perspective_remove_pixel_per_cell": "perspectiveRemovePixelPerCell",
    "perspective_remove_ignored_margin_per_cell": "perspectiveRemoveIgnoredMarginPerCell",
    "max_erroneous_bits_in_border_rate": "maxErroneousBitsInBorderRate",
    "error_correction_rate": "errorCorrectionRate",
}


def build_dictionary(dictionary_size: int, bit_length: int):
    """Custom dictionary of ``dictionary_size`` codes with ``bit_length`` x ``bit_length`` bits."""
    if hasattr(cv2.aruco, "extendDictionary"):  # OpenCV >= 4.7
        return cv2.aruco.extendDictionary(dictionary_size, bit_length)
    return cv2.aruco.custom_dictionary(dictionary_size, bit_length)


def _make_params():
    """Create detector parameters across OpenCV versions."""
    if hasattr(cv2.aruco, "DetectorParameters_create"):
        return cv2.aruco.DetectorParameters_create()
    return cv2.aruco.DetectorParameters()


def apply_detector_config(params: Any, cfg: DetectorConfig) -> Any:
    for field_name, attr in _PARAMETER_NAMES.items():
        setattr(params, attr, getattr(cfg, field_name))
    return params


def render_marker(dictionary, marker_id: int, image_size: int, border_bits: int = 1) -> np.ndarray:
    if hasattr(cv2.aruco, "generateImageMarker"):
        return cv2.aruco.generateImageMarker(dictionary, marker_id, image_size, borderBits=border_bits)
    img = np.zeros((image_size, image_size), dtype=np.uint8)
    return cv2.aruco.drawMarker(dictionary, marker_id, image_size, img, border_bits)


class MarkerDetector:
    """Owns the marker dictionary and detector, rebuilt from a DetectorConfig.

    ``generation`` increases every time the dictionary is regenerated.
    """

    def __init__(self, cfg: Optional[DetectorConfig] = None):
        cfg = cfg or DetectorConfig()
        self.dictionary = build_dictionary(cfg.dictionary_size, cfg.bit_length)
        self.dictionary_key = (cfg.dictionary_size, cfg.bit_length)
        self.generation = 1
        self.params = apply_detector_config(_make_params(), cfg)
        self._detector = None
        self._build_detector()

    def _build_detector(self) -> None:
        # Prefer the newer ArucoDetector API if present
        if hasattr(cv2.aruco, "ArucoDetector"):
            self._detector = cv2.aruco.ArucoDetector(self.dictionary, self.params)
        else:
            self._detector = None

    def configure(self, cfg: DetectorConfig) -> bool:
        """Apply ``cfg``; returns True when the dictionary had to be regenerated."""
        regenerated = False
        key = (cfg.dictionary_size, cfg.bit_length)
        if key != self.dictionary_key:
            self.dictionary = build_dictionary(cfg.dictionary_size, cfg.bit_length)
            self.dictionary_key = key
            self.generation += 1
            regenerated = True
        apply_detector_config(self.params, cfg)
        self._build_detector()
        return regenerated

    def detect(self, image: np.ndarray) -> list[tuple[int, np.ndarray]]:
        """Detected markers as ``(id, corners)`` with corners shaped (4, 2)."""
        if self._detector is not None:
            corners, ids, _rej = self._detector.detectMarkers(image)
        else:
            corners, ids, _rej = cv2.aruco.detectMarkers(
                image, self.dictionary, parameters=self.params
            )

        found: list[tuple[int, np.ndarray]] = []
        if ids is not None and len(ids) > 0:
            for i, mid in enumerate(np.asarray(ids).flatten()):
                found.append((int(mid), np.asarray(corners[i], dtype=np.float64).reshape(4, 2)))
        return found
