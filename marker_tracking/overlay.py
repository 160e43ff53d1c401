from __future__ import annotations

from typing import Iterable

import cv2
import numpy as np

from .config import TrackingArea
from .tracking_types import MarkerObservation

GUIDE_COLOR = (230, 216, 173)
LABEL_COLOR = (255, 255, 255)
CROSSHAIR_HALF_LENGTH = 50


def marker_color(marker_id: int) -> tuple[int, int, int]:
    """Distinct BGR color per id, spread around the hue wheel."""
    hsv = np.array([[[(marker_id * 7) % 256, 255, 255]]], dtype=np.uint8)
    b, g, r = cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR)[0, 0]
    return int(b), int(g), int(r)


def draw_guides(image: np.ndarray, area: TrackingArea) -> np.ndarray:
    h, w = image.shape[:2]
    cx, cy = w // 2, h // 2
    cv2.line(image, (cx - CROSSHAIR_HALF_LENGTH, cy), (cx + CROSSHAIR_HALF_LENGTH, cy),
             GUIDE_COLOR, 3, cv2.LINE_AA)
    cv2.line(image, (cx, cy - CROSSHAIR_HALF_LENGTH), (cx, cy + CROSSHAIR_HALF_LENGTH),
             GUIDE_COLOR, 3, cv2.LINE_AA)

    x, y, rw, rh = area.to_pixels(w, h)
    cv2.rectangle(image, (x, y), (x + rw, y + rh), GUIDE_COLOR, 3, cv2.LINE_AA)
    return image


def draw_markers(image: np.ndarray, observations: Iterable[MarkerObservation]) -> np.ndarray:
    h, w = image.shape[:2]
    for obs in observations:
        color = marker_color(obs.id)
        pts = np.array([(cx * w, cy * h) for cx, cy in obs.corners], dtype=np.int32)
        cv2.polylines(image, [pts.reshape(-1, 1, 2)], True, color, 1, cv2.LINE_AA)

        center = (int(obs.center[0] * w), int(obs.center[1] * h))
        cv2.circle(image, center, 4, color, -1, cv2.LINE_AA)
        label = f"{obs.id},{int(obs.angle)},{obs.size:.4f}"
        cv2.putText(image, label, center, cv2.FONT_HERSHEY_SIMPLEX, 0.75,
                    LABEL_COLOR, 2, cv2.LINE_AA)
    return image
