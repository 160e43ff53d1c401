"""Planar marker pose from four image-space corners."""

import math
from typing import Tuple

import numpy as np

from .tracking_types import MarkerObservation


def _unit(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v)
    if n == 0:
        return v
    return v / n


def marker_center(corners: np.ndarray) -> np.ndarray:
    """Mean of the four corners."""
    return np.asarray(corners, dtype=np.float64).reshape(4, 2).mean(axis=0)


def marker_angle_and_radius(corners: np.ndarray) -> Tuple[float, float]:
    """
    Signed marker orientation in degrees and its center-to-edge radius.

    The orientation is the angle between the vector from the center to the
    midpoint of the top edge (TL-TR) and image-up. Image-right decides the
    sign: a top edge leaning right is a clockwise turn on screen and gives a
    negative angle.

    Args:
        corners: (4,2) corners ordered TL, TR, BR, BL in pixels

    Returns:
        (angle_degrees, radius_pixels)
    """
    pts = np.asarray(corners, dtype=np.float64).reshape(4, 2)
    center = pts.mean(axis=0)
    top_mid = (pts[0] + pts[1]) * 0.5
    radius = float(np.linalg.norm(top_mid - center))

    vector_a = _unit(top_mid - center)
    vector_up = np.array([0.0, -1.0])
    vector_right = np.array([1.0, 0.0])

    cosine = float(np.clip(np.dot(vector_a, vector_up), -1.0, 1.0))
    sign = -1.0 if float(np.dot(vector_a, vector_right)) > 0 else 1.0
    angle = sign * math.degrees(math.acos(cosine))
    if angle == 0.0:
        angle = 0.0  # no negative zero
    return angle, radius


def normalized_size(radius: float, image_width: int, image_height: int) -> float:
    """Equivalent-square area ``(2r)^2`` as a fraction of the image area."""
    return (4.0 * radius * radius) / float(image_width * image_height)


def build_observation(
    marker_id: int,
    corners: np.ndarray,
    offset: Tuple[float, float],
    image_width: int,
    image_height: int,
) -> MarkerObservation:
    """
    Full observation for one marker detected inside a sub-region.

    ``offset`` is the sub-region's pixel origin; it is added back before the
    coordinates are normalized against the full frame.
    """
    pts = np.asarray(corners, dtype=np.float64).reshape(4, 2) + np.asarray(offset, dtype=np.float64)
    center = pts.mean(axis=0)
    angle, radius = marker_angle_and_radius(pts)
    scale = np.array([float(image_width), float(image_height)])

    norm_corners = [tuple(float(v) for v in p / scale) for p in pts]
    norm_center = tuple(float(v) for v in center / scale)
    return MarkerObservation(
        id=int(marker_id),
        corners=norm_corners,
        center=norm_center,
        angle=float(angle),
        size=normalized_size(radius, image_width, image_height),
    )
