from pathlib import Path
from typing import Tuple

import cv2
import numpy as np

from .tracking_types import CalibrationKind, CalibrationProfile


class CalibrationFileError(ValueError):
    """The profile file exists but does not hold a usable calibration."""


def load_calib(path: str) -> Tuple[np.ndarray, np.ndarray, Tuple[int, int]]:
    """Read ``imageSize``, ``cameraMatrix`` and ``distortionCoefficients``."""
    try:
        fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_READ)
    except cv2.error as exc:
        raise CalibrationFileError(str(exc)) from exc
    try:
        if not fs.isOpened():
            raise CalibrationFileError(f"cannot open {path}")
        size_node = fs.getNode("imageSize")
        if size_node.isSeq():
            # cv::Size is stored as a plain [width, height] sequence
            size = np.array([size_node.at(i).real() for i in range(size_node.size())])
        else:
            size = size_node.mat()
        K = fs.getNode("cameraMatrix").mat()
        dist = fs.getNode("distortionCoefficients").mat()
    finally:
        fs.release()

    if size is None or K is None or dist is None:
        raise CalibrationFileError(f"{path} is missing calibration keys")
    size = np.asarray(size).reshape(-1)
    if size.size != 2 or K.shape != (3, 3):
        raise CalibrationFileError(f"{path} has malformed calibration values")
    w, h = int(size[0]), int(size[1])
    return K, dist, (w, h)


def save_calib(path: str, image_size: Tuple[int, int], K: np.ndarray, dist: np.ndarray) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    fs = cv2.FileStorage(str(path), cv2.FILE_STORAGE_WRITE)
    try:
        if not fs.isOpened():
            raise OSError(f"cannot open {path} for writing")
        fs.write("imageSize", np.array(image_size, dtype=np.int32).reshape(1, 2))
        fs.write("cameraMatrix", K)
        fs.write("distortionCoefficients", dist)
    finally:
        fs.release()


def build_profile(
    K: np.ndarray,
    dist: np.ndarray,
    image_size: Tuple[int, int],
    kind: CalibrationKind,
) -> CalibrationProfile:
    """Undistortion remap tables for ``image_size`` (width, height), keeping every source pixel."""
    newK, _ = cv2.getOptimalNewCameraMatrix(K, dist, image_size, 1, image_size, False)
    map1, map2 = cv2.initUndistortRectifyMap(K, dist, None, newK, image_size, cv2.CV_16SC2)
    return CalibrationProfile(
        camera_matrix=K,
        distortion_coefficients=dist,
        distort_map=map1,
        undistort_map=map2,
        kind=kind,
        image_size=tuple(image_size),
    )
