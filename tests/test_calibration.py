from pathlib import Path
from unittest.mock import MagicMock

import cv2
import numpy as np
import pytest

from marker_tracking.calib_io import build_profile, load_calib, save_calib
from marker_tracking.calibration import (
    CalibrationEngine,
    CalibrationError,
    CaptureState,
    LoadResult,
    SaveResult,
    board_coordinates,
)
from marker_tracking.config import CalibrationConfig
from marker_tracking.tracking_types import CalibrationKind

from conftest import FakeClock, StubFrameSource, chessboard_scene

K_TRUE = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
VIEWS = [
    (0.3, 0.0, 0.0),
    (-0.3, 0.0, 0.0),
    (0.0, 0.3, 0.0),
    (0.0, -0.3, 0.0),
    (0.2, 0.2, 0.1),
    (-0.2, 0.25, -0.1),
]


def _config(tmp_path: Path, **kwargs) -> CalibrationConfig:
    values = dict(
        board_squares_x=10,
        board_squares_y=7,
        square_size=30.0,
        profile_path=str(tmp_path / "calibration.yml"),
        images_dir=str(tmp_path / "calibration"),
        cooldown_s=0.0,
    )
    values.update(kwargs)
    return CalibrationConfig(**values)


def _synthetic_views(engine: CalibrationEngine, config: CalibrationConfig) -> None:
    objp = board_coordinates(config.intersections, config.square_size)
    for rvec in VIEWS:
        tvec = np.array([-120.0, -75.0, 600.0])
        pts, _ = cv2.projectPoints(objp, np.array(rvec), tvec, K_TRUE, np.zeros(5))
        engine.add_capture(pts.astype(np.float32), np.zeros((480, 640, 3), dtype=np.uint8))


def test_board_coordinates_order():
    objp = board_coordinates((3, 2), 10.0)
    assert objp.shape == (6, 3)
    assert objp[1].tolist() == [10.0, 0.0, 0.0]
    assert objp[3].tolist() == [0.0, 10.0, 0.0]
    assert not objp[:, 2].any()


def test_capture_requires_a_steady_board(tmp_path: Path, blank_frame):
    board = chessboard_scene()
    source = StubFrameSource(board)
    clock = FakeClock(0.0)
    sleep = MagicMock()
    cfg = _config(tmp_path, min_images=1, cooldown_s=1.0)
    engine = CalibrationEngine(source, cfg, clock=clock, sleep=sleep)
    images_changed = MagicMock()
    minimum = MagicMock()
    engine.images_changed.connect(images_changed)
    engine.minimum_reached.connect(minimum)

    engine.start_capture()
    assert engine.capture_state == CaptureState.SEEKING

    source.advance()
    engine.poll()
    assert engine.capture_state == CaptureState.STABILIZING

    clock.now = 1.0
    source.advance()
    engine.poll()
    assert engine.capture_count == 0

    clock.now = 2.5
    source.advance()
    engine.poll()
    assert engine.capture_count == 1
    images_changed.assert_called_once_with(1)
    minimum.assert_called_once_with()
    sleep.assert_called_once_with(1.0)
    assert engine.capture_state == CaptureState.IDLE
    assert not engine.is_capturing

    # disarmed: the board is no longer looked for
    clock.now = 10.0
    source.advance()
    engine.poll()
    assert engine.capture_count == 1


def test_losing_the_board_restarts_the_hold(tmp_path: Path, blank_frame):
    board = chessboard_scene()
    source = StubFrameSource(board)
    clock = FakeClock(0.0)
    engine = CalibrationEngine(source, _config(tmp_path), clock=clock)
    engine.start_capture()

    source.advance()
    engine.poll()
    clock.now = 1.5
    source.advance(blank_frame)
    engine.poll()
    assert engine.capture_state == CaptureState.SEEKING

    clock.now = 2.5
    source.advance(board)
    engine.poll()
    clock.now = 3.0
    source.advance()
    engine.poll()
    assert engine.capture_count == 0
    assert engine.capture_state == CaptureState.STABILIZING


def test_poll_converts_preview_to_grayscale(tmp_path: Path):
    colored = np.zeros((480, 640, 3), dtype=np.uint8)
    colored[:, :, 2] = 200
    source = StubFrameSource(colored)
    engine = CalibrationEngine(source, _config(tmp_path))
    source.advance()
    engine.poll()

    preview = engine.snapshot()
    assert np.array_equal(preview[:, :, 0], preview[:, :, 2])
    assert engine.frame_number == 1


def test_solve_without_captures_raises(tmp_path: Path, blank_frame):
    engine = CalibrationEngine(StubFrameSource(blank_frame), _config(tmp_path))
    with pytest.raises(CalibrationError):
        engine.solve()


def test_solve_synthetic_board_round_trip(tmp_path: Path, blank_frame):
    source = StubFrameSource(blank_frame)
    cfg = _config(tmp_path)
    engine = CalibrationEngine(source, cfg)
    done = MagicMock()
    engine.calibration_done.connect(done)
    _synthetic_views(engine, cfg)

    rms = engine.solve()
    assert rms < 0.01
    done.assert_called_once()
    assert done.call_args[0][0] == pytest.approx(rms)

    profile = source.set_correction.call_args[0][0]
    assert profile.kind == CalibrationKind.PREVIEW
    assert profile.image_size == (640, 480)
    assert np.allclose(profile.camera_matrix, K_TRUE, rtol=0.01, atol=1.0)
    # without distortion the remap is close to identity
    for x, y in [(320, 240), (200, 150), (450, 330)]:
        assert np.abs(profile.distort_map[y, x].astype(int) - [x, y]).max() <= 2


def test_commit_saved_then_load(tmp_path: Path, blank_frame):
    source = StubFrameSource(blank_frame)
    cfg = _config(tmp_path)
    engine = CalibrationEngine(source, cfg)
    images_changed = MagicMock()
    engine.images_changed.connect(images_changed)
    _synthetic_views(engine, cfg)
    engine.solve()

    assert engine.commit_saved() == SaveResult.SUCCEEDED
    assert engine.is_calibrated
    assert Path(cfg.profile_path).exists()
    images = sorted(p.name for p in Path(cfg.images_dir).iterdir())
    assert images == [f"image_{i:02d}.png" for i in range(1, len(VIEWS) + 1)]
    saved = source.set_correction.call_args[0][0]
    assert saved.kind == CalibrationKind.SAVED
    source.enable_saved_correction.assert_called_with(True)
    # saved views never leak into the next solve
    assert engine.capture_count == 0
    images_changed.assert_called_with(0)
    with pytest.raises(CalibrationError):
        engine.solve()

    other_source = StubFrameSource(blank_frame)
    reloaded = CalibrationEngine(other_source, cfg)
    assert not reloaded.is_calibrated
    assert reloaded.load_saved() == LoadResult.SUCCEEDED
    assert reloaded.is_calibrated
    profile = other_source.set_correction.call_args[0][0]
    assert profile.kind == CalibrationKind.SAVED
    assert profile.image_size == (640, 480)
    assert np.allclose(profile.camera_matrix, saved.camera_matrix)


def test_commit_saved_reports_image_failure(tmp_path: Path, blank_frame):
    cfg = _config(tmp_path)
    Path(cfg.images_dir).write_text("in the way")
    source = StubFrameSource(blank_frame)
    engine = CalibrationEngine(source, cfg)
    _synthetic_views(engine, cfg)
    engine.solve()

    assert engine.commit_saved() == SaveResult.IMAGES_ERROR
    assert engine.is_calibrated
    assert Path(cfg.profile_path).exists()


def test_commit_saved_reports_profile_failure(tmp_path: Path, blank_frame):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a folder")
    cfg = _config(tmp_path, profile_path=str(blocker / "calibration.yml"))
    source = StubFrameSource(blank_frame)
    engine = CalibrationEngine(source, cfg)
    _synthetic_views(engine, cfg)
    engine.solve()

    assert engine.commit_saved() == SaveResult.CALIBRATION_ERROR
    assert engine.is_calibrated
    assert len(list(Path(cfg.images_dir).iterdir())) == len(VIEWS)
    assert source.set_correction.call_args[0][0].kind == CalibrationKind.SAVED
    source.enable_saved_correction.assert_called_with(True)


def test_commit_saved_reports_total_failure(tmp_path: Path, blank_frame):
    blocker = tmp_path / "blocker"
    blocker.write_text("a file, not a folder")
    cfg = _config(
        tmp_path,
        profile_path=str(blocker / "calibration.yml"),
        images_dir=str(blocker / "images"),
    )
    source = StubFrameSource(blank_frame)
    engine = CalibrationEngine(source, cfg)
    _synthetic_views(engine, cfg)
    engine.solve()

    assert engine.commit_saved() == SaveResult.FAILED
    assert engine.is_calibrated
    assert engine.capture_count == 0
    source.enable_saved_correction.assert_called_with(True)


def test_begin_starts_from_raw_frames_and_empty_session(tmp_path: Path, blank_frame):
    source = StubFrameSource(blank_frame)
    cfg = _config(tmp_path)
    engine = CalibrationEngine(source, cfg)
    _synthetic_views(engine, cfg)
    engine.start_capture()

    engine.begin()
    source.enable_saved_correction.assert_called_with(False)
    source.enable_preview_correction.assert_called_with(False)
    assert engine.capture_count == 0
    assert engine.capture_state == CaptureState.IDLE


def test_commit_saved_without_solve(tmp_path: Path, blank_frame):
    engine = CalibrationEngine(StubFrameSource(blank_frame), _config(tmp_path))
    assert engine.commit_saved() == SaveResult.FAILED
    assert not engine.is_calibrated


def test_load_saved_missing_and_unparsable(tmp_path: Path, blank_frame):
    cfg = _config(tmp_path)
    source = StubFrameSource(blank_frame)
    engine = CalibrationEngine(source, cfg)
    assert engine.load_saved() == LoadResult.FILE_DOES_NOT_EXIST

    Path(cfg.profile_path).write_text("%YAML:1.0\n---\nfoo: 1\n")
    assert engine.load_saved() == LoadResult.FILE_PARSE_ERROR
    assert not engine.is_calibrated
    source.set_correction.assert_not_called()


def test_load_calib_accepts_size_sequence(tmp_path: Path):
    path = tmp_path / "calibration.yml"
    path.write_text(
        "%YAML:1.0\n"
        "---\n"
        "imageSize: [ 640, 480 ]\n"
        "cameraMatrix: !!opencv-matrix\n"
        "   rows: 3\n"
        "   cols: 3\n"
        "   dt: d\n"
        "   data: [ 800., 0., 320., 0., 800., 240., 0., 0., 1. ]\n"
        "distortionCoefficients: !!opencv-matrix\n"
        "   rows: 1\n"
        "   cols: 5\n"
        "   dt: d\n"
        "   data: [ 0., 0., 0., 0., 0. ]\n"
    )
    K, dist, size = load_calib(str(path))
    assert size == (640, 480)
    assert np.allclose(K, K_TRUE)
    assert dist.size == 5


def test_save_calib_round_trip(tmp_path: Path):
    path = tmp_path / "nested" / "calibration.yml"
    save_calib(str(path), (1280, 720), K_TRUE, np.zeros((1, 5)))
    K, dist, size = load_calib(str(path))
    assert size == (1280, 720)
    assert np.allclose(K, K_TRUE)

    profile = build_profile(K, dist, size, CalibrationKind.SAVED)
    assert profile.distort_map.shape[:2] == (720, 1280)


def test_clear_and_cancel(tmp_path: Path, blank_frame):
    source = StubFrameSource(blank_frame)
    cfg = _config(tmp_path)
    engine = CalibrationEngine(source, cfg)
    images_changed = MagicMock()
    engine.images_changed.connect(images_changed)
    _synthetic_views(engine, cfg)
    assert engine.capture_count == len(VIEWS)

    engine.clear_captures()
    engine.clear_captures()
    assert engine.capture_count == 0
    assert images_changed.call_count == 2
    images_changed.assert_called_with(0)

    _synthetic_views(engine, cfg)
    engine.start_capture()
    assert engine.cancel() == LoadResult.FILE_DOES_NOT_EXIST
    assert engine.capture_count == 0
    assert engine.capture_state == CaptureState.IDLE
    source.enable_preview_correction.assert_called_with(False)


def test_set_board_changes_solve_geometry(tmp_path: Path, blank_frame):
    source = StubFrameSource(blank_frame)
    cfg = _config(tmp_path)
    engine = CalibrationEngine(source, cfg)
    _synthetic_views(engine, cfg)

    engine.set_board((5, 4), 30.0)
    with pytest.raises(cv2.error):
        engine.solve()  # captured corners no longer match the board

    engine.set_board(cfg.intersections, cfg.square_size)
    assert engine.solve() < 0.01
