import argparse
import signal
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .calibration import CalibrationEngine, CalibrationError, CaptureState, LoadResult
from .config import AppConfig, load_config
from .device import build_camera_system
from .events import EventRecorder
from .frame_source import FrameSource
from .logging_utils import add_file_handler, setup_logger
from .publisher import Publisher
from .scheduler import Mode, PipelineScheduler
from .tracker import MarkerTracker


@dataclass
class Pipeline:
    frame_source: FrameSource
    tracker: MarkerTracker
    publisher: Publisher
    calibration: CalibrationEngine
    scheduler: PipelineScheduler
    events: EventRecorder


def build_pipeline(cfg: AppConfig, mode: Mode = Mode.TRACKING, system=None) -> Pipeline:
    system = system or build_camera_system(cfg.camera)
    frame_source = FrameSource(system, cfg.camera)
    tracker = MarkerTracker(
        frame_source,
        cfg.detector,
        cfg.tracking_area,
        markers_dir=cfg.markers_dir,
    )
    publisher = Publisher(tracker, cfg.network.address, cfg.network.port)
    calibration = CalibrationEngine(frame_source, cfg.calibration)
    scheduler = PipelineScheduler(frame_source, tracker, publisher, calibration, mode=mode)
    events = EventRecorder(
        frame_source.connected,
        frame_source.disconnected,
        calibration.images_changed,
        calibration.minimum_reached,
        calibration.calibration_done,
    )
    return Pipeline(frame_source, tracker, publisher, calibration, scheduler, events)


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Track overhead markers and broadcast them over UDP")
    ap.add_argument("--config", required=True, help="Path to JSON/YAML config")

    ap.add_argument("--device")
    ap.add_argument("--width", type=int)
    ap.add_argument("--height", type=int)
    ap.add_argument("--fps", type=int)
    ap.add_argument("--gamma", type=float)
    ap.add_argument("--rotate", action="store_true")
    ap.add_argument("--address")
    ap.add_argument("--port", type=int)
    ap.add_argument("--log")
    ap.add_argument("--duration", type=float)
    ap.add_argument("--mode", choices=[m.value for m in Mode], default=Mode.TRACKING.value)
    ap.add_argument("--dry-run", action="store_true")
    ap.add_argument("--generate-markers", action="store_true",
                    help="Write marker images for the configured dictionary and exit")

    return ap


def _apply_args(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
    device = args.device
    if isinstance(device, str) and device.isdigit():
        device = int(device)

    cfg.apply_overrides(
        device=device,
        width=args.width,
        height=args.height,
        fps=args.fps,
        gamma=args.gamma,
        rotate=args.rotate if args.rotate else None,
        address=args.address,
        port=args.port,
        log_path=args.log,
        dry_run=args.dry_run if args.dry_run else None,
    )
    return cfg


def prepare_pipeline(pipeline: Pipeline, mode: Mode, logger) -> LoadResult:
    """Apply the saved profile; a calibration run then starts from raw frames."""
    result = pipeline.calibration.load_saved()
    logger.info("load calibration: %s", result.value)
    if mode == Mode.CALIBRATION:
        pipeline.calibration.begin()
    return result


def _handle_events(pipeline: Pipeline, logger) -> bool:
    """Log drained events; returns True once a calibration has been saved."""
    saved = False
    for name, args in pipeline.events.drain():
        if name == "minimum_reached":
            logger.info("minimum calibration images reached, solving")
            try:
                pipeline.calibration.solve()
            except CalibrationError as exc:
                logger.warning("calibrate error: %s", exc)
                continue
            result = pipeline.calibration.commit_saved()
            logger.info("save calibration: %s", result.value)
            saved = True
        elif name == "calibration_done":
            logger.info("calibration rms=%.4f", args[0])
        elif name == "images_changed":
            logger.info("calibration images: %d", args[0])
        else:
            logger.info("%s", name)
    return saved


def _log_rates(pipeline: Pipeline, logger) -> None:
    logger.info(
        "state=%s camera=%.1f tracker=%.1f publisher=%.1f calibration=%.1f markers=%d",
        pipeline.scheduler.state.value,
        pipeline.frame_source.frame_rate,
        pipeline.tracker.frame_rate,
        pipeline.publisher.frame_rate,
        pipeline.calibration.frame_rate,
        len(pipeline.tracker.get_observations()),
    )


def main(argv: Optional[list] = None) -> int:
    ap = _build_parser()
    args = ap.parse_args(argv)

    cfg = load_config(args.config)
    cfg = _apply_args(cfg, args)

    logger = setup_logger("run")
    if cfg.log_path:
        add_file_handler(logger, "run", cfg.log_path)

    mode = Mode(args.mode)
    pipeline = build_pipeline(cfg, mode)
    pipeline.frame_source.set_gamma(cfg.camera.gamma)
    pipeline.frame_source.set_rotate(cfg.camera.rotate)

    if args.generate_markers:
        ok = pipeline.tracker.generate_dictionary_images(cfg.marker_image_size)
        pipeline.publisher.close()
        pipeline.frame_source.close()
        return 0 if ok else 1

    prepare_pipeline(pipeline, mode, logger)

    stop_event = threading.Event()

    def _handle_signal(_sig, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("config: %s", cfg.as_dict())
    pipeline.scheduler.start()
    t0 = time.time()
    saved = False
    try:
        while not stop_event.wait(1.0):
            calibration = pipeline.calibration
            if (
                mode == Mode.CALIBRATION
                and not saved
                and calibration.capture_state == CaptureState.IDLE
                and calibration.capture_count < cfg.calibration.min_images
            ):
                calibration.start_capture()
            saved = _handle_events(pipeline, logger) or saved
            _log_rates(pipeline, logger)
            if args.duration and (time.time() - t0) >= args.duration:
                break
    finally:
        pipeline.scheduler.stop()
        pipeline.publisher.close()

    logger.info(
        "summary frames=%d send_failures=%d",
        pipeline.frame_source.frame_number,
        pipeline.publisher.send_failures,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
