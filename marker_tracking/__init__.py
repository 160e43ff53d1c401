"""Overhead camera marker tracking and UDP broadcast."""

from .calibration import CalibrationEngine
from .config import AppConfig, load_config
from .frame_source import FrameSource
from .publisher import Publisher
from .scheduler import Mode, PipelineScheduler
from .tracker import MarkerTracker

__all__ = [
    "AppConfig",
    "CalibrationEngine",
    "FrameSource",
    "MarkerTracker",
    "Mode",
    "PipelineScheduler",
    "Publisher",
    "load_config",
]
