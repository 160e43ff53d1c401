from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional


@dataclass
class CameraConfig:
    device: int | str = 0
    width: int = 3072
    height: int = 2048
    fps: int = 0  # 0 leaves the device default
    gamma: float = 0.5
    rotate: bool = False
    max_read_failures: int = 30
    dry_run: bool = False

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DetectorConfig:
    """Marker-candidate thresholds plus dictionary geometry.

    Frozen so a whole value can be swapped in under a single lock.
    """

    dictionary_size: int = 24
    bit_length: int = 4

    adaptive_thresh_win_size_min: int = 3
    adaptive_thresh_win_size_max: int = 23
    adaptive_thresh_win_size_step: int = 10
    adaptive_thresh_constant: float = 10.0

    min_marker_perimeter_rate: float = 0.02
    max_marker_perimeter_rate: float = 2.0
    polygonal_approx_accuracy_rate: float = 0.1
    min_corner_distance_rate: float = 0.05
    min_marker_distance_rate: float = 0.05
    min_distance_to_border: int = 3

    marker_border_bits: int = 1
    min_otsu_std_dev: float = 5.0
    perspective_remove_pixel_per_cell: int = 8
    perspective_remove_ignored_margin_per_cell: float = 0.25

    max_erroneous_bits_in_border_rate: float = 0.35
    error_correction_rate: float = 0.6

    def validated(self) -> "DetectorConfig":
        if self.adaptive_thresh_win_size_min > self.adaptive_thresh_win_size_max:
            return replace(self, adaptive_thresh_win_size_min=self.adaptive_thresh_win_size_max)
        return self

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrackingArea:
    x: float = 0.0
    y: float = 0.0
    width: float = 1.0
    height: float = 1.0

    def clamped(self) -> "TrackingArea":
        x = min(max(self.x, 0.0), 1.0)
        y = min(max(self.y, 0.0), 1.0)
        width = min(max(self.width, 0.0), 1.0 - x)
        height = min(max(self.height, 0.0), 1.0 - y)
        return TrackingArea(x, y, width, height)

    def to_pixels(self, image_width: int, image_height: int) -> tuple[int, int, int, int]:
        """Pixel rectangle ``(x, y, w, h)`` inside an image of the given size."""
        area = self.clamped()
        x0 = int(round(area.x * image_width))
        y0 = int(round(area.y * image_height))
        x1 = int(round((area.x + area.width) * image_width))
        y1 = int(round((area.y + area.height) * image_height))
        x1 = min(x1, image_width)
        y1 = min(y1, image_height)
        return x0, y0, max(0, x1 - x0), max(0, y1 - y0)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class NetworkConfig:
    address: str = "255.255.255.255"
    port: int = 50000

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalibrationConfig:
    # Squares per side of the printed board; intersections are one less.
    board_squares_x: int = 25
    board_squares_y: int = 18
    square_size: float = 30.0
    profile_path: str = "calibration.yml"
    images_dir: str = "calibration"
    capture_hold_ms: float = 2000.0
    min_images: int = 12
    cooldown_s: float = 1.0

    @property
    def intersections(self) -> tuple[int, int]:
        return self.board_squares_x - 1, self.board_squares_y - 1

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AppConfig:
    camera: CameraConfig = field(default_factory=CameraConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    tracking_area: TrackingArea = field(default_factory=TrackingArea)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    calibration: CalibrationConfig = field(default_factory=CalibrationConfig)
    marker_image_size: int = 300
    markers_dir: str = "markers"
    log_path: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    def apply_overrides(self, **kwargs: Any) -> "AppConfig":
        for key, value in kwargs.items():
            if value is None:
                continue
            if hasattr(self, key):
                setattr(self, key, value)
            elif hasattr(self.camera, key):
                setattr(self.camera, key, value)
            elif hasattr(self.network, key):
                setattr(self.network, key, value)
        return self


def _load_yaml(path: Path) -> dict[str, Any]:
    try:
        import yaml  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "YAML config requested but PyYAML is not installed. "
            "Install with: pip install pyyaml"
        ) from exc
    with path.open("r", encoding="utf-8") as fp:
        data = yaml.safe_load(fp) or {}
    if not isinstance(data, dict):
        raise ValueError("YAML config root must be a mapping")
    return data


def _coerce(template: Any, raw: dict[str, Any]) -> dict[str, Any]:
    """Pick the keys of ``raw`` that belong to ``template`` and cast them to its field types."""
    out: dict[str, Any] = {}
    for f in fields(template):
        if f.name not in raw or raw[f.name] is None:
            continue
        current = getattr(template, f.name)
        value = raw[f.name]
        if isinstance(current, bool):
            out[f.name] = bool(value)
        elif isinstance(current, int) and not isinstance(value, str):
            out[f.name] = int(value)
        elif isinstance(current, float):
            out[f.name] = float(value)
        else:
            out[f.name] = value
    return out


def load_config(path: str | Path) -> AppConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Config not found: {p}")

    if p.suffix.lower() in {".yaml", ".yml"}:
        raw = _load_yaml(p)
    else:
        with p.open("r", encoding="utf-8") as fp:
            raw = json.load(fp)

    if not isinstance(raw, dict):
        raise ValueError("Config root must be a JSON/YAML object")

    cfg = AppConfig()
    sections = {
        "camera": cfg.camera,
        "detector": cfg.detector,
        "tracking_area": cfg.tracking_area,
        "network": cfg.network,
        "calibration": cfg.calibration,
    }
    for name, default in sections.items():
        section_raw = raw.get(name)
        if section_raw is None:
            continue
        if not isinstance(section_raw, dict):
            raise ValueError(f"{name} must be a mapping")
        setattr(cfg, name, replace(default, **_coerce(default, section_raw)))

    cfg.detector = cfg.detector.validated()
    cfg.tracking_area = cfg.tracking_area.clamped()
    cfg.marker_image_size = int(raw.get("marker_image_size", cfg.marker_image_size))
    cfg.markers_dir = str(raw.get("markers_dir", cfg.markers_dir))
    if raw.get("log_path") is not None:
        cfg.log_path = str(raw["log_path"])
    return cfg
