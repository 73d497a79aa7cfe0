"""Method parameters, pipeline constants and user options."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from .errors import ConfigError
from .roi import ROI

API_FILE_ENDPOINT = "https://api.rouast.com/vitallens-v3/file"
API_STREAM_ENDPOINT = "https://api.rouast.com/vitallens-v3/stream"

# Physiological bands [1/min]
CALC_HR_MIN = 40
CALC_HR_MAX = 240
CALC_RR_MIN = 1
CALC_RR_MAX = 60

# Window sizes [s]. AGG_WINDOW_SIZE must not exceed the smallest CALC_*_WINDOW_SIZE.
AGG_WINDOW_SIZE = 10
CALC_HR_WINDOW_SIZE = 10
CALC_HR_MIN_WINDOW_SIZE = 2
CALC_RR_WINDOW_SIZE = 30
CALC_RR_MIN_WINDOW_SIZE = 4

# Face detection rates [Hz]
FDET_DEFAULT_FS_FILE = 0.5
FDET_DEFAULT_FS_STREAM = 1.0

METHODS = ("vitallens", "pos", "chrom", "g")
ROI_METHODS = ("face", "forehead", "upper_body")
WAVEFORM_MODES = ("incremental", "windowed", "complete")


@dataclass(frozen=True)
class MethodConfig:
    method: str
    roi_method: str
    fps_target: float
    min_window_length: int
    max_window_length: int
    requires_state: bool
    buffer_offset: float
    input_size: Optional[int] = None
    min_window_length_state: Optional[int] = None

    @property
    def effective_min_window_length(self) -> int:
        """Smallest window that may be consumed, with or without state."""
        if self.min_window_length_state:
            return min(self.min_window_length_state, self.min_window_length)
        return self.min_window_length


METHODS_CONFIG: Dict[str, MethodConfig] = {
    "vitallens": MethodConfig(
        method="vitallens",
        roi_method="upper_body",
        fps_target=30,
        input_size=40,
        min_window_length=16,
        min_window_length_state=4,
        max_window_length=900,
        requires_state=True,
        buffer_offset=1.5,
    ),
    "pos": MethodConfig(
        method="pos",
        roi_method="face",
        fps_target=30,
        min_window_length=48,
        max_window_length=48,
        requires_state=False,
        buffer_offset=0.0,
    ),
    "chrom": MethodConfig(
        method="chrom",
        roi_method="face",
        fps_target=30,
        min_window_length=48,
        max_window_length=48,
        requires_state=False,
        buffer_offset=0.0,
    ),
    "g": MethodConfig(
        method="g",
        roi_method="face",
        fps_target=30,
        min_window_length=64,
        max_window_length=64,
        requires_state=False,
        buffer_offset=0.0,
    ),
}


@dataclass
class VitalsOptions:
    method: str = "vitallens"
    api_key: Optional[str] = None
    proxy_url: Optional[str] = None
    waveform_mode: Optional[str] = None  # incremental | windowed | complete
    override_fps_target: Optional[float] = None
    global_roi: Optional[ROI] = None
    fdet_fs: Optional[float] = None
    # Fraction of the new face (width, height) that must stay inside the
    # current ROI before the stateful method keeps its ROI.
    reacquire_coverage: Tuple[float, float] = (0.6, 1.0)

    def __post_init__(self) -> None:
        if self.method not in METHODS_CONFIG:
            raise ConfigError(f"Unsupported method: {self.method}")
        if self.waveform_mode is not None and self.waveform_mode not in WAVEFORM_MODES:
            raise ConfigError(f"Unsupported waveform mode: {self.waveform_mode}")
        if self.override_fps_target is not None and self.override_fps_target <= 0:
            raise ConfigError("override_fps_target must be positive")
        if self.fdet_fs is not None and self.fdet_fs <= 0:
            raise ConfigError("fdet_fs must be positive")

    @property
    def method_config(self) -> MethodConfig:
        return METHODS_CONFIG[self.method]

    def fps_target(self) -> float:
        return self.override_fps_target or self.method_config.fps_target
