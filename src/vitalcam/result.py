"""Result types delivered to callers."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

DISCLAIMER = (
    "The provided values are estimates and should be interpreted according to the "
    "provided confidence levels ranging from 0 to 1. The estimates are not intended "
    "for any medical purposes."
)
NO_FACE_MESSAGE = "Prediction is empty because no face was detected."


@dataclass
class Waveform:
    data: List[float]
    confidence: List[float]
    unit: str = "unitless"
    note: str = ""


@dataclass
class Rate:
    value: float
    confidence: float
    unit: str = "bpm"
    note: str = ""


@dataclass
class FaceResult:
    coordinates: List[List[float]] = field(default_factory=list)
    confidence: List[float] = field(default_factory=list)
    note: str = ""


@dataclass
class VitalSigns:
    ppg_waveform: Optional[Waveform] = None
    respiratory_waveform: Optional[Waveform] = None
    heart_rate: Optional[Rate] = None
    respiratory_rate: Optional[Rate] = None


@dataclass
class StateResult:
    data: List[float]
    note: str = ""


@dataclass
class VitalsResult:
    """One assembled estimate: face track, waveforms, rates and timing."""

    face: FaceResult = field(default_factory=FaceResult)
    vital_signs: VitalSigns = field(default_factory=VitalSigns)
    time: List[float] = field(default_factory=list)
    message: str = ""
    display_time: Optional[float] = None
    state: Optional[StateResult] = None
    fps: Optional[float] = None
    est_fps: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible dict; unset optional fields are omitted."""
        return _drop_none(asdict(self))


def _drop_none(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: _drop_none(v) for k, v in obj.items() if v is not None}
    if isinstance(obj, list):
        return [_drop_none(v) for v in obj]
    return obj


def empty_result() -> VitalsResult:
    return VitalsResult(message=NO_FACE_MESSAGE)
