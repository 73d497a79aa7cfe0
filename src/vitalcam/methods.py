"""Method handlers: local rPPG algorithms and the remote estimation API.

Exactly two families exist. ``LocalMethodHandler`` runs a deterministic
projection (POS, CHROM or G) on a window of mean RGB samples.
``APIMethodHandler`` sends a window of face crops to the estimation API and
carries its recurrent state. ``create_method_handler`` picks one at
construction time.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .chrom import chrom_signal, g_signal
from .config import CALC_HR_MAX, CALC_HR_MIN, CALC_RR_MAX, MethodConfig, VitalsOptions
from .errors import (
    AdapterAuthError,
    AdapterQuotaError,
    AdapterRequestError,
    ConfigError,
    VitalsError,
)
from .filters import (
    adaptive_detrend,
    moving_average,
    moving_average_size_for_hr_response,
    moving_average_size_for_response,
    standardize,
)
from .frame import Frame
from .pos import pos_signal
from .rest_client import RestClient
from .result import DISCLAIMER, FaceResult, StateResult, VitalSigns, VitalsResult, Waveform

logger = logging.getLogger(__name__)


class MethodHandler(ABC):
    def __init__(self, method_config: MethodConfig) -> None:
        self.method_config = method_config

    def init(self) -> None:
        pass

    def cleanup(self) -> None:
        pass

    def is_ready(self) -> bool:
        return True

    @property
    def name(self) -> str:
        return self.method_config.method

    @abstractmethod
    def postprocess(self, signal_type: str, data: np.ndarray, fps: float, light: bool) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    async def process(
        self, frames: Frame, mode: str, state: Optional[np.ndarray] = None
    ) -> Optional[VitalsResult]:
        """Estimate vitals for one merged window."""
        raise NotImplementedError


# Local algorithms

_ALGORITHMS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    "pos": pos_signal,
    "chrom": chrom_signal,
    "g": g_signal,
}


class LocalMethodHandler(MethodHandler):
    """POS, CHROM and G on ``[n, 3]`` mean RGB windows."""

    def __init__(self, method_config: MethodConfig) -> None:
        super().__init__(method_config)
        if method_config.method not in _ALGORITHMS:
            raise ConfigError(f"Unsupported local method: {method_config.method}")
        self._algorithm = _ALGORITHMS[method_config.method]

    def algorithm(self, rgb: np.ndarray) -> np.ndarray:
        return self._algorithm(rgb)

    async def process(
        self, frames: Frame, mode: str, state: Optional[np.ndarray] = None
    ) -> Optional[VitalsResult]:
        ppg = self.algorithm(frames.get_array())
        ones = [1.0] * int(ppg.size)
        label = self.name.upper()
        return VitalsResult(
            face=FaceResult(
                coordinates=[r.as_list() for r in frames.roi],
                confidence=list(ones),
                note=(
                    "Face detection coordinates for this face, along with live confidence "
                    "levels. This method is not capable of providing a confidence "
                    "estimate, hence returning 1."
                ),
            ),
            vital_signs=VitalSigns(
                ppg_waveform=Waveform(
                    data=[float(v) for v in ppg],
                    confidence=list(ones),
                    unit="unitless",
                    note=(
                        f"Estimate of the ppg waveform using {label}. This method is not "
                        "capable of providing a confidence estimate, hence returning 1."
                    ),
                )
            ),
            time=list(frames.timestamp),
            message=DISCLAIMER,
        )

    def postprocess(self, signal_type: str, data: np.ndarray, fps: float, light: bool) -> np.ndarray:
        processed = data if light else adaptive_detrend(data, fps, CALC_HR_MIN / 60)
        processed = moving_average(processed, moving_average_size_for_hr_response(fps))
        if not light:
            processed = standardize(processed)
        return processed


# Remote API


class _WaveformModel(BaseModel):
    data: List[float]
    confidence: List[float] = Field(default_factory=list)
    unit: str = ""
    note: str = ""


class _RateModel(BaseModel):
    value: float
    confidence: float = 0.0
    unit: str = "bpm"
    note: str = ""


class _VitalSignsModel(BaseModel):
    ppg_waveform: Optional[_WaveformModel] = None
    respiratory_waveform: Optional[_WaveformModel] = None
    heart_rate: Optional[_RateModel] = None
    respiratory_rate: Optional[_RateModel] = None


class _FaceModel(BaseModel):
    confidence: Optional[List[float]] = None


class _StateModel(BaseModel):
    data: List[float]
    note: str = ""


class ApiResponseModel(BaseModel):
    face: _FaceModel = Field(default_factory=_FaceModel)
    vital_signs: _VitalSignsModel = Field(default_factory=_VitalSignsModel)
    state: Optional[_StateModel] = None
    message: str = ""


def _waveform(model: Optional[_WaveformModel]) -> Optional[Waveform]:
    if model is None:
        return None
    return Waveform(data=model.data, confidence=model.confidence, unit=model.unit, note=model.note)


def raise_for_status(status_code: int, body: Dict) -> None:
    """Map an API status code to the matching adapter error."""
    if status_code == 200:
        return
    message = body.get("message", "Unknown error") if body else "Unknown error"
    if status_code == 403:
        raise AdapterAuthError()
    if status_code == 429:
        raise AdapterQuotaError()
    if status_code == 400:
        raise AdapterRequestError(f"Parameters missing: {message}", status_code)
    if status_code == 422:
        raise AdapterRequestError(f"Issue with provided parameters: {message}", status_code)
    if status_code == 500:
        raise AdapterRequestError(f"Error occurred in the API: {message}", status_code)
    raise AdapterRequestError(f"Error {status_code}: {message}", status_code)


class APIMethodHandler(MethodHandler):
    """Stateful estimation through the remote API."""

    def __init__(self, method_config: MethodConfig, client: RestClient) -> None:
        super().__init__(method_config)
        self.client = client

    async def process(
        self, frames: Frame, mode: str, state: Optional[np.ndarray] = None
    ) -> Optional[VitalsResult]:
        rois = frames.roi
        try:
            status_code, body = await asyncio.to_thread(
                self.client.send_frames,
                {"origin": "vitalcam"},
                frames.to_uint8_bytes(),
                mode,
                state,
            )
        except VitalsError:
            raise
        except Exception as e:
            raise AdapterRequestError(str(e) or "Unknown error") from e

        raise_for_status(status_code, body)
        try:
            parsed = ApiResponseModel.model_validate(body)
        except PydanticValidationError as e:
            raise AdapterRequestError(f"Invalid response format: {e}", status_code) from e

        vs = parsed.vital_signs
        if vs.ppg_waveform is None or vs.respiratory_waveform is None or parsed.state is None:
            logger.warning("API response without waveforms or state; skipping window")
            return None

        n = len(vs.ppg_waveform.data)
        face_conf = parsed.face.confidence or []
        return VitalsResult(
            face=FaceResult(
                coordinates=[r.as_list() for r in rois][-n:] if n else [],
                confidence=face_conf[-n:] if n else [],
                note="Face detection coordinates for this face, along with live confidence levels.",
            ),
            vital_signs=VitalSigns(
                ppg_waveform=_waveform(vs.ppg_waveform),
                respiratory_waveform=_waveform(vs.respiratory_waveform),
            ),
            state=StateResult(data=parsed.state.data, note=parsed.state.note),
            time=list(frames.timestamp)[-n:] if n else [],
            message=DISCLAIMER,
        )

    def postprocess(self, signal_type: str, data: np.ndarray, fps: float, light: bool) -> np.ndarray:
        if signal_type == "ppg":
            processed = data if light else adaptive_detrend(data, fps, CALC_HR_MIN / 60)
            size = moving_average_size_for_response(fps, CALC_HR_MAX / 60)
        else:
            processed = data
            size = moving_average_size_for_response(fps, CALC_RR_MAX / 60)
        processed = moving_average(processed, size)
        if not light:
            processed = standardize(processed)
        return processed


def create_method_handler(
    options: VitalsOptions, rest_client: Optional[RestClient] = None
) -> MethodHandler:
    """Select the handler family for ``options.method``."""
    config = options.method_config
    if config.method == "vitallens":
        if not options.api_key and not options.proxy_url:
            raise ConfigError("An API key or proxy URL is required for method 'vitallens'.")
        client = rest_client or RestClient(options.api_key, options.proxy_url)
        return APIMethodHandler(config, client)
    return LocalMethodHandler(config)
