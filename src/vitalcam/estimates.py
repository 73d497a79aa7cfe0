"""Aggregation of overlapping window estimates into per-session results.

Each inference call returns samples for a window that usually overlaps the
previous one. ``EstimateAggregator`` keeps running sum/count accumulators so
repeated estimates of the same timestamp are averaged, and renders one of
three views of the session: the newly added samples (``incremental``), the
last few seconds (``windowed``) or everything so far (``complete``). Heart
and respiratory rates are taken from the spectral peak of the averaged
waveforms once enough samples are available.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .config import (
    AGG_WINDOW_SIZE,
    CALC_HR_MIN_WINDOW_SIZE,
    CALC_HR_WINDOW_SIZE,
    CALC_RR_MIN_WINDOW_SIZE,
    CALC_RR_WINDOW_SIZE,
    MethodConfig,
    VitalsOptions,
)
from .errors import ValidationError
from .rates import estimate_heart_rate, estimate_respiratory_rate
from .result import (
    FaceResult,
    Rate,
    VitalSigns,
    VitalsResult,
    Waveform,
    empty_result,
)

logger = logging.getLogger(__name__)

PostprocessFn = Callable[[str, np.ndarray, float, bool], np.ndarray]

FACE_NOTE = "Face detection coordinates for this face, along with live confidence levels."


def _identity_postprocess(signal_type: str, data: np.ndarray, fps: float, light: bool) -> np.ndarray:
    return np.asarray(data, dtype=np.float64)


@dataclass
class SumCount:
    """Running sum and count per sample; the average is ``sum / count``."""

    sum: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.float64))
    count: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __len__(self) -> int:
        return int(self.sum.size)

    def update(self, values: Sequence[float], overlap: int, max_size: Optional[int]) -> None:
        """Average the first ``overlap`` values into the tail, append the rest."""
        new = np.asarray(values, dtype=np.float64)
        if self.sum.size == 0:
            self.sum = new.copy()
            self.count = np.ones(new.size, dtype=np.int64)
        else:
            # the stored arrays may be shorter than the stored timestamps
            k = min(overlap, self.sum.size, new.size)
            if k > 0:
                self.sum[-k:] += new[overlap - k : overlap]
                self.count[-k:] += 1
            tail = new[overlap:]
            self.sum = np.concatenate([self.sum, tail])
            self.count = np.concatenate([self.count, np.ones(tail.size, dtype=np.int64)])
        if max_size is not None and self.sum.size > max_size:
            self.sum = self.sum[-max_size:]
            self.count = self.count[-max_size:]

    def averaged(self) -> np.ndarray:
        if self.sum.size == 0:
            return np.zeros(0, dtype=np.float64)
        return self.sum / self.count


@dataclass
class AggregationState:
    """Accumulated data for one session id."""

    ppg_data: SumCount = field(default_factory=SumCount)
    ppg_conf: SumCount = field(default_factory=SumCount)
    resp_data: SumCount = field(default_factory=SumCount)
    resp_conf: SumCount = field(default_factory=SumCount)
    timestamps: List[float] = field(default_factory=list)
    face_coordinates: List[List[float]] = field(default_factory=list)
    face_confidence: List[float] = field(default_factory=list)
    ppg_note: str = ""
    resp_note: str = ""
    face_note: str = ""
    message: str = ""
    last_estimate_at: Optional[float] = None


def compute_overlap(current: Sequence[float], new: Sequence[float]) -> int:
    """Number of leading ``new`` timestamps already present in ``current``."""
    stored = set(current)
    overlap = len(new)
    for i, ts in enumerate(new):
        if ts not in stored:
            overlap = i
            break
    return min(overlap, len(current))


class EstimateAggregator:
    def __init__(
        self,
        method_config: MethodConfig,
        options: VitalsOptions,
        postprocess_fn: Optional[PostprocessFn] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.method_config = method_config
        self.options = options
        self.postprocess_fn: PostprocessFn = postprocess_fn or _identity_postprocess
        self._clock = clock
        fps = options.fps_target()
        self.fps_target = fps
        self.buffer_size_agg = int(fps * AGG_WINDOW_SIZE)
        self.buffer_size_ppg = int(fps * CALC_HR_WINDOW_SIZE)
        self.buffer_size_resp = int(fps * CALC_RR_WINDOW_SIZE)
        self.min_buffer_size_ppg = int(fps * CALC_HR_MIN_WINDOW_SIZE)
        self.min_buffer_size_resp = int(fps * CALC_RR_MIN_WINDOW_SIZE)
        self._sessions: Dict[str, AggregationState] = {}

    def session(self, source_id: str) -> Optional[AggregationState]:
        return self._sessions.get(source_id)

    def _mode(self, default_mode: str) -> str:
        return self.options.waveform_mode or default_mode

    # merging

    def process_incremental_result(
        self,
        incremental: VitalsResult,
        source_id: str,
        default_mode: str,
        light: bool = True,
        return_result: bool = True,
    ) -> Optional[VitalsResult]:
        """Merge one window estimate into the session and optionally render it."""
        now = self._clock()
        vs = incremental.vital_signs
        has_ppg = vs.ppg_waveform is not None and len(vs.ppg_waveform.data) > 0
        has_resp = vs.respiratory_waveform is not None and len(vs.respiratory_waveform.data) > 0
        if not has_ppg and not has_resp:
            raise ValidationError("No waveform data found in incremental result.")
        mode = self._mode(default_mode)

        state = self._sessions.setdefault(source_id, AggregationState())
        overlap = compute_overlap(state.timestamps, incremental.time)

        state.timestamps = self._updated_values(state.timestamps, incremental.time, mode, overlap)
        face = incremental.face
        if face.coordinates and face.confidence:
            state.face_coordinates = self._updated_values(
                state.face_coordinates, [list(c) for c in face.coordinates], mode, overlap
            )
            state.face_confidence = self._updated_values(
                state.face_confidence, face.confidence, mode, overlap
            )
        if face.note:
            state.face_note = face.note
        self._update_waveforms(state, vs, mode, overlap)
        if incremental.message:
            state.message = incremental.message

        est_fps = None
        if state.last_estimate_at is not None and now > state.last_estimate_at:
            est_fps = 1.0 / (now - state.last_estimate_at)
        state.last_estimate_at = now

        if not return_result:
            return None
        return self._assemble(
            source_id, mode, light, overlap, incremental, est_fps, incremental.display_time
        )

    def produce_buffered_results(
        self, incremental: VitalsResult, source_id: str, default_mode: str
    ) -> List[VitalsResult]:
        """Split a window estimate into one result per new sample.

        Each result carries ``display_time = timestamp + buffer_offset`` so a
        consumer can release it in step with capture time.
        """
        state = self._sessions.get(source_id)
        current = state.timestamps if state is not None else []
        new_ts = list(incremental.time)
        overlap = compute_overlap(current, new_ts)
        mode = self._mode(default_mode)
        vs = incremental.vital_signs
        face = incremental.face
        results: List[VitalsResult] = []
        for i in range(overlap, len(new_ts)):
            single = VitalsResult(
                time=[new_ts[i]],
                message=incremental.message,
                display_time=new_ts[i] + self.method_config.buffer_offset,
            )
            if i < len(face.coordinates) and i < len(face.confidence):
                single.face = FaceResult(
                    coordinates=[list(face.coordinates[i])],
                    confidence=[face.confidence[i]],
                    note=face.note,
                )
            if vs.ppg_waveform is not None and i < len(vs.ppg_waveform.data):
                single.vital_signs.ppg_waveform = _single_sample(vs.ppg_waveform, i)
            if vs.respiratory_waveform is not None and i < len(vs.respiratory_waveform.data):
                single.vital_signs.respiratory_waveform = _single_sample(
                    vs.respiratory_waveform, i
                )
            processed = self.process_incremental_result(single, source_id, mode, True, True)
            if processed is not None:
                results.append(processed)
        return results

    def _max_values_size(self, mode: str) -> Optional[int]:
        if mode == "complete":
            return None
        return max(self.buffer_size_ppg, self.buffer_size_resp)

    def _updated_values(self, current: list, add: Sequence, mode: str, overlap: int) -> list:
        updated = list(current) + list(add[overlap:])
        max_size = self._max_values_size(mode)
        if max_size is not None and len(updated) > max_size:
            updated = updated[-max_size:]
        return updated

    def _update_waveforms(
        self, state: AggregationState, vs: VitalSigns, mode: str, overlap: int
    ) -> None:
        complete = mode == "complete"
        ppg = vs.ppg_waveform
        if ppg is not None and len(ppg.data) and len(ppg.confidence):
            max_size = None if complete else self.buffer_size_ppg
            state.ppg_data.update(ppg.data, overlap, max_size)
            state.ppg_conf.update(ppg.confidence, overlap, max_size)
        if ppg is not None and ppg.note:
            state.ppg_note = ppg.note
        resp = vs.respiratory_waveform
        if resp is not None and len(resp.data) and len(resp.confidence):
            max_size = None if complete else self.buffer_size_resp
            state.resp_data.update(resp.data, overlap, max_size)
            state.resp_conf.update(resp.confidence, overlap, max_size)
        if resp is not None and resp.note:
            state.resp_note = resp.note

    # rendering

    def _assemble(
        self,
        source_id: str,
        mode: str,
        light: bool,
        overlap: int = 0,
        incremental: Optional[VitalsResult] = None,
        est_fps: Optional[float] = None,
        display_time: Optional[float] = None,
    ) -> VitalsResult:
        state = self._sessions.get(source_id) or AggregationState()
        result = VitalsResult()
        n_new = len(incremental.time) - overlap if incremental is not None else 0

        if mode == "incremental":
            result.time = list(incremental.time[overlap:]) if incremental is not None else []
        elif mode == "windowed":
            result.time = state.timestamps[-self.buffer_size_agg:]
        else:
            result.time = list(state.timestamps)

        if mode == "incremental":
            face = incremental.face if incremental is not None else FaceResult()
            coordinates, confidence = face.coordinates[overlap:], face.confidence[overlap:]
        elif mode == "windowed":
            coordinates = state.face_coordinates[-self.buffer_size_agg:]
            confidence = state.face_confidence[-self.buffer_size_agg:]
        else:
            coordinates, confidence = state.face_coordinates, state.face_confidence
        result.face = FaceResult(
            coordinates=[list(c) for c in coordinates],
            confidence=[float(c) for c in confidence],
            note=FACE_NOTE,
        )

        new_ppg = incremental.vital_signs.ppg_waveform if incremental is not None else None
        waveform, rate = self._render_signal(
            source_id,
            "ppg",
            state.ppg_data,
            state.ppg_conf,
            new_ppg,
            mode,
            light,
            overlap,
            n_new,
            self.buffer_size_ppg,
            self.min_buffer_size_ppg,
            state.ppg_note,
        )
        result.vital_signs.ppg_waveform = waveform
        result.vital_signs.heart_rate = rate

        new_resp = incremental.vital_signs.respiratory_waveform if incremental is not None else None
        waveform, rate = self._render_signal(
            source_id,
            "resp",
            state.resp_data,
            state.resp_conf,
            new_resp,
            mode,
            light,
            overlap,
            n_new,
            self.buffer_size_resp,
            self.min_buffer_size_resp,
            state.resp_note,
        )
        result.vital_signs.respiratory_waveform = waveform
        result.vital_signs.respiratory_rate = rate

        result.fps = self.get_current_fps(source_id, self.buffer_size_agg)
        result.est_fps = est_fps or None
        result.message = state.message
        result.display_time = display_time
        return result

    def _render_signal(
        self,
        source_id: str,
        signal_type: str,
        data: SumCount,
        conf: SumCount,
        new: Optional[Waveform],
        mode: str,
        light: bool,
        overlap: int,
        n_new: int,
        buffer_size: int,
        min_size: int,
        note: str,
    ):
        averaged_data = data.averaged()
        averaged_conf = conf.averaged()
        if mode == "incremental":
            out_size = n_new
            rate_size = min(averaged_data.size, buffer_size)
            out_data = np.asarray(new.data[overlap:] if new is not None else [], dtype=np.float64)
            out_conf = np.asarray(
                new.confidence[overlap:] if new is not None else [], dtype=np.float64
            )
        elif mode == "windowed":
            out_size = self.buffer_size_agg
            rate_size = min(averaged_data.size, buffer_size)
            out_data = averaged_data[-self.buffer_size_agg:]
            out_conf = averaged_conf[-self.buffer_size_agg:]
        else:
            out_size = averaged_data.size
            rate_size = averaged_data.size
            out_data, out_conf = averaged_data, averaged_conf

        if out_data.size >= min_size and out_data.size > 0:
            fps = self.get_current_fps(source_id, out_size)
            if fps:
                out_data = self.postprocess_fn(signal_type, out_data, fps, light)

        waveform = None
        if out_data.size > 0:
            waveform = Waveform(
                data=[float(v) for v in out_data],
                confidence=[float(v) for v in out_conf],
                unit="unitless",
                note=note,
            )

        rate = None
        if rate_size >= min_size and rate_size > 0:
            fps = self.get_current_fps(source_id, rate_size)
            if fps:
                rate_data = self.postprocess_fn(
                    signal_type, averaged_data[-rate_size:], fps, light
                )
                if signal_type == "ppg":
                    value = estimate_heart_rate(rate_data, fps)
                    rate_note = "Estimate of the heart rate."
                else:
                    value = estimate_respiratory_rate(rate_data, fps)
                    rate_note = "Estimate of the respiratory rate."
                if value is None:
                    logger.debug("No in-band %s rate for %s", signal_type, source_id)
                else:
                    rate = Rate(
                        value=value,
                        confidence=float(np.mean(averaged_conf[-rate_size:])),
                        unit="bpm",
                        note=rate_note,
                    )
        return waveform, rate

    def get_current_fps(self, source_id: str, buffer_size: int) -> Optional[float]:
        """Mean sampling rate over the last ``buffer_size`` timestamps."""
        state = self._sessions.get(source_id)
        if state is None:
            return None
        ts = state.timestamps[-buffer_size:] if buffer_size > 0 else state.timestamps
        if len(ts) < 2:
            return None
        mean_diff = float(np.mean(np.diff(np.asarray(ts, dtype=np.float64))))
        return 1.0 / mean_diff if mean_diff > 0 else None

    def get_result(self, source_id: str) -> VitalsResult:
        """Complete view of a session with full postprocessing."""
        return self._assemble(source_id, "complete", light=False)

    def empty_result(self) -> VitalsResult:
        return empty_result()

    def reset(self, source_id: str) -> None:
        self._sessions.pop(source_id, None)

    def reset_all(self) -> None:
        self._sessions.clear()


def _single_sample(waveform: Waveform, i: int) -> Waveform:
    conf = waveform.confidence[i] if i < len(waveform.confidence) else 1.0
    return Waveform(
        data=[waveform.data[i]], confidence=[conf], unit=waveform.unit, note=waveform.note
    )
