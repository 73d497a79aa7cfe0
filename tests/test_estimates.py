from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import pytest

from vitalcam.config import METHODS_CONFIG, VitalsOptions
from vitalcam.errors import ValidationError
from vitalcam.estimates import EstimateAggregator, SumCount, compute_overlap
from vitalcam.result import NO_FACE_MESSAGE, FaceResult, VitalSigns, VitalsResult, Waveform


def _result(
    times: Sequence[float], ppg: Sequence[float], resp: Optional[Sequence[float]] = None
) -> VitalsResult:
    n = len(times)
    vs = VitalSigns(ppg_waveform=Waveform(list(ppg), [1.0] * n))
    if resp is not None:
        vs.respiratory_waveform = Waveform(list(resp), [0.5] * n)
    return VitalsResult(
        face=FaceResult(coordinates=[[0, 0, 10, 10]] * n, confidence=[0.9] * n),
        vital_signs=vs,
        time=list(times),
    )


def _aggregator(method: str = "pos", waveform_mode: Optional[str] = None) -> EstimateAggregator:
    options = VitalsOptions(method=method, waveform_mode=waveform_mode)
    return EstimateAggregator(METHODS_CONFIG[method], options)


def test_compute_overlap() -> None:
    assert compute_overlap([1000, 1001, 1002, 1003], [1002, 1003, 1004]) == 2
    assert compute_overlap([], [1, 2]) == 0
    assert compute_overlap([1, 2, 3], [4, 5]) == 0
    # fully contained results overlap by their own length
    assert compute_overlap([1, 2, 3], [2, 3]) == 2


def test_overlapping_samples_are_averaged() -> None:
    agg = _aggregator()
    agg.process_incremental_result(_result([1000, 1001, 1002, 1003], [1, 2, 3, 4]), "s", "complete")
    agg.process_incremental_result(_result([1002, 1003, 1004], [30, 40, 50]), "s", "complete")
    state = agg.session("s")
    assert state is not None
    assert np.allclose(state.ppg_data.sum, [1, 2, 33, 44, 50])
    assert list(state.ppg_data.count) == [1, 1, 2, 2, 1]
    assert state.timestamps == [1000, 1001, 1002, 1003, 1004]
    assert len(state.face_coordinates) == 5
    assert np.allclose(state.ppg_data.averaged(), [1, 2, 16.5, 22, 50])


def test_sum_count_trims_to_max_size() -> None:
    sc = SumCount()
    sc.update([1, 2, 3], 0, max_size=4)
    sc.update([3, 4, 5], 1, max_size=4)
    assert len(sc) == 4
    assert np.allclose(sc.averaged(), [2, 3, 4, 5])


def test_incremental_mode_returns_new_slice() -> None:
    agg = _aggregator(waveform_mode="incremental")
    agg.process_incremental_result(_result([0, 1, 2], [1, 2, 3]), "s", "windowed")
    out = agg.process_incremental_result(_result([1, 2, 3, 4], [2, 3, 4, 5]), "s", "windowed")
    assert out is not None
    assert out.time == [3, 4]
    assert out.vital_signs.ppg_waveform is not None
    assert out.vital_signs.ppg_waveform.data == [4.0, 5.0]
    assert len(out.face.coordinates) == 2


def test_complete_mode_grows_monotonically() -> None:
    agg = _aggregator()
    lengths: List[int] = []
    for start in range(0, 2000, 20):
        ts = [t / 30 for t in range(start, start + 48)]
        agg.process_incremental_result(_result(ts, np.ones(48)), "s", "complete", True, False)
        lengths.append(len(agg.get_result("s").time))
    assert lengths == sorted(lengths)
    assert lengths[-1] == 2000 - 20 + 48


def test_windowed_mode_is_bounded() -> None:
    agg = _aggregator()
    for start in range(0, 2000, 20):
        ts = [t / 30 for t in range(start, start + 48)]
        out = agg.process_incremental_result(_result(ts, np.ones(48)), "s", "windowed")
    assert out is not None
    assert len(out.time) == agg.buffer_size_agg
    state = agg.session("s")
    assert state is not None
    assert len(state.ppg_data) == agg.buffer_size_ppg


def test_rates_from_accumulated_waveforms() -> None:
    agg = _aggregator()
    fs = 30.0
    t = np.arange(0, 40.0, 1 / fs)
    ppg = np.sin(2 * np.pi * 1.2 * t)
    resp = np.sin(2 * np.pi * 0.25 * t)
    out = agg.process_incremental_result(_result(list(t), ppg, resp), "s", "windowed")
    assert out is not None
    hr = out.vital_signs.heart_rate
    rr = out.vital_signs.respiratory_rate
    assert hr is not None and 68.0 <= hr.value <= 76.0
    assert hr.confidence == pytest.approx(1.0)
    assert rr is not None and 12.0 <= rr.value <= 18.0
    assert rr.confidence == pytest.approx(0.5)
    assert out.fps == pytest.approx(fs)


def test_no_rate_before_min_window() -> None:
    agg = _aggregator()
    ts = [i / 30 for i in range(30)]
    out = agg.process_incremental_result(_result(ts, np.ones(30)), "s", "windowed")
    assert out is not None
    assert out.vital_signs.heart_rate is None


def test_buffered_results_carry_display_time() -> None:
    agg = _aggregator("vitallens")
    ts = [0.0, 1 / 30, 2 / 30]
    results = agg.produce_buffered_results(_result(ts, [1, 2, 3], [4, 5, 6]), "s", "windowed")
    assert [r.display_time for r in results] == pytest.approx([t + 1.5 for t in ts])
    assert all(len(r.time) for r in results)
    again = agg.produce_buffered_results(
        _result(ts[1:] + [3 / 30], [2, 3, 4], [5, 6, 7]), "s", "windowed"
    )
    assert len(again) == 1
    state = agg.session("s")
    assert state is not None
    assert len(state.timestamps) == 4


def test_missing_waveforms_raise() -> None:
    agg = _aggregator()
    with pytest.raises(ValidationError):
        agg.process_incremental_result(VitalsResult(time=[0.0]), "s", "windowed")


def test_reset_and_empty_result() -> None:
    agg = _aggregator()
    agg.process_incremental_result(_result([0, 1], [1, 2]), "a", "windowed")
    agg.process_incremental_result(_result([0, 1], [1, 2]), "b", "windowed")
    agg.reset("a")
    assert agg.session("a") is None
    assert agg.session("b") is not None
    agg.reset_all()
    assert agg.session("b") is None
    assert agg.empty_result().message == NO_FACE_MESSAGE
