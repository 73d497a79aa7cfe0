from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from fastapi.testclient import TestClient

from vitalcam.capture import CaptureConfig, FrameSource
from vitalcam.config import VitalsOptions
from vitalcam.controller import EventChannel
from vitalcam.errors import AdapterQuotaError
from vitalcam.result import VitalsResult
from vitalcam.service import make_app


class StubSource(FrameSource):
    def __init__(self, cfg: CaptureConfig) -> None:
        super().__init__()
        self.cfg = cfg

    async def start(self) -> None:
        pass

    async def next(self):
        return None


class FakeController:
    instances: List["FakeController"] = []

    def __init__(self, options: VitalsOptions) -> None:
        self.options = options
        self.vitals: EventChannel[VitalsResult] = EventChannel("vitals")
        self.file_progress: EventChannel[str] = EventChannel("file_progress")
        self.stream_processor: Optional[StubSource] = None
        self.started = 0
        self.disposed = False
        self.fail_with: Optional[Exception] = None
        FakeController.instances.append(self)

    def set_video_stream(self, source: StubSource) -> None:
        self.stream_processor = source

    async def start_video_stream(self) -> None:
        self.started += 1

    def pause_video_stream(self) -> None:
        pass

    def stop_video_stream(self) -> None:
        self.stream_processor = None

    async def process_video_file(self, path: str) -> VitalsResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.file_progress.emit("Detecting faces...")
        return VitalsResult(time=[0.0, 0.1], message=path)

    def dispose(self) -> None:
        self.disposed = True


def _client() -> TestClient:
    FakeController.instances = []
    app = make_app(VitalsOptions(method="pos"), controller_factory=FakeController, source_factory=StubSource)
    return TestClient(app)


def test_health_and_initial_vitals() -> None:
    client = _client()
    assert client.get("/health").json() == {"status": "ok"}
    assert client.get("/vitals").json() == {"status": "init"}


def test_stream_lifecycle_and_vitals_updates() -> None:
    client = _client()
    r = client.post("/stream/start", json={"device_index": 1, "fps": 15})
    assert r.status_code == 200
    assert r.json() == {"status": "running", "method": "pos"}
    controller = FakeController.instances[0]
    assert controller.stream_processor.cfg == CaptureConfig(1, 640, 480, 15)

    controller.vitals.emit(VitalsResult(time=[1.0], message="live"))
    body = client.get("/vitals").json()
    assert body["time"] == [1.0] and body["message"] == "live"

    assert client.post("/stream/pause").json() == {"status": "paused"}
    assert client.post("/stream/stop").json() == {"status": "stopped"}
    assert client.get("/vitals").json() == {"status": "stopped"}


def test_stream_start_rejects_bad_params() -> None:
    client = _client()
    assert client.post("/stream/start", json={"fps": 0}).status_code == 422


def test_control_updates_options_and_recreates_controller() -> None:
    client = _client()
    client.post("/stream/start", json={})
    first = FakeController.instances[0]

    r = client.post("/control", json={"method": "chrom", "fdet_fs": 2.0})
    assert r.status_code == 200
    params = r.json()["params"]
    assert params["method"] == "chrom" and params["fdet_fs"] == 2.0
    assert "api_key" not in params
    assert first.disposed

    client.post("/stream/start", json={})
    assert FakeController.instances[-1].options.method == "chrom"


def test_control_validation() -> None:
    client = _client()
    assert client.post("/control", json={"method": "bogus"}).status_code == 422
    assert client.post("/control", json={"waveform_mode": "all"}).status_code == 422
    assert client.post("/control", json={"fdet_fs": 0}).status_code == 422


def test_process_file(tmp_path: Path) -> None:
    client = _client()
    assert client.post("/process", json={"path": str(tmp_path / "missing.mp4")}).status_code == 404

    video = tmp_path / "clip.mp4"
    video.write_bytes(b"\x00")
    r = client.post("/process", json={"path": str(video)})
    assert r.status_code == 200
    assert r.json()["time"] == [0.0, 0.1]


def test_process_maps_adapter_errors(tmp_path: Path) -> None:
    client = _client()
    video = tmp_path / "clip.mp4"
    video.write_bytes(b"\x00")
    client.post("/process", json={"path": str(video)})
    FakeController.instances[0].fail_with = AdapterQuotaError()
    assert client.post("/process", json={"path": str(video)}).status_code == 429
