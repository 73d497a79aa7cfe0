from __future__ import annotations

import base64
import gzip
from typing import Any, Dict, List, Optional

import numpy as np
import pytest
import requests

from vitalcam.config import API_FILE_ENDPOINT, API_STREAM_ENDPOINT
from vitalcam.errors import AdapterRequestError
from vitalcam.rest_client import RestClient, float32_to_base64


class FakeResponse:
    def __init__(self, status_code: int, payload: Any = None, bad_json: bool = False) -> None:
        self.status_code = status_code
        self._payload = payload
        self._bad_json = bad_json

    def json(self) -> Any:
        if self._bad_json:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, response: Optional[FakeResponse] = None, exc: Optional[Exception] = None) -> None:
        self.response = response or FakeResponse(200, {"ok": True})
        self.exc = exc
        self.posts: List[Dict[str, Any]] = []
        self.closed = False

    def post(self, url: str, data: Any = None, json: Any = None, headers: Any = None, timeout: Any = None):
        self.posts.append({"url": url, "data": data, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self) -> None:
        self.closed = True


def test_stream_mode_sends_gzip_binary_with_headers() -> None:
    session = FakeSession()
    client = RestClient(api_key="secret", session=session)  # type: ignore[arg-type]
    frames = bytes(range(256)) * 4
    state = np.array([0.5, -1.0], dtype=np.float32)
    status, body = client.send_frames({"origin": "test"}, frames, "stream", state)
    assert status == 200 and body == {"ok": True}
    post = session.posts[0]
    assert post["url"] == API_STREAM_ENDPOINT
    assert gzip.decompress(post["data"]) == frames
    headers = post["headers"]
    assert headers["X-Origin"] == "test"
    assert headers["X-Api-Key"] == "secret"
    assert headers["Content-Type"] == "application/octet-stream"
    assert headers["X-Encoding"] == "gzip"
    decoded = np.frombuffer(base64.b64decode(headers["X-State"]), dtype="<f4")
    assert np.array_equal(decoded, state)


def test_file_mode_sends_json() -> None:
    session = FakeSession()
    client = RestClient(api_key="secret", session=session)  # type: ignore[arg-type]
    client.send_frames({"origin": "test"}, b"\x01\x02", "file")
    post = session.posts[0]
    assert post["url"] == API_FILE_ENDPOINT
    assert post["json"] == {"video": base64.b64encode(b"\x01\x02").decode("ascii"), "origin": "test"}
    assert "X-Encoding" not in post["headers"]


def test_proxy_url_replaces_endpoint_and_key() -> None:
    session = FakeSession()
    client = RestClient(api_key="secret", proxy_url="http://proxy.local/vitals", session=session)  # type: ignore[arg-type]
    client.send_frames({}, b"\x00", "stream")
    post = session.posts[0]
    assert post["url"] == "http://proxy.local/vitals"
    assert "X-Api-Key" not in post["headers"]


def test_endpoint_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VITALCAM_STREAM_ENDPOINT", "http://localhost:9000/stream")
    client = RestClient(api_key="k", session=FakeSession())  # type: ignore[arg-type]
    assert client.endpoint("stream") == "http://localhost:9000/stream"
    assert client.endpoint("file") == API_FILE_ENDPOINT


def test_unparseable_body_yields_empty_dict() -> None:
    session = FakeSession(FakeResponse(502, bad_json=True))
    client = RestClient(api_key="k", session=session)  # type: ignore[arg-type]
    assert client.send_frames({}, b"\x00", "file") == (502, {})


def test_transport_failure_raises_request_error() -> None:
    session = FakeSession(exc=requests.ConnectionError("refused"))
    client = RestClient(api_key="k", session=session)  # type: ignore[arg-type]
    with pytest.raises(AdapterRequestError):
        client.send_frames({}, b"\x00", "stream")
    client.close()
    assert session.closed


def test_float32_to_base64() -> None:
    encoded = float32_to_base64(np.array([1.0], dtype=np.float64))
    assert base64.b64decode(encoded) == np.array([1.0], dtype="<f4").tobytes()
