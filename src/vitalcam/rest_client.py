"""HTTP client for the remote vitals estimation API."""

from __future__ import annotations

import base64
import gzip
import logging
import os
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np
import requests

from .config import API_FILE_ENDPOINT, API_STREAM_ENDPOINT
from .errors import AdapterRequestError

logger = logging.getLogger(__name__)

COMPRESSION_MODE = "gzip"


def float32_to_base64(arr: np.ndarray) -> str:
    return base64.b64encode(np.asarray(arr, dtype="<f4").tobytes()).decode("ascii")


class RestClient:
    """Posts frame windows to the estimation API.

    ``stream`` mode sends the gzip-compressed raw window as binary with the
    metadata and recurrent state in ``X-*`` headers. ``file`` mode sends a
    JSON body with the base64 video.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        proxy_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ) -> None:
        self.api_key = api_key
        self.proxy_url = proxy_url
        self.session = session or requests.Session()
        self.timeout = timeout

    def endpoint(self, mode: str) -> str:
        if self.proxy_url:
            return self.proxy_url
        if mode == "file":
            return os.environ.get("VITALCAM_FILE_ENDPOINT", API_FILE_ENDPOINT)
        return os.environ.get("VITALCAM_STREAM_ENDPOINT", API_STREAM_ENDPOINT)

    def send_frames(
        self,
        metadata: Mapping[str, Any],
        frames: bytes,
        mode: str,
        state: Optional[np.ndarray] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """Send one window and return ``(status_code, parsed_body)``."""
        if mode == "stream":
            headers = {f"X-{k[:1].upper()}{k[1:]}": str(v) for k, v in metadata.items()}
            if state is not None:
                headers["X-State"] = float32_to_base64(state)
            return self._post(headers, gzip.compress(frames), mode)
        payload: Dict[str, Any] = {"video": base64.b64encode(frames).decode("ascii")}
        payload.update(metadata)
        if state is not None:
            payload["state"] = float32_to_base64(state)
        return self._post({}, payload, mode)

    def _post(self, headers: Dict[str, str], body: Any, mode: str) -> Tuple[int, Dict[str, Any]]:
        binary = mode == "stream"
        all_headers = dict(headers)
        if not self.proxy_url and self.api_key:
            all_headers["X-Api-Key"] = self.api_key
        if binary:
            all_headers["Content-Type"] = "application/octet-stream"
            all_headers["X-Encoding"] = COMPRESSION_MODE
        url = self.endpoint(mode)
        try:
            if binary:
                resp = self.session.post(url, data=body, headers=all_headers, timeout=self.timeout)
            else:
                resp = self.session.post(url, json=body, headers=all_headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise AdapterRequestError(f"POST request failed: {e}") from e
        try:
            parsed = resp.json()
        except ValueError:
            logger.error("Error parsing JSON response (status %s)", resp.status_code)
            parsed = {}
        if not isinstance(parsed, dict):
            parsed = {}
        return resp.status_code, parsed

    def close(self) -> None:
        self.session.close()
