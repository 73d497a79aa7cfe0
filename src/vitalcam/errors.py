"""Error types raised by the vitals pipeline."""

from __future__ import annotations

from typing import Optional


class VitalsError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(VitalsError):
    """Missing credential, unknown method or missing collaborator."""


class ValidationError(VitalsError, ValueError):
    """ROI out of bounds, shape/size mismatch or malformed input data."""


class AdapterAuthError(VitalsError):
    def __init__(
        self,
        message: str = (
            "A valid API key or proxy URL is required. If the key was created "
            "recently, try again in a minute to allow it to become active."
        ),
    ) -> None:
        super().__init__(message)


class AdapterQuotaError(VitalsError):
    def __init__(
        self,
        message: str = (
            "The quota or rate limit associated with the API key may have been exceeded."
        ),
    ) -> None:
        super().__init__(message)


class AdapterRequestError(VitalsError):
    """Any other failed API call; keeps the upstream status when known."""

    def __init__(
        self,
        message: str = "Bad request or an error occurred in the API.",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientFrameError(VitalsError):
    """A single stream tick failed; the stream keeps running."""
