"""Camera-based vital sign estimation.

Frames are buffered per ROI, sent window by window to a method handler
(local POS/CHROM/G or the remote API) and the overlapping estimates are
aggregated into waveforms and heart/respiratory rates.
"""

__all__ = [
    "buffer",
    "buffered_results",
    "capture",
    "chrom",
    "config",
    "controller",
    "detection_worker",
    "detector",
    "errors",
    "estimates",
    "file_source",
    "filters",
    "frame",
    "methods",
    "pos",
    "rates",
    "rest_client",
    "result",
    "roi",
    "service",
    "stream_processor",
    "video",
]

__version__ = "0.1.0"
