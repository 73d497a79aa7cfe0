"""Run the vitals service from a source checkout.

Usage: uv run python run_app.py [--host 0.0.0.0] [--port 8000] [--method chrom]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Camera vitals service")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--method", choices=["vitallens", "pos", "chrom", "g"], default=None)
    parser.add_argument("--verbose", action="store_true", help="log at DEBUG level")
    return parser.parse_args(argv)


def main() -> None:
    args = parse_args()
    src = Path(__file__).resolve().parent / "src"
    if src.exists():
        sys.path.insert(0, str(src))
    if args.method:
        os.environ["VITALCAM_METHOD"] = args.method
    from vitalcam.service import main as service_main  # type: ignore

    service_main(host=args.host, port=args.port, debug=args.verbose)


if __name__ == "__main__":
    main()
