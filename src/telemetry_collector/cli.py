"""Command-line interface for the telemetry collector."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import FORMATS, CollectorConfig


def parse_args(argv: list[str] | None = None) -> CollectorConfig:
    """Parse command-line arguments and return a CollectorConfig.

    Raises:
        FileNotFoundError: no ``--output-dir`` was given and the current
            working directory no longer exists.
    """
    parser = argparse.ArgumentParser(
        prog="telemetry-collector",
        description="Sample hardware and per-process telemetry at a fixed cadence",
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        type=Path,
        default=None,
        help="Output directory for stream and metadata files (default: current directory)",
    )
    parser.add_argument(
        "-d",
        "--duration",
        type=float,
        default=0,
        help="Run duration in minutes, 0 to run until interrupted (default: 0)",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        default=1.0,
        help="Sampling interval in seconds (default: 1.0)",
    )
    parser.add_argument(
        "--flush-interval",
        type=float,
        default=15.0,
        help="Flush buffered samples every N seconds (default: 15)",
    )
    parser.add_argument(
        "-f",
        "--format",
        choices=FORMATS,
        default="jsonl",
        help="Output format for both streams (default: jsonl)",
    )
    parser.add_argument(
        "--no-processes",
        action="store_true",
        help="Skip the per-process stream",
    )
    parser.add_argument(
        "--no-nvml",
        action="store_true",
        help="Do not load the NVIDIA management library",
    )
    parser.add_argument(
        "--poll-timeout",
        type=float,
        default=None,
        help="Give up on a sensor backend poll after N seconds (default: no limit)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    kwargs = {}
    if args.output_dir is not None:
        kwargs["output_dir"] = args.output_dir

    return CollectorConfig(
        interval=args.interval,
        flush_interval=args.flush_interval,
        duration=args.duration,
        output_format=args.format,
        collect_processes=not args.no_processes,
        poll_timeout=args.poll_timeout,
        use_nvml=not args.no_nvml,
        **kwargs,
    )


def main(argv: list[str] | None = None) -> None:
    """Entry point for the telemetry collector CLI."""
    try:
        config = parse_args(argv)
    except FileNotFoundError as e:
        print(f"Error: cannot determine the working directory: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    # Import here so --help works without the sensor libraries
    from .collector import run_collector
    from .session import HardwareSessionError

    try:
        run_collector(config)
    except HardwareSessionError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(0)
