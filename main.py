#!/usr/bin/env python3
"""
Relative-position attention CLI - Main entry point.

Tools for checking and measuring the attention stack:
- Verifying that banded local attention matches dense relative-position attention
- Benchmarking local vs dense attention across sequence lengths

Usage:
    python main.py verify [OPTIONS]
    python main.py benchmark [OPTIONS]
"""

import sys
import argparse
from pathlib import Path

# Add src to path
sys.path.append(str(Path(__file__).parent))

from commands import verify
from commands import benchmark


def add_common_arguments(parser):
    """Options shared by every subcommand."""
    parser.add_argument(
        "--device",
        type=str,
        choices=["cpu", "cuda", "mps"],
        default=None,
        help="Device to use (default: auto-detect)",
    )
    parser.add_argument(
        "--seed", type=int, default=42, help="Random seed (default: 42)"
    )
    parser.add_argument(
        "--num-heads", type=int, default=4, help="Number of attention heads (default: 4)"
    )
    parser.add_argument(
        "--left-context", type=int, default=None, help="Left attention context for local attention"
    )
    parser.add_argument(
        "--right-context", type=int, default=None, help="Right attention context for local attention"
    )


def create_parser():
    """Create the main argument parser with subcommands."""
    parser = argparse.ArgumentParser(
        description="Relative-position attention CLI - verify and benchmark local attention",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ============================================================================
    # VERIFY subcommand
    # ============================================================================
    verify_parser = subparsers.add_parser(
        "verify",
        help="Check local attention against dense relative-position attention",
        description="Run banded local attention and window-masked dense attention with shared "
                    "weights and report the largest output difference",
    )
    add_common_arguments(verify_parser)
    verify_parser.add_argument(
        "--d-model", type=int, default=64, help="Feature width (default: 64)"
    )
    verify_parser.add_argument(
        "--atol", type=float, default=1e-5, help="Largest acceptable absolute difference (default: 1e-5)"
    )

    # ============================================================================
    # BENCHMARK subcommand
    # ============================================================================
    benchmark_parser = subparsers.add_parser(
        "benchmark",
        help="Time local vs dense attention",
        description="Compare speed and peak memory of banded local attention and dense "
                    "relative-position attention for growing sequence lengths",
    )
    add_common_arguments(benchmark_parser)
    benchmark_parser.add_argument(
        "--d-model", type=int, default=256, help="Feature width (default: 256)"
    )
    benchmark_parser.add_argument(
        "--seq-lengths",
        type=int,
        nargs="+",
        default=None,
        help="Sequence lengths to time (default: 256 512 1024 2048 4096)",
    )
    benchmark_parser.add_argument(
        "--num-runs", type=int, default=3, help="Timed runs per measurement (default: 3)"
    )

    return parser


def main(argv=None):
    """Main entry point for the attention CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == "verify":
        return verify.main(args)
    elif args.command == "benchmark":
        return benchmark.main(args)

    return 1


if __name__ == "__main__":
    sys.exit(main())
