"""Core pipeline execution logic.

This module contains the actual pipeline runner, separated from argument
parsing. ``scripts/run_pipeline.py`` and the ``astromesh-run`` entry point
are thin wrappers around :func:`main`.
"""

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from astromesh.errors import AstromeshError
from astromesh.pipeline.orchestrator import PipelineOrchestrator
from astromesh.schemas.initialization import init_runtime_config

__all__ = ['build_parser', 'run_pipeline', 'main']

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="astromesh-run",
        description="Detect, segment and catalog sources in FITS images",
    )
    parser.add_argument("config", help="Path to user config file (Python file with CONFIG dict)")
    parser.add_argument("--input", nargs="+", metavar="FITS", help="Input image(s)")
    parser.add_argument("--input-dir", help="Directory searched with the configured pattern")
    parser.add_argument("--base-dir", help="Output directory")
    parser.add_argument("--threads", type=int, help="Worker threads (0: all cores)")
    parser.add_argument("--backend", choices=["cpu", "auto", "gpu"], help="Convolution device")
    parser.add_argument("--max-runtime", type=float, help="Max runtime in minutes")
    parser.add_argument("--no-plots", action="store_true", default=None,
                        help="Skip check-image plots")
    parser.add_argument("--rerun", action="store_true",
                        help="Delete output directories before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def run_pipeline(args: argparse.Namespace) -> Dict[str, int]:
    """Execute the pipeline for parsed command-line arguments.

    1. Loads and resolves configuration (Param < User < CLI)
    2. Sets up (and with ``--rerun`` first cleans) output directories
    3. Starts the orchestrator and blocks until every input is done

    Returns
    -------
    dict
        ``inputs``, ``succeeded`` and ``failed`` counts.
    """
    config = init_runtime_config(args)

    print(f"\n{'=' * 60}")
    print("astromesh image pipeline")
    print('=' * 60)
    print(f"Config:  {args.config}")
    print(f"Input:   {config.input.input_dir or ''} {' '.join(config.input.files)}")
    print(f"Backend: {config.convolve.backend}")
    print(f"Output:  {config.base_dir}")
    print(f"Run ID:  {config.run_id}")
    print('=' * 60)

    if args.verbose:
        print("\nFull Internal Configuration:")
        print(json.dumps(config.model_dump(), indent=2, default=str))
        print('=' * 60)

    orchestrator = PipelineOrchestrator(config)
    return orchestrator.start(max_runtime=getattr(args, "max_runtime", None))


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point; the exit status is non-zero when any input failed."""
    args = build_parser().parse_args(argv)
    try:
        summary = run_pipeline(args)
    except (AstromeshError, FileNotFoundError, ValueError) as e:
        print(f"astromesh-run: error: {e}", file=sys.stderr)
        return 2

    if summary["inputs"] == 0:
        print("astromesh-run: no input images found", file=sys.stderr)
        return 1
    return 1 if summary["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
