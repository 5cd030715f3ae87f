"""Command-line interface modules for astromesh pipeline execution.

This package contains the core execution logic, making scripts/ optional and deletable.
"""

from astromesh.cli.run_pipeline import build_parser, main, run_pipeline

__all__ = ['build_parser', 'main', 'run_pipeline']
