#!/usr/bin/env python3
"""External visualization script - consumes finished pipeline products.

Renders the check image of products files (FITS or netCDF) written by the
pipeline, without touching the pipeline itself. Useful after a run with
``--no-plots`` or with different plot settings.

Usage
-----
Plot one products file::

    python scripts/plot_products.py output/images/field_products.fits

Plot every products file of a run into a directory::

    python scripts/plot_products.py output/images/*_products.fits \
        --output-dir figures/ --dpi 100
"""

import argparse
import logging
import sys
from pathlib import Path

from astromesh.schemas import ParamConfig
from astromesh.visualization import CheckPlotter

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Plot astromesh products files")
    parser.add_argument("products", nargs="+", help="Products file(s) (.fits or .nc)")
    parser.add_argument("--output-dir", default=None,
                        help="Directory for the figures (default: next to each file)")
    parser.add_argument("--dpi", type=int, default=None)
    parser.add_argument("--format", choices=["png", "pdf", "jpeg"], default=None)
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    visualization = {k: v for k, v in {"dpi": args.dpi, "output_format": args.format}.items()
                     if v is not None}
    config = ParamConfig.model_validate({"visualization": visualization})
    plotter = CheckPlotter(config)
    fmt = config.visualization.output_format

    failed = 0
    for products in map(Path, args.products):
        out_dir = Path(args.output_dir) if args.output_dir else products.parent
        out_dir.mkdir(parents=True, exist_ok=True)
        stem = products.stem.replace("_products", "")
        try:
            plotter.plot_from_file(products, out_dir / f"{stem}_check.{fmt}")
        except Exception:
            logger.exception("Could not plot %s", products)
            failed += 1
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
