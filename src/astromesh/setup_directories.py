"""
Directory setup for the astromesh pipeline.

Flat layout under one base directory:
- images/: FITS (and optional netCDF) products, one file per input image
- analysis/: catalog database and Parquet exports
- plots/: check-image plots
- logs/: pipeline logs

Product names keep the input file stem, so every output of one image can be
found from its name alone.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def setup_output_directories(base_output_dir=None):
    """
    Set up the output directory structure.

    Parameters
    ----------
    base_output_dir : str or Path, optional
        Base output directory. Defaults to ``./astromesh_output``.

    Returns
    -------
    dict
        Paths keyed by 'base', 'images', 'analysis', 'plots', 'logs'.
    """
    if base_output_dir is None:
        base_output_dir = Path.cwd() / "astromesh_output"

    base_output_dir = Path(base_output_dir).expanduser().resolve()

    directories = {
        "base": base_output_dir,
        "images": base_output_dir / "images",
        "analysis": base_output_dir / "analysis",
        "plots": base_output_dir / "plots",
        "logs": base_output_dir / "logs",
    }

    for path in directories.values():
        path.mkdir(parents=True, exist_ok=True)

    for key, path in directories.items():
        logger.debug("  %-10s: %s", key, path)
    return directories


def get_product_path(output_dirs, stem, suffix="fits"):
    """
    Path of the products file of one input image.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    stem : str
        Input file stem (e.g., 'field_0042')
    suffix : str
        'fits' or 'nc'

    Returns
    -------
    Path
        images/{stem}_products.{suffix}

    Example
    -------
    >>> get_product_path(dirs, 'field_0042')
    Path('output/images/field_0042_products.fits')
    """
    image_dir = Path(output_dirs["images"])
    image_dir.mkdir(parents=True, exist_ok=True)
    return image_dir / f"{stem}_products.{suffix.lstrip('.')}"


def get_analysis_path(output_dirs, filename):
    """Path of a catalog file (database or Parquet export) in analysis/."""
    analysis_dir = Path(output_dirs["analysis"])
    analysis_dir.mkdir(parents=True, exist_ok=True)
    return analysis_dir / filename


def get_plot_path(output_dirs, stem, plot_type="check", output_format="png"):
    """
    Path of one plot of an input image.

    Returns
    -------
    Path
        plots/{stem}_{plot_type}.{output_format}
    """
    plot_dir = Path(output_dirs["plots"])
    plot_dir.mkdir(parents=True, exist_ok=True)
    return plot_dir / f"{stem}_{plot_type}.{output_format}"


def get_log_path(output_dirs, run_id=None):
    """
    Path of the pipeline log file.

    Parameters
    ----------
    output_dirs : dict
        Output directories from setup_output_directories()
    run_id : str, optional
        Run identifier; a timestamp is used when missing.
    """
    log_dir = Path(output_dirs["logs"])
    log_dir.mkdir(parents=True, exist_ok=True)

    if run_id is None:
        run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return log_dir / f"pipeline_{run_id}.log"
