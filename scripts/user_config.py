"""astromesh User Configuration.

This is the user-facing configuration file. Modify settings here to customize
the pipeline behavior. Advanced settings are the ParamConfig defaults in
src/astromesh/schemas/param.py; any of them can be overridden through the
nested sections below.

Usage:
    python scripts/run_pipeline.py scripts/user_config.py
    python scripts/run_pipeline.py scripts/user_config.py --input image.fits
    python scripts/run_pipeline.py scripts/user_config.py --threads 8 --backend auto
"""

CONFIG = {
    # ========================================================================
    # INPUT & OUTPUT
    # ========================================================================
    "INPUT_DIR": "./images",      # Directory searched with INPUT_PATTERN
    "INPUT_PATTERN": "*.fits",
    "HDU": None,                  # None: first HDU holding an image
    "BASE_DIR": "./astromesh_output",  # All outputs go here

    # ========================================================================
    # RESOURCES
    # ========================================================================
    "NUM_THREADS": 0,             # 0: all available cores
    "MINMAPSIZE": 1_000_000_000,  # Bytes above which buffers are memory-mapped
    "BACKEND": "cpu",             # "cpu", "auto" (GPU if present) or "gpu"

    # ========================================================================
    # TESSELLATION
    # ========================================================================
    "TILE_SIZE": 64,              # Square tiles (or (ny, nx))
    "NUM_CHANNELS": 1,

    # ========================================================================
    # CONVOLUTION
    # ========================================================================
    "KERNEL_FWHM": 2.0,           # Gaussian kernel FWHM in pixels
    "KERNEL_FILE": None,          # FITS kernel; overrides KERNEL_FWHM

    # ========================================================================
    # DETECTION & SEGMENTATION
    # ========================================================================
    "QTHRESH": 1.5,               # Initial threshold (convolved std units)
    "SNQUANT": 0.99,              # Pseudo-detection S/N quantile
    "SEGQUANT": 0.95,             # Clump S/N quantile
    "OBJBORDERSN": 1.0,           # River S/N that joins two clumps

    # ========================================================================
    # CATALOG
    # ========================================================================
    "ZEROPOINT": 22.5,
    "UPNUM": 100,                 # Upper-limit placements (0 disables)
    "SEED": 1,

    # Nested sections for everything else, e.g.:
    "detection": {"min_num_noise": 50, "dilate": 3, "max_sky_passes": 3},
    "visualization": {"enabled": True, "dpi": 150},
    "output": {"write_netcdf": False, "compression": "snappy"},
}
