"""`astromesh` - tiled sky estimation, detection and cataloguing of astronomical images.

Subpackages:
- data: Typed buffers and the RAM/mmap allocator
- tile: Channel and tile tessellation
- statistics: Robust statistics (clipping, quantiles, mode)
- workers: Shard-based worker pool
- mesh: Per-tile reduction, interpolation and smoothing
- convolve: Tile-aware spatial convolution, optional GPU offload
- detection: Noise-based detection and segmentation
- catalog: Per-object and per-clump measurements
- io: FITS images and tables, WCS, catalog database
- contracts: Stage-boundary checks of the pipeline products
- pipeline: Orchestrator, processor, tracking
- visualization: Check-image plotting
- cli: Command-line entry point
"""

__version__ = "0.1.0"
