"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully
validated, normalized and frozen. Fallback defaults and validation logic
do not belong in runtime code - everything is explicit here.
"""

from typing import Literal, Optional, Union

from pydantic import ConfigDict, Field

from astromesh.schemas.base import AstromeshBaseModel


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalTileConfig(AstromeshBaseModel):
    tile_size: tuple[int, ...]
    num_channels: tuple[int, ...]
    remainder_frac: float
    work_over_channels: bool


class InternalMeshConfig(AstromeshBaseModel):
    min_tile_frac: float
    mean_q_diff: float
    interp_num_ngb: int
    smooth_width: int
    bilinear: bool
    signal_filter: bool


class InternalClipConfig(AstromeshBaseModel):
    multip: float = Field(gt=0)
    param: float = Field(gt=0)


class InternalMemoryConfig(AstromeshBaseModel):
    minmapsize: int
    quietmmap: bool


class InternalThreadsConfig(AstromeshBaseModel):
    num_threads: int


class InternalConvolveConfig(AstromeshBaseModel):
    kernel_fwhm: float
    kernel_truncation: float
    kernel_file: Optional[str]
    kernel_hdu: Optional[Union[int, str]]
    edge_correct: bool
    convolve_over_channels: bool
    convolve_on_blank: bool
    backend: Literal["cpu", "auto", "gpu"]


class InternalDetectionConfig(AstromeshBaseModel):
    qthresh: float
    erode: int
    opening: int
    min_detection_area: int
    dthresh: float
    min_num_false: int
    min_num_noise: int
    snquant: float = Field(gt=0, lt=1.0)
    dilate: int
    max_sky_passes: int = Field(ge=1)


class InternalSegmentationConfig(AstromeshBaseModel):
    enabled: bool
    min_clump_area: int
    segquant: float = Field(gt=0, lt=1.0)
    min_sky_frac: float
    min_num_noise: int
    objbordersn: float
    gthresh: float
    cpscorr: float
    sky_subtracted: bool
    connectivity: Literal[1, 2]


class InternalCatalogConfig(AstromeshBaseModel):
    enabled: bool
    clumps: bool
    seed: int
    zeropoint: float
    upnum: int
    upnsigma: float
    up_range: Optional[tuple[int, ...]]
    frac_max: tuple[float, ...]


class InternalInputConfig(AstromeshBaseModel):
    input_dir: Optional[str]
    pattern: str
    hdu: Optional[Union[int, str]]
    files: list[str]


class InternalVisualizationConfig(AstromeshBaseModel):
    enabled: bool
    dpi: int
    figsize: tuple[float, float]
    output_format: Literal["png", "pdf", "jpeg"]
    cmap: str
    percentiles: tuple[float, float]


class InternalOutputConfig(AstromeshBaseModel):
    compression: Literal["snappy", "gzip", "lz4", "none"]
    write_fits: bool
    write_netcdf: bool
    db_filename: str


class InternalLoggingConfig(AstromeshBaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(AstromeshBaseModel):
    """Authoritative runtime configuration.

    Runtime modules receive InternalConfig and access fields directly::

        def __init__(self, config: InternalConfig):
            self.qthresh = config.detection.qthresh   # NOT .get()

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO validation in runtime code
    """

    base_dir: str
    tile: InternalTileConfig
    mesh: InternalMeshConfig
    clip: InternalClipConfig
    memory: InternalMemoryConfig
    threads: InternalThreadsConfig
    convolve: InternalConvolveConfig
    detection: InternalDetectionConfig
    segmentation: InternalSegmentationConfig
    catalog: InternalCatalogConfig
    input: InternalInputConfig
    visualization: InternalVisualizationConfig
    output: InternalOutputConfig
    logging: InternalLoggingConfig
    output_dirs: Optional[dict[str, str]] = None
    run_id: Optional[str] = None

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,
    )
