"""ParamConfig: Expert defaults for the astromesh pipeline.

This module defines the complete default configuration. ALL pipeline
parameters must have defaults here. No runtime code should define fallback
values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives
InternalConfig.
"""

from typing import Literal, Optional, Union

from pydantic import Field, field_validator, model_validator

from astromesh.schemas.base import AstromeshBaseModel


# =============================================================================
# Nested Configuration Models
# =============================================================================

class TileConfig(AstromeshBaseModel):
    """Channel and tile layout."""
    tile_size: tuple[int, ...] = (64, 64)
    num_channels: tuple[int, ...] = (1, 1)
    remainder_frac: float = Field(0.1, gt=0, le=1.0,
                                  description="Merge a trailing partial tile below this fraction")
    work_over_channels: bool = False

    @field_validator("tile_size", "num_channels", mode="before")
    @classmethod
    def scalar_to_tuple(cls, v):
        """Accept a single int for square layouts."""
        if isinstance(v, int):
            return (v, v)
        return v

    @model_validator(mode="after")
    def check_dimensions(self):
        if len(self.tile_size) != len(self.num_channels):
            raise ValueError(
                f"tile_size {self.tile_size} and num_channels {self.num_channels} "
                "must have one value per axis"
            )
        if any(t < 1 for t in self.tile_size) or any(c < 1 for c in self.num_channels):
            raise ValueError("tile sizes and channel counts must be positive")
        return self


class MeshConfig(AstromeshBaseModel):
    """Tile-plane estimation."""
    min_tile_frac: float = Field(0.5, ge=0, le=1.0, description="Usable-pixel fraction for a tile")
    mean_q_diff: float = Field(0.05, ge=0, le=0.5, description="Signal-in-tile tolerance")
    interp_num_ngb: int = Field(9, ge=1)
    smooth_width: int = Field(3, ge=1)
    bilinear: bool = False
    signal_filter: bool = True

    @field_validator("smooth_width")
    @classmethod
    def odd_width(cls, v):
        if v % 2 == 0:
            raise ValueError(f"smooth_width must be odd, got {v}")
        return v


class ClipConfig(AstromeshBaseModel):
    """Sigma-clipping used for tile statistics."""
    multip: float = Field(3.0, gt=0)
    param: float = Field(0.1, gt=0, description="Tolerance (<1) or number of clips (>=1)")


class MemoryConfig(AstromeshBaseModel):
    """RAM/mmap allocation policy."""
    minmapsize: int = Field(1_048_576, ge=0, description="Bytes above which buffers are mmapped")
    quietmmap: bool = True


class ThreadsConfig(AstromeshBaseModel):
    """Worker pool size (0 = one per CPU)."""
    num_threads: int = Field(1, ge=0)


class ConvolveConfig(AstromeshBaseModel):
    """Kernel and spatial convolution."""
    kernel_fwhm: float = Field(2.0, gt=0)
    kernel_truncation: float = Field(5.0, gt=0)
    kernel_file: Optional[str] = None
    kernel_hdu: Optional[Union[int, str]] = None
    edge_correct: bool = True
    convolve_over_channels: bool = False
    convolve_on_blank: bool = False
    backend: Literal["cpu", "auto", "gpu"] = "cpu"


class DetectionConfig(AstromeshBaseModel):
    """Thresholding, pseudo-detections and their S/N cut."""
    qthresh: float = Field(1.5, description="Initial threshold in units of the convolved std")
    erode: int = Field(2, ge=0)
    opening: int = Field(1, ge=0)
    min_detection_area: int = Field(3, ge=1)
    dthresh: float = Field(0.0, description="Pseudo-detection threshold in units of the convolved std")
    min_num_false: int = Field(10, ge=1, description="Minimum pixels of a pseudo-detection")
    min_num_noise: int = Field(50, ge=1, description="Minimum number of noise pseudo-detections")
    snquant: float = Field(0.99, gt=0, lt=1.0)
    dilate: int = Field(3, ge=0)
    max_sky_passes: int = Field(3, ge=1, description="Detection passes, each re-measuring the sky "
                                "with the previous detections masked, until the labels settle")


class SegmentationConfig(AstromeshBaseModel):
    """Clumps and objects."""
    enabled: bool = True
    min_clump_area: int = Field(5, ge=1, description="Clumps must be larger than this")
    segquant: float = Field(0.95, gt=0, lt=1.0)
    min_sky_frac: float = Field(0.7, ge=0, le=1.0)
    min_num_noise: int = Field(30, ge=1, description="Minimum number of sky clumps")
    objbordersn: float = Field(1.0, description="River S/N joining two clumps into one object")
    gthresh: float = Field(0.5, description="Clump growth limit in units of the convolved std")
    cpscorr: float = Field(1.0, gt=0, description="Correlated-pixel correction")
    sky_subtracted: bool = True
    connectivity: Literal[1, 2] = 2


class CatalogConfig(AstromeshBaseModel):
    """Measurement pass."""
    enabled: bool = True
    clumps: bool = True
    seed: int = Field(1, ge=0)
    zeropoint: float = 0.0
    upnum: int = Field(100, ge=0, description="Upper-limit placements (0 disables)")
    upnsigma: float = Field(1.0, gt=0)
    up_range: Optional[tuple[int, ...]] = Field(None, description="Placement box around the label")
    frac_max: tuple[float, ...] = (0.5,)


class InputConfig(AstromeshBaseModel):
    """Input discovery."""
    input_dir: Optional[str] = None
    pattern: str = "*.fits"
    hdu: Optional[Union[int, str]] = Field(None, description="Input HDU (None: first image HDU)")
    files: list[str] = Field(default_factory=list)


class VisualizationConfig(AstromeshBaseModel):
    """Check-image plots."""
    enabled: bool = True
    dpi: int = Field(150, ge=50)
    figsize: tuple[float, float] = (16.0, 9.0)
    output_format: Literal["png", "pdf", "jpeg"] = "png"
    cmap: str = "gray"
    percentiles: tuple[float, float] = (1.0, 99.5)


class OutputConfig(AstromeshBaseModel):
    """Output products."""
    compression: Literal["snappy", "gzip", "lz4", "none"] = "snappy"
    write_fits: bool = True
    write_netcdf: bool = False
    db_filename: str = "astromesh_catalog.db"


class LoggingConfig(AstromeshBaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(AstromeshBaseModel):
    """Complete expert configuration with all defaults.

    This config is NOT used directly by runtime code. It is the base layer
    of config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    base_dir: str = "astromesh_output"
    tile: TileConfig = Field(default_factory=TileConfig)
    mesh: MeshConfig = Field(default_factory=MeshConfig)
    clip: ClipConfig = Field(default_factory=ClipConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    threads: ThreadsConfig = Field(default_factory=ThreadsConfig)
    convolve: ConvolveConfig = Field(default_factory=ConvolveConfig)
    detection: DetectionConfig = Field(default_factory=DetectionConfig)
    segmentation: SegmentationConfig = Field(default_factory=SegmentationConfig)
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    input: InputConfig = Field(default_factory=InputConfig)
    visualization: VisualizationConfig = Field(default_factory=VisualizationConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
