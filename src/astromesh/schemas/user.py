"""UserConfig: Forgiving, minimal user-facing configuration.

Users only specify what they want to override from the expert defaults.
Flat uppercase aliases cover the common knobs (``TILE_SIZE``, ``QTHRESH``,
``NUM_THREADS`` ...); nested sections are available for everything else.
Unknown keys are ignored so old config files keep working.
"""

from typing import Any, Optional, Union

from pydantic import Field, field_validator

from astromesh.schemas.base import AstromeshBaseModel


class UserTileConfig(AstromeshBaseModel):
    """User-facing tile config."""
    tile_size: Optional[tuple[int, ...]] = None
    num_channels: Optional[tuple[int, ...]] = None
    remainder_frac: Optional[float] = None
    work_over_channels: Optional[bool] = None

    @field_validator("tile_size", "num_channels", mode="before")
    @classmethod
    def scalar_to_tuple(cls, v):
        if isinstance(v, int):
            return (v, v)
        return v


class UserDetectionConfig(AstromeshBaseModel):
    """User-facing detection config."""
    qthresh: Optional[float] = None
    erode: Optional[int] = None
    opening: Optional[int] = None
    min_detection_area: Optional[int] = None
    dthresh: Optional[float] = None
    min_num_false: Optional[int] = None
    min_num_noise: Optional[int] = None
    snquant: Optional[float] = None
    dilate: Optional[int] = None
    max_sky_passes: Optional[int] = None


class UserSegmentationConfig(AstromeshBaseModel):
    """User-facing segmentation config."""
    enabled: Optional[bool] = None
    min_clump_area: Optional[int] = None
    segquant: Optional[float] = None
    min_sky_frac: Optional[float] = None
    min_num_noise: Optional[int] = None
    objbordersn: Optional[float] = None
    gthresh: Optional[float] = None
    cpscorr: Optional[float] = None
    sky_subtracted: Optional[bool] = None
    connectivity: Optional[int] = None


class UserCatalogConfig(AstromeshBaseModel):
    """User-facing catalog config."""
    enabled: Optional[bool] = None
    clumps: Optional[bool] = None
    seed: Optional[int] = None
    zeropoint: Optional[float] = None
    upnum: Optional[int] = None
    upnsigma: Optional[float] = None
    up_range: Optional[tuple[int, ...]] = None
    frac_max: Optional[tuple[float, ...]] = None


class UserConfig(AstromeshBaseModel):
    """User-facing configuration schema.

    Usage
    -----
        user_cfg = UserConfig(
            BASE_DIR="/data/astromesh",
            INPUT_DIR="/data/images",
            TILE_SIZE=32,
            QTHRESH=2.0,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    # Operational settings
    base_dir: Optional[str] = Field(None, alias="BASE_DIR")
    input_dir: Optional[str] = Field(None, alias="INPUT_DIR")
    input_pattern: Optional[str] = Field(None, alias="INPUT_PATTERN")
    hdu: Optional[Union[int, str]] = Field(None, alias="HDU")
    num_threads: Optional[int] = Field(None, alias="NUM_THREADS")
    minmapsize: Optional[int] = Field(None, alias="MINMAPSIZE")
    quietmmap: Optional[bool] = Field(None, alias="QUIETMMAP")

    # Tessellation (flat aliases)
    tile_size: Optional[tuple[int, ...]] = Field(None, alias="TILE_SIZE")
    num_channels: Optional[tuple[int, ...]] = Field(None, alias="NUM_CHANNELS")

    # Convolution
    kernel_fwhm: Optional[float] = Field(None, alias="KERNEL_FWHM")
    kernel_file: Optional[str] = Field(None, alias="KERNEL_FILE")
    backend: Optional[str] = Field(None, alias="BACKEND")

    # Detection and segmentation
    qthresh: Optional[float] = Field(None, alias="QTHRESH")
    dthresh: Optional[float] = Field(None, alias="DTHRESH")
    snquant: Optional[float] = Field(None, alias="SNQUANT")
    erode: Optional[int] = Field(None, alias="ERODE")
    dilate: Optional[int] = Field(None, alias="DILATE")
    segquant: Optional[float] = Field(None, alias="SEGQUANT")
    objbordersn: Optional[float] = Field(None, alias="OBJBORDERSN")

    # Catalog
    zeropoint: Optional[float] = Field(None, alias="ZEROPOINT")
    upnum: Optional[int] = Field(None, alias="UPNUM")
    seed: Optional[int] = Field(None, alias="SEED")

    # Nested overrides (advanced users)
    tile: Optional[UserTileConfig] = None
    mesh: Optional[dict[str, Any]] = None
    clip: Optional[dict[str, Any]] = None
    convolve: Optional[dict[str, Any]] = None
    detection: Optional[UserDetectionConfig] = None
    segmentation: Optional[UserSegmentationConfig] = None
    catalog: Optional[UserCatalogConfig] = None
    visualization: Optional[dict[str, Any]] = None
    output: Optional[dict[str, Any]] = None

    model_config = AstromeshBaseModel.model_config.copy()
    # Allow forgiving input dictionaries (ignore unknown legacy keys)
    model_config.update({"populate_by_name": True, "extra": "ignore"})

    @field_validator("tile_size", "num_channels", mode="before")
    @classmethod
    def scalar_to_tuple(cls, v):
        """Accept a single int for square layouts."""
        if isinstance(v, int):
            return (v, v)
        return v

    @field_validator("kernel_fwhm", "qthresh", "dthresh", "snquant", "segquant",
                     "objbordersn", "zeropoint", mode="before")
    @classmethod
    def coerce_numeric_fields(cls, v):
        """Accept int or float for numeric fields."""
        if v is not None:
            return float(v)
        return v

    @field_validator("backend", mode="before")
    @classmethod
    def normalize_backend(cls, v):
        if isinstance(v, str):
            return v.lower().strip()
        return v

    @staticmethod
    def _section(flat: dict, nested) -> dict:
        section = {k: v for k, v in flat.items() if v is not None}
        if nested is not None:
            if isinstance(nested, dict):
                section.update(nested)
            else:
                section.update(nested.model_dump(exclude_none=True))
        return section

    def to_internal_overrides(self) -> dict:
        """Convert flat UserConfig to the nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.base_dir is not None:
            overrides["base_dir"] = str(self.base_dir)

        sections = {
            "input": self._section({"input_dir": self.input_dir, "pattern": self.input_pattern,
                                    "hdu": self.hdu}, None),
            "threads": self._section({"num_threads": self.num_threads}, None),
            "memory": self._section({"minmapsize": self.minmapsize,
                                     "quietmmap": self.quietmmap}, None),
            "tile": self._section({"tile_size": self.tile_size,
                                   "num_channels": self.num_channels}, self.tile),
            "mesh": self._section({}, self.mesh),
            "clip": self._section({}, self.clip),
            "convolve": self._section({"kernel_fwhm": self.kernel_fwhm,
                                       "kernel_file": self.kernel_file,
                                       "backend": self.backend}, self.convolve),
            "detection": self._section({"qthresh": self.qthresh, "dthresh": self.dthresh,
                                        "snquant": self.snquant, "erode": self.erode,
                                        "dilate": self.dilate}, self.detection),
            "segmentation": self._section({"segquant": self.segquant,
                                           "objbordersn": self.objbordersn}, self.segmentation),
            "catalog": self._section({"zeropoint": self.zeropoint, "upnum": self.upnum,
                                      "seed": self.seed}, self.catalog),
            "visualization": self._section({}, self.visualization),
            "output": self._section({}, self.output),
        }
        overrides.update({name: values for name, values in sections.items() if values})
        return overrides
