"""Tests for expert-layer configuration validation.

Tests that:
- Tile layouts need one positive value per axis
- Mesh smoothing width is odd
- Quantile and fraction options stay inside their ranges
"""

import pytest
from pydantic import ValidationError

from astromesh.schemas.param import (
    CatalogConfig,
    ClipConfig,
    DetectionConfig,
    MeshConfig,
    ParamConfig,
    SegmentationConfig,
    TileConfig,
)


class TestTileValidation:
    """Channel and tile layout."""

    def test_scalar_tile_size_is_square(self):
        tile = TileConfig(tile_size=50)
        assert tile.tile_size == (50, 50)

    def test_mismatched_axes_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            TileConfig(tile_size=(30, 30, 30), num_channels=(1, 1))

        assert "one value per axis" in str(exc_info.value)

    def test_zero_tile_size_rejected(self):
        with pytest.raises(ValidationError):
            TileConfig(tile_size=(0, 30))

    def test_remainder_frac_range(self):
        TileConfig(remainder_frac=1.0)
        with pytest.raises(ValidationError):
            TileConfig(remainder_frac=0)

    def test_three_dimensional_layout(self):
        tile = TileConfig(tile_size=(10, 20, 20), num_channels=(1, 2, 2))
        assert len(tile.tile_size) == 3


class TestMeshValidation:

    def test_even_smooth_width_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            MeshConfig(smooth_width=4)

        assert "odd" in str(exc_info.value)

    def test_smooth_width_one_disables_smoothing(self):
        assert MeshConfig(smooth_width=1).smooth_width == 1

    def test_mean_q_diff_limited_to_half(self):
        with pytest.raises(ValidationError):
            MeshConfig(mean_q_diff=0.6)

    def test_min_tile_frac_is_a_fraction(self):
        with pytest.raises(ValidationError):
            MeshConfig(min_tile_frac=1.5)


class TestDetectionValidation:

    @pytest.mark.parametrize("snquant", [0.0, 1.0, 1.2])
    def test_snquant_outside_open_interval(self, snquant):
        with pytest.raises(ValidationError):
            DetectionConfig(snquant=snquant)

    @pytest.mark.parametrize("passes", [0, -1])
    def test_sky_passes_at_least_one(self, passes):
        with pytest.raises(ValidationError):
            DetectionConfig(max_sky_passes=passes)

    def test_negative_morphology_rejected(self):
        with pytest.raises(ValidationError):
            DetectionConfig(erode=-1)

    def test_min_num_noise_positive(self):
        with pytest.raises(ValidationError):
            DetectionConfig(min_num_noise=0)


class TestSegmentationAndCatalogValidation:

    def test_connectivity_values(self):
        assert SegmentationConfig(connectivity=1).connectivity == 1
        with pytest.raises(ValidationError):
            SegmentationConfig(connectivity=4)

    def test_min_sky_frac_range(self):
        with pytest.raises(ValidationError):
            SegmentationConfig(min_sky_frac=-0.1)

    def test_upnum_zero_allowed(self):
        assert CatalogConfig(upnum=0).upnum == 0

    def test_upnsigma_positive(self):
        with pytest.raises(ValidationError):
            CatalogConfig(upnsigma=0)

    def test_clip_multiple_positive(self):
        with pytest.raises(ValidationError):
            ClipConfig(multip=0)


def test_param_config_forbids_unknown_sections():
    with pytest.raises(ValidationError):
        ParamConfig.model_validate({"downloader": {}})


def test_param_config_assignment_is_validated():
    param = ParamConfig()
    with pytest.raises(ValidationError):
        param.detection.snquant = 2.0
