"""Test config resolution and validation with Pydantic."""

import pytest
from pydantic import ValidationError

from astromesh.errors import MisconfigurationError
from astromesh.schemas import ParamConfig, UserConfig, CLIConfig, InternalConfig
from astromesh.schemas.resolve import deep_merge, resolve_config
from astromesh.schemas.user import UserDetectionConfig, UserSegmentationConfig, UserTileConfig


class TestConfigResolution:
    """Test resolve_config() precedence and merging."""

    def test_resolve_config_all_defaults(self):
        """Resolving with no user/CLI overrides uses all ParamConfig defaults."""
        config = resolve_config(ParamConfig(), None, None)

        assert isinstance(config, InternalConfig)
        assert config.tile.tile_size == (64, 64)
        assert config.detection.qthresh == 1.5
        assert config.output_dirs is None
        assert config.run_id is None

    def test_user_config_overrides_param_config(self):
        """UserConfig values override ParamConfig defaults."""
        user = UserConfig(QTHRESH=2)
        config = resolve_config(ParamConfig(), user, None)

        assert config.detection.qthresh == 2.0

    def test_cli_config_can_be_instantiated_empty(self):
        cli = CLIConfig()
        config = resolve_config(ParamConfig(), None, cli)
        assert config.threads.num_threads == 1

    def test_precedence_param_user(self):
        """Full precedence: User > Param."""
        param = ParamConfig()
        user = UserConfig(QTHRESH=2.5, INPUT_DIR="/data/field")
        config = resolve_config(param, user, None)

        assert config.detection.qthresh == 2.5
        assert config.input.input_dir == "/data/field"
        # Untouched values keep the expert defaults
        assert config.detection.snquant == 0.99

    def test_empty_user_config_uses_all_param_defaults(self):
        """Empty UserConfig() doesn't override anything."""
        config = resolve_config(ParamConfig(), UserConfig(), None)

        assert config.segmentation.segquant == 0.95
        assert config.mesh.interp_num_ngb == 9

    def test_none_user_config_uses_all_param_defaults(self):
        """None UserConfig doesn't override anything."""
        config = resolve_config(ParamConfig(), None, None)

        assert config.segmentation.objbordersn == 1.0

    def test_resolved_config_is_frozen(self):
        config = resolve_config(ParamConfig(), None, None)
        with pytest.raises(ValidationError):
            config.base_dir = "/elsewhere"


class TestUserConfigAliases:
    """Test UserConfig flat aliases map correctly."""

    def test_tile_size_scalar_alias(self):
        """A single TILE_SIZE value makes square tiles."""
        config = resolve_config(ParamConfig(), UserConfig(TILE_SIZE=32), None)

        assert config.tile.tile_size == (32, 32)

    def test_kernel_aliases(self):
        user = UserConfig(KERNEL_FWHM=3, KERNEL_FILE="psf.fits", BACKEND="AUTO")
        config = resolve_config(ParamConfig(), user, None)

        assert config.convolve.kernel_fwhm == 3.0
        assert config.convolve.kernel_file == "psf.fits"
        assert config.convolve.backend == "auto"

    def test_memory_aliases(self):
        user = UserConfig(MINMAPSIZE=1000, QUIETMMAP=False)
        config = resolve_config(ParamConfig(), user, None)

        assert config.memory.minmapsize == 1000
        assert config.memory.quietmmap is False

    def test_catalog_aliases(self):
        user = UserConfig(ZEROPOINT=22.5, UPNUM=0, SEED=42)
        config = resolve_config(ParamConfig(), user, None)

        assert config.catalog.zeropoint == 22.5
        assert config.catalog.upnum == 0
        assert config.catalog.seed == 42

    def test_nested_detection_override(self):
        """Nested detection config overrides flat alias."""
        user = UserConfig(
            QTHRESH=2,
            detection=UserDetectionConfig(qthresh=3, min_num_noise=20),
        )
        config = resolve_config(ParamConfig(), user, None)

        # Nested should win
        assert config.detection.qthresh == 3.0
        assert config.detection.min_num_noise == 20

    def test_nested_dict_sections(self):
        """Sections without a dedicated model accept plain dicts."""
        user = UserConfig(mesh={"smooth_width": 5}, output={"write_netcdf": True})
        config = resolve_config(ParamConfig(), user, None)

        assert config.mesh.smooth_width == 5
        assert config.output.write_netcdf is True


class TestTypeCoercion:
    """Test UserConfig type coercion."""

    def test_int_coerced_to_float_for_qthresh(self):
        """Integer threshold is coerced to float."""
        user = UserConfig(QTHRESH=2)  # int
        config = resolve_config(ParamConfig(), user, None)

        assert isinstance(config.detection.qthresh, float)
        assert config.detection.qthresh == 2.0

    def test_backend_normalized_to_lowercase(self):
        user = UserConfig(BACKEND=" GPU ")
        assert user.backend == "gpu"

    def test_tile_section_scalar(self):
        user = UserConfig(tile=UserTileConfig(tile_size=16, remainder_frac=0.5))
        config = resolve_config(ParamConfig(), user, None)

        assert config.tile.tile_size == (16, 16)
        assert config.tile.remainder_frac == 0.5


class TestEdgeCases:
    """Test config edge cases and error conditions."""

    def test_none_values_dont_override(self):
        """None values in UserConfig don't override ParamConfig."""
        user = UserConfig(QTHRESH=None, SEED=5)
        config = resolve_config(ParamConfig(), user, None)

        assert config.detection.qthresh == 1.5  # default, not overridden
        assert config.catalog.seed == 5

    def test_dict_user_config_accepted(self):
        """Dict can be passed as UserConfig (converted by Pydantic)."""
        user_dict = {"QTHRESH": 3, "TILE_SIZE": [16, 32]}
        config = resolve_config(ParamConfig(), user_dict, None)

        assert config.detection.qthresh == 3.0
        assert config.tile.tile_size == (16, 32)

    def test_empty_cli_config_dict_accepted(self):
        """Empty dict can be passed as CLIConfig (converted by Pydantic)."""
        user = UserConfig(QTHRESH=4)
        config = resolve_config(ParamConfig(), user, {})

        assert config.detection.qthresh == 4.0

    def test_incomplete_param_config_dict_rejected(self):
        """Unknown keys in the expert layer are rejected."""
        with pytest.raises(ValidationError):
            resolve_config({"incomplete": "dict"}, None, None)

    def test_tile_and_channel_dimensions_must_agree(self):
        user = UserConfig(TILE_SIZE=(8, 8, 8))
        with pytest.raises(MisconfigurationError, match="one value per axis"):
            resolve_config(ParamConfig(), user, None)

    def test_up_range_needs_one_value_per_axis(self):
        user = UserConfig(catalog={"up_range": (100,)})
        with pytest.raises(MisconfigurationError, match="up_range"):
            resolve_config(ParamConfig(), user, None)


class TestDefaultValues:
    """ParamConfig defaults."""

    def test_tile_and_mesh_defaults(self):
        config = resolve_config(ParamConfig(), None, None)

        assert config.tile.num_channels == (1, 1)
        assert config.tile.remainder_frac == 0.1
        assert config.mesh.min_tile_frac == 0.5
        assert config.mesh.smooth_width == 3
        assert config.mesh.bilinear is False

    def test_detection_defaults(self):
        config = resolve_config(ParamConfig(), None, None)

        assert config.detection.erode == 2
        assert config.detection.opening == 1
        assert config.detection.dthresh == 0.0
        assert config.detection.min_num_false == 10
        assert config.detection.dilate == 3
        assert config.detection.max_sky_passes == 3

    def test_convolve_defaults(self):
        config = resolve_config(ParamConfig(), None, None)

        assert config.convolve.kernel_fwhm == 2.0
        assert config.convolve.kernel_truncation == 5.0
        assert config.convolve.edge_correct is True
        assert config.convolve.backend == "cpu"

    def test_memory_and_thread_defaults(self):
        config = resolve_config(ParamConfig(), None, None)

        assert config.memory.minmapsize == 1_048_576
        assert config.memory.quietmmap is True
        assert config.threads.num_threads == 1


class TestConfigValidation:
    """Test Pydantic validation of configs."""

    def test_snquant_must_be_a_fraction(self):
        with pytest.raises(ValidationError):
            resolve_config(ParamConfig(), UserConfig(SNQUANT=1.5), None)

    def test_segquant_must_be_a_fraction(self):
        with pytest.raises(ValidationError):
            resolve_config(ParamConfig(), UserConfig(SEGQUANT=0), None)

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValidationError):
            resolve_config(ParamConfig(), UserConfig(BACKEND="opencl"), None)

    def test_connectivity_limited_to_one_or_two(self):
        user = UserConfig(segmentation=UserSegmentationConfig(connectivity=3))
        with pytest.raises(ValidationError):
            resolve_config(ParamConfig(), user, None)

    def test_even_smooth_width_rejected_by_param_config(self):
        with pytest.raises(ValidationError, match="odd"):
            ParamConfig.model_validate({"mesh": {"smooth_width": 4}})

    def test_negative_clip_multiple_rejected(self):
        with pytest.raises(ValidationError):
            resolve_config(ParamConfig(), UserConfig(clip={"multip": -1}), None)


class TestDeepMerge:

    def test_nested_dicts_merge(self):
        base = {"a": 1, "b": {"c": 2, "d": 3}}
        result = deep_merge(base, {"b": {"d": 4, "e": 5}}, {"f": 6})

        assert result == {"a": 1, "b": {"c": 2, "d": 4, "e": 5}, "f": 6}
        # Inputs are not modified
        assert base == {"a": 1, "b": {"c": 2, "d": 3}}


class TestIntegration:
    """Integration tests combining multiple features."""

    def test_full_workflow_with_all_overrides(self):
        """Full workflow: param + user + cli."""
        user = UserConfig(
            BASE_DIR="/tmp/run",
            INPUT_DIR="/data",
            TILE_SIZE=32,
            QTHRESH=2,
            segmentation=UserSegmentationConfig(enabled=False),
            catalog={"frac_max": (0.5, 0.25)},
        )
        cli = CLIConfig(num_threads=4, no_plots=True)
        config = resolve_config(ParamConfig(), user, cli)

        assert config.base_dir == "/tmp/run"
        assert config.input.input_dir == "/data"
        assert config.tile.tile_size == (32, 32)
        assert config.detection.qthresh == 2.0
        assert config.segmentation.enabled is False
        assert config.catalog.frac_max == (0.5, 0.25)
        assert config.threads.num_threads == 4
        assert config.visualization.enabled is False
