"""Root-level pytest fixtures for the astromesh test suite.

Provides shared configuration fixtures following the Pydantic-based
architecture, plus small synthetic images. Tests should build configs
through these fixtures instead of raw dicts.
"""

import pytest
from pathlib import Path
import tempfile
import shutil

import numpy as np

from astromesh.schemas import ParamConfig, UserConfig, resolve_config
from astromesh.setup_directories import setup_output_directories


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults.

    Use this as the base for all test configs. Override specific values
    through make_config or custom UserConfig instances.
    """
    return ParamConfig()


@pytest.fixture
def internal_config(param_config):
    """Fully validated runtime configuration (no overrides).

    Examples
    --------
    >>> def test_detector_init(internal_config, tessellation):
    ...     detector = Detector(internal_config, tessellation)
    ...     assert detector.qthresh == 1.5
    """
    return resolve_config(param_config, None, None)


@pytest.fixture
def make_config(param_config):
    """Factory fixture for creating custom test configs.

    Returns a callable that accepts UserConfig-compatible kwargs.

    Examples
    --------
    >>> def test_custom_threshold(make_config):
    ...     config = make_config(QTHRESH=3)
    ...     assert config.detection.qthresh == 3.0
    """
    def _make(**user_overrides):
        """Create InternalConfig with user overrides."""
        if user_overrides:
            user = UserConfig(**user_overrides)
            return resolve_config(param_config, user, None)
        return resolve_config(param_config, None, None)

    return _make


@pytest.fixture
def point_source_settings():
    """UserConfig options that find a single bright point source on a 128x128 field.

    Low thresholds and small minimum counts keep enough noise
    pseudo-detections and sky clumps on such a small image.
    """
    return dict(
        TILE_SIZE=32,
        KERNEL_FWHM=4,
        MINMAPSIZE=10**12,
        UPNUM=10,
        detection={"qthresh": 4.0, "erode": 1, "opening": 0, "min_detection_area": 1,
                   "dthresh": 0.5, "min_num_false": 3, "min_num_noise": 5, "dilate": 1},
        segmentation={"segquant": 0.99, "min_num_noise": 5},
    )


@pytest.fixture
def point_source_config(make_config, point_source_settings):
    """Runtime configuration built from ``point_source_settings``."""
    return make_config(**point_source_settings)


# =============================================================================
# Synthetic images
# =============================================================================

@pytest.fixture
def noise_image():
    """128x128 float32 Gaussian noise, zero mean and unit std."""
    rng = np.random.default_rng(7)
    return rng.normal(0.0, 1.0, (128, 128)).astype(np.float32)


@pytest.fixture
def point_source_image(noise_image):
    """Noise with one bright pixel at row 64, column 64."""
    image = noise_image.copy()
    image[64, 64] = 100.0
    return image


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)


@pytest.fixture
def output_dirs(temp_dir):
    """Standard astromesh output directory structure.

    Returns dict with keys: base, images, analysis, plots, logs.
    All directories are created and cleaned up automatically.
    """
    return setup_output_directories(temp_dir / "output")
