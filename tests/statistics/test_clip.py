"""Tests for sigma and MAD clipping."""

import numpy as np
import pytest

import astromesh.statistics.clip as clip_module
from astromesh.errors import ClipConvergenceError, ParameterRangeError
from astromesh.statistics import (
    CLIP_OPTIONAL_MAD,
    CLIP_OPTIONAL_MEAN,
    CLIP_OPTIONAL_STD,
    mad_clip,
    sigma_clip,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def noise_with_outliers():
    rng = np.random.default_rng(3)
    return np.concatenate([rng.normal(0.0, 1.0, 1000), [50.0, 60.0, 70.0]])


class TestSigmaClip:

    def test_uniform_converges_in_one_clip(self):
        data = np.random.default_rng(11).uniform(0.0, 1.0, 10000)
        result = sigma_clip(data, multip=3, param=0.01)

        assert result.number_clips <= 3
        assert result.number_used == 10000
        assert result.std == pytest.approx(1 / np.sqrt(12), rel=0.05)

    def test_outliers_rejected(self, noise_with_outliers):
        result = sigma_clip(noise_with_outliers, multip=3, param=0.1, keep_values=True)

        assert result.number_used <= 1000
        assert abs(result.mean) < 0.15
        assert result.values.max() < 50
        assert np.all(np.diff(result.values) >= 0)

    def test_fixed_number_of_clips(self, noise_with_outliers):
        result = sigma_clip(noise_with_outliers, multip=3, param=2)
        assert result.number_clips == 2

    def test_constant_data(self):
        result = sigma_clip(np.full(10, 5.0), param=0.1)
        assert result.number_clips == 1
        assert result.std == 0
        assert result.mean == 5.0

    def test_optional_mad(self, noise_with_outliers):
        assert np.isnan(sigma_clip(noise_with_outliers).mad)
        assert np.isfinite(sigma_clip(noise_with_outliers, extrastats=CLIP_OPTIONAL_MAD).mad)

    def test_blanks_ignored(self):
        data = np.array([1.0, 2.0, np.nan, 3.0])
        assert sigma_clip(data, param=1).number_used == 3

    def test_empty_input(self):
        result = sigma_clip(np.array([np.nan]))
        assert result.number_used == 0
        assert np.isnan(result.mean)

    def test_as_row(self, noise_with_outliers):
        row = sigma_clip(noise_with_outliers).as_row()
        assert row.shape == (6,)
        assert row.dtype == np.float64

    @pytest.mark.parametrize("multip,param", [(0, 0.1), (3, 0), (-1, 1)])
    def test_invalid_parameters(self, multip, param):
        with pytest.raises(ParameterRangeError):
            sigma_clip(np.arange(10.0), multip=multip, param=param)

    def test_non_convergence_carries_last_result(self, monkeypatch, noise_with_outliers):
        monkeypatch.setattr(clip_module, "CLIP_MAX_CONVERGE", 1)
        with pytest.raises(ClipConvergenceError) as exc_info:
            sigma_clip(noise_with_outliers, multip=3, param=1e-9)

        assert exc_info.value.last_result is not None
        assert exc_info.value.last_result.number_clips == 1


@pytest.mark.parametrize("clipper", [sigma_clip, mad_clip])
@pytest.mark.parametrize("seed", [0, 7, 19])
def test_clipping_own_output_is_noop(clipper, seed):
    rng = np.random.default_rng(seed)
    data = np.concatenate([rng.normal(0.0, 1.0, 2000), rng.exponential(5.0, 200)])

    first = clipper(data, multip=3, param=0.1, keep_values=True)
    second = clipper(first.values, multip=3, param=0.1, keep_values=True)

    assert second.number_used == first.number_used
    assert np.array_equal(second.values, first.values)


class TestMadClip:

    def test_median_centred(self, noise_with_outliers):
        result = mad_clip(noise_with_outliers, multip=3, param=0.1)

        assert abs(result.median) < 0.15
        # Unscaled MAD of a unit Gaussian is about 0.6745 before clipping
        assert 0.3 < result.mad < 0.8
        assert np.isnan(result.mean)
        assert np.isnan(result.std)

    def test_optional_mean_std(self, noise_with_outliers):
        result = mad_clip(noise_with_outliers,
                          extrastats=CLIP_OPTIONAL_MEAN | CLIP_OPTIONAL_STD)
        assert np.isfinite(result.mean)
        assert np.isfinite(result.std)

    def test_does_not_modify_input(self, noise_with_outliers):
        before = noise_with_outliers.copy()
        mad_clip(noise_with_outliers)
        assert np.array_equal(before, noise_with_outliers)
