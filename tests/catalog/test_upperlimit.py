"""Tests for the random-placement upper limit."""

import numpy as np
import pytest

from astromesh.catalog import UpperLimit, upper_limit

pytestmark = pytest.mark.unit

SINGLE_PIXEL = np.array([[0, 0]])


def _limit(values, forbidden=None, seed=1, **kwargs):
    forbidden = np.zeros(values.shape, dtype=bool) if forbidden is None else forbidden
    kwargs.setdefault("upnum", 50)
    return upper_limit(kwargs.pop("offsets", SINGLE_PIXEL), kwargs.pop("label_sum", 0.0),
                       values, forbidden, np.random.default_rng(seed), **kwargs)


def test_noise_level():
    values = np.random.default_rng(2).normal(0.0, 1.0, (50, 50))
    limit = _limit(values, upnum=200, upnsigma=3.0, zeropoint=25.0)

    assert limit.num_used == 200
    assert limit.one_sigma == pytest.approx(1.0, abs=0.25)
    assert limit.flux == pytest.approx(3.0 * limit.one_sigma)
    assert limit.magnitude == pytest.approx(-2.5 * np.log10(limit.flux) + 25.0)


def test_same_seed_same_result():
    values = np.random.default_rng(2).normal(0.0, 1.0, (30, 30))
    assert _limit(values, seed=9) == _limit(values, seed=9)


def test_forbidden_pixels_avoided():
    values = np.full((20, 20), 100.0)
    forbidden = np.ones((20, 20), dtype=bool)
    forbidden[5:10, 5:10] = False
    values[5:10, 5:10] = 0.0

    limit = _limit(values, forbidden)
    assert limit.num_used == 50
    assert limit.one_sigma == 0.0


def test_placement_box():
    values = np.full((40, 40), 100.0)
    values[8:13, 8:13] = 0.0
    limit = _limit(values, anchor=(10, 10), up_range=(4, 4))

    assert limit.num_used == 50
    assert limit.one_sigma == 0.0
    assert limit.flux == 0.0
    assert np.isnan(limit.magnitude)


def test_quantile_of_label_sum():
    values = np.random.default_rng(4).normal(0.0, 1.0, (30, 30))
    assert _limit(values, label_sum=1000.0).quantile == 1.0
    assert _limit(values, label_sum=-1000.0).quantile == 0.0
    middle = _limit(values, label_sum=0.0).quantile
    assert 0.2 < middle < 0.8


def test_footprint_offsets():
    values = np.ones((10, 10))
    offsets = np.argwhere(np.ones((3, 3), dtype=bool))
    limit = _limit(values, offsets=offsets, label_sum=9.0, upnum=5)
    assert limit.num_used == 5
    assert limit.one_sigma == 0.0


@pytest.mark.parametrize("case", ["disabled", "nowhere", "too_large"])
def test_blank_results(case):
    values = np.zeros((10, 10))
    if case == "disabled":
        limit = _limit(values, upnum=0)
    elif case == "nowhere":
        limit = _limit(values, np.ones((10, 10), dtype=bool), upnum=3)
    else:
        limit = _limit(values, offsets=np.array([[0, 0], [11, 0]]))
    assert limit.num_used == 0
    assert np.isnan(limit.flux)


def test_scratch_buffer_reused():
    values = np.random.default_rng(6).normal(0.0, 1.0, (20, 20))
    scratch = np.zeros(64)
    with_scratch = _limit(values, upnum=20, scratch=scratch)
    without = _limit(values, upnum=20)
    assert with_scratch == without
    assert np.any(scratch[:20] != 0)


def test_blank_constructor():
    blank = UpperLimit.blank()
    assert blank.num_used == 0
    assert np.isnan(blank.quantile)
