"""Tests for binary morphology, label bookkeeping and clump building."""

import numpy as np
import pytest

from astromesh.detection import (
    RIVER,
    clump_sn,
    erode,
    filter_and_relabel,
    grow_labels,
    label_binary,
    neighbour_offsets,
    open_binary,
    oversegment,
    relabel_by_size,
)

pytestmark = pytest.mark.unit


def _two_peaks():
    """9x9 image with a bright peak at (4, 2) and a fainter one at (4, 6)."""
    rows, cols = np.mgrid[:9, :9]
    values = (10.0 * np.exp(-((rows - 4) ** 2 + (cols - 2) ** 2) / 2.0)
              + 8.0 * np.exp(-((rows - 4) ** 2 + (cols - 6) ** 2) / 2.0))
    # Break exact ties from the symmetry
    return values + np.arange(81).reshape(9, 9) * 1e-6


class TestMorphology:

    def test_erode_treats_outside_as_set(self):
        mask = np.ones((5, 5), dtype=bool)
        assert erode(mask, 1).all()

    def test_erode_hole(self):
        mask = np.ones((5, 5), dtype=bool)
        mask[2, 2] = False
        out = erode(mask, 1)
        assert not out[1:4, 1:4].any()
        assert out.sum() == 16

    def test_zero_iterations_copy(self):
        mask = np.eye(4, dtype=bool)
        out = erode(mask, 0)
        assert out is not mask
        assert np.array_equal(out, mask)

    def test_opening_removes_isolated_pixel(self):
        mask = np.zeros((7, 7), dtype=bool)
        mask[2:5, 2:5] = True
        mask[0, 6] = True
        out = open_binary(mask, 1)
        assert not out[0, 6]
        assert out[3, 3]
        assert np.array_equal(open_binary(mask, 0), mask)


class TestLabels:

    def test_full_connectivity_by_default(self):
        mask = np.array([[1, 0], [0, 1]], dtype=bool)
        assert label_binary(mask).max() == 1
        assert label_binary(mask, connectivity=1).max() == 2

    def test_filter_and_relabel_by_size(self):
        labels = np.array([[1, 0, 2, 2],
                           [0, 0, 2, 2],
                           [3, 3, 0, 0]])
        out = filter_and_relabel(labels, min_size=2)
        assert out[0, 0] == 0
        assert np.all(out[:2, 2:] == 1)
        assert np.all(out[2, :2] == 2)
        assert out.dtype == np.int32

    def test_max_size(self):
        labels = np.array([[1, 1, 1, 0, 2]])
        out = filter_and_relabel(labels, max_size=2)
        assert out.tolist() == [[0, 0, 0, 0, 1]]

    def test_relabel_ties_keep_raster_order(self):
        labels = np.array([[4, 0, 7]])
        out = relabel_by_size(labels, np.array([4, 7]), np.array([1, 1]))
        assert out.tolist() == [[1, 0, 2]]

    def test_relabel_nothing_kept(self):
        labels = np.array([[1, 2]])
        out = relabel_by_size(labels, np.array([], dtype=int), np.array([], dtype=int))
        assert not out.any()


class TestOversegment:

    def test_two_peaks_two_clumps(self):
        labels, num = oversegment(_two_peaks(), np.ones((9, 9), dtype=bool))
        assert num == 2
        assert labels[4, 2] == 1
        assert labels[4, 6] == 2
        # The valley between the peaks is a river
        assert labels[4, 4] == 0

    def test_region_border_is_river(self):
        labels, _ = oversegment(_two_peaks(), np.ones((9, 9), dtype=bool))
        ring = np.ones((9, 9), dtype=bool)
        ring[1:-1, 1:-1] = False
        assert not labels[ring].any()

    def test_given_rivers_do_not_split(self):
        rows, cols = np.mgrid[:7, :7]
        values = np.exp(-((rows - 3) ** 2 + (cols - 3) ** 2) / 4.0)
        edge = np.ones((7, 7), dtype=bool)
        edge[1:-1, 1:-1] = False
        region = ~edge

        labels, num = oversegment(values, region, rivers=edge)
        assert num == 1
        assert np.all(labels[region] == 1)

        labels, num = oversegment(values, region)
        assert num == 1
        assert np.count_nonzero(labels) == 9

    def test_plateau_is_one_clump(self):
        values = np.zeros((5, 5))
        values[1:4, 1:4] = 1.0
        labels, num = oversegment(values, values > 0, rivers=values == 0)
        assert num == 1
        assert np.all(labels[1:4, 1:4] == 1)

    def test_empty_region(self):
        labels, num = oversegment(np.ones((4, 4)), np.zeros((4, 4), dtype=bool))
        assert num == 0
        assert not labels.any()


class TestClumpSN:

    @pytest.fixture
    def square(self):
        values = np.full((5, 5), 2.0)
        values[1:4, 1:4] = 10.0
        labels = np.zeros((5, 5), dtype=np.int32)
        labels[1:4, 1:4] = 1
        return values, labels

    def test_hand_computed(self, square):
        values, labels = square
        std = np.ones((5, 5))
        region = np.ones((5, 5), dtype=bool)

        # Inside mean 10, river mean 2, variance doubled for sky-subtracted input
        sn = clump_sn(values, std, labels, 1, region, min_area=0)
        assert sn[0] == pytest.approx(np.sqrt(9) * 8 / np.sqrt(14))

        sn = clump_sn(values, std, labels, 1, region, min_area=0, sky_subtracted=False)
        assert sn[0] == pytest.approx(np.sqrt(9) * 8 / np.sqrt(13))

    def test_small_clump_is_nan(self, square):
        values, labels = square
        sn = clump_sn(values, np.ones((5, 5)), labels, 1, np.ones((5, 5), dtype=bool),
                      min_area=9)
        assert np.isnan(sn[0])

    def test_fainter_than_rivers_is_nan(self, square):
        values, labels = square
        sn = clump_sn(-values, np.ones((5, 5)), labels, 1, np.ones((5, 5), dtype=bool),
                      min_area=0)
        assert np.isnan(sn[0])

    def test_no_clumps(self):
        assert clump_sn(np.ones((3, 3)), np.ones((3, 3)), np.zeros((3, 3), dtype=np.int32),
                        0, np.ones((3, 3), dtype=bool), 0).size == 0


class TestGrowLabels:

    def test_single_label_fills_candidates(self):
        labels = np.zeros((5, 5), dtype=np.int32)
        labels[2, 2] = 3
        out = grow_labels(labels, np.ones((5, 5), dtype=bool))
        assert np.all(out == 3)

    def test_meeting_point_becomes_river(self):
        labels = np.array([[1, 0, 0, 0, 2]], dtype=np.int32)
        out = grow_labels(labels, labels == 0)
        assert out.tolist() == [[1, 1, 1, RIVER, 2]]

    def test_without_rivers_smallest_label_wins(self):
        labels = np.array([[1, 0, 0, 0, 2]], dtype=np.int32)
        out = grow_labels(labels, labels == 0, make_rivers=False)
        assert out.tolist() == [[1, 1, 1, 1, 2]]

    def test_brightest_candidates_first(self):
        labels = np.array([[1, 0, 0, 0, 2]], dtype=np.int32)
        values = np.array([[0.0, 1.0, 2.0, 3.0, 0.0]])
        out = grow_labels(labels, labels == 0, values=values)
        assert out.tolist() == [[1, RIVER, 2, 2, 2]]

    def test_unreachable_candidates_stay_zero(self):
        labels = np.array([[1, 0, 0, 0, 0]], dtype=np.int32)
        candidates = np.array([[False, True, False, True, True]])
        out = grow_labels(labels, candidates)
        assert out.tolist() == [[1, 1, 0, 0, 0]]


def test_neighbour_offsets():
    assert sorted(neighbour_offsets((3, 4), connectivity=1).tolist()) == [-4, -1, 1, 4]
    assert len(neighbour_offsets((3, 4))) == 8
    assert len(neighbour_offsets((3, 3, 3))) == 26
