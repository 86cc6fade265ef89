"""
Tests for the slope-area binner.

Covers the bin-count heuristic, log-area binning, filtering of invalid
bins and nodes, and the network-level wrapper.
"""

import pytest
import numpy as np

from src.threshold.slope_area import (
    SlopeAreaBins,
    bin_slope_area,
    compute_bin_count,
    slope_area_bins,
)
from src.topo.profiles import chi_transform
from src.topo.stream_network import StreamNetwork


def _random_inputs(n=200, seed=0):
    rng = np.random.default_rng(seed)
    area = 10 ** rng.uniform(2, 6, n)
    gradient = rng.normal(0.05, 0.05, n)
    distance = np.sort(rng.uniform(0, 5000, n))
    chi = rng.uniform(0, 20, n)
    gradient[::17] = np.nan
    chi[::23] = np.nan
    return area, gradient, distance, chi


def _all_outputs(bins: SlopeAreaBins):
    return [bins.slope, bins.area, bins.chi, bins.distance,
            bins.node_area, bins.node_gradient, bins.node_chi, bins.node_distance]


class TestBinCount:
    def test_distance_tiling_scenario(self):
        """0..1000 m in 100 m steps with 500 m bins gives 3 bins."""
        distance = np.arange(0, 1001, 100, dtype=float)
        assert compute_bin_count(distance, 500) == 3

    def test_node_count_heuristic_wins_for_dense_streams(self):
        distance = np.linspace(0, 100, 400)
        assert compute_bin_count(distance, 500) == 40

    def test_half_rounds_up(self):
        distance = np.zeros(25)
        assert compute_bin_count(distance, 500) == 3

    def test_monotone_as_bin_size_shrinks(self):
        _, _, distance, _ = _random_inputs()
        sizes = [5000, 2000, 1000, 500, 200, 100, 50, 10]
        counts = [compute_bin_count(distance, s) for s in sizes]
        assert counts == sorted(counts)
        assert all(c >= round(distance.size / 10) for c in counts)

    @pytest.mark.parametrize("bin_size", [0, -5, np.nan])
    def test_non_positive_bin_size_raises(self, bin_size):
        with pytest.raises(ValueError, match="bin_size"):
            compute_bin_count(np.arange(5.0), bin_size)

    def test_no_finite_distance_gives_single_tile(self):
        assert compute_bin_count(np.array([np.nan, np.nan]), 500) == 1


class TestBinSlopeArea:
    def test_outputs_equal_length_finite_and_non_negative(self):
        bins = bin_slope_area(*_random_inputs(), bin_size=500)

        assert len(bins) > 0
        assert bins.slope.size == bins.area.size == bins.chi.size == bins.distance.size
        assert bins.node_area.size == bins.node_gradient.size == bins.node_chi.size == bins.node_distance.size
        for values in _all_outputs(bins):
            assert np.all(np.isfinite(values))
            assert np.all(values >= 0)

    def test_retained_bins_never_exceed_laid_out_bins(self):
        bins = bin_slope_area(*_random_inputs(), bin_size=500)
        assert len(bins) <= bins.num_bins

    def test_idempotent(self):
        inputs = _random_inputs()
        first = bin_slope_area(*inputs, bin_size=300)
        second = bin_slope_area(*inputs, bin_size=300)
        for a, b in zip(_all_outputs(first), _all_outputs(second)):
            np.testing.assert_array_equal(a, b)
        assert first.num_bins == second.num_bins

    def test_inputs_are_not_modified(self):
        inputs = _random_inputs()
        copies = [x.copy() for x in inputs]
        bin_slope_area(*inputs)
        for original, copy in zip(inputs, copies):
            np.testing.assert_array_equal(original, copy)

    def test_single_node_gives_one_bin_with_its_values(self):
        bins = bin_slope_area([1000.0], [0.1], [0.0], [2.0])

        assert len(bins) == 1
        assert bins.area[0] == pytest.approx(1000.0)
        assert bins.slope[0] == pytest.approx(0.1)
        assert bins.distance[0] == pytest.approx(0.0)
        assert bins.chi[0] == pytest.approx(2.0)

    def test_all_negative_gradients_give_empty_output(self):
        area, _, distance, chi = _random_inputs()
        gradient = -np.abs(np.random.default_rng(1).uniform(0.01, 0.2, area.size))

        bins = bin_slope_area(area, gradient, distance, chi)

        assert bins.is_empty
        for values in _all_outputs(bins):
            assert values.size == 0

    def test_empty_input_gives_empty_output(self):
        bins = bin_slope_area([], [], [], [])
        assert bins.is_empty
        assert bins.node_area.size == 0

    def test_all_nan_input_gives_empty_output(self):
        nan = np.full(5, np.nan)
        bins = bin_slope_area(nan, nan, nan, nan)
        assert bins.is_empty

    def test_unequal_lengths_raise(self):
        with pytest.raises(ValueError, match="equal length"):
            bin_slope_area([1.0, 2.0], [0.1], [0.0, 1.0], [0.0, 1.0])

    def test_small_areas_clamp_lower_edge(self):
        """Areas below 0.1 would give a non-positive lower edge; they are still binned."""
        bins = bin_slope_area([0.05, 0.08], [0.2, 0.3], [0.0, 10.0], [1.0, 0.5])
        assert len(bins) >= 1
        assert bins.node_area.tolist() == [0.05, 0.08]

    def test_bins_aggregate_median_area_and_mean_values(self):
        area = np.array([100.0, 101.0, 102.0, 5000.0])
        gradient = np.array([0.1, np.nan, 0.3, 0.2])
        distance = np.array([0.0, 10.0, 20.0, 30.0])
        chi = np.array([1.0, 2.0, 3.0, 4.0])
        bins = bin_slope_area(area, gradient, distance, chi, bin_size=1000)

        # Two log-area bins; the NaN-gradient node is dropped from the first
        assert bins.num_bins == 2
        np.testing.assert_allclose(bins.area, [101.0, 5000.0])
        np.testing.assert_allclose(bins.slope, [0.2, 0.2])
        np.testing.assert_allclose(bins.chi, [2.0, 4.0])
        np.testing.assert_allclose(bins.distance, [10.0, 30.0])


class TestSlopeAreaBinsOnNetwork:
    def test_valley_trunk_bins(self, valley_bundle):
        trunk = StreamNetwork.from_min_area(valley_bundle.flow, 500.0).trunk()
        chi = chi_transform(trunk, valley_bundle.area)

        bins = slope_area_bins(trunk, valley_bundle.dem, valley_bundle.area, chi, bin_size=100)

        assert not bins.is_empty
        assert bins.num_bins == compute_bin_count(trunk.distance, 100, trunk.size)
        assert np.all(bins.slope > 0)
        assert bins.node_area.min() >= 500.0

    def test_empty_network_raises(self, valley_bundle):
        empty = valley_bundle.stream.subnetwork(np.zeros(valley_bundle.stream.size, dtype=bool))
        with pytest.raises(ValueError, match="no nodes"):
            slope_area_bins(empty, valley_bundle.dem, valley_bundle.area, [])

    def test_chi_length_must_match(self, valley_bundle):
        stream = valley_bundle.stream
        with pytest.raises(ValueError, match="chi values"):
            slope_area_bins(stream, valley_bundle.dem, valley_bundle.area, np.zeros(stream.size + 1))
