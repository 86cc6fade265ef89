"""
Tests for channel-head threshold picking: candidate extraction, pick
strategies, fixed-count and "all" modes, and written outputs.
"""

import warnings

import pytest
import numpy as np
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from src.config import THRESHOLD_NETWORK, THRESHOLD_SHAPEFILE, THRESHOLD_SUMMARY, THRESHOLD_TABLE
from src.threshold.candidates import PickResult, extract_candidate
from src.threshold.picker import find_threshold, read_threshold_table, sorted_channel_heads
from src.threshold.pickers import (
    CallbackPicker,
    InteractivePicker,
    PicksExhaustedError,
    QuantilePicker,
    ScriptedPicker,
)
from src.threshold.rendering import plot_candidate, plot_threshold_summary, render_session
from src.topo.stream_network import StreamNetwork


@pytest.fixture(autouse=True)
def close_figures():
    plt.close("all")
    yield
    plt.close("all")


@pytest.fixture
def candidate(valley_bundle):
    head = sorted_channel_heads(valley_bundle)[0]
    return extract_candidate(
        valley_bundle,
        head,
        position=1,
        total=3,
        pick_method="slope_area",
        ref_concavity=0.5,
        bin_size=100,
        divide_distance=valley_bundle.flow.flow_distance("downstream"),
    )


class TestPickResult:
    def test_accepts_finite_non_negative(self):
        result = PickResult(1000.0, 25.0)
        assert result.threshold_area == 1000.0

    @pytest.mark.parametrize("area,xd", [(-1.0, 0.0), (np.nan, 0.0), (1.0, np.inf), (1.0, -0.5)])
    def test_rejects_invalid_values(self, area, xd):
        with pytest.raises(ValueError):
            PickResult(area, xd)


class TestCandidate:
    def test_channel_heads_sorted_by_upstream_distance(self, valley_bundle):
        heads = sorted_channel_heads(valley_bundle)
        updist = valley_bundle.flow.flow_distance("upstream").ravel()[heads]
        assert np.all(np.diff(updist) <= 0)
        assert heads.size == valley_bundle.stream.channel_heads().size

    def test_candidate_is_single_thread_from_divide_to_outlet(self, candidate, valley_bundle):
        stream = candidate.stream
        assert np.all(stream.indegree <= 1)
        assert stream.outlets().tolist() == valley_bundle.stream.outlets().tolist()
        assert candidate.channel_head in stream.ixgrid

    def test_source_is_highest_point_and_on_divide(self, candidate, valley_bundle):
        z = candidate.stream.getnal(valley_bundle.dem)
        source = np.flatnonzero(candidate.stream.indegree == 0)[0]
        assert z[source] == z.max()
        assert candidate.divide_distance[source] == 0.0

    def test_candidate_carries_plot_data(self, candidate):
        assert len(candidate.chi) == candidate.stream.size
        assert candidate.chi.mn == 0.5
        assert not candidate.bins.is_empty
        assert candidate.remaining == 2

    def test_slope_area_pick_keeps_area_and_finds_divide_distance(self, candidate):
        node = candidate.stream.size // 2
        x = candidate.chi.area[node]

        result = candidate.resolve(x)

        assert result.threshold_area == pytest.approx(x)
        assert result.distance_to_divide == pytest.approx(candidate.divide_distance[node])

    def test_chi_pick_takes_area_of_nearest_chi_node(self, candidate):
        candidate.pick_method = "chi"
        node = candidate.stream.size // 3

        result = candidate.resolve(candidate.chi.chi[node] + 1e-9)

        assert result.threshold_area == pytest.approx(candidate.chi.area[node])

    def test_cells_above_threshold(self, candidate):
        threshold = np.median(candidate.chi.area)
        cells = candidate.cells_above(threshold)
        assert 0 < cells.size < candidate.stream.size


class TestPickers:
    def test_scripted_picker_returns_values_in_order(self, candidate):
        picker = ScriptedPicker([1000, 2000])
        assert picker.choose_x(candidate) == 1000.0
        assert picker.choose_x(candidate) == 2000.0

    def test_scripted_picker_runs_out(self, candidate):
        picker = ScriptedPicker([])
        with pytest.raises(PicksExhaustedError) as excinfo:
            picker.pick(candidate)
        assert isinstance(excinfo.value, ValueError)
        assert isinstance(excinfo.value, IndexError)

    def test_callback_picker_sees_candidate(self, candidate):
        seen = []
        picker = CallbackPicker(lambda c: seen.append(c.position) or 800.0)
        result = picker.pick(candidate)
        assert seen == [1]
        assert result.threshold_area == 800.0

    def test_quantile_picker_uses_binned_area(self, candidate):
        x = QuantilePicker(0.5).choose_x(candidate)
        assert x == pytest.approx(np.quantile(candidate.bins.area, 0.5))

    def test_quantile_picker_validates_range(self):
        with pytest.raises(ValueError):
            QuantilePicker(1.5)

    def test_interactive_picker_reads_click_and_closes_figure(self, candidate, monkeypatch):
        monkeypatch.setattr(plt, "show", lambda *args, **kwargs: None)
        monkeypatch.setattr(Figure, "ginput", lambda self, *args, **kwargs: [(1234.0, 0.05)])

        result = InteractivePicker().pick(candidate)

        assert result.threshold_area == 1234.0
        assert plt.get_fignums() == []

    def test_interactive_picker_without_click_raises(self, candidate, monkeypatch):
        monkeypatch.setattr(plt, "show", lambda *args, **kwargs: None)
        monkeypatch.setattr(Figure, "ginput", lambda self, *args, **kwargs: [])

        with pytest.raises(RuntimeError, match="No point picked"):
            InteractivePicker().pick(candidate)
        assert plt.get_fignums() == []


class TestRendering:
    def test_pick_axes_on_top_with_remaining_count(self, candidate):
        with render_session() as fig:
            ax = plot_candidate(fig, candidate)
            assert ax.get_title() == "2 streams remaining"
            assert ax.get_xscale() == "log"
            assert ax.xaxis_inverted()
        assert plt.get_fignums() == []

    def test_chi_mode_puts_chi_plot_on_top(self, candidate):
        candidate.pick_method = "chi"
        with render_session() as fig:
            ax = plot_candidate(fig, candidate)
            assert ax.get_xscale() == "linear"

    def test_session_closes_figure_on_error(self):
        with pytest.raises(KeyError):
            with render_session():
                raise KeyError("boom")
        assert plt.get_fignums() == []


class TestFindThresholdValidation:
    @pytest.mark.parametrize("num_streams", [0, -3, 2.5, "some", True, None])
    def test_invalid_num_streams(self, valley_bundle, num_streams):
        with pytest.raises(ValueError):
            find_threshold(valley_bundle, num_streams, picker=ScriptedPicker([]))

    def test_invalid_pick_method(self, valley_bundle):
        with pytest.raises(ValueError, match="pick_method"):
            find_threshold(valley_bundle, 1, pick_method="ksn", picker=ScriptedPicker([]))

    def test_invalid_ref_concavity(self, valley_bundle):
        with pytest.raises(ValueError, match="ref_concavity"):
            find_threshold(valley_bundle, 1, ref_concavity="0.5", picker=ScriptedPicker([]))


class TestFindThreshold:
    def test_fixed_count_uses_mean_threshold(self, valley_bundle):
        result = find_threshold(valley_bundle, 2, picker=ScriptedPicker([1000.0, 2000.0]))

        assert result.mode == "fixed"
        assert result.thresholds.tolist() == [1000.0, 2000.0]
        assert result.mean_threshold == pytest.approx(1500.0)
        assert result.mean_distance_to_divide == pytest.approx(np.mean(result.distances_to_divide))
        expected = StreamNetwork.from_min_area(valley_bundle.flow, 1500.0, accumulation=valley_bundle.area.z)
        np.testing.assert_array_equal(result.network.ixgrid, expected.ixgrid)
        assert result.files == {}

    def test_too_many_streams_clamps_with_warning(self, valley_bundle):
        heads = valley_bundle.stream.channel_heads().size

        with pytest.warns(UserWarning, match="only"):
            result = find_threshold(valley_bundle, heads + 40, picker=QuantilePicker(0.5))

        assert len(result.picks) == heads

    def test_exact_count_does_not_warn(self, valley_bundle):
        with warnings.catch_warnings():
            warnings.simplefilter("error", UserWarning)
            result = find_threshold(valley_bundle, 1, picker=QuantilePicker(0.5))
        assert len(result.picks) == 1

    def test_all_mode_keeps_reach_below_each_pick(self, valley_bundle):
        heads = valley_bundle.stream.channel_heads().size

        result = find_threshold(valley_bundle, "all", picker=QuantilePicker(0.5))

        assert result.mode == "all"
        assert len(result.picks) == heads
        assert result.mean_threshold is None
        assert result.network.size > 0
        assert result.network.outlets().tolist() == valley_bundle.stream.outlets().tolist()

    def test_chi_pick_method(self, valley_bundle):
        result = find_threshold(valley_bundle, 2, pick_method="chi", picker=QuantilePicker(0.5))
        assert all(p.threshold_area > 0 for p in result.picks)

    def test_scripted_picker_shortage_propagates(self, valley_bundle):
        with pytest.raises(PicksExhaustedError):
            find_threshold(valley_bundle, 3, picker=ScriptedPicker([1000.0]))

    def test_outputs_written(self, valley_bundle, tmp_path):
        import geopandas as gpd

        result = find_threshold(valley_bundle, 3, picker=QuantilePicker(0.5), output_dir=tmp_path)

        for name in (THRESHOLD_TABLE, THRESHOLD_SHAPEFILE, THRESHOLD_NETWORK, THRESHOLD_SUMMARY):
            assert (tmp_path / name).exists(), f"{name} should be written"

        with open(tmp_path / THRESHOLD_TABLE) as f:
            assert f.readline().strip() == "picked_thresholds,picked_xd"
        assert read_threshold_table(tmp_path / THRESHOLD_TABLE) == result.picks

        lines = gpd.read_file(tmp_path / THRESHOLD_SHAPEFILE)
        assert len(lines) == len(result.network.to_lines())

        loaded = StreamNetwork.load(tmp_path / THRESHOLD_NETWORK)
        np.testing.assert_array_equal(loaded.ixgrid, result.network.ixgrid)

    def test_summary_figure(self, valley_bundle, tmp_path):
        result = find_threshold(valley_bundle, 2, picker=ScriptedPicker([1000.0, 1000.0]))
        fig = plot_threshold_summary(result, tmp_path / "summary.png")
        assert (tmp_path / "summary.png").exists()
        assert "Mean Threshold Area" in fig.axes[0].get_title()
        plt.close(fig)
