"""Tests for the command-line entry points."""

import argparse

import pytest
import numpy as np
import matplotlib.pyplot as plt

from src.cli import condition_dem_cli, find_threshold_cli, make_streams_cli, parse_option
from src.config import THRESHOLD_NETWORK, THRESHOLD_TABLE
from src.topo import GridRaster, StreamNetwork, load_topo_bundle


@pytest.fixture
def dem_file(valley_dem, tmp_path):
    return valley_dem.write(tmp_path / "dem.tif")


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


class TestParseOption:
    def test_json_values(self):
        assert parse_option("tau=0.3") == ("tau", 0.3)
        assert parse_option("split=false") == ("split", False)
        assert parse_option("knicks=[[1, 2]]") == ("knicks", [[1, 2]])

    def test_plain_string_value(self):
        assert parse_option("mc_method=minmax") == ("mc_method", "minmax")

    def test_missing_equals_raises(self):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_option("tau")


class TestMakeStreamsCli:
    def test_writes_bundle_and_network(self, dem_file, tmp_path):
        out = tmp_path / "topo.npz"
        streams = tmp_path / "streams.npz"

        assert make_streams_cli([str(dem_file), "500", str(out), "--streams", str(streams)]) == 0

        bundle = load_topo_bundle(out)
        assert bundle.stream.size == StreamNetwork.load(streams).size
        assert bundle.dem.shape == (40, 30)


class TestFindThresholdCli:
    def test_unattended_run_writes_outputs(self, dem_file, tmp_path):
        make_streams_cli([str(dem_file), "500", str(tmp_path / "topo.npz")])

        code = find_threshold_cli([str(tmp_path), "topo.npz", "2", "--quantile", "0.5", "--bin-size", "100"])

        assert code == 0
        table = np.loadtxt(tmp_path / THRESHOLD_TABLE, delimiter=",", skiprows=1, ndmin=2)
        assert table.shape == (2, 2)
        assert (tmp_path / THRESHOLD_NETWORK).exists()

    def test_bad_num_streams_exits(self, tmp_path):
        with pytest.raises(SystemExit):
            find_threshold_cli([str(tmp_path), "topo.npz", "many"])


class TestConditionDemCli:
    def test_writes_conditioned_geotiff_and_plot(self, dem_file, tmp_path):
        streams = tmp_path / "streams.npz"
        make_streams_cli([str(dem_file), "500", str(tmp_path / "topo.npz"), "--streams", str(streams)])
        output = tmp_path / "conditioned.tif"
        plot = tmp_path / "comparison.png"

        code = condition_dem_cli([
            str(dem_file), str(streams), "mincost",
            "--option", "mc_method=minmax",
            "--output", str(output),
            "--plot", str(plot),
        ])

        assert code == 0
        conditioned = GridRaster.from_file(output)
        assert np.isfinite(conditioned.z).sum() == StreamNetwork.load(streams).size
        assert plot.exists()

    def test_comparison_figure_written_by_default(self, dem_file, tmp_path):
        streams = tmp_path / "streams.npz"
        make_streams_cli([str(dem_file), "500", str(tmp_path / "topo.npz"), "--streams", str(streams)])
        output = tmp_path / "out" / "conditioned.tif"

        code = condition_dem_cli([str(dem_file), str(streams), "mincost", "--output", str(output)])

        assert code == 0
        assert output.exists()
        assert (output.parent / "dem_mincost_comparison.png").exists()

    def test_unknown_option_raises(self, dem_file, tmp_path):
        streams = tmp_path / "streams.npz"
        make_streams_cli([str(dem_file), "500", str(tmp_path / "topo.npz"), "--streams", str(streams)])

        with pytest.raises(ValueError, match="not valid"):
            condition_dem_cli([str(dem_file), str(streams), "mingrad", "--option", "tau=0.5"])
