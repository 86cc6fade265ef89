"""Tests for StreamNetwork construction, queries, subsets and export."""

import pytest
import numpy as np

from src.topo.stream_network import StreamNetwork

CELLSIZE = 10.0
STREAM_AREA = 500.0

OUTLET = 39 * 30 + 15


@pytest.fixture
def network(valley_flow):
    return StreamNetwork.from_min_area(valley_flow, STREAM_AREA)


class TestConstruction:
    def test_nodes_meet_area_threshold(self, network, valley_flow):
        acc = valley_flow.flow_accumulation().ravel()
        assert network.size > 0
        assert np.all(acc[network.ixgrid] * CELLSIZE ** 2 >= STREAM_AREA)

    def test_edges_point_downstream_in_order(self, network):
        assert np.all(network.ix < network.ixc)

    def test_unordered_edges_raise(self, network):
        with pytest.raises(ValueError, match="topological order"):
            StreamNetwork(network.ixgrid, network.ixc, network.ix, network.shape, network.transform)

    def test_mask_shape_must_match(self, valley_flow):
        with pytest.raises(ValueError, match="does not match"):
            StreamNetwork.from_mask(valley_flow, np.ones((2, 2), dtype=bool))

    def test_distance_is_zero_at_outlet_and_grows_upstream(self, network):
        outlet_node = network.node_index(OUTLET)[0]
        assert network.distance[outlet_node] == 0.0
        assert np.all(network.distance[network.ix] > network.distance[network.ixc])


class TestQueries:
    def test_single_outlet(self, network):
        np.testing.assert_array_equal(network.outlets(), [OUTLET])

    def test_channel_heads_have_no_upstream_nodes(self, network):
        heads = network.node_index(network.channel_heads())
        assert heads.size > 1
        assert not np.isin(heads, network.ixc).any()

    def test_confluences_have_two_or_more_givers(self, network):
        for node in network.confluences():
            assert np.sum(network.ixc == node) >= 2

    def test_node_index_is_minus_one_off_network(self, network):
        assert network.node_index(0)[0] == -1

    def test_getnal_samples_grid_at_nodes(self, network, valley_dem):
        values = network.getnal(valley_dem)
        np.testing.assert_array_equal(values, valley_dem.z.ravel()[network.ixgrid])

    def test_snap_finds_nearest_node(self, network):
        node = 3
        nearest = network.snap(network.x[node] + 1.0, network.y[node] - 1.0)
        assert nearest[0] == node


class TestSubsets:
    def test_valley_is_one_component(self, network):
        assert np.unique(network.connected_components()).tolist() == [1]

    def test_removing_outlet_splits_into_tributaries(self, network):
        outlet_node = network.node_index(OUTLET)[0]
        tributaries = int(np.sum(network.ixc == outlet_node))

        sub = network.subnetwork(np.arange(network.size) != outlet_node)

        assert sub.connected_components().max() == tributaries
        assert sub.largest_component().size <= sub.size

    def test_trunk_is_single_thread_from_farthest_head(self, network):
        trunk = network.trunk()
        assert np.all(trunk.indegree <= 1)
        assert trunk.channel_heads().size == 1
        assert trunk.distance.max() == pytest.approx(network.distance.max())

    def test_downstream_of_head_reaches_outlet(self, network):
        head = network.node_index(network.channel_heads()[0])
        below = network.downstream_of(head)
        assert below[network.node_index(OUTLET)[0]]


class TestExport:
    def test_mask_matches_nodes(self, network):
        mask = network.to_mask()
        assert mask.sum() == network.size
        assert mask.flat[OUTLET]

    def test_lines_have_at_least_two_vertices(self, network):
        lines = network.to_lines()
        assert len(lines) >= network.channel_heads().size
        assert all(line.shape[1] == 2 and line.shape[0] >= 2 for line in lines)

    def test_save_load_round_trip(self, network, tmp_path):
        path = network.save(tmp_path / "streams.npz")
        loaded = StreamNetwork.load(path)

        np.testing.assert_array_equal(loaded.ixgrid, network.ixgrid)
        np.testing.assert_array_equal(loaded.ixc, network.ixc)
        assert loaded.shape == network.shape
        assert loaded.transform == network.transform
        assert loaded.crs == network.crs

    def test_load_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            StreamNetwork.load(tmp_path / "missing.npz")
