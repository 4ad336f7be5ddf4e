"""Tests for the computation graph: construction, dense and selective
passes, backprop, node memory and snapshot history."""

import math
import sys
import os

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from compute_graph import (
    ComputationGraph,
    ComputationNode,
    Dendrite,
    Layer,
    NodeState,
    RingBuffer,
    SkipEdge,
    softmax,
)
from graph_errors import ConfigurationError, InputSizeError


def tiny_graph(hidden_w=0.5, output_w=0.4):
    """1/1/1 graph (ids 0, 1, 2) with fixed weights and no skip edges."""
    g = ComputationGraph(1, 1, 1, seed=0)
    g.node(1).dendrites[0].weight = hidden_w
    g.node(2).dendrites[0].weight = output_w
    return g


class TestRingBuffer:

    def test_evicts_oldest(self):
        rb = RingBuffer(3)
        for i in range(5):
            rb.append(i)
        assert rb.to_list() == [2, 3, 4]
        assert rb.is_full

    def test_reversed_is_newest_first(self):
        rb = RingBuffer.from_list([1, 2, 3], capacity=5)
        assert list(reversed(rb)) == [3, 2, 1]
        assert rb[0] == 1

    def test_rejects_zero_capacity(self):
        with pytest.raises(ConfigurationError):
            RingBuffer(0)


class TestConstruction:

    def test_id_partitions(self):
        g = ComputationGraph(3, 6, 8, seed=1)
        assert g.input_ids() == [0, 1, 2]
        assert g.hidden_ids() == list(range(3, 9))
        assert g.output_ids() == list(range(9, 17))
        assert g.total_nodes == 17
        assert g.layer_of(0) is Layer.INPUT
        assert g.layer_of(3) is Layer.HIDDEN
        assert g.layer_of(16) is Layer.OUTPUT

    def test_typed_id_helpers(self):
        g = ComputationGraph(3, 6, 8, seed=1)
        assert g.hidden_id(0) == 3
        assert g.output_id(7) == 16
        with pytest.raises(IndexError):
            g.hidden_id(6)

    def test_wiring(self):
        g = ComputationGraph(3, 6, 8, seed=1)
        for h, hid in enumerate(g.hidden_ids()):
            node = g.node(hid)
            assert [d.source_id for d in node.dendrites] == [0, 1, 2]
            assert [a.target_id for a in node.axon_terminals] == [
                3 + (h + 1) % 6,
                3 + (h + 2) % 6,
            ]
            assert [s.target_id for s in node.skip_edges] == [9 + h % 8, 9 + (h + 1) % 8]
        for oid in g.output_ids():
            assert [d.source_id for d in g.node(oid).dendrites] == list(range(3, 9))

    def test_initial_weight_ranges(self):
        g = ComputationGraph(8, 12, 8, seed=2)
        for hid in g.hidden_ids():
            node = g.node(hid)
            assert all(-0.1 <= d.weight <= 0.1 for d in node.dendrites)
            assert all(-0.05 <= a.weight <= 0.05 for a in node.axon_terminals)
            assert all(0.0 <= s.strength <= 0.05 for s in node.skip_edges)
        for oid in g.output_ids():
            assert all(-0.05 <= d.weight <= 0.05 for d in g.node(oid).dendrites)

    def test_seed_is_deterministic(self):
        a = ComputationGraph(4, 8, 4, seed=7)
        b = ComputationGraph(4, 8, 4, seed=7)
        wa = [d.weight for n in a.nodes() for d in n.dendrites]
        wb = [d.weight for n in b.nodes() for d in n.dendrites]
        assert wa == wb

    @pytest.mark.parametrize("dims", [(0, 4, 4), (4, -1, 4), (4, 4, 0), (4, 2.5, 4), (True, 4, 4)])
    def test_invalid_dimensions(self, dims):
        with pytest.raises(ConfigurationError):
            ComputationGraph(*dims)

    def test_unknown_node(self):
        g = ComputationGraph(2, 2, 2, seed=0)
        with pytest.raises(KeyError):
            g.node(99)


class TestComputationNode:

    def test_memory_influence_recency_weighted(self):
        node = ComputationNode(node_id=0, layer=Layer.HIDDEN)
        node.memory.append(NodeState(0, activation=1.0))
        node.memory.append(NodeState(0, activation=3.0))
        w1 = math.exp(0.5)
        assert node.memory_influence() == pytest.approx((1.0 + 3.0 * w1) / (1.0 + w1))

    def test_empty_memory_has_no_influence(self):
        assert ComputationNode(node_id=0, layer=Layer.HIDDEN).memory_influence() == 0.0

    def test_fire_relu_and_history(self):
        node = ComputationNode(
            node_id=1,
            layer=Layer.HIDDEN,
            dendrites=[Dendrite(0, 0.5, value=2.0)],
            skip_edges=[SkipEdge(5, 0.2)],
        )
        assert node.fire() == pytest.approx(1.0)
        assert node.firing_history == pytest.approx(0.1)
        assert node.skip_edges[0].output == pytest.approx(0.2)
        assert len(node.memory) == 1
        assert node.fire_count == 1

    def test_fire_clamps_negative_sum(self):
        node = ComputationNode(
            node_id=1, layer=Layer.HIDDEN, dendrites=[Dendrite(0, -0.5, value=2.0)]
        )
        assert node.fire() == 0.0

    def test_restore_state(self):
        g = ComputationGraph(2, 3, 2, seed=3)
        g.forward([1.0, 0.5])
        node = g.node(g.hidden_id(0))
        saved = node.dendrites[0].weight
        node.dendrites[0].weight = 0.9
        assert node.restore_state(1)
        assert node.dendrites[0].weight == saved

    def test_restore_out_of_range(self):
        g = ComputationGraph(2, 3, 2, seed=3)
        g.forward([1.0, 0.5])
        node = g.node(g.hidden_id(0))
        assert not node.restore_state(0)
        assert not node.restore_state(5)


class TestForward:

    def test_output_is_distribution(self):
        g = ComputationGraph(8, 16, 6, seed=4)
        rng = np.random.RandomState(0)
        for _ in range(10):
            out = g.forward(rng.uniform(-1, 1, size=8))
            assert out.shape == (6,)
            assert out.sum() == pytest.approx(1.0, abs=1e-4)
            assert (out >= 0).all()

    def test_dense_values(self):
        g = tiny_graph()
        g.forward([1.0])
        assert g.node(1).activation == pytest.approx(0.5)
        assert g.node(2).activation == pytest.approx(0.2)

    def test_memory_term_on_repeat(self):
        g = tiny_graph()
        g.forward([1.0])
        g.forward([1.0])
        # 0.5 + 0.1 * 0.5 from the single remembered state
        assert g.node(1).activation == pytest.approx(0.55)

    def test_input_too_long(self):
        g = ComputationGraph(4, 4, 2, seed=0)
        with pytest.raises(InputSizeError) as exc:
            g.forward(np.ones(5))
        assert exc.value.input_length == 5
        assert exc.value.input_size == 4

    def test_partial_input_leaves_rest(self):
        g = ComputationGraph(4, 4, 2, seed=0)
        g.node(3).activation = 0.7
        g.forward([1.0, 0.0])
        assert g.node(0).activation == 1.0
        assert g.node(3).activation == 0.7

    def test_two_dimensional_input_rejected(self):
        g = ComputationGraph(4, 4, 2, seed=0)
        with pytest.raises(ValueError):
            g.forward(np.ones((2, 2)))

    def test_large_inputs_stay_finite(self):
        g = ComputationGraph(8, 16, 6, seed=5)
        out = g.forward(np.full(8, 1e6))
        assert np.isfinite(out).all()
        assert out.sum() == pytest.approx(1.0, abs=1e-4)

    def test_skip_signal_folded_into_first_dendrite(self):
        g = ComputationGraph(2, 4, 4, seed=6)
        g.forward([1.0, 1.0])
        oid = g.output_id(0)
        sources = [
            g.node(hid).activation * s.strength
            for hid in g.hidden_ids()
            for s in g.node(hid).skip_edges
            if s.target_id == oid
        ]
        first = g.node(oid).dendrites[0]
        src_act = g.node(first.source_id).activation
        assert first.value == pytest.approx(src_act + np.mean(sources) * 0.1)

    def test_softmax_stable(self):
        out = softmax(np.array([1000.0, 1000.0]))
        assert out == pytest.approx([0.5, 0.5])


class TestSelectiveForward:

    def test_empty_active_set_matches_dense(self):
        a = ComputationGraph(6, 12, 4, seed=8)
        b = ComputationGraph(6, 12, 4, seed=8)
        x = [1.0, 0.0, 0.5, 0.0, 0.2, 0.0]
        for _ in range(3):
            assert np.array_equal(a.forward(x), b.selective_forward(x, []))

    def test_pre_weighted_dendrites(self):
        g = tiny_graph()
        g.selective_forward([1.0], {1})
        assert g.node(1).activation == pytest.approx(0.25)
        # output dendrite carries 0.25 * 0.4, weighted again by 0.4
        assert g.node(2).activation == pytest.approx(0.04)

    def test_inactive_hidden_contributes_zero(self):
        g = tiny_graph()
        g.selective_forward([1.0], {2})
        assert g.node(2).activation == 0.0

    def test_stale_state_reuse(self):
        g = ComputationGraph(2, 2, 1, seed=9)
        g.forward([1.0, 1.0])
        stale = g.node(3).activation
        fires = g.node(3).fire_count
        g.selective_forward([0.5, 0.5], {2})
        assert g.node(3).activation == stale
        assert g.node(3).fire_count == fires
        assert g.node(2).fire_count == 2

    def test_no_snapshot_recorded(self):
        g = ComputationGraph(4, 8, 4, seed=10)
        g.forward([1.0])
        before = len(g.snapshot_history())
        g.selective_forward([1.0], {4, 5})
        assert len(g.snapshot_history()) == before
        assert g.sequence == 1

    def test_output_is_distribution(self):
        g = ComputationGraph(4, 8, 4, seed=10)
        out = g.selective_forward([1.0, 0.5], {4, 6, 8})
        assert out.sum() == pytest.approx(1.0, abs=1e-4)

    def test_input_too_long(self):
        g = ComputationGraph(2, 4, 2, seed=0)
        with pytest.raises(InputSizeError):
            g.selective_forward([1.0, 1.0, 1.0], {2})


class TestTrainStep:

    def test_learns_single_pair(self):
        g = ComputationGraph(4, 16, 4, seed=11)
        x = [1.0, 0.0, 0.0, 0.0]
        first = g.train_step(x, 2, 0.5)
        for _ in range(49):
            last = g.train_step(x, 2, 0.5)
        assert last < first
        assert int(np.argmax(g.forward(x))) == 2

    def test_returns_cross_entropy(self):
        a = ComputationGraph(3, 6, 4, seed=12)
        b = ComputationGraph(3, 6, 4, seed=12)
        out = a.forward([1.0, 0.0, 0.0])
        loss = b.train_step([1.0, 0.0, 0.0], 1, 0.1)
        assert loss == pytest.approx(-math.log(out[1]))

    def test_weights_clamped(self):
        g = ComputationGraph(4, 8, 4, seed=13)
        for t in range(5):
            g.train_step([1.0, 1.0, 1.0, 1.0], t % 4, 1000.0)
        for n in g.nodes():
            assert all(-1.0 <= d.weight <= 1.0 for d in n.dendrites)
            assert all(0.01 <= s.strength <= 1.0 for s in n.skip_edges)
        assert np.isfinite(g.forward([1.0])).all()

    def test_target_out_of_range(self):
        g = ComputationGraph(2, 4, 3, seed=0)
        with pytest.raises(ValueError):
            g.train_step([1.0], 3, 0.1)

    def test_inactive_hidden_weights_untouched(self):
        g = ComputationGraph(2, 6, 3, seed=14)
        g.forward([1.0, 0.0])
        g.forward([1.0, 0.0])
        # A hidden node whose dendrites all sum negative stays at ReLU 0
        # apart from memory; zero its memory so its gradient gate is closed.
        node = g.node(g.hidden_id(0))
        for d in node.dendrites:
            d.weight = -0.5
        node.memory.clear()
        before = [d.weight for d in node.dendrites]
        g.train_step([1.0, 0.0], 0, 0.5)
        assert [d.weight for d in node.dendrites] == before


class TestHistoryAndTelemetry:

    def test_node_memory_bounded(self):
        g = ComputationGraph(2, 4, 2, config={"memory_capacity": 3}, seed=0)
        for _ in range(5):
            g.forward([1.0])
        for hid in g.hidden_ids():
            assert len(g.node(hid).memory) == 3

    def test_snapshot_history_bounded(self):
        g = ComputationGraph(2, 4, 2, config={"snapshot_capacity": 4}, seed=0)
        for _ in range(5):
            g.forward([1.0])
        out = g.forward([0.5])
        history = g.snapshot_history()
        assert len(history) == 4
        assert g.get_snapshot(1).sequence == 5
        assert g.get_snapshot(4).sequence == 2
        assert g.get_snapshot(5) is None
        assert g.get_snapshot(1).output == pytest.approx(list(out))
        assert set(g.get_snapshot(1).node_states) == set(range(g.total_nodes))

    def test_telemetry_counts(self):
        g = ComputationGraph(3, 6, 8, seed=1)
        g.forward([1.0])
        t = g.get_telemetry()
        assert t.total_dendrites == 6 * 3 + 8 * 6
        assert t.total_axon_terminals == 6 * 2
        assert t.total_skip_edges == 6 * 2
        assert t.snapshot_count == 1
        assert t.sequence == 1

    def test_apply_hebbian_clamped(self):
        g = ComputationGraph(2, 4, 2, seed=0)
        hid = g.hidden_id(0)
        g.apply_hebbian(hid, 0, 10.0, 10.0, learning_rate=1.0)
        assert g.node(hid).dendrites[0].weight == 1.0
        g.apply_hebbian(hid, 1, -10.0, 10.0, learning_rate=1.0)
        assert g.node(hid).dendrites[1].weight == 0.01

    def test_activation_accessors(self):
        g = ComputationGraph(2, 4, 3, seed=0)
        g.forward([1.0, 1.0])
        assert g.hidden_activations().shape == (4,)
        assert g.output_activations().shape == (3,)
        assert len(g.activations()) == g.total_nodes
