"""Tests for the persistence boundary: graph and pathway-memory round trips
in both encodings, and every failure surfacing as PersistenceError."""

import json
import os
from unittest.mock import patch

import msgpack
import numpy as np
import pytest

from compute_graph import ComputationGraph
from graph_errors import PersistenceError
from pathway_memory import PathwayMemory
from state_persistence import (
    GRAPH_KIND,
    SCHEMA_VERSION,
    decode_graph,
    encode_graph,
    load_graph,
    load_pathway_memory,
    read_state,
    write_state,
)


def warmed_graph(seed=0):
    g = ComputationGraph(4, 8, 4, config={"snapshot_capacity": 5}, seed=seed)
    for t in range(3):
        g.train_step([1.0, 0.0, 0.5, 0.0], t % 4, 0.2)
    g.forward([0.0, 1.0])
    return g


def filled_memory():
    m = PathwayMemory(config={"exploration_rate": 0.0}, seed=0)
    for i in range(25):
        m.record_access(i % 4, 10 + i % 3, 0.3, "ctx")
    m.save_episode("first", {1: 0.5, 2: 0.25})
    m.save_episode("second", {3: 1.0})
    m.register_spatial_location(1, "r", [0.0, 1.0])
    return m


class TestGraphRoundTrip:

    @pytest.mark.parametrize("suffix", [".json", ".msgpack"])
    def test_forward_bit_identical(self, tmp_path, suffix):
        g = warmed_graph()
        path = g.save_state(str(tmp_path / f"graph{suffix}"))
        loaded = ComputationGraph.load_state(path)
        x = [0.3, 0.0, 1.0, 0.2]
        for _ in range(3):
            assert np.array_equal(g.forward(x), loaded.forward(x))

    @pytest.mark.parametrize("suffix", [".json", ".msgpack"])
    def test_selective_identical(self, tmp_path, suffix):
        g = warmed_graph()
        loaded = ComputationGraph.load_state(g.save_state(str(tmp_path / f"g{suffix}")))
        active = {4, 6, 9}
        assert np.array_equal(
            g.selective_forward([1.0], active), loaded.selective_forward([1.0], active)
        )

    def test_structure_preserved(self, tmp_path):
        g = warmed_graph()
        loaded = load_graph(g.save_state(str(tmp_path / "g.msgpack")))
        assert (loaded.input_size, loaded.hidden_size, loaded.output_size) == (4, 8, 4)
        assert loaded.sequence == g.sequence
        assert loaded.config == g.config
        for a, b in zip(g.nodes(), loaded.nodes()):
            assert [d.weight for d in a.dendrites] == [d.weight for d in b.dendrites]
            assert [s.strength for s in a.skip_edges] == [s.strength for s in b.skip_edges]
            assert a.activation == b.activation
            assert a.firing_history == b.firing_history
            assert len(a.memory) == len(b.memory)

    def test_snapshots_preserved(self, tmp_path):
        g = warmed_graph()
        loaded = load_graph(g.save_state(str(tmp_path / "g.json")))
        assert [s.sequence for s in loaded.snapshot_history()] == [
            s.sequence for s in g.snapshot_history()
        ]
        assert loaded.get_snapshot(1).output == g.get_snapshot(1).output
        states = loaded.get_snapshot(1).node_states
        assert states[5].dendrite_weights == g.get_snapshot(1).node_states[5].dendrite_weights

    def test_default_path_under_home(self, tmp_path):
        g = ComputationGraph(2, 3, 2, seed=0)
        with patch.dict(os.environ, {"HIPPOACCEL_HOME": str(tmp_path)}):
            path = g.save_state()
            loaded = ComputationGraph.load_state()
        assert path.startswith(str(tmp_path.resolve()))
        assert path.endswith("graph.msgpack")
        assert loaded.total_nodes == 7


class TestMemoryRoundTrip:

    @pytest.mark.parametrize("suffix", [".json", ".msgpack"])
    def test_round_trip(self, tmp_path, suffix):
        m = filled_memory()
        loaded = PathwayMemory.load(m.save(str(tmp_path / f"mem{suffix}")))
        assert loaded.sequence == m.sequence
        assert loaded.access_history() == m.access_history()
        assert loaded.pathway_strengths() == m.pathway_strengths()
        assert [e.event_name for e in loaded.episodes()] == ["first", "second"]
        assert loaded.episodes()[0].activations == {1: 0.5, 2: 0.25}
        assert loaded.spatial_map()[0].coordinates == [0.0, 1.0]
        assert loaded.exploration_rate == 0.0

    def test_loaded_memory_keeps_working(self, tmp_path):
        m = filled_memory()
        loaded = load_pathway_memory(m.save(str(tmp_path / "mem.json")))
        before = loaded.get_pathway(0, 10).access_count
        loaded.record_access(0, 10, 0.3)
        assert loaded.get_pathway(0, 10).access_count == before + 1
        assert loaded.recall_episode("second").importance == pytest.approx(0.6)


class TestFailures:

    def test_missing_file(self, tmp_path):
        with pytest.raises(PersistenceError):
            ComputationGraph.load_state(str(tmp_path / "nope.msgpack"))
        with pytest.raises(PersistenceError):
            PathwayMemory.load(str(tmp_path / "nope.json"))

    def test_corrupt_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(PersistenceError):
            read_state(path)

    def test_corrupt_msgpack(self, tmp_path):
        path = tmp_path / "bad.msgpack"
        path.write_bytes(b"\xc1\xc1\xc1")
        with pytest.raises(PersistenceError):
            read_state(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "list.json"
        path.write_text(json.dumps([1, 2, 3]))
        with pytest.raises(PersistenceError):
            read_state(path)

    def test_wrong_kind(self, tmp_path):
        path = warmed_graph().save_state(str(tmp_path / "g.json"))
        with pytest.raises(PersistenceError, match="pathway_memory"):
            PathwayMemory.load(path)

    def test_unsupported_version(self, tmp_path):
        payload = encode_graph(ComputationGraph(2, 3, 2, seed=0))
        payload["version"] = "9.9"
        path = write_state(payload, tmp_path / "g.msgpack")
        with pytest.raises(PersistenceError, match="version"):
            load_graph(path)

    def test_missing_fields(self, tmp_path):
        path = write_state({"kind": GRAPH_KIND, "version": SCHEMA_VERSION}, tmp_path / "g.json")
        with pytest.raises(PersistenceError):
            load_graph(path)

    def test_node_count_mismatch(self):
        payload = encode_graph(ComputationGraph(2, 3, 2, seed=0))
        payload["nodes"].pop()
        with pytest.raises(PersistenceError):
            decode_graph(payload)

    def test_duplicate_node_id(self):
        payload = encode_graph(ComputationGraph(2, 3, 2, seed=0))
        payload["nodes"][3] = dict(payload["nodes"][2])
        with pytest.raises(PersistenceError, match="more than once"):
            decode_graph(payload)

    def test_dangling_edge(self):
        payload = encode_graph(ComputationGraph(2, 3, 2, seed=0))
        payload["nodes"][2]["dendrites"][0][0] = 99
        with pytest.raises(PersistenceError):
            decode_graph(payload)

    def test_invalid_dimensions(self):
        payload = encode_graph(ComputationGraph(2, 3, 2, seed=0))
        payload["dimensions"]["hidden_size"] = 0
        with pytest.raises(PersistenceError):
            decode_graph(payload)


class TestEncoding:

    def test_msgpack_file_is_msgpack(self, tmp_path):
        path = write_state({"kind": "x", "value": 1.5}, tmp_path / "s.msgpack")
        with open(path, "rb") as f:
            assert msgpack.unpackb(f.read(), raw=False) == {"kind": "x", "value": 1.5}

    def test_other_suffix_is_json(self, tmp_path):
        path = write_state({"kind": "x"}, tmp_path / "s.state")
        assert json.loads(open(path).read()) == {"kind": "x"}

    def test_creates_parent_dirs(self, tmp_path):
        path = write_state({"kind": "x"}, tmp_path / "a" / "b" / "s.json")
        assert os.path.isfile(path)
