"""End-to-end scenarios.

1. A 32/64/10 graph learns five token-to-token pairs while the pathway
   cache is filled from its own forward passes.
2. After one recorded pass with top-K 20 the selective path touches fewer
   nodes than the hidden layer holds.
3. Episodes blend into novel combinations.
4. A trained accelerator survives a save/load cycle.
"""

import os
import sys

import numpy as np
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from accel_config import load_accel_config
from compute_graph import ComputationGraph
from pathway_memory import NOVEL_CONTEXT, PathwayMemory
from selective_inference import create_accelerator


VOCAB_SIZE = 10
PAIRS = [(1, 2), (3, 4), (5, 6), (7, 8), (6, 9)]


def one_hot(index, size=VOCAB_SIZE):
    x = np.zeros(size)
    x[index] = 1.0
    return x


def train(engine, epochs=20, learning_rate=0.1, decay=0.9):
    losses = []
    for _ in range(epochs):
        total = 0.0
        for src, tgt in PAIRS:
            engine.forward_and_record(one_hot(src), "training")
            total += engine.graph.train_step(one_hot(src), tgt, learning_rate)
        losses.append(total / len(PAIRS))
        learning_rate *= decay
    return losses


@pytest.fixture
def accelerator():
    cfg = load_accel_config({
        "graph": {"input_size": 32, "hidden_size": 64, "output_size": 10},
        "pathways": {"exploration_rate": 0.1},
    })
    return create_accelerator(cfg, seed=42)


class TestLearnsPairs:
    """Twenty epochs of cached training separate every pair."""

    def test_predictions(self, accelerator):
        train(accelerator)
        for src, tgt in PAIRS:
            out = accelerator.graph.forward(one_hot(src))
            assert int(np.argmax(out)) == tgt

    def test_loss_drops(self, accelerator):
        losses = train(accelerator)
        assert losses[-1] < losses[0]

    def test_cache_populated(self, accelerator):
        train(accelerator, epochs=2)
        assert accelerator.memory.pathway_count > 0
        assert accelerator.memory.history_size == accelerator.memory.history_capacity


class TestSparsity:

    def test_selective_path_is_sparse(self):
        cfg = load_accel_config({
            "graph": {"input_size": 32, "hidden_size": 64, "output_size": 10},
            "pathways": {"exploration_rate": 0.0},
            "inference": {"top_k": 20},
        })
        engine = create_accelerator(cfg, seed=7)
        engine.forward_and_record(one_hot(1))
        engine.graph.train_step(one_hot(1), 2, 0.1)

        out = engine.fast_inference(one_hot(1))
        assert engine.fallback_count == 0
        assert engine.memory.pathway_count >= 1
        assert 0 < engine.total_nodes_activated < 64
        assert out.shape == (10,)
        assert out.sum() == pytest.approx(1.0)


class TestNovelEpisodes:

    def test_blend_covers_union(self):
        memory = PathwayMemory(seed=3)
        memory.save_episode("a", {1: 1.0, 2: 0.4})
        memory.save_episode("b", {2: 0.6, 3: 0.8})
        novel = memory.create_novel_episode("dream")
        assert novel.context == NOVEL_CONTEXT
        assert set(novel.activations) == {1, 2, 3}
        assert novel.activations[2] == pytest.approx(0.5)
        assert memory.episode_count == 2

    def test_needs_two_episodes(self):
        memory = PathwayMemory(seed=3)
        memory.save_episode("only", {1: 1.0})
        assert memory.create_novel_episode("dream") is None


class TestCheckpointCycle:

    def test_trained_state_survives(self, accelerator, tmp_path):
        train(accelerator, epochs=3)
        graph_path = accelerator.graph.save_state(str(tmp_path / "graph.msgpack"))
        memory_path = accelerator.memory.save(str(tmp_path / "pathways.msgpack"))

        graph = ComputationGraph.load_state(graph_path)
        memory = PathwayMemory.load(memory_path)
        assert memory.pathway_strengths() == accelerator.memory.pathway_strengths()
        for src, _ in PAIRS:
            assert np.array_equal(graph.forward(one_hot(src)), accelerator.graph.forward(one_hot(src)))
