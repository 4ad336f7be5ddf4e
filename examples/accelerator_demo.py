"""Selective inference demo.

Trains a 32/64/10 graph on five word pairs while recording its pathways,
then compares dense and pathway-restricted inference before and after
training.
"""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import math

import numpy as np

from accel_config import load_accel_config
from accel_monitoring import health_context
from selective_inference import create_accelerator

VOCAB = ["<pad>", "hello", "world", "neural", "network", "machine",
         "learning", "brain", "cells", "models"]
WORD_TO_ID = {w: i for i, w in enumerate(VOCAB)}

PAIRS = [
    ("hello", "world"),
    ("neural", "network"),
    ("machine", "learning"),
    ("brain", "cells"),
    ("learning", "models"),
]


def one_hot(word: str, size: int = 10) -> np.ndarray:
    vec = np.zeros(size)
    vec[WORD_TO_ID[word]] = 1.0
    return vec


def print_benchmark(label, result):
    print(f"  {label}:")
    print(f"    dense:     {result.dense_seconds * 1000:.2f} ms")
    print(f"    selective: {result.selective_seconds * 1000:.2f} ms "
          f"(speedup {result.speedup:.2f}x)")
    print(f"    avg active nodes: {result.avg_nodes_activated:.1f} "
          f"(sparsity {result.sparsity_ratio:.0%}), pathways: {result.pathway_count}")


def main():
    cfg = load_accel_config({"pathways": {"exploration_rate": 0.1}})
    engine = create_accelerator(cfg, seed=42)
    graph, memory = engine.graph, engine.memory

    test_input = one_hot("neural")

    print("=== Before training ===")
    print_benchmark("benchmark", engine.run_benchmark(test_input, iterations=100))

    print("\n=== Training: 5 pairs x 20 epochs ===")
    lr = 0.1
    for epoch in range(20):
        total_loss = 0.0
        for src, dst in PAIRS:
            x = one_hot(src)
            target = WORD_TO_ID[dst]
            out = engine.forward_and_record(x, f"train_{src}")
            total_loss += -math.log(max(float(out[target]), 1e-10))
            graph.train_step(x, target, lr)
        if (epoch + 1) % 5 == 0:
            print(f"  epoch {epoch + 1:2d}: loss={total_loss / len(PAIRS):.4f} "
                  f"pathways={memory.pathway_count}")
        lr *= 0.9

    print("\n=== After training ===")
    print_benchmark("benchmark", engine.run_benchmark(test_input, iterations=100))

    print("\n=== Predictions ===")
    for src, dst in PAIRS:
        x = one_hot(src)
        dense = graph.forward(x)
        fast = engine.fast_inference(x)
        print(f"  {src:>8} -> dense '{VOCAB[int(np.argmax(dense))]}', "
              f"selective '{VOCAB[int(np.argmax(fast))]}' (expected '{dst}')")

    print("\n=== Top-K sweep ===")
    for top_k in (10, 30, 50, 100):
        engine.configure_accelerator(top_k, exploration_rate=0.1)
        active, _ = engine.select_active_nodes()
        print(f"  top_k={top_k:3d}: {len(active)} active nodes")

    print("\n=== Status ===")
    print(f"  {health_context(engine)}")
    summary = memory.consolidate_memory()
    print(f"  consolidated: {summary.total_access_paths} accesses, "
          f"{len(summary.strong_pathways)} strong pathways")


if __name__ == "__main__":
    main()
