"""
Selective inference engine - pathway-ranked sparse execution.

Ranks the reinforcement table of a ``PathwayMemory``, turns the top-K
pathways into an active node set and runs ``ComputationGraph.selective_forward``
over it. Record-mode passes (``forward_and_record``) grow the cache in step
with training; ``run_benchmark`` times the dense and selective modes against
each other.

Scoring::

    score = strength² × ln(access_count + 1) × (1 + recency_bonus)
    recency_bonus = 1 / (1 + (total_inferences − last_access))

At the pole (``last_access == total_inferences + 1``) the bonus is 1.0,
the value of a pathway touched on the current inference.

An empty cache is not an error: the engine falls back to the dense pass,
logs it at DEBUG and counts it in ``fallback_count``.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import numpy as np

from accel_config import AcceleratorConfig
from compute_graph import ComputationGraph
from graph_errors import ConfigurationError
from pathway_memory import PathwayMemory, PathwayStrength

logger = logging.getLogger("hippoaccel.inference")

DEFAULT_CONFIG: Dict[str, Any] = {
    "top_k": 20,
    "record_threshold": 0.001,
    "record_signal_scale": 0.1,
    "training_threshold": 0.01,
}


@dataclass
class BenchmarkResult:
    """Timing of dense vs selective passes over the same input.

    Attributes:
        iterations: Passes per mode.
        dense_seconds: Wall time of the dense passes.
        selective_seconds: Wall time of the ``fast_inference`` passes.
        speedup: ``dense_seconds / selective_seconds`` (inf if the latter is 0).
        avg_nodes_activated: Running average active-set size.
        sparsity_ratio: ``avg_nodes_activated / hidden_size``.
        pathway_count: Pathways in the cache after the run.
    """

    iterations: int = 0
    dense_seconds: float = 0.0
    selective_seconds: float = 0.0
    speedup: float = 0.0
    avg_nodes_activated: float = 0.0
    sparsity_ratio: float = 0.0
    pathway_count: int = 0


@dataclass
class AcceleratorStats:
    """Running totals of the engine.

    Attributes:
        total_inferences: ``fast_inference`` calls so far.
        total_nodes_activated: Sum of active-set sizes.
        average_activation: ``total_nodes_activated / total_inferences``.
        pathway_count: Pathways currently in the cache.
        top_k: Configured K.
        top_k_used: Pathways a ranking would select right now.
        reduction_ratio: ``1 − top_k_used / total_nodes``.
        fallback_count: Inferences served by the dense fallback.
        top_pathways: Five strongest pathways.
    """

    total_inferences: int = 0
    total_nodes_activated: int = 0
    average_activation: float = 0.0
    pathway_count: int = 0
    top_k: int = 0
    top_k_used: int = 0
    reduction_ratio: float = 0.0
    fallback_count: int = 0
    top_pathways: List[PathwayStrength] = field(default_factory=list)


@dataclass
class LearningEpoch:
    """One epoch of ``simulate_learning_progress``."""

    epoch: int
    pathway_count: int = 0
    avg_strength: float = 0.0
    avg_access: float = 0.0
    benchmark: Optional[BenchmarkResult] = None


class SelectiveInferenceEngine:
    """Orchestrates a ``ComputationGraph`` and its ``PathwayMemory``.

    Args:
        graph: Graph to run.
        memory: Pathway cache to rank and grow.
        top_k: Pathways to activate per inference (overrides config).
        config: Override any key from ``DEFAULT_CONFIG``.
    """

    def __init__(
        self,
        graph: ComputationGraph,
        memory: PathwayMemory,
        top_k: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        if top_k is not None:
            self.config["top_k"] = top_k
        if int(self.config["top_k"]) < 1:
            raise ConfigurationError(f"top_k must be >= 1, got {self.config['top_k']}")

        self.graph = graph
        self.memory = memory
        self.top_k: int = int(self.config["top_k"])

        self.total_inferences: int = 0
        self.total_nodes_activated: int = 0
        self.fallback_count: int = 0

        logger.info(
            "Selective inference engine ready: top_k=%d over %d nodes",
            self.top_k,
            graph.total_nodes,
        )

    # -----------------------------------------------------------------------
    # Ranking
    # -----------------------------------------------------------------------

    def score_pathway(self, pathway: PathwayStrength) -> float:
        """Ranking score of one pathway.

        ``last_access`` comes from the memory's sequence counter, which
        usually runs ahead of ``total_inferences``. Negative ages give a
        negative bonus that moves towards zero as ``last_access`` grows, so
        the most recently touched of two otherwise equal pathways ranks
        first. At the pole (age -1) the bonus is 1.0.
        """
        age = self.total_inferences - pathway.last_access
        if age == -1:
            recency_bonus = 1.0
        else:
            recency_bonus = 1.0 / (1.0 + age)
        return (
            pathway.strength
            * pathway.strength
            * math.log(pathway.access_count + 1)
            * (1.0 + recency_bonus)
        )

    def rank_pathways(self) -> List[PathwayStrength]:
        """Top-K pathways by score.

        Works on one consistent copy of the strength table. Ties keep the
        strength-descending order of ``get_frequent_pathways``.
        """
        candidates = self.memory.get_frequent_pathways(min_access_count=1)
        candidates.sort(key=self.score_pathway, reverse=True)
        return candidates[: self.top_k]

    def select_active_nodes(self) -> Tuple[Set[int], List[PathwayStrength]]:
        """Active node set (union of endpoint ids) and the pathways behind it."""
        selected = self.rank_pathways()
        active: Set[int] = set()
        for pathway in selected:
            active.add(pathway.source_id)
            active.add(pathway.target_id)
        return active, selected

    # -----------------------------------------------------------------------
    # Inference
    # -----------------------------------------------------------------------

    def fast_inference(self, inputs: Sequence[float]) -> np.ndarray:
        """Selective pass over the top-K pathways' nodes.

        Falls back to ``graph.forward`` when the cache yields no pathways.
        """
        # A rejected input must not count as an inference.
        self.graph.validate_input(inputs)

        self.total_inferences += 1
        active, selected = self.select_active_nodes()
        self.total_nodes_activated += len(active)

        if not active or not selected:
            self.fallback_count += 1
            logger.debug("Inference #%d: empty pathway cache, dense fallback", self.total_inferences)
            return self.graph.forward(inputs)

        logger.debug(
            "Inference #%d: %d pathways, %d active nodes",
            self.total_inferences,
            len(selected),
            len(active),
        )
        return self.graph.selective_forward(inputs, active)

    def forward_and_record(self, inputs: Sequence[float], context: str = "training") -> np.ndarray:
        """Dense pass that also records its pathways.

        Every provided input above ``record_threshold`` is recorded towards
        every hidden node, and every hidden node towards every output whose
        probability exceeds the threshold. Signals are scaled by
        ``record_signal_scale``.
        """
        output = self.graph.forward(inputs)
        values = np.asarray(inputs, dtype=np.float64)

        threshold = self.config["record_threshold"]
        scale = self.config["record_signal_scale"]
        hidden_ids = self.graph.hidden_ids()
        output_ids = self.graph.output_ids()
        memory = self.memory

        for i, x in enumerate(values):
            if abs(x) > threshold:
                for hid in hidden_ids:
                    memory.record_access(i, hid, float(x) * scale, f"{context}_input_hidden")

        for hid in hidden_ids:
            for oid, p in zip(output_ids, output):
                if abs(p) > threshold:
                    memory.record_access(hid, oid, float(p) * scale, f"{context}_hidden_output")

        return output

    def record_training_access(
        self,
        inputs: Sequence[float],
        hidden_activations: Sequence[float],
        output: Sequence[float],
        context: str = "",
    ) -> int:
        """Record input→hidden and hidden→output pairs whose both ends exceed
        ``training_threshold``; the signal is the product of the two.

        Returns:
            Number of accesses recorded.
        """
        threshold = self.config["training_threshold"]
        hidden_ids = self.graph.hidden_ids()
        output_ids = self.graph.output_ids()
        hidden = list(hidden_activations)[: len(hidden_ids)]
        recorded = 0

        for i, x in enumerate(inputs):
            if abs(x) <= threshold:
                continue
            for hid, h in zip(hidden_ids, hidden):
                if abs(h) > threshold:
                    self.memory.record_access(i, hid, float(x) * float(h), context)
                    recorded += 1

        for hid, h in zip(hidden_ids, hidden):
            if abs(h) <= threshold:
                continue
            for oid, p in zip(output_ids, output):
                if abs(p) > threshold:
                    self.memory.record_access(hid, oid, float(h) * float(p), context)
                    recorded += 1

        return recorded

    # -----------------------------------------------------------------------
    # Measurement
    # -----------------------------------------------------------------------

    @property
    def average_activation(self) -> float:
        if self.total_inferences == 0:
            return 0.0
        return self.total_nodes_activated / self.total_inferences

    def run_benchmark(self, inputs: Sequence[float], iterations: int = 100) -> BenchmarkResult:
        """Time ``iterations`` dense passes, then as many ``fast_inference``
        calls. One warm-up of each mode runs first."""
        if iterations < 1:
            raise ValueError(f"iterations must be >= 1, got {iterations}")

        self.graph.forward(inputs)
        self.fast_inference(inputs)

        start = time.perf_counter()
        for _ in range(iterations):
            self.graph.forward(inputs)
        dense_seconds = time.perf_counter() - start

        start = time.perf_counter()
        for _ in range(iterations):
            self.fast_inference(inputs)
        selective_seconds = time.perf_counter() - start

        avg = self.average_activation
        result = BenchmarkResult(
            iterations=iterations,
            dense_seconds=dense_seconds,
            selective_seconds=selective_seconds,
            speedup=dense_seconds / selective_seconds if selective_seconds > 0 else math.inf,
            avg_nodes_activated=avg,
            sparsity_ratio=avg / self.graph.hidden_size,
            pathway_count=self.memory.pathway_count,
        )
        logger.info(
            "Benchmark (%d iterations): dense %.4fs, selective %.4fs, speedup %.2fx, sparsity %.2f",
            iterations,
            dense_seconds,
            selective_seconds,
            result.speedup,
            result.sparsity_ratio,
        )
        return result

    def simulate_learning_progress(
        self,
        inputs: Sequence[float],
        epochs: int = 10,
        benchmark_every: int = 3,
        iterations: int = 50,
    ) -> List[LearningEpoch]:
        """Record-mode passes over one input with periodic benchmarks."""
        history = []
        for epoch in range(epochs):
            self.forward_and_record(inputs, f"epoch_{epoch}")
            top = self.memory.get_frequent_pathways(1)[: self.top_k]
            summary = LearningEpoch(
                epoch=epoch,
                pathway_count=self.memory.pathway_count,
                avg_strength=float(np.mean([p.strength for p in top])) if top else 0.0,
                avg_access=float(np.mean([p.access_count for p in top])) if top else 0.0,
            )
            if benchmark_every > 0 and (epoch + 1) % benchmark_every == 0:
                summary.benchmark = self.run_benchmark(inputs, iterations=iterations)
            history.append(summary)
        return history

    def get_stats(self) -> AcceleratorStats:
        pathways = self.memory.get_frequent_pathways(1)
        top = pathways[: self.top_k]
        return AcceleratorStats(
            total_inferences=self.total_inferences,
            total_nodes_activated=self.total_nodes_activated,
            average_activation=self.average_activation,
            pathway_count=len(pathways),
            top_k=self.top_k,
            top_k_used=len(top),
            reduction_ratio=1.0 - len(top) / self.graph.total_nodes,
            fallback_count=self.fallback_count,
            top_pathways=top[:5],
        )

    # -----------------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------------

    def configure_accelerator(self, top_k: int, exploration_rate: float) -> None:
        """Change K and forward the exploration rate to the memory.

        Safe between inferences.

        Raises:
            ConfigurationError: If ``top_k < 1``.
        """
        if top_k < 1:
            raise ConfigurationError(f"top_k must be >= 1, got {top_k}")
        self.top_k = int(top_k)
        self.config["top_k"] = self.top_k
        applied = self.memory.set_exploration_rate(exploration_rate)
        logger.info("Accelerator configured: top_k=%d exploration=%.2f", self.top_k, applied)

    def __repr__(self) -> str:
        return (
            f"SelectiveInferenceEngine(top_k={self.top_k}, "
            f"inferences={self.total_inferences}, fallbacks={self.fallback_count})"
        )


def create_accelerator(
    config: Optional[AcceleratorConfig] = None,
    seed: Optional[int] = None,
) -> SelectiveInferenceEngine:
    """Build graph, memory and engine from one ``AcceleratorConfig``.

    Graph and memory draw from separate ``RandomState`` streams derived
    from ``seed``.
    """
    cfg = config or AcceleratorConfig()
    seeds = np.random.RandomState(seed).randint(0, 2**31 - 1, size=2)
    graph = ComputationGraph(
        cfg.graph.input_size,
        cfg.graph.hidden_size,
        cfg.graph.output_size,
        config=cfg.graph.as_dict(),
        rng=np.random.RandomState(seeds[0]),
    )
    memory = PathwayMemory(
        config=cfg.pathways.as_dict(),
        rng=np.random.RandomState(seeds[1]),
    )
    return SelectiveInferenceEngine(graph, memory, config=cfg.inference.as_dict())
