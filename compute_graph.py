"""
Computation graph - layered feed-forward network with two execution modes.

A fixed three-layer graph (input → hidden → output) built from individual
nodes with incoming weighted edges (dendrites), outgoing edges (axon
terminals) and hidden→output skip edges that bypass the layer boundary.

Execution modes:
    - ``forward``: dense evaluation of every node, recorded as a
      ``NetworkSnapshot``.
    - ``selective_forward``: evaluates only a caller-supplied subset of
      hidden nodes; everything else reuses its last activation.

Design principles:
    - Contiguous id partitions: inputs ``[0, I)``, hidden ``[I, I+H)``,
      outputs ``[I+H, I+H+O)``; ids never change after construction.
    - Only weights mutate after construction (``train_step``).
    - Randomness comes from an injected ``np.random.RandomState``.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import (
    Any,
    Deque,
    Dict,
    Generic,
    Iterable,
    Iterator,
    List,
    NewType,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
)

import numpy as np

from graph_errors import ConfigurationError, InputSizeError

logger = logging.getLogger("hippoaccel.graph")

T = TypeVar("T")

InputId = NewType("InputId", int)
HiddenId = NewType("HiddenId", int)
OutputId = NewType("OutputId", int)
NodeId = Union[InputId, HiddenId, OutputId]


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Layer(Enum):
    """Layer a node belongs to; fixed by its id partition."""
    INPUT = auto()
    HIDDEN = auto()
    OUTPUT = auto()


# ---------------------------------------------------------------------------
# Ring Buffer
# ---------------------------------------------------------------------------

class RingBuffer(Generic[T]):
    """Fixed-capacity FIFO; appending to a full buffer drops the oldest item.

    Shared by the per-node memory ring, the network snapshot history and
    the pathway access history.
    """

    def __init__(self, capacity: int = 100):
        if capacity < 1:
            raise ConfigurationError(f"RingBuffer capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._buffer: Deque[T] = deque(maxlen=capacity)

    def append(self, value: T) -> None:
        self._buffer.append(value)

    def clear(self) -> None:
        self._buffer.clear()

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[T]:
        return iter(self._buffer)

    def __reversed__(self) -> Iterator[T]:
        return reversed(self._buffer)

    def __getitem__(self, index: int) -> T:
        return self._buffer[index]

    def __repr__(self) -> str:
        return f"RingBuffer(capacity={self._capacity}, size={len(self._buffer)})"

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def is_full(self) -> bool:
        return len(self._buffer) == self._capacity

    def to_list(self) -> List[T]:
        return list(self._buffer)

    @classmethod
    def from_list(cls, data: Iterable[T], capacity: int = 100) -> "RingBuffer[T]":
        rb: RingBuffer[T] = cls(capacity)
        for v in data:
            rb.append(v)
        return rb


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------

@dataclass
class Dendrite:
    """Incoming weighted edge of a node.

    Attributes:
        source_id: Node the signal comes from.
        weight: Connection weight; backprop keeps it in ``[-1, 1]``.
        value: Input placed on the edge by the current pass.
    """

    source_id: int
    weight: float = 0.1
    value: float = 0.0

    def signal(self) -> float:
        return self.value * self.weight


@dataclass
class AxonTerminal:
    """Outgoing weighted edge to a neighbouring hidden node.

    Attributes:
        target_id: Receiving node.
        weight: Synaptic weight.
        transmitter_level: Output released by the last firing.
    """

    target_id: int
    weight: float = 0.1
    transmitter_level: float = 0.0

    def release(self, activation: float) -> None:
        self.transmitter_level = activation * self.weight


@dataclass
class SkipEdge:
    """Hidden→output edge bypassing the output dendrites.

    Attributes:
        target_id: Output node receiving the skip signal.
        strength: Conduction strength, kept in ``[0.01, 1.0]`` once trained.
        output: Signal conducted by the last firing.
        last_activity: Fire count of the origin node at the last conduction.
    """

    target_id: int
    strength: float = 0.1
    output: float = 0.0
    last_activity: int = -100

    def conduct(self, activation: float) -> None:
        self.output = activation * self.strength

    def update_strength(self, delta: float, low: float = 0.01, high: float = 1.0) -> None:
        self.strength = float(max(low, min(high, self.strength + delta)))


# ---------------------------------------------------------------------------
# Node state and snapshots
# ---------------------------------------------------------------------------

@dataclass
class NodeState:
    """Copy of one node's activation and weights at a point in time.

    Attributes:
        node_id: Node the state belongs to.
        activation: Activation at capture time.
        firing_history: Exponential moving average of activations.
        dendrite_weights: source_id → weight.
        axon_weights: target_id → weight.
        skip_weights: target_id → strength.
        timestamp: Wall-clock capture time (seconds).
    """

    node_id: int
    activation: float = 0.0
    firing_history: float = 0.0
    dendrite_weights: Dict[int, float] = field(default_factory=dict)
    axon_weights: Dict[int, float] = field(default_factory=dict)
    skip_weights: Dict[int, float] = field(default_factory=dict)
    timestamp: float = 0.0

    def copy(self) -> "NodeState":
        return NodeState(
            node_id=self.node_id,
            activation=self.activation,
            firing_history=self.firing_history,
            dendrite_weights=dict(self.dendrite_weights),
            axon_weights=dict(self.axon_weights),
            skip_weights=dict(self.skip_weights),
            timestamp=self.timestamp,
        )


@dataclass
class NetworkSnapshot:
    """Whole-network state recorded by one dense pass.

    Attributes:
        sequence: Global pass counter at capture time.
        node_states: node_id → ``NodeState``.
        output: Softmax output of the pass.
        recorded_at: Wall-clock capture time.
    """

    sequence: int = 0
    node_states: Dict[int, NodeState] = field(default_factory=dict)
    output: List[float] = field(default_factory=list)
    recorded_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Computation Node
# ---------------------------------------------------------------------------

@dataclass
class ComputationNode:
    """Stateful unit of the graph.

    Attributes:
        node_id: Contiguous integer id; its range determines ``layer``.
        layer: INPUT, HIDDEN or OUTPUT.
        name: Human-readable label (``Hidden_3`` ...).
        activation: Current activation.
        firing_history: EMA of activations (0.9 / 0.1).
        dendrites: Incoming edges, in source-id order.
        axon_terminals: Outgoing edges to hidden neighbours.
        skip_edges: Hidden→output bypass edges.
        memory: Last *M* ``NodeState`` captures; feeds the memory influence.
        fire_count: Number of evaluations so far.
    """

    node_id: int
    layer: Layer
    name: str = ""
    activation: float = 0.0
    firing_history: float = 0.0
    dendrites: List[Dendrite] = field(default_factory=list)
    axon_terminals: List[AxonTerminal] = field(default_factory=list)
    skip_edges: List[SkipEdge] = field(default_factory=list)
    memory: RingBuffer[NodeState] = field(default_factory=lambda: RingBuffer(10))
    fire_count: int = 0

    def memory_influence(self) -> float:
        """Recency-weighted mean of remembered activations.

        Entry *i* (oldest first) of an *n*-entry ring carries weight
        ``exp(i / n)``, so the newest captures count the most.
        """
        n = len(self.memory)
        if n == 0:
            return 0.0
        influence = 0.0
        total = 0.0
        for i, state in enumerate(self.memory):
            w = math.exp(i / n)
            influence += state.activation * w
            total += w
        return influence / total if total > 0 else 0.0

    def fire(self, memory_weight: float = 0.1) -> float:
        """Evaluate the node from the values currently on its dendrites.

        ReLU over the summed dendrite signals, plus ``memory_weight`` of the
        memory influence. Releases axon terminals, conducts skip edges and
        appends the new state to the memory ring.
        """
        base = max(0.0, sum(d.signal() for d in self.dendrites))
        self.activation = base + self.memory_influence() * memory_weight
        self.firing_history = self.firing_history * 0.9 + self.activation * 0.1

        for terminal in self.axon_terminals:
            terminal.release(self.activation)
        for skip in self.skip_edges:
            skip.last_activity = self.fire_count
            skip.conduct(self.activation)

        self.memory.append(self.capture_state())
        self.fire_count += 1
        return self.activation

    def capture_state(self) -> NodeState:
        return NodeState(
            node_id=self.node_id,
            activation=self.activation,
            firing_history=self.firing_history,
            dendrite_weights={d.source_id: d.weight for d in self.dendrites},
            axon_weights={a.target_id: a.weight for a in self.axon_terminals},
            skip_weights={s.target_id: s.strength for s in self.skip_edges},
            timestamp=time.time(),
        )

    def restore_state(self, steps_ago: int) -> bool:
        """Roll activation and weights back to a remembered state.

        Args:
            steps_ago: 1 = most recent capture, 2 = the one before, ...

        Returns:
            False if the ring does not reach that far back.
        """
        if steps_ago <= 0 or steps_ago > len(self.memory):
            return False
        state = self.memory[len(self.memory) - steps_ago]

        self.activation = state.activation
        self.firing_history = state.firing_history
        for d in self.dendrites:
            if d.source_id in state.dendrite_weights:
                d.weight = state.dendrite_weights[d.source_id]
        for a in self.axon_terminals:
            if a.target_id in state.axon_weights:
                a.weight = state.axon_weights[a.target_id]
        for s in self.skip_edges:
            if s.target_id in state.skip_weights:
                s.strength = state.skip_weights[s.target_id]
        return True

    def dendrite_for(self, source_id: int) -> Optional[Dendrite]:
        for d in self.dendrites:
            if d.source_id == source_id:
                return d
        return None


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------

@dataclass
class GraphTelemetry:
    """Network statistics snapshot.

    Attributes:
        sequence: Dense passes run so far.
        input_size / hidden_size / output_size: Layer dimensions.
        total_dendrites: Incoming edges across all nodes.
        total_axon_terminals: Hidden→hidden edges.
        total_skip_edges: Hidden→output bypass edges.
        mean_weight: Mean dendrite weight.
        std_weight: Standard deviation of dendrite weights.
        snapshot_count: NetworkSnapshots currently retained.
    """

    sequence: int = 0
    input_size: int = 0
    hidden_size: int = 0
    output_size: int = 0
    total_dendrites: int = 0
    total_axon_terminals: int = 0
    total_skip_edges: int = 0
    mean_weight: float = 0.0
    std_weight: float = 0.0
    snapshot_count: int = 0


# ---------------------------------------------------------------------------
# Graph Container
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: Dict[str, Any] = {
    "memory_capacity": 10,
    "memory_weight": 0.1,
    "snapshot_capacity": 50,
    "skip_weight": 0.1,
    "skip_dampening": 0.01,
    "softmax_epsilon": 1e-10,
    "hidden_init_range": 0.1,
    "output_init_range": 0.05,
    "axon_init_range": 0.05,
    "skip_init_max": 0.05,
    "max_axon_branches": 5,
    "max_skip_edges": 2,
    "weight_min": -1.0,
    "weight_max": 1.0,
    "plastic_min": 0.01,
    "plastic_max": 1.0,
}


def softmax(x: np.ndarray, epsilon: float = 1e-10) -> np.ndarray:
    """Max-shifted softmax with an epsilon-padded denominator."""
    exp = np.exp(x - np.max(x))
    return exp / (np.sum(exp) + epsilon)


class ComputationGraph:
    """Owns all nodes and edges; runs dense, selective and backward passes.

    Args:
        input_size: Number of input nodes (I).
        hidden_size: Number of hidden nodes (H).
        output_size: Number of output nodes (O).
        config: Override any key from ``DEFAULT_CONFIG``.
        rng: Random source for the initial weights.
        seed: Seed for a fresh ``RandomState`` when ``rng`` is not given.

    Raises:
        ConfigurationError: If any dimension is not a positive integer.
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        output_size: int,
        config: Optional[Dict[str, Any]] = None,
        rng: Optional[np.random.RandomState] = None,
        seed: Optional[int] = None,
    ):
        for label, size in (
            ("input_size", input_size),
            ("hidden_size", hidden_size),
            ("output_size", output_size),
        ):
            if isinstance(size, bool) or not isinstance(size, (int, np.integer)) or size <= 0:
                raise ConfigurationError(f"{label} must be a positive integer, got {size!r}")

        self.config = {**DEFAULT_CONFIG, **(config or {})}
        self.input_size = int(input_size)
        self.hidden_size = int(hidden_size)
        self.output_size = int(output_size)
        self.rng = rng if rng is not None else np.random.RandomState(seed)

        # --- Node arena, indexed by id ---
        self._nodes: List[ComputationNode] = []

        # --- output_id → [(hidden_id, SkipEdge)] ---
        self._skip_sources: Dict[int, List[Tuple[int, SkipEdge]]] = {}

        # --- Snapshot history ---
        self._snapshots: RingBuffer[NetworkSnapshot] = RingBuffer(
            self.config["snapshot_capacity"]
        )

        # --- Clock ---
        self.sequence: int = 0

        self._build()
        logger.info(
            "Computation graph built: %d input, %d hidden, %d output nodes",
            self.input_size,
            self.hidden_size,
            self.output_size,
        )

    # -----------------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------------

    def _new_node(self, layer: Layer, name: str) -> ComputationNode:
        node = ComputationNode(
            node_id=len(self._nodes),
            layer=layer,
            name=name,
            memory=RingBuffer(self.config["memory_capacity"]),
        )
        self._nodes.append(node)
        return node

    def _build(self) -> None:
        I, H, O = self.input_size, self.hidden_size, self.output_size
        cfg = self.config
        rng = self.rng

        for i in range(I):
            self._new_node(Layer.INPUT, f"Input_{i}")

        hidden_range = cfg["hidden_init_range"]
        axon_range = cfg["axon_init_range"]
        branch_count = min(H // 3, cfg["max_axon_branches"])
        skip_count = min(O // 4, cfg["max_skip_edges"])
        for h in range(H):
            node = self._new_node(Layer.HIDDEN, f"Hidden_{h}")
            for j in range(I):
                node.dendrites.append(
                    Dendrite(j, float(rng.uniform(-hidden_range, hidden_range)))
                )
            for j in range(branch_count):
                target = I + ((h + j + 1) % H)
                node.axon_terminals.append(
                    AxonTerminal(target, float(rng.uniform(-axon_range, axon_range)))
                )
            for j in range(skip_count):
                target = I + H + ((h + j) % O)
                skip = SkipEdge(target, float(rng.uniform(0.0, cfg["skip_init_max"])))
                node.skip_edges.append(skip)
                self._skip_sources.setdefault(target, []).append((node.node_id, skip))

        output_range = cfg["output_init_range"]
        for o in range(O):
            node = self._new_node(Layer.OUTPUT, f"Output_{o}")
            for j in range(H):
                node.dendrites.append(
                    Dendrite(I + j, float(rng.uniform(-output_range, output_range)))
                )

    def _reindex_skips(self) -> None:
        """Rebuild the output→skip lookup after weights are replaced."""
        self._skip_sources = {}
        for hid in self.hidden_ids():
            for skip in self._nodes[hid].skip_edges:
                self._skip_sources.setdefault(skip.target_id, []).append((hid, skip))

    # -----------------------------------------------------------------------
    # Identity
    # -----------------------------------------------------------------------

    @property
    def total_nodes(self) -> int:
        return len(self._nodes)

    def input_ids(self) -> List[InputId]:
        return [InputId(i) for i in range(self.input_size)]

    def hidden_ids(self) -> List[HiddenId]:
        start = self.input_size
        return [HiddenId(i) for i in range(start, start + self.hidden_size)]

    def output_ids(self) -> List[OutputId]:
        start = self.input_size + self.hidden_size
        return [OutputId(i) for i in range(start, start + self.output_size)]

    def hidden_id(self, index: int) -> HiddenId:
        if not 0 <= index < self.hidden_size:
            raise IndexError(f"Hidden index {index} out of range")
        return HiddenId(self.input_size + index)

    def output_id(self, index: int) -> OutputId:
        if not 0 <= index < self.output_size:
            raise IndexError(f"Output index {index} out of range")
        return OutputId(self.input_size + self.hidden_size + index)

    def layer_of(self, node_id: int) -> Layer:
        if node_id < 0 or node_id >= len(self._nodes):
            raise KeyError(f"Node {node_id} not found")
        return self._nodes[node_id].layer

    def node(self, node_id: int) -> ComputationNode:
        if node_id < 0 or node_id >= len(self._nodes):
            raise KeyError(f"Node {node_id} not found")
        return self._nodes[node_id]

    def nodes(self) -> List[ComputationNode]:
        return list(self._nodes)

    # -----------------------------------------------------------------------
    # Read accessors
    # -----------------------------------------------------------------------

    def activations(self) -> Dict[int, float]:
        """node_id → current activation for every node."""
        return {n.node_id: n.activation for n in self._nodes}

    def hidden_activations(self) -> np.ndarray:
        return np.array([self._nodes[i].activation for i in self.hidden_ids()])

    def output_activations(self) -> np.ndarray:
        return np.array([self._nodes[i].activation for i in self.output_ids()])

    # -----------------------------------------------------------------------
    # Dense pass
    # -----------------------------------------------------------------------

    def validate_input(self, inputs: Sequence[float]) -> np.ndarray:
        """Input as a float64 vector.

        Raises:
            ValueError: If the input is not one-dimensional.
            InputSizeError: If it is longer than the input layer.
        """
        values = np.asarray(inputs, dtype=np.float64)
        if values.ndim != 1:
            raise ValueError(f"Input must be one-dimensional, got shape {values.shape}")
        if len(values) > self.input_size:
            raise InputSizeError(len(values), self.input_size)
        return values

    def _inject(self, values: np.ndarray) -> None:
        # Only the provided prefix is written; remaining inputs keep their value.
        for i, v in enumerate(values):
            self._nodes[i].activation = float(v)

    def _read_output(self) -> np.ndarray:
        raw = np.maximum(0.0, self.output_activations())
        return softmax(raw, self.config["softmax_epsilon"])

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """Dense pass over every node.

        Pipeline:
            1. Inject the provided input values
            2. Fire every hidden node (ReLU + memory influence)
            3. Conduct skip edges hidden → output
            4. Fire every output node, folding the averaged skip signal
               into its first dendrite
            5. ReLU + softmax over the output layer
            6. Record a NetworkSnapshot

        Returns:
            Probability vector of length ``output_size``.

        Raises:
            InputSizeError: If ``inputs`` is longer than the input layer.
        """
        values = self.validate_input(inputs)
        self._inject(values)
        mem_w = self.config["memory_weight"]

        nodes = self._nodes
        for hid in self.hidden_ids():
            node = nodes[hid]
            for d in node.dendrites:
                d.value = nodes[d.source_id].activation
            node.fire(mem_w)

        for oid in self.output_ids():
            node = nodes[oid]
            for d in node.dendrites:
                d.value = nodes[d.source_id].activation
            sources = self._skip_sources.get(oid, [])
            if sources and node.dendrites:
                avg = sum(skip.output for _, skip in sources) / len(sources)
                node.dendrites[0].value += avg * self.config["skip_weight"]
            node.fire(mem_w)

        output = self._read_output()
        self._record_snapshot(output)
        return output

    # -----------------------------------------------------------------------
    # Selective pass
    # -----------------------------------------------------------------------

    def selective_forward(
        self, inputs: Sequence[float], active_node_ids: Iterable[int]
    ) -> np.ndarray:
        """Pass restricted to the hidden nodes in ``active_node_ids``.

        Differences from ``forward``, all intentional:
            - Dendrite inputs of evaluated nodes are pre-weighted
              (``activation × weight``), so each contributes
              ``activation × weight²``.
            - Hidden nodes not in the active set are not evaluated and keep
              the activation of the most recent prior pass. This stale-state
              reuse is an approximation: old activations are treated as
              current when computing downstream sums.
            - Output nodes are always evaluated, but a dendrite from an
              inactive hidden node contributes zero.
            - The skip average covers only skip edges whose origin is active.
            - No NetworkSnapshot is recorded.

        An empty active set falls back to ``forward`` and returns its output
        unchanged.

        Raises:
            InputSizeError: If ``inputs`` is longer than the input layer.
        """
        values = self.validate_input(inputs)
        active: Set[int] = set(active_node_ids)
        if not active:
            logger.debug("Empty active set; falling back to dense pass")
            return self.forward(values)

        self._inject(values)
        mem_w = self.config["memory_weight"]
        nodes = self._nodes

        hidden_start = self.input_size
        hidden_end = self.input_size + self.hidden_size
        active_hidden = {nid for nid in active if hidden_start <= nid < hidden_end}

        for hid in sorted(active_hidden):
            node = nodes[hid]
            for d in node.dendrites:
                d.value = nodes[d.source_id].activation * d.weight
            node.fire(mem_w)

        for oid in self.output_ids():
            node = nodes[oid]
            for d in node.dendrites:
                if d.source_id in active_hidden:
                    d.value = nodes[d.source_id].activation * d.weight
                else:
                    d.value = 0.0

            signal = 0.0
            count = 0
            for hid, skip in self._skip_sources.get(oid, []):
                if hid in active_hidden:
                    signal += nodes[hid].activation * skip.strength
                    count += 1
            if count > 0 and node.dendrites:
                node.dendrites[0].value += (signal / count) * self.config["skip_weight"]

            node.fire(mem_w)

        return self._read_output()

    # -----------------------------------------------------------------------
    # Backward pass
    # -----------------------------------------------------------------------

    def train_step(
        self,
        inputs: Sequence[float],
        target_index: int,
        learning_rate: float = 0.01,
    ) -> float:
        """One dense pass followed by manual backpropagation.

        Output gradient is ``predicted − one_hot(target)``; hidden gradient
        is that vector through the output dendrite weights, gated by the
        ReLU derivative. Dendrite weights are clamped to
        ``[weight_min, weight_max]``; skip strengths move at
        ``skip_dampening`` of the rate and stay in
        ``[plastic_min, plastic_max]``.

        Returns:
            Cross-entropy loss of the output computed before the update.
        """
        if not 0 <= target_index < self.output_size:
            raise ValueError(
                f"Target index {target_index} out of range for {self.output_size} outputs"
            )

        output = self.forward(inputs)
        loss = -math.log(max(float(output[target_index]), 1e-10))

        out_grads = output.copy()
        out_grads[target_index] -= 1.0

        I, H = self.input_size, self.hidden_size
        cfg = self.config
        w_min, w_max = cfg["weight_min"], cfg["weight_max"]
        nodes = self._nodes
        hidden_ids = self.hidden_ids()
        output_ids = self.output_ids()

        hidden_act = self.hidden_activations()
        input_act = np.array([nodes[i].activation for i in range(I)])

        # dL/dh = W_oh^T · dL/dy, gated by ReLU'
        w_oh = np.zeros((self.output_size, H))
        for o, oid in enumerate(output_ids):
            for d in nodes[oid].dendrites:
                w_oh[o, d.source_id - I] = d.weight
        hidden_grads = (w_oh.T @ out_grads) * (hidden_act > 0)

        # Output ← hidden
        for o, oid in enumerate(output_ids):
            g = out_grads[o]
            if abs(g) <= 1e-10:
                continue
            for d in nodes[oid].dendrites:
                delta = -learning_rate * g * hidden_act[d.source_id - I]
                d.weight = float(max(w_min, min(w_max, d.weight + delta)))

        # Hidden ← input
        for h, hid in enumerate(hidden_ids):
            g = hidden_grads[h]
            if abs(g) <= 1e-10:
                continue
            for d in nodes[hid].dendrites:
                delta = -learning_rate * g * input_act[d.source_id]
                d.weight = float(max(w_min, min(w_max, d.weight + delta)))

        # Skip edges: lower plasticity
        damp = cfg["skip_dampening"]
        for h, hid in enumerate(hidden_ids):
            for skip in nodes[hid].skip_edges:
                o = skip.target_id - I - H
                if 0 <= o < self.output_size:
                    delta = -learning_rate * out_grads[o] * hidden_act[h] * damp
                    skip.update_strength(delta, cfg["plastic_min"], cfg["plastic_max"])

        logger.debug("train_step target=%d lr=%.4f loss=%.4f", target_index, learning_rate, loss)
        return loss

    def apply_hebbian(
        self,
        node_id: int,
        dendrite_index: int,
        presynaptic: float,
        postsynaptic: float,
        learning_rate: float = 0.01,
    ) -> None:
        """Hebbian update of one dendrite, clamped to the plastic range."""
        node = self.node(node_id)
        if not 0 <= dendrite_index < len(node.dendrites):
            raise IndexError(f"Dendrite {dendrite_index} out of range for node {node_id}")
        d = node.dendrites[dendrite_index]
        d.weight += learning_rate * presynaptic * postsynaptic
        d.weight = max(self.config["plastic_min"], min(self.config["plastic_max"], d.weight))

    # -----------------------------------------------------------------------
    # Snapshot history
    # -----------------------------------------------------------------------

    def _record_snapshot(self, output: np.ndarray) -> None:
        snapshot = NetworkSnapshot(
            sequence=self.sequence,
            node_states={n.node_id: n.capture_state() for n in self._nodes},
            output=[float(v) for v in output],
        )
        self.sequence += 1
        self._snapshots.append(snapshot)

    def get_snapshot(self, steps_ago: int) -> Optional[NetworkSnapshot]:
        """Snapshot from ``steps_ago`` dense passes back (1 = latest)."""
        if steps_ago <= 0 or steps_ago > len(self._snapshots):
            return None
        return self._snapshots[len(self._snapshots) - steps_ago]

    def snapshot_history(self) -> List[NetworkSnapshot]:
        return self._snapshots.to_list()

    def set_snapshot_history(self, snapshots: Iterable[NetworkSnapshot]) -> None:
        self._snapshots = RingBuffer.from_list(snapshots, self.config["snapshot_capacity"])

    # -----------------------------------------------------------------------
    # Telemetry
    # -----------------------------------------------------------------------

    def get_telemetry(self) -> GraphTelemetry:
        weights = [d.weight for n in self._nodes for d in n.dendrites]
        return GraphTelemetry(
            sequence=self.sequence,
            input_size=self.input_size,
            hidden_size=self.hidden_size,
            output_size=self.output_size,
            total_dendrites=len(weights),
            total_axon_terminals=sum(len(n.axon_terminals) for n in self._nodes),
            total_skip_edges=sum(len(n.skip_edges) for n in self._nodes),
            mean_weight=float(np.mean(weights)) if weights else 0.0,
            std_weight=float(np.std(weights)) if weights else 0.0,
            snapshot_count=len(self._snapshots),
        )

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def save_state(self, path: Optional[str] = None) -> str:
        """Write the full graph state (dimensions, weights, memory, history).

        Args:
            path: Target file; ``.msgpack`` selects msgpack, anything else
                JSON. Defaults to ``graph.msgpack`` in the state directory.

        Returns:
            The path written.
        """
        from state_persistence import save_graph

        return save_graph(self, path)

    @classmethod
    def load_state(cls, path: Optional[str] = None) -> "ComputationGraph":
        """Rebuild a graph from ``save_state`` output.

        Raises:
            PersistenceError: If the file is missing or malformed.
        """
        from state_persistence import load_graph

        return load_graph(path)

    def __repr__(self) -> str:
        return (
            f"ComputationGraph(input={self.input_size}, hidden={self.hidden_size}, "
            f"output={self.output_size}, sequence={self.sequence})"
        )
