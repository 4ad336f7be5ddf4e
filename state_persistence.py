"""
State persistence - versioned schema for graphs and pathway memories.

Two payload kinds share one envelope::

    {"kind": "computation_graph" | "pathway_memory",
     "version": SCHEMA_VERSION,
     "saved_at": <wall clock>,
     ...kind-specific fields...}

The encode/decode functions are the only code that knows the payload
layout; in-memory classes never serialize themselves. Id-keyed maps are
stored as ``[key, value]`` pairs so JSON and msgpack decode them alike.

Format follows the file suffix: ``.msgpack`` → msgpack, anything else →
JSON. Both keep float64 exactly, so a save/load round trip reproduces the
forward output bit for bit.

Every failure on the read side (missing file, unreadable bytes, wrong
kind, unsupported version, missing or ill-typed fields) raises
``PersistenceError``; nothing is recovered locally.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import msgpack
import numpy as np

from accel_paths import default_graph_path, default_memory_path
from compute_graph import (
    AxonTerminal,
    ComputationGraph,
    Dendrite,
    NetworkSnapshot,
    NodeState,
    RingBuffer,
    SkipEdge,
)
from graph_errors import PersistenceError
from pathway_memory import (
    EpisodicSnapshot,
    PathwayMemory,
    PathwayRecord,
    PathwayStrength,
    SpatialLocation,
)

logger = logging.getLogger("hippoaccel.persistence")

SCHEMA_VERSION = "1.0"
SUPPORTED_VERSIONS = ("1.0",)

GRAPH_KIND = "computation_graph"
MEMORY_KIND = "pathway_memory"

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Byte layer
# ---------------------------------------------------------------------------

def write_state(payload: Dict[str, Any], path: PathLike) -> str:
    """Write ``payload`` to ``path``; msgpack for ``.msgpack``, else JSON."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if target.suffix == ".msgpack":
        with open(target, "wb") as f:
            f.write(msgpack.packb(payload, use_bin_type=True))
    else:
        with open(target, "w", encoding="utf-8") as f:
            json.dump(payload, f)
    return str(target)


def read_state(path: PathLike) -> Dict[str, Any]:
    """Read a payload written by ``write_state``.

    Raises:
        PersistenceError: Missing file, undecodable bytes, or a top level
            that is not a mapping.
    """
    source = Path(path)
    if not source.is_file():
        raise PersistenceError(f"No saved state at {source}")

    try:
        if source.suffix == ".msgpack":
            with open(source, "rb") as f:
                payload = msgpack.unpackb(f.read(), raw=False, strict_map_key=False)
        else:
            with open(source, encoding="utf-8") as f:
                payload = json.load(f)
    except OSError as exc:
        raise PersistenceError(f"Cannot read {source}: {exc}") from exc
    except Exception as exc:
        raise PersistenceError(f"Corrupt state file {source}: {exc}") from exc

    if not isinstance(payload, dict):
        raise PersistenceError(f"State file {source} does not hold a mapping")
    return payload


def _check_envelope(payload: Dict[str, Any], kind: str) -> None:
    found = payload.get("kind")
    if found != kind:
        raise PersistenceError(f"Expected a '{kind}' payload, found '{found}'")
    version = payload.get("version")
    if version not in SUPPORTED_VERSIONS:
        raise PersistenceError(f"Unsupported schema version {version!r} for '{kind}'")


def _pairs(mapping: Dict[int, float]) -> List[List[Any]]:
    return [[int(k), float(v)] for k, v in mapping.items()]


def _unpairs(pairs: List[List[Any]]) -> Dict[int, float]:
    return {int(k): float(v) for k, v in pairs}


# ---------------------------------------------------------------------------
# Graph schema
# ---------------------------------------------------------------------------

def _encode_node_state(state: NodeState) -> Dict[str, Any]:
    return {
        "node_id": state.node_id,
        "activation": state.activation,
        "firing_history": state.firing_history,
        "dendrite_weights": _pairs(state.dendrite_weights),
        "axon_weights": _pairs(state.axon_weights),
        "skip_weights": _pairs(state.skip_weights),
        "timestamp": state.timestamp,
    }


def _decode_node_state(data: Dict[str, Any]) -> NodeState:
    return NodeState(
        node_id=int(data["node_id"]),
        activation=float(data["activation"]),
        firing_history=float(data["firing_history"]),
        dendrite_weights=_unpairs(data["dendrite_weights"]),
        axon_weights=_unpairs(data["axon_weights"]),
        skip_weights=_unpairs(data["skip_weights"]),
        timestamp=float(data.get("timestamp", 0.0)),
    )


def encode_graph(graph: ComputationGraph) -> Dict[str, Any]:
    nodes = []
    for node in graph.nodes():
        nodes.append({
            "node_id": node.node_id,
            "activation": node.activation,
            "firing_history": node.firing_history,
            "fire_count": node.fire_count,
            "dendrites": [[d.source_id, d.weight] for d in node.dendrites],
            "axon_terminals": [[a.target_id, a.weight] for a in node.axon_terminals],
            "skip_edges": [
                [s.target_id, s.strength, s.output, s.last_activity] for s in node.skip_edges
            ],
            "memory": [_encode_node_state(s) for s in node.memory],
        })

    snapshots = []
    for snap in graph.snapshot_history():
        snapshots.append({
            "sequence": snap.sequence,
            "recorded_at": snap.recorded_at,
            "output": list(snap.output),
            "node_states": [_encode_node_state(s) for s in snap.node_states.values()],
        })

    return {
        "kind": GRAPH_KIND,
        "version": SCHEMA_VERSION,
        "saved_at": time.time(),
        "dimensions": {
            "input_size": graph.input_size,
            "hidden_size": graph.hidden_size,
            "output_size": graph.output_size,
        },
        "config": dict(graph.config),
        "sequence": graph.sequence,
        "nodes": nodes,
        "snapshots": snapshots,
    }


def decode_graph(
    payload: Dict[str, Any], rng: Optional[np.random.RandomState] = None
) -> ComputationGraph:
    """Rebuild a ``ComputationGraph`` from ``encode_graph`` output.

    Raises:
        PersistenceError: On a wrong envelope, missing fields, a node id
            given twice, or edges pointing outside the graph.
    """
    _check_envelope(payload, GRAPH_KIND)
    try:
        dims = payload["dimensions"]
        graph = ComputationGraph(
            int(dims["input_size"]),
            int(dims["hidden_size"]),
            int(dims["output_size"]),
            config=payload.get("config"),
            rng=rng,
        )
        total = graph.total_nodes
        node_payloads = payload["nodes"]
        if len(node_payloads) != total:
            raise PersistenceError(
                f"Payload holds {len(node_payloads)} nodes, dimensions require {total}"
            )

        seen = set()
        for data in node_payloads:
            node_id = int(data["node_id"])
            if node_id in seen:
                raise PersistenceError(f"Node {node_id} appears more than once in payload")
            seen.add(node_id)
            node = graph.node(node_id)
            node.activation = float(data["activation"])
            node.firing_history = float(data["firing_history"])
            node.fire_count = int(data.get("fire_count", 0))
            node.dendrites = [Dendrite(int(src), float(w)) for src, w in data["dendrites"]]
            node.axon_terminals = [
                AxonTerminal(int(tgt), float(w)) for tgt, w in data["axon_terminals"]
            ]
            node.skip_edges = [
                SkipEdge(int(tgt), float(strength), float(out), int(last))
                for tgt, strength, out, last in data["skip_edges"]
            ]
            for endpoint in (
                [d.source_id for d in node.dendrites]
                + [a.target_id for a in node.axon_terminals]
                + [s.target_id for s in node.skip_edges]
            ):
                if not 0 <= endpoint < total:
                    raise PersistenceError(
                        f"Node {node.node_id} references unknown node {endpoint}"
                    )
            node.memory = RingBuffer.from_list(
                [_decode_node_state(s) for s in data["memory"]],
                graph.config["memory_capacity"],
            )
        graph._reindex_skips()

        snapshots = []
        for snap in payload.get("snapshots", []):
            states = [_decode_node_state(s) for s in snap["node_states"]]
            snapshots.append(
                NetworkSnapshot(
                    sequence=int(snap["sequence"]),
                    node_states={s.node_id: s for s in states},
                    output=[float(v) for v in snap["output"]],
                    recorded_at=float(snap["recorded_at"]),
                )
            )
        graph.set_snapshot_history(snapshots)
        graph.sequence = int(payload["sequence"])
    except PersistenceError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Malformed graph payload: {exc!r}") from exc
    return graph


def save_graph(graph: ComputationGraph, path: Optional[PathLike] = None) -> str:
    target = write_state(encode_graph(graph), path or default_graph_path())
    logger.info(
        "Graph saved to %s (%d nodes, %d snapshots)",
        target,
        graph.total_nodes,
        len(graph.snapshot_history()),
    )
    return target


def load_graph(
    path: Optional[PathLike] = None, rng: Optional[np.random.RandomState] = None
) -> ComputationGraph:
    source = path or default_graph_path()
    graph = decode_graph(read_state(source), rng=rng)
    logger.info("Graph restored from %s: %r", source, graph)
    return graph


# ---------------------------------------------------------------------------
# Pathway memory schema
# ---------------------------------------------------------------------------

def encode_pathway_memory(memory: PathwayMemory) -> Dict[str, Any]:
    return {
        "kind": MEMORY_KIND,
        "version": SCHEMA_VERSION,
        "saved_at": time.time(),
        "config": dict(memory.config),
        "exploration_rate": memory.exploration_rate,
        "sequence": memory.sequence,
        "access_history": [
            {
                "source_id": r.source_id,
                "target_id": r.target_id,
                "signal_strength": r.signal_strength,
                "timestamp": r.timestamp,
                "context": r.context,
            }
            for r in memory.access_history()
        ],
        "strengths": [
            {
                "source_id": p.source_id,
                "target_id": p.target_id,
                "strength": p.strength,
                "access_count": p.access_count,
                "first_access": p.first_access,
                "last_access": p.last_access,
            }
            for p in memory.pathway_strengths()
        ],
        "episodes": [
            {
                "event_name": e.event_name,
                "timestamp": e.timestamp,
                "activations": _pairs(e.activations),
                "context": e.context,
                "recorded_at": e.recorded_at,
                "last_access": e.last_access,
                "importance": e.importance,
            }
            for e in memory.episodes()
        ],
        "spatial_map": [
            {
                "node_id": s.node_id,
                "region": s.region,
                "coordinates": list(s.coordinates),
                "registered_at": s.registered_at,
            }
            for s in memory.spatial_map()
        ],
    }


def decode_pathway_memory(
    payload: Dict[str, Any], rng: Optional[np.random.RandomState] = None
) -> PathwayMemory:
    """Rebuild a ``PathwayMemory`` from ``encode_pathway_memory`` output.

    Raises:
        PersistenceError: On a wrong envelope or missing fields.
    """
    _check_envelope(payload, MEMORY_KIND)
    try:
        memory = PathwayMemory(config=payload.get("config"), rng=rng)
        history = [
            PathwayRecord(
                source_id=int(r["source_id"]),
                target_id=int(r["target_id"]),
                signal_strength=float(r["signal_strength"]),
                timestamp=int(r["timestamp"]),
                context=str(r.get("context", "")),
            )
            for r in payload["access_history"]
        ]
        strengths = [
            PathwayStrength(
                source_id=int(p["source_id"]),
                target_id=int(p["target_id"]),
                strength=float(p["strength"]),
                access_count=int(p["access_count"]),
                first_access=float(p["first_access"]),
                last_access=int(p["last_access"]),
            )
            for p in payload["strengths"]
        ]
        episodes = [
            EpisodicSnapshot(
                event_name=str(e["event_name"]),
                timestamp=int(e["timestamp"]),
                activations=_unpairs(e["activations"]),
                context=str(e.get("context", "")),
                recorded_at=float(e["recorded_at"]),
                last_access=int(e["last_access"]),
                importance=float(e["importance"]),
            )
            for e in payload["episodes"]
        ]
        spatial = [
            SpatialLocation(
                node_id=int(s["node_id"]),
                region=str(s["region"]),
                coordinates=[float(c) for c in s["coordinates"]],
                registered_at=float(s["registered_at"]),
            )
            for s in payload.get("spatial_map", [])
        ]
        memory._replace_state(history, strengths, episodes, spatial, int(payload["sequence"]))
        if "exploration_rate" in payload:
            memory.exploration_rate = float(payload["exploration_rate"])
    except (KeyError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Malformed pathway memory payload: {exc!r}") from exc
    return memory


def save_pathway_memory(memory: PathwayMemory, path: Optional[PathLike] = None) -> str:
    target = write_state(encode_pathway_memory(memory), path or default_memory_path())
    logger.info(
        "Pathway memory saved to %s (%d records, %d pathways, %d episodes)",
        target,
        memory.history_size,
        memory.pathway_count,
        memory.episode_count,
    )
    return target


def load_pathway_memory(
    path: Optional[PathLike] = None, rng: Optional[np.random.RandomState] = None
) -> PathwayMemory:
    source = path or default_memory_path()
    memory = decode_pathway_memory(read_state(source), rng=rng)
    logger.info("Pathway memory restored from %s: %r", source, memory)
    return memory
