"""
Pathway memory - bounded cache of node-to-node access events.

Tracks every recorded (source, target) access in a fixed-capacity FIFO and
keeps a reinforcement table with one ``PathwayStrength`` per distinct pair.
Repeated access raises strength by a fixed increment; pathways left alone
longer than ``forgetting_threshold`` sequence steps decay by
``forgetting_rate`` per sweep and are dropped once below
``strength_floor``.

Also holds named episodic snapshots (activation maps with an importance
score) and a small spatial map of node coordinates.

All sequencing runs off one internal counter (``sequence``), never the
wall clock. Randomness (exploration, noise, episode pruning, novel
episodes) comes from the injected ``np.random.RandomState``, so a seeded
instance is fully deterministic.

Thread safety: one re-entrant lock serializes every public operation,
so recording, the forgetting sweep and ranking snapshots always observe
a consistent strength table.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from compute_graph import RingBuffer
from graph_errors import ConfigurationError

logger = logging.getLogger("hippoaccel.pathways")

DEFAULT_CONFIG: Dict[str, Any] = {
    "history_capacity": 100,
    "exploration_rate": 0.15,
    "noise_level": 0.05,
    "forgetting_rate": 0.02,
    "forgetting_threshold": 50,
    "sweep_interval": 10,
    "reinforcement_delta": 0.1,
    "strength_floor": 0.1,
    "importance_floor": 0.3,
    "importance_increment": 0.1,
    "initial_importance": 0.5,
    "random_target_range": 1000,
}

EXPLORATORY_CONTEXT = "exploratory_random"
NOISY_SUFFIX = "_noisy"
NOVEL_CONTEXT = "creative_combination"


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class PathwayRecord:
    """One recorded access, kept in the bounded FIFO.

    Attributes:
        source_id: Originating node (-1 for region-level records).
        target_id: Receiving node (-1 for region-level records).
        signal_strength: Signal carried by the access.
        timestamp: Sequence counter value when recorded.
        context: Free-form tag (``training_input_hidden`` ...).
    """

    source_id: int
    target_id: int
    signal_strength: float
    timestamp: int = 0
    context: str = ""


@dataclass
class PathwayStrength:
    """Reinforcement entry for one distinct (source, target) pair.

    Attributes:
        source_id: Originating node.
        target_id: Receiving node.
        strength: Cumulative strength (+delta per repeat, decays when idle).
        access_count: Number of recorded accesses.
        first_access: Wall-clock time of the first access.
        last_access: Sequence counter value of the latest access.
    """

    source_id: int
    target_id: int
    strength: float
    access_count: int = 1
    first_access: float = field(default_factory=time.time)
    last_access: int = 0

    @property
    def key(self) -> Tuple[int, int]:
        return (self.source_id, self.target_id)


@dataclass
class EpisodicSnapshot:
    """Named activation pattern with an importance score.

    Attributes:
        event_name: Caller-supplied name, matched by ``recall_episode``.
        timestamp: Sequence counter value when saved; unique per episode.
        activations: node_id → activation.
        context: Free-form tag.
        recorded_at: Wall-clock save time.
        last_access: Sequence counter value of the latest save or recall.
        importance: In [0, 1]; raised on every recall.
    """

    event_name: str
    timestamp: int = 0
    activations: Dict[int, float] = field(default_factory=dict)
    context: str = ""
    recorded_at: float = field(default_factory=time.time)
    last_access: int = 0
    importance: float = 0.5


@dataclass
class SpatialLocation:
    """Coordinates of a node within a named region."""

    node_id: int
    region: str = ""
    coordinates: List[float] = field(default_factory=list)
    registered_at: float = field(default_factory=time.time)


@dataclass
class ConsolidatedMemory:
    """Read-only summary produced by ``consolidate_memory``."""

    total_access_paths: int = 0
    total_episodes: int = 0
    strong_pathways: List[PathwayStrength] = field(default_factory=list)
    consolidated_at: float = field(default_factory=time.time)


def _distance(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        return math.inf
    return float(np.linalg.norm(np.asarray(a, dtype=np.float64) - np.asarray(b, dtype=np.float64)))


# ---------------------------------------------------------------------------
# Pathway Memory
# ---------------------------------------------------------------------------

class PathwayMemory:
    """Access FIFO, reinforcement table and episodic store.

    Args:
        config: Override any key from ``DEFAULT_CONFIG``.
        rng: Random source for exploration, noise and pruning.
        seed: Seed for a fresh ``RandomState`` when ``rng`` is not given.

    Raises:
        ConfigurationError: For a non-positive capacity or sweep interval,
            or rates outside [0, 1].
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        rng: Optional[np.random.RandomState] = None,
        seed: Optional[int] = None,
    ):
        self.config = {**DEFAULT_CONFIG, **(config or {})}
        cfg = self.config

        if int(cfg["sweep_interval"]) < 1:
            raise ConfigurationError(
                f"sweep_interval must be >= 1, got {cfg['sweep_interval']}"
            )
        for key in ("forgetting_rate", "noise_level"):
            if not 0.0 <= float(cfg[key]) <= 1.0:
                raise ConfigurationError(f"{key} must be in [0, 1], got {cfg[key]}")

        self.rng = rng if rng is not None else np.random.RandomState(seed)
        self.exploration_rate = min(1.0, max(0.0, float(cfg["exploration_rate"])))
        self.noise_level = float(cfg["noise_level"])
        self.forgetting_rate = float(cfg["forgetting_rate"])

        self._history: RingBuffer[PathwayRecord] = RingBuffer(int(cfg["history_capacity"]))
        self._strengths: Dict[Tuple[int, int], PathwayStrength] = {}
        self._episodes: Dict[int, EpisodicSnapshot] = {}
        self._spatial: Dict[int, SpatialLocation] = {}
        self.sequence: int = 0

        self._lock = threading.RLock()

        logger.info(
            "Pathway memory initialized: capacity=%d exploration=%.2f noise=%.3f forgetting=%.3f",
            self._history.capacity,
            self.exploration_rate,
            self.noise_level,
            self.forgetting_rate,
        )

    # -----------------------------------------------------------------------
    # Recording
    # -----------------------------------------------------------------------

    def record_access(
        self,
        source_id: int,
        target_id: int,
        signal_strength: float,
        context: str = "",
    ) -> PathwayRecord:
        """Append an access to the FIFO and reinforce its pathway.

        Every ``sweep_interval``-th sequence step runs the forgetting sweep
        before the strength table is updated.
        """
        with self._lock:
            record = PathwayRecord(
                source_id=source_id,
                target_id=target_id,
                signal_strength=float(signal_strength),
                timestamp=self.sequence,
                context=context,
            )
            self.sequence += 1
            self._history.append(record)

            if self.sequence % int(self.config["sweep_interval"]) == 0:
                self.forget_old_memories()

            key = (source_id, target_id)
            entry = self._strengths.get(key)
            if entry is not None:
                entry.strength += self.config["reinforcement_delta"]
                entry.access_count += 1
                entry.last_access = self.sequence
            else:
                self._strengths[key] = PathwayStrength(
                    source_id=source_id,
                    target_id=target_id,
                    strength=float(signal_strength),
                    access_count=1,
                    last_access=self.sequence,
                )
            return record

    def record_region_access(
        self,
        source_region: str,
        target_region: str,
        activation_pattern: Sequence[float],
    ) -> PathwayRecord:
        """Record a region-level access (ids -1, mean pattern strength).

        Goes into the FIFO only; the strength table is not touched.
        """
        pattern = np.asarray(activation_pattern, dtype=np.float64)
        if pattern.size == 0:
            raise ValueError("activation_pattern must not be empty")
        with self._lock:
            record = PathwayRecord(
                source_id=-1,
                target_id=-1,
                signal_strength=float(pattern.mean()),
                timestamp=self.sequence,
                context=f"{source_region} -> {target_region}",
            )
            self.sequence += 1
            self._history.append(record)
            return record

    def save_episode(
        self,
        event_name: str,
        activations: Dict[int, float],
        context: str = "",
    ) -> EpisodicSnapshot:
        with self._lock:
            episode = EpisodicSnapshot(
                event_name=event_name,
                timestamp=self.sequence,
                activations={int(k): float(v) for k, v in activations.items()},
                context=context,
                importance=self.config["initial_importance"],
            )
            self.sequence += 1
            episode.last_access = self.sequence
            self._episodes[episode.timestamp] = episode
            logger.debug("Episode saved: '%s' (t=%d)", event_name, episode.timestamp)
            return episode

    # -----------------------------------------------------------------------
    # Forgetting
    # -----------------------------------------------------------------------

    def forget_old_memories(self) -> Tuple[int, int]:
        """Decay idle pathways and prune stale episodes.

        Pathways idle for more than ``forgetting_threshold`` steps are
        multiplied by ``1 - forgetting_rate`` and removed below
        ``strength_floor``. Episodes idle for more than twice the threshold
        are removed when their importance is under ``importance_floor``, or
        otherwise with probability ``forgetting_rate``.

        Returns:
            ``(pathways_forgotten, episodes_forgotten)``.
        """
        with self._lock:
            cfg = self.config
            threshold = cfg["forgetting_threshold"]

            stale_pathways = []
            for key, entry in self._strengths.items():
                if self.sequence - entry.last_access > threshold:
                    entry.strength *= 1.0 - self.forgetting_rate
                    if entry.strength < cfg["strength_floor"]:
                        stale_pathways.append(key)
            for key in stale_pathways:
                del self._strengths[key]

            stale_episodes = []
            for ts, episode in self._episodes.items():
                if self.sequence - episode.last_access > threshold * 2:
                    if (
                        episode.importance < cfg["importance_floor"]
                        or self.rng.random_sample() < self.forgetting_rate
                    ):
                        stale_episodes.append(ts)
            for ts in stale_episodes:
                del self._episodes[ts]

            if stale_pathways or stale_episodes:
                logger.info(
                    "Forgetting sweep: %d pathways, %d episodes removed",
                    len(stale_pathways),
                    len(stale_episodes),
                )
            return len(stale_pathways), len(stale_episodes)

    # -----------------------------------------------------------------------
    # Recall
    # -----------------------------------------------------------------------

    def recall_access_pattern(self, node_id: int, recent_steps: int = 10) -> List[PathwayRecord]:
        """Recent accesses touching ``node_id``, or exploratory ones.

        With probability ``exploration_rate`` returns ``recent_steps``
        freshly generated records from ``node_id`` to random targets.
        Otherwise looks at the newest ``recent_steps`` FIFO records and
        returns those with ``node_id`` as source or target, newest first,
        each carrying uniform noise of up to ``noise_level`` (clamped to
        [0, 1]). The FIFO itself is never modified.
        """
        with self._lock:
            if self.rng.random_sample() < self.exploration_rate:
                logger.debug("Exploratory recall for node %d", node_id)
                return self._random_pathways(node_id, recent_steps)

            recalled = []
            for i, record in enumerate(reversed(self._history)):
                if i >= recent_steps:
                    break
                if record.source_id == node_id or record.target_id == node_id:
                    recalled.append(self._add_noise(record))
            return recalled

    def _random_pathways(self, node_id: int, count: int) -> List[PathwayRecord]:
        span = int(self.config["random_target_range"])
        records = []
        for _ in range(count):
            records.append(
                PathwayRecord(
                    source_id=node_id,
                    target_id=int(self.rng.randint(0, span)),
                    signal_strength=float(self.rng.random_sample()),
                    timestamp=self.sequence,
                    context=EXPLORATORY_CONTEXT,
                )
            )
            self.sequence += 1
        return records

    def _add_noise(self, record: PathwayRecord) -> PathwayRecord:
        noise = (self.rng.random_sample() - 0.5) * self.noise_level * 2
        return PathwayRecord(
            source_id=record.source_id,
            target_id=record.target_id,
            signal_strength=max(0.0, min(1.0, record.signal_strength + noise)),
            timestamp=record.timestamp,
            context=record.context + NOISY_SUFFIX,
        )

    def recall_episode(self, name: str) -> Optional[EpisodicSnapshot]:
        """Look up an episode by case-insensitive substring.

        With probability ``exploration_rate`` (and at least one episode
        stored) a uniformly random episode is returned instead. The returned
        episode gains ``importance_increment`` (capped at 1.0) and its last
        access is refreshed.
        """
        with self._lock:
            episode: Optional[EpisodicSnapshot] = None
            if self._episodes and self.rng.random_sample() < self.exploration_rate:
                episodes = list(self._episodes.values())
                episode = episodes[self.rng.randint(len(episodes))]
                logger.debug("Exploratory episode recall: '%s'", episode.event_name)
            else:
                needle = name.lower()
                for candidate in self._episodes.values():
                    if needle in candidate.event_name.lower():
                        episode = candidate
                        break

            if episode is not None:
                episode.last_access = self.sequence
                episode.importance = min(
                    1.0, episode.importance + self.config["importance_increment"]
                )
            return episode

    def create_novel_episode(self, base_name: str) -> Optional[EpisodicSnapshot]:
        """Blend two randomly chosen episodes at half weight each.

        The result covers the union of both activation maps; a node present
        in both gets the sum of the halves. The two picks within one call
        are distinct; separate calls draw independently. The new episode is
        returned but not stored.

        Returns:
            None when fewer than two episodes are stored.
        """
        with self._lock:
            if len(self._episodes) < 2:
                return None

            episodes = list(self._episodes.values())
            i, j = self.rng.choice(len(episodes), size=2, replace=False)
            first, second = episodes[int(i)], episodes[int(j)]

            blended: Dict[int, float] = {}
            for node_id, act in first.activations.items():
                blended[node_id] = act * 0.5
            for node_id, act in second.activations.items():
                blended[node_id] = blended.get(node_id, 0.0) + act * 0.5

            novel = EpisodicSnapshot(
                event_name=f"Novel_{base_name}_{first.event_name}+{second.event_name}",
                timestamp=self.sequence,
                activations=blended,
                context=NOVEL_CONTEXT,
                last_access=self.sequence,
                importance=self.config["initial_importance"],
            )
            self.sequence += 1
            logger.debug("Novel episode created: %s", novel.event_name)
            return novel

    def get_recent_episodes(self, count: int = 10) -> List[EpisodicSnapshot]:
        with self._lock:
            ordered = sorted(self._episodes.values(), key=lambda e: e.timestamp, reverse=True)
            return ordered[:count]

    # -----------------------------------------------------------------------
    # Ranking
    # -----------------------------------------------------------------------

    def get_frequent_pathways(self, min_access_count: int = 5) -> List[PathwayStrength]:
        """Copies of entries with ``access_count >= min_access_count``,
        strongest first."""
        with self._lock:
            selected = [
                dataclasses.replace(p)
                for p in self._strengths.values()
                if p.access_count >= min_access_count
            ]
        selected.sort(key=lambda p: p.strength, reverse=True)
        return selected

    def pathway_strengths(self) -> List[PathwayStrength]:
        """Consistent copy of the whole strength table, in insertion order."""
        with self._lock:
            return [dataclasses.replace(p) for p in self._strengths.values()]

    def get_pathway(self, source_id: int, target_id: int) -> Optional[PathwayStrength]:
        with self._lock:
            entry = self._strengths.get((source_id, target_id))
            return dataclasses.replace(entry) if entry is not None else None

    def consolidate_memory(self) -> ConsolidatedMemory:
        with self._lock:
            summary = ConsolidatedMemory(
                total_access_paths=len(self._history),
                total_episodes=len(self._episodes),
                strong_pathways=self.get_frequent_pathways(min_access_count=3),
            )
        logger.debug(
            "Consolidated: %d accesses, %d episodes, %d strong pathways",
            summary.total_access_paths,
            summary.total_episodes,
            len(summary.strong_pathways),
        )
        return summary

    # -----------------------------------------------------------------------
    # Spatial map
    # -----------------------------------------------------------------------

    def register_spatial_location(
        self, node_id: int, region: str, coordinates: Sequence[float]
    ) -> SpatialLocation:
        with self._lock:
            location = SpatialLocation(
                node_id=node_id,
                region=region,
                coordinates=[float(c) for c in coordinates],
            )
            self._spatial[node_id] = location
            return location

    def find_nearby_nodes(self, node_id: int, radius: float = 1.0) -> List[int]:
        """Registered nodes within ``radius`` of ``node_id``.

        Each out-of-range node is still included with probability
        ``exploration_rate * 0.1`` (exploratory jump). Nodes whose
        coordinates have a different dimensionality are never in range.
        Unregistered ``node_id`` yields an empty list.
        """
        with self._lock:
            reference = self._spatial.get(node_id)
            if reference is None:
                return []

            nearby = []
            jump_probability = self.exploration_rate * 0.1
            for other_id, location in self._spatial.items():
                if other_id == node_id:
                    continue
                distance = _distance(reference.coordinates, location.coordinates)
                if distance <= radius:
                    nearby.append(other_id)
                elif self.rng.random_sample() < jump_probability:
                    logger.debug(
                        "Exploratory jump: %d -> %d (distance=%.2f)", node_id, other_id, distance
                    )
                    nearby.append(other_id)
            return nearby

    # -----------------------------------------------------------------------
    # Configuration
    # -----------------------------------------------------------------------

    def set_exploration_rate(self, rate: float) -> float:
        """Clamp ``rate`` to [0, 1] and apply it. Returns the applied value."""
        with self._lock:
            self.exploration_rate = max(0.0, min(1.0, float(rate)))
            self.config["exploration_rate"] = self.exploration_rate
        logger.info("Exploration rate set to %.2f", self.exploration_rate)
        return self.exploration_rate

    # -----------------------------------------------------------------------
    # Inspection
    # -----------------------------------------------------------------------

    @property
    def history_size(self) -> int:
        return len(self._history)

    @property
    def history_capacity(self) -> int:
        return self._history.capacity

    @property
    def pathway_count(self) -> int:
        return len(self._strengths)

    @property
    def episode_count(self) -> int:
        return len(self._episodes)

    def access_history(self) -> List[PathwayRecord]:
        """FIFO contents, oldest first."""
        with self._lock:
            return [dataclasses.replace(r) for r in self._history]

    def episodes(self) -> List[EpisodicSnapshot]:
        with self._lock:
            return list(self._episodes.values())

    def spatial_map(self) -> List[SpatialLocation]:
        with self._lock:
            return list(self._spatial.values())

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "history_size": len(self._history),
                "history_capacity": self._history.capacity,
                "episodes": len(self._episodes),
                "pathways": len(self._strengths),
                "spatial_entries": len(self._spatial),
                "sequence": self.sequence,
                "exploration_rate": self.exploration_rate,
                "top_pathways": [
                    {
                        "source_id": p.source_id,
                        "target_id": p.target_id,
                        "strength": p.strength,
                        "access_count": p.access_count,
                    }
                    for p in self.get_frequent_pathways(1)[:5]
                ],
            }

    # -----------------------------------------------------------------------
    # Persistence
    # -----------------------------------------------------------------------

    def _replace_state(
        self,
        history: List[PathwayRecord],
        strengths: List[PathwayStrength],
        episodes: List[EpisodicSnapshot],
        spatial: List[SpatialLocation],
        sequence: int,
    ) -> None:
        with self._lock:
            self._history = RingBuffer.from_list(history, self._history.capacity)
            self._strengths = {p.key: p for p in strengths}
            self._episodes = {e.timestamp: e for e in episodes}
            self._spatial = {s.node_id: s for s in spatial}
            self.sequence = int(sequence)

    def save(self, path: Optional[str] = None) -> str:
        """Write history, strength table, episodes, spatial map and counter.

        Returns:
            The path written.
        """
        from state_persistence import save_pathway_memory

        with self._lock:
            return save_pathway_memory(self, path)

    @classmethod
    def load(
        cls,
        path: Optional[str] = None,
        rng: Optional[np.random.RandomState] = None,
    ) -> "PathwayMemory":
        """Rebuild a memory from ``save`` output.

        Raises:
            PersistenceError: If the file is missing or malformed.
        """
        from state_persistence import load_pathway_memory

        return load_pathway_memory(path, rng=rng)

    def __repr__(self) -> str:
        return (
            f"PathwayMemory(history={len(self._history)}/{self._history.capacity}, "
            f"pathways={len(self._strengths)}, episodes={len(self._episodes)})"
        )
