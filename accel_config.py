"""
Accelerator configuration - one place for every tunable.

``AcceleratorConfig`` groups four sections: the computation graph, the
pathway memory, the selective inference engine and monitoring. Each
section's ``as_dict()`` yields the plain dict its component constructor
merges over its own ``DEFAULT_CONFIG``.

Usage::

    from accel_config import load_accel_config

    # Defaults
    cfg = load_accel_config()

    # With overrides
    cfg = load_accel_config({"pathways": {"exploration_rate": 0.0}})

    # From JSON file
    cfg = load_accel_config(config_path="~/.hippoaccel/accel.json")
"""

from __future__ import annotations

import dataclasses
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger("hippoaccel.config")

SECTIONS = ("graph", "pathways", "inference", "monitoring")


# ── Section dataclasses ────────────────────────────────────────────────


@dataclass
class GraphConfig:
    """Layer sizes and tunables of ``ComputationGraph``."""

    input_size: int = 32
    hidden_size: int = 64
    output_size: int = 10
    memory_capacity: int = 10
    memory_weight: float = 0.1
    snapshot_capacity: int = 50
    skip_weight: float = 0.1
    skip_dampening: float = 0.01
    softmax_epsilon: float = 1e-10

    def as_dict(self) -> Dict[str, Any]:
        """Constructor config; the layer sizes are passed separately."""
        data = dataclasses.asdict(self)
        for key in ("input_size", "hidden_size", "output_size"):
            data.pop(key)
        return data


@dataclass
class PathwayConfig:
    """Tunables of ``PathwayMemory``."""

    history_capacity: int = 100
    exploration_rate: float = 0.15
    noise_level: float = 0.05
    forgetting_rate: float = 0.02
    forgetting_threshold: int = 50
    sweep_interval: int = 10
    reinforcement_delta: float = 0.1
    strength_floor: float = 0.1
    importance_floor: float = 0.3
    importance_increment: float = 0.1

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class InferenceConfig:
    """Tunables of ``SelectiveInferenceEngine``."""

    top_k: int = 20
    record_threshold: float = 0.001
    record_signal_scale: float = 0.1
    training_threshold: float = 0.01

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class MonitoringConfig:
    """Event log location and rotation.

    An empty ``log_dir`` means ``logs/`` under the accelerator home.
    """

    log_dir: str = ""
    log_file: str = "accelerator.log"
    max_log_size_mb: int = 10
    backup_count: int = 5

    def as_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


# ── Top-level config ───────────────────────────────────────────────────


@dataclass
class AcceleratorConfig:
    """All tunables, grouped by component.

    Use ``load_accel_config()`` to create an instance with user overrides
    applied.
    """

    graph: GraphConfig = field(default_factory=GraphConfig)
    pathways: PathwayConfig = field(default_factory=PathwayConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        return {section: dataclasses.asdict(getattr(self, section)) for section in SECTIONS}


# ── Factory ────────────────────────────────────────────────────────────


def _merge_sections(cfg: AcceleratorConfig, source: Dict[str, Any], origin: str) -> None:
    """Copy known tunables from ``source`` into ``cfg``'s sections.

    Keys that name no field of their section are logged at DEBUG and dropped.
    """
    for section in SECTIONS:
        values = source.get(section)
        if not values:
            continue
        target = getattr(cfg, section)
        known = {f.name for f in dataclasses.fields(target)}
        for key, value in values.items():
            if key in known:
                setattr(target, key, value)
            else:
                logger.debug("Ignoring unknown %s key '%s' from %s", section, key, origin)


def load_accel_config(
    overrides: Optional[Dict[str, Any]] = None,
    config_path: Optional[str] = None,
) -> AcceleratorConfig:
    """Build the accelerator's tunables.

    Starts from the dataclass defaults, layers the JSON file at
    ``config_path`` on top, then ``overrides``; a tunable set in both places
    takes the ``overrides`` value. Both sources are dicts of sections
    (``graph``, ``pathways``, ``inference``, ``monitoring``). A missing file
    is skipped quietly and an unparseable one with a warning, leaving the
    defaults in place for the graph, pathway cache and engine.
    """
    cfg = AcceleratorConfig()

    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.exists():
            try:
                with open(p) as f:
                    _merge_sections(cfg, json.load(f), str(p))
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                logger.warning("Failed to load accelerator config from %s: %s", p, exc)
        else:
            logger.debug("No accelerator config at %s", p)

    if overrides is not None:
        _merge_sections(cfg, overrides, "overrides")

    return cfg
