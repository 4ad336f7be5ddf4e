"""
Accelerator monitoring - health context and rotating event log.

Two layers:

1. ``health_context()`` - one-line natural language summary of an engine
   (graph size, cache size, realized sparsity).
2. ``AcceleratorLogger`` - JSON-line events written to a size-rotated file
   under the configured log directory.

Usage::

    from accel_monitoring import AcceleratorLogger, health_context
    events = AcceleratorLogger(cfg)
    events.log_benchmark(engine.run_benchmark(x))
    print(health_context(engine))
"""

from __future__ import annotations

import dataclasses
import json
import logging
import logging.handlers
import time
from pathlib import Path
from typing import Any, Dict, Optional

from accel_config import AcceleratorConfig
from accel_paths import get_log_dir

logger = logging.getLogger("hippoaccel.monitoring")


# ── Health context ─────────────────────────────────────────────────────


def health_context(engine: Any) -> str:
    """Human-readable status line for a ``SelectiveInferenceEngine``.

    Never raises; a broken engine yields an "unavailable" line.
    """
    try:
        graph = engine.graph
        stats = engine.get_stats()
        memory_stats = engine.memory.get_stats()
        parts = [
            f"Accelerator: {graph.total_nodes:,} nodes "
            f"({graph.input_size}/{graph.hidden_size}/{graph.output_size})",
            f"{stats.pathway_count:,} pathways",
            f"{memory_stats['episodes']:,} episodes",
        ]
        if stats.total_inferences > 0:
            parts.append(
                f"{stats.average_activation:.1f} active nodes per inference "
                f"({stats.average_activation / graph.hidden_size:.0%} of hidden)"
            )
        if stats.fallback_count > 0:
            parts.append(f"{stats.fallback_count} dense fallbacks")
        return ", ".join(parts)
    except Exception as exc:
        return f"Accelerator: status unavailable ({exc})"


# ── Rotating event log ─────────────────────────────────────────────────


class AcceleratorLogger:
    """Rotating file logger for accelerator events.

    Args:
        config: ``AcceleratorConfig`` with monitoring parameters.
    """

    def __init__(self, config: Optional[AcceleratorConfig] = None) -> None:
        self._cfg = (config or AcceleratorConfig()).monitoring
        log_dir = Path(self._cfg.log_dir).expanduser() if self._cfg.log_dir else get_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = log_dir / self._cfg.log_file

        self._logger = logging.getLogger(f"hippoaccel.events.{self.log_path}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)
        self._handler = logging.handlers.RotatingFileHandler(
            str(self.log_path),
            maxBytes=self._cfg.max_log_size_mb * 1024 * 1024,
            backupCount=self._cfg.backup_count,
        )
        self._handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(self._handler)
        logger.debug("Event log at %s", self.log_path)

    def log_event(self, event_type: str, data: Dict[str, Any]) -> None:
        """Write a structured event to the log."""
        event = {
            "timestamp": time.time(),
            "event": event_type,
            "data": data,
        }
        self._logger.info(json.dumps(event, default=str))

    def log_benchmark(self, result: Any) -> None:
        self.log_event("benchmark", dataclasses.asdict(result))

    def log_stats(self, engine: Any) -> None:
        stats = dataclasses.asdict(engine.get_stats())
        stats["memory"] = engine.memory.get_stats()
        self.log_event("stats", stats)

    def close(self) -> None:
        """Detach and close the file handler."""
        self._logger.removeHandler(self._handler)
        self._handler.close()
