"""Path resolution for saved accelerator state and logs.

Graph checkpoints, pathway-memory dumps and event logs all live under one
home directory so the demo, tests and any embedding service agree on it.

Resolution order (first match wins):
    1. HIPPOACCEL_HOME environment variable
    2. ~/.hippoaccel.conf JSON config file  {"hippoaccel_home": "/path/..."}
    3. Default: ~/.hippoaccel
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Optional


_CONF_FILE = "~/.hippoaccel.conf"
_DEFAULT_HOME = "~/.hippoaccel"


def get_accel_home() -> Path:
    """Return the data directory for saved state."""
    env_home = os.environ.get("HIPPOACCEL_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()

    home = read_conf()
    if home and home.strip():
        return Path(home.strip()).expanduser().resolve()

    return Path(_DEFAULT_HOME).expanduser().resolve()


def get_state_dir() -> Path:
    return get_accel_home() / "state"


def get_log_dir() -> Path:
    return get_accel_home() / "logs"


def default_graph_path() -> Path:
    return get_state_dir() / "graph.msgpack"


def default_memory_path() -> Path:
    return get_state_dir() / "pathways.msgpack"


def write_conf(accel_home: str, conf_path: Optional[str] = None) -> Path:
    """Write the config file pointing every component at ``accel_home``.

    Args:
        accel_home: Absolute or expandable path to the data directory.
        conf_path: Override config file location (for testing).

    Returns:
        Path to the written config file.
    """
    target = Path(conf_path or _CONF_FILE).expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    data = {"hippoaccel_home": str(Path(accel_home).expanduser())}
    target.write_text(json.dumps(data, indent=2) + "\n")
    return target


def read_conf(conf_path: Optional[str] = None) -> Optional[str]:
    """Configured home from the config file, or None if absent or unreadable."""
    target = Path(conf_path or _CONF_FILE).expanduser()
    if not target.is_file():
        return None
    try:
        data = json.loads(target.read_text())
    except (json.JSONDecodeError, OSError):
        return None
    if not isinstance(data, dict):
        return None
    return data.get("hippoaccel_home")
