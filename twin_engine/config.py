"""
Configuration loader for the digital-twin engine.

Loads JSON config files, merges them over ``DEFAULT_CONFIG``, validates
fields, and builds the seeded numpy Generators every stochastic subsystem
draws from.
"""

from __future__ import annotations

import copy
import json
import warnings
from pathlib import Path
from typing import Any

from numpy.random import Generator

from twin_engine.utils import spawn_streams


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

ConfigDict = dict[str, Any]


# ---------------------------------------------------------------------------
# Schema constants
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: ConfigDict = {
    "simulation": {
        "seed": 12345,
        "node_count": 150,
        "tick_interval_ms": 1000,
        "prediction_interval_ms": 5000,
    },
    "threats": {
        "default_duration_s": 120,
        "incident_min_severity": 0.6,
        "incident_min_nodes": 3,
    },
    "mitigation": {"auto_mitigation": False},
    "alerts": {"enabled": True},
    "integrity": {"hmac_key": "twin-engine-dev-key"},
    "logging": {"level": "INFO"},
}

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def load_config(path: str | Path) -> ConfigDict:
    """Load, merge and validate a JSON configuration file.

    Sections present in the file override the matching keys of
    ``DEFAULT_CONFIG``; absent sections fall back to the defaults.

    Parameters
    ----------
    path : str or Path
        Path to the JSON configuration file.

    Returns
    -------
    ConfigDict
        Validated configuration dictionary.

    Raises
    ------
    ValueError
        If required fields are missing or values are invalid.
    FileNotFoundError
        If the config file does not exist.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with path.open("r") as fh:
        raw: ConfigDict = json.load(fh)

    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a JSON object, got {type(raw).__name__}")
    if "simulation" not in raw:
        raise ValueError("Config missing required fields: {'simulation'}")

    cfg = merge_config(raw)
    validate_config(cfg)
    return cfg


def merge_config(overrides: ConfigDict) -> ConfigDict:
    """Return a deep copy of ``DEFAULT_CONFIG`` updated section by section."""
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    for section, values in overrides.items():
        if section not in cfg:
            warnings.warn(
                f"merge_config: unknown config section {section!r} ignored.",
                UserWarning,
                stacklevel=2,
            )
            continue
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section!r} must be an object")
        cfg[section].update(values)
    return cfg


def validate_config(cfg: ConfigDict) -> None:
    """Validate a merged configuration.

    Parameters
    ----------
    cfg : ConfigDict
        Configuration dictionary to validate.

    Raises
    ------
    ValueError
        On any validation failure.
    """
    missing = set(DEFAULT_CONFIG) - cfg.keys()
    if missing:
        raise ValueError(f"Config missing required sections: {missing}")

    sim = cfg["simulation"]
    required_sim = {"seed", "node_count", "tick_interval_ms", "prediction_interval_ms"}
    missing_sim = required_sim - sim.keys()
    if missing_sim:
        raise ValueError(f"simulation config missing required fields: {missing_sim}")
    if not isinstance(sim["seed"], int) or isinstance(sim["seed"], bool):
        raise ValueError(f"simulation.seed must be an integer, got {sim['seed']!r}")
    if int(sim["node_count"]) < 2:
        raise ValueError(
            f"simulation.node_count must be >= 2, got {sim['node_count']!r}"
        )
    for key in ("tick_interval_ms", "prediction_interval_ms"):
        if float(sim[key]) <= 0:
            raise ValueError(f"simulation.{key} must be positive, got {sim[key]!r}")

    thr = cfg["threats"]
    if float(thr["default_duration_s"]) <= 0:
        raise ValueError(
            f"threats.default_duration_s must be positive, got {thr['default_duration_s']!r}"
        )
    if not (0.0 <= float(thr["incident_min_severity"]) <= 1.0):
        raise ValueError(
            "threats.incident_min_severity must be in [0, 1], "
            f"got {thr['incident_min_severity']!r}"
        )
    if int(thr["incident_min_nodes"]) < 1:
        raise ValueError(
            f"threats.incident_min_nodes must be >= 1, got {thr['incident_min_nodes']!r}"
        )

    if not isinstance(cfg["integrity"].get("hmac_key"), str) or not cfg["integrity"]["hmac_key"]:
        raise ValueError("integrity.hmac_key must be a non-empty string")

    level = str(cfg["logging"].get("level", "")).upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {LOG_LEVELS}, got {level!r}")


# ---------------------------------------------------------------------------
# RNG construction
# ---------------------------------------------------------------------------


def build_streams(cfg: ConfigDict) -> dict[str, Generator]:
    """Build the named per-subsystem Generators from a config dict."""
    return spawn_streams(int(cfg["simulation"]["seed"]))
