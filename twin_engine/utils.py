"""
Shared utilities for the digital-twin engine.

Centralises helpers that would otherwise be duplicated across modules:
  - clamp()                 : scalar bounding used by every telemetry update
  - spawn_streams()         : SeedSequence-based named RNG streams
  - short_id()              : reproducible hex identifiers drawn from a stream
  - linear_trend()          : least-squares slope of a short series
  - normal_interval()       : symmetric normal-approximation interval
  - canonical_json() / sign_payload() : audit hashing of snapshots

All functions are pure (no global state).
"""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Sequence

import numpy as np
from numpy.random import Generator, SeedSequence, default_rng
import scipy.stats as stats


# ---------------------------------------------------------------------------
# Scalar helpers
# ---------------------------------------------------------------------------


def clamp(value: float, low: float, high: float) -> float:
    """Bound *value* to ``[low, high]`` and return it as a plain float."""
    return float(min(high, max(low, value)))


# ---------------------------------------------------------------------------
# SeedSequence-based RNG streams
# ---------------------------------------------------------------------------

STREAM_NAMES: tuple[str, ...] = ("tick", "threats", "cascade", "risk", "ids")


def spawn_streams(master_seed: int) -> dict[str, Generator]:
    """Spawn one independent Generator per stochastic subsystem.

    Uses ``numpy.random.SeedSequence.spawn()`` so the streams are
    statistically independent and the same *master_seed* always yields the
    same set of Generators.  Adding draws to one subsystem never shifts the
    sequence seen by another.

    Parameters
    ----------
    master_seed : int
        Top-level seed, normally ``simulation.seed`` from the config.

    Returns
    -------
    dict of str -> Generator
        Keys are the entries of ``STREAM_NAMES``.
    """
    children = SeedSequence(int(master_seed)).spawn(len(STREAM_NAMES))
    return {name: default_rng(child) for name, child in zip(STREAM_NAMES, children)}


def short_id(rng: Generator, prefix: str) -> str:
    """Return ``"<prefix>_<8 hex digits>"`` drawn from *rng*."""
    return f"{prefix}_{int(rng.integers(0, 16 ** 8)):08x}"


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------


def linear_trend(values: Sequence[float]) -> float:
    """Least-squares slope of *values* against their sample index.

    Returns 0.0 for fewer than two samples or a constant series.
    """
    if len(values) < 2:
        return 0.0
    y = np.asarray(values, dtype=float)
    if np.all(y == y[0]):
        return 0.0
    result = stats.linregress(np.arange(len(y), dtype=float), y)
    return float(result.slope)


def normal_interval(
    center: float,
    rel_std: float,
    confidence: float = 0.95,
) -> tuple[float, float]:
    """Two-sided normal interval ``center ± z·(rel_std·center)`` clipped to [0, 1].

    With the default 95 % level z is 1.96.

    Raises
    ------
    ValueError
        If confidence is not in (0, 1).
    """
    if not (0 < confidence < 1):
        raise ValueError(f"confidence must be in (0, 1); got {confidence}.")
    z = float(stats.norm.ppf(0.5 + confidence / 2.0))
    half = z * rel_std * center
    return clamp(center - half, 0.0, 1.0), clamp(center + half, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Audit hashing
# ---------------------------------------------------------------------------


def canonical_json(data: Any) -> str:
    """Serialise *data* deterministically (sorted keys, compact separators)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def sign_payload(data: Any, hmac_key: str) -> dict[str, str]:
    """Return the SHA-256 of ``canonical_json(data)`` and its HMAC-SHA256.

    The signature is computed over the hex digest, so a verifier only needs
    the digest and the key.
    """
    digest = hashlib.sha256(canonical_json(data).encode("utf-8")).hexdigest()
    signature = hmac.new(
        hmac_key.encode("utf-8"), digest.encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return {"sha256": digest, "signature": signature}
