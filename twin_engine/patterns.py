"""
Pattern analysis over the live grid and its recent history.

``MetricsHistory`` keeps the last 50 samples of risk, health, load and
temperature per node (one sample per tick).  ``analyze_patterns`` looks for
five grid-level conditions:

* ``correlated_degradation`` – >= 3 nodes whose risk slope over the last
  5 samples exceeds 0.02, reported per region with >= 2 such nodes.
* ``load_imbalance``         – nodes above 1.3x and below 0.7x the mean load
  both present.
* ``thermal_cluster``        – >= 3 nodes above 60 °C, greedily clustered by
  planar distance < 15; clusters of size >= 2 are reported.
* ``cascading_risk``         – a node above 0.8 risk with >= 2 neighbours
  above 0.6 risk.
* ``geographic_stress``      – a region whose mean risk exceeds 0.5.

All functions are read-only with respect to the store.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

import numpy as np
import pandas as pd

from twin_engine.graph import GraphStore
from twin_engine.model import Node, PredictionType, parse_enum, to_jsonable, utcnow
from twin_engine.risk import Prediction
from twin_engine.utils import clamp, linear_trend


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

HISTORY_WINDOW = 50
METRICS = ("risk", "health", "load", "temperature")

DEGRADATION_SLOPE = 0.02
DEGRADATION_SAMPLES = 5
HOT_TEMPERATURE = 60.0
CLUSTER_DISTANCE = 15.0
CRITICAL_RISK = 0.8
ELEVATED_RISK = 0.6
REGION_STRESS = 0.5

URGENT_HOURS = 12.0
URGENT_PROBABILITY = 0.7


class PatternType(str, Enum):
    CORRELATED_DEGRADATION = "correlated_degradation"
    LOAD_IMBALANCE = "load_imbalance"
    THERMAL_CLUSTER = "thermal_cluster"
    CASCADING_RISK = "cascading_risk"
    GEOGRAPHIC_STRESS = "geographic_stress"


class PatternTrend(str, Enum):
    ESCALATING = "escalating"
    STABLE = "stable"
    RESOLVING = "resolving"


@dataclass(frozen=True)
class Pattern:
    id: str
    type: PatternType
    description: str
    affected_nodes: tuple[str, ...]
    confidence: float
    detected_at: datetime
    trend: PatternTrend

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class MetricsHistory:
    """Bounded per-node sample history."""

    def __init__(self, window: int = HISTORY_WINDOW) -> None:
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        self.window = window
        self._series: dict[str, dict[str, deque[float]]] = {}

    def record(self, nodes: Iterable[Node]) -> None:
        for node in nodes:
            series = self._series.get(node.id)
            if series is None:
                series = {m: deque(maxlen=self.window) for m in METRICS}
                self._series[node.id] = series
            series["risk"].append(node.risk_score)
            series["health"].append(node.health)
            series["load"].append(node.load_ratio)
            series["temperature"].append(node.temperature)

    def series(self, node_id: str, metric: str) -> list[float]:
        if metric not in METRICS:
            raise KeyError(f"Unknown metric {metric!r}; expected one of {METRICS}")
        node_series = self._series.get(node_id)
        return list(node_series[metric]) if node_series else []

    def slope(self, node_id: str, metric: str, last: int = DEGRADATION_SAMPLES) -> float:
        return linear_trend(self.series(node_id, metric)[-last:])

    def __len__(self) -> int:
        return len(self._series)

    def clear(self) -> None:
        self._series.clear()


# ---------------------------------------------------------------------------
# Detectors
# ---------------------------------------------------------------------------


def _stamp(now: datetime) -> int:
    return int(now.timestamp() * 1000)


def _correlated_degradation(nodes: list[Node], history: MetricsHistory,
                            now: datetime) -> list[Pattern]:
    degrading = [
        n for n in nodes
        if len(history.series(n.id, "risk")) >= DEGRADATION_SAMPLES
        and history.slope(n.id, "risk") > DEGRADATION_SLOPE
    ]
    if len(degrading) < 3:
        return []
    by_region: dict[str, list[Node]] = {}
    for n in degrading:
        by_region.setdefault(n.region, []).append(n)
    return [
        Pattern(
            id=f"pattern_corr_{region}_{_stamp(now)}",
            type=PatternType.CORRELATED_DEGRADATION,
            description=f"{len(group)} nodes in {region} showing correlated risk increase",
            affected_nodes=tuple(n.id for n in group),
            confidence=min(0.9, 0.5 + len(group) * 0.1),
            detected_at=now,
            trend=PatternTrend.ESCALATING,
        )
        for region, group in by_region.items()
        if len(group) >= 2
    ]


def _load_imbalance(nodes: list[Node], now: datetime) -> list[Pattern]:
    loads = np.array([n.load_ratio for n in nodes])
    mean = loads.mean()
    over = [n.id for n, l in zip(nodes, loads) if l > mean * 1.3]
    under = [n.id for n, l in zip(nodes, loads) if l < mean * 0.7]
    if not over or not under:
        return []
    return [Pattern(
        id=f"pattern_load_{_stamp(now)}",
        type=PatternType.LOAD_IMBALANCE,
        description=f"Load imbalance: {len(over)} overloaded, {len(under)} underutilized",
        affected_nodes=tuple(over + under),
        confidence=min(0.85, 0.5 + len(over) * 0.05),
        detected_at=now,
        trend=PatternTrend.STABLE,
    )]


def spatial_clusters(nodes: list[Node], distance: float = CLUSTER_DISTANCE) -> list[list[Node]]:
    """Greedy clusters: each unvisited node collects unvisited nodes within *distance*."""
    if not nodes:
        return []
    coords = np.array([(n.x, n.y) for n in nodes])
    dist = np.hypot(coords[:, None, 0] - coords[None, :, 0],
                    coords[:, None, 1] - coords[None, :, 1])
    visited = np.zeros(len(nodes), dtype=bool)
    clusters = []
    for i in range(len(nodes)):
        if visited[i]:
            continue
        members = np.flatnonzero(~visited & (dist[i] < distance))
        visited[members] = True
        clusters.append([nodes[j] for j in members])
    return clusters


def cluster_trend(nodes: list[Node], history: MetricsHistory, metric: str) -> PatternTrend:
    escalating = resolving = 0
    for n in nodes:
        values = history.series(n.id, metric)
        if len(values) < 3:
            continue
        slope = linear_trend(values[-DEGRADATION_SAMPLES:])
        if slope > 0.01:
            escalating += 1
        elif slope < -0.01:
            resolving += 1
    if escalating > resolving * 1.5:
        return PatternTrend.ESCALATING
    if resolving > escalating * 1.5:
        return PatternTrend.RESOLVING
    return PatternTrend.STABLE


def _thermal_clusters(nodes: list[Node], history: MetricsHistory,
                      now: datetime) -> list[Pattern]:
    hot = [n for n in nodes if n.temperature > HOT_TEMPERATURE]
    if len(hot) < 3:
        return []
    out = []
    for idx, cluster in enumerate(spatial_clusters(hot)):
        if len(cluster) < 2:
            continue
        out.append(Pattern(
            id=f"pattern_thermal_{idx}_{_stamp(now)}",
            type=PatternType.THERMAL_CLUSTER,
            description=f"Thermal hotspot: {len(cluster)} nodes exceeding temperature thresholds",
            affected_nodes=tuple(n.id for n in cluster),
            confidence=min(0.88, 0.6 + len(cluster) * 0.07),
            detected_at=now,
            trend=cluster_trend(cluster, history, "temperature"),
        ))
    return out


def _cascading_risk(store: GraphStore, nodes: list[Node], now: datetime) -> list[Pattern]:
    out = []
    for node in nodes:
        if node.risk_score <= CRITICAL_RISK:
            continue
        at_risk = [n.id for n in store.get_neighbors(node.id) if n.risk_score > ELEVATED_RISK]
        if len(at_risk) < 2:
            continue
        out.append(Pattern(
            id=f"pattern_cascade_{node.id}_{_stamp(now)}",
            type=PatternType.CASCADING_RISK,
            description=(
                f"Cascade risk from {node.name}: {len(at_risk)} connected nodes "
                f"at elevated risk"
            ),
            affected_nodes=(node.id, *at_risk),
            confidence=min(0.95, 0.75 + len(at_risk) * 0.05),
            detected_at=now,
            trend=PatternTrend.ESCALATING,
        ))
    return out


def region_frame(nodes: list[Node]) -> pd.DataFrame:
    """Per-region node count and mean risk / health / load."""
    df = pd.DataFrame({
        "region": [n.region for n in nodes],
        "risk": [n.risk_score for n in nodes],
        "health": [n.health for n in nodes],
        "load": [n.load_ratio for n in nodes],
    })
    return (
        df.groupby("region", sort=True)
        .agg(nodes=("risk", "size"), avg_risk=("risk", "mean"),
             avg_health=("health", "mean"), avg_load=("load", "mean"))
    )


def _geographic_stress(nodes: list[Node], now: datetime) -> list[Pattern]:
    frame = region_frame(nodes)
    out = []
    for region, row in frame[frame["avg_risk"] > REGION_STRESS].iterrows():
        avg = float(row["avg_risk"])
        out.append(Pattern(
            id=f"pattern_geo_{region}_{_stamp(now)}",
            type=PatternType.GEOGRAPHIC_STRESS,
            description=f"Region {region} under elevated stress (avg risk: {avg * 100:.0f}%)",
            affected_nodes=tuple(n.id for n in nodes if n.region == region),
            confidence=min(0.9, avg + 0.2),
            detected_at=now,
            trend=PatternTrend.ESCALATING if avg > 0.7 else PatternTrend.STABLE,
        ))
    return out


def analyze_patterns(
    store: GraphStore,
    history: MetricsHistory,
    now: datetime | None = None,
) -> list[Pattern]:
    """Run every detector against the current grid.

    Returns
    -------
    list of Pattern
        In detector order; empty for an empty store.
    """
    nodes = store.nodes()
    if not nodes:
        return []
    now = now or utcnow()
    return [
        *_correlated_degradation(nodes, history, now),
        *_load_imbalance(nodes, now),
        *_thermal_clusters(nodes, history, now),
        *_cascading_risk(store, nodes, now),
        *_geographic_stress(nodes, now),
    ]


def is_urgent(prediction: Prediction) -> bool:
    return (
        prediction.hours_to_event < URGENT_HOURS
        and prediction.probability > URGENT_PROBABILITY
    )


def system_health_score(
    store: GraphStore,
    predictions: Iterable[Prediction] = (),
    patterns: Iterable[Pattern] = (),
) -> float:
    """Grid health in [0, 1].

    ``0.4 * mean health + 0.4 * (1 - mean risk) + 0.2``, less up to 0.3 for
    urgent predictions (0.05 each) and up to 0.2 for escalating patterns
    (0.04 each).  An empty store scores 0.
    """
    nodes = store.nodes()
    if not nodes:
        return 0.0
    avg_health = float(np.mean([n.health for n in nodes]))
    avg_risk = float(np.mean([n.risk_score for n in nodes]))
    urgent = sum(1 for p in predictions if is_urgent(p))
    escalating = sum(1 for p in patterns if p.trend is PatternTrend.ESCALATING)
    score = (
        avg_health * 0.4 + (1 - avg_risk) * 0.4 + 0.2
        - min(0.3, urgent * 0.05)
        - min(0.2, escalating * 0.04)
    )
    return clamp(score, 0.0, 1.0)


# ---------------------------------------------------------------------------
# Accuracy tracking
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TypeAccuracy:
    total: int
    accurate: int
    accuracy: float


@dataclass(frozen=True)
class AccuracyMetrics:
    total: int
    accurate: int
    accuracy: float
    by_type: dict[str, TypeAccuracy] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


class AccuracyTracker:
    """Outcome log for resolved predictions.

    Metrics come only from recorded outcomes; a prediction recorded twice
    keeps its latest outcome.
    """

    def __init__(self) -> None:
        self._outcomes: dict[str, tuple[PredictionType, bool]] = {}

    def record_outcome(self, prediction_id: str, prediction_type: PredictionType | str,
                       was_accurate: bool) -> None:
        ptype = parse_enum(PredictionType, prediction_type, "prediction type")
        self._outcomes[prediction_id] = (ptype, bool(was_accurate))

    def metrics(self) -> AccuracyMetrics:
        total = len(self._outcomes)
        accurate = sum(1 for _, ok in self._outcomes.values() if ok)
        by_type = {}
        for ptype in PredictionType:
            hits = [ok for t, ok in self._outcomes.values() if t is ptype]
            by_type[ptype.value] = TypeAccuracy(
                total=len(hits),
                accurate=sum(hits),
                accuracy=sum(hits) / len(hits) if hits else 0.0,
            )
        return AccuracyMetrics(
            total=total,
            accurate=accurate,
            accuracy=accurate / total if total else 0.0,
            by_type=by_type,
        )

    def __len__(self) -> int:
        return len(self._outcomes)
