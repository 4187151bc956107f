"""
Cascade simulation: a bounded probabilistic breadth-first walk.

Queue entries carry ``(node_id, depth, risk_transfer)``; the origin enters
at depth 0 with its current risk score as transfer.  For each unvisited
neighbour of a dequeued node the admission probability is

    p = 0.4 * (1 - depth * 0.1) * (1 - neighbour.health)

and an admitted neighbour receives

    transfer' = transfer * 0.7 * (1 - neighbour.health * 0.5)

An admitted node is expanded further only if its depth is <= 5 and its
transfer is >= 0.2, so no path is longer than six hops.  The visited set
is shared by the whole walk, so no node is admitted twice.  Isolated
neighbours are cut off from the grid and are never admitted.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from numpy.random import Generator

from twin_engine.evolution import MIN_HEALTH, refresh_status
from twin_engine.graph import GraphStore
from twin_engine.model import (
    CascadeEvent,
    InvalidParameterError,
    PropagationStep,
    utcnow,
)
from twin_engine.utils import clamp, short_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_PROPAGATION = 0.4
DEPTH_DECAY = 0.1
TRANSFER_DECAY = 0.7
MAX_EXPAND_DEPTH = 5
MIN_TRANSFER = 0.2

ORIGIN_RISK_GAIN = 0.5
ORIGIN_HEALTH_LOSS = 0.3
HEALTH_LOSS_PER_TRANSFER = 0.2


# ---------------------------------------------------------------------------
# Walk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Admission:
    source: str
    target: str
    transfer: float
    depth: int


def _walk(store: GraphStore, origin_id: str, rng: Generator) -> list[_Admission]:
    """Run the BFS from *origin_id* without touching any node."""
    origin = store.get_node(origin_id)
    queue: deque[tuple[str, int, float]] = deque([(origin_id, 0, origin.risk_score)])
    visited = {origin_id}
    admitted: list[_Admission] = []

    while queue:
        node_id, depth, transfer = queue.popleft()
        if depth > MAX_EXPAND_DEPTH or transfer < MIN_TRANSFER:
            continue
        for neighbour in store.get_neighbors(node_id):
            if neighbour.id in visited or neighbour.is_isolated:
                continue
            prob = BASE_PROPAGATION * (1 - depth * DEPTH_DECAY) * (1 - neighbour.health)
            if rng.random() >= prob:
                continue
            visited.add(neighbour.id)
            child = transfer * TRANSFER_DECAY * (1 - neighbour.health * 0.5)
            admitted.append(_Admission(node_id, neighbour.id, child, depth + 1))
            queue.append((neighbour.id, depth + 1, child))
    return admitted


def predict_cascade_path(store: GraphStore, origin_id: str, rng: Generator) -> list[str]:
    """Likely failure order starting at *origin_id*; read-only.

    Returns ``[origin_id]`` followed by admitted nodes in BFS order, or an
    empty list if the origin is unknown.
    """
    if origin_id not in store:
        return []
    return [origin_id] + [a.target for a in _walk(store, origin_id, rng)]


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


def simulate_cascade(
    store: GraphStore,
    origin_id: str,
    severity: float,
    rng: Generator,
    id_rng: Generator,
    clock: Callable[[], datetime] = utcnow,
) -> CascadeEvent | None:
    """Stress *origin_id*, walk the grid and apply the resulting damage.

    The origin gains ``0.5 * severity`` risk and loses ``0.3 * severity``
    health before the walk.  Every admitted node then gains its transfer as
    risk and loses ``0.2 * transfer`` health; statuses are re-derived.

    Parameters
    ----------
    store : GraphStore
        Grid to mutate.
    origin_id : str
        Node the failure starts at.
    severity : float
        Initial stress in [0, 1].
    rng, id_rng : Generator
        Walk draws and event id draws.
    clock : callable
        Returns the current aware datetime.

    Returns
    -------
    CascadeEvent or None
        None if *origin_id* is not in the store.

    Raises
    ------
    InvalidParameterError
        If severity is outside [0, 1].  Raised before any mutation.
    """
    if not (0.0 <= severity <= 1.0):
        raise InvalidParameterError(f"severity must be in [0, 1], got {severity!r}")
    origin = store.get_node(origin_id)
    if origin is None:
        return None

    start = clock()
    before = {origin_id: (origin.risk_score, origin.health)}

    origin.risk_score = clamp(origin.risk_score + severity * ORIGIN_RISK_GAIN, 0.0, 1.0)
    origin.health = clamp(origin.health - severity * ORIGIN_HEALTH_LOSS, MIN_HEALTH, 1.0)

    admitted = _walk(store, origin_id, rng)

    for adm in admitted:
        node = store.get_node(adm.target)
        before[node.id] = (node.risk_score, node.health)
        node.risk_score = clamp(node.risk_score + adm.transfer, 0.0, 1.0)
        node.health = clamp(
            node.health - adm.transfer * HEALTH_LOSS_PER_TRANSFER, MIN_HEALTH, 1.0
        )

    affected = [origin_id] + [a.target for a in admitted]
    damage = 0.0
    for node_id in affected:
        node = store.get_node(node_id)
        refresh_status(node)
        risk0, health0 = before[node_id]
        damage += (node.risk_score - risk0) + (health0 - node.health)

    end = clock()
    path = tuple(
        PropagationStep(a.source, a.target, a.transfer, a.depth, end) for a in admitted
    )
    event = CascadeEvent(
        id=short_id(id_rng, "cascade"),
        origin_node=origin_id,
        severity=severity,
        affected_nodes=tuple(affected),
        propagation_path=path,
        impact_score=len(affected) / len(store),
        total_damage=damage,
        start_time=start,
        end_time=end,
    )
    logger.info(
        "Cascade %s from %s (severity %.2f): %d node(s) affected, impact %.3f",
        event.id, origin_id, severity, len(affected), event.impact_score,
    )
    return event
