"""
Metric evolution: advance node telemetry by one discrete time step.

``advance`` is a pure function of the node, the ambient ``TickContext`` and
the mean risk of the node's neighbours taken from a pre-tick snapshot, so a
whole-grid step is a synchronous update (no node sees a neighbour's
already-advanced value within the same tick).

Status rules (shared with threat, cascade and mitigation code):

    risk > 0.8 or health < 0.3      -> critical
    risk > 0.6 or health < 0.5      -> degraded
    otherwise                       -> online

    cyber_health < 0.4 or tamper > 0.7  -> compromised
    cyber_health < 0.7 or tamper > 0.3  -> warning
    otherwise                           -> secure

A node pinned to ``ISOLATED`` (status or cyber status) keeps that value
until an operator override releases it.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Mapping

from numpy.random import Generator

from twin_engine.model import (
    CyberStatus,
    FREQUENCY_BAND,
    LATENCY_BAND,
    Node,
    NodeStatus,
    NodeType,
    PACKET_LOSS_MAX,
    VOLTAGE_BAND,
)
from twin_engine.utils import clamp

if TYPE_CHECKING:
    from twin_engine.graph import GraphStore


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

CRITICAL_RISK = 0.8
DEGRADED_RISK = 0.6
CRITICAL_HEALTH = 0.3
DEGRADED_HEALTH = 0.5

COMPROMISED_CYBER_HEALTH = 0.4
WARNING_CYBER_HEALTH = 0.7
COMPROMISED_TAMPER = 0.7
WARNING_TAMPER = 0.3

MIN_HEALTH = 0.1
MIN_TEMPERATURE = 25.0
THERMAL_HEADROOM = 10.0

# Risk blend weights for the per-tick estimate.
PHYSICAL_WEIGHT = 0.4
CYBER_WEIGHT = 0.3
NEIGHBOUR_WEIGHT = 0.3


# ---------------------------------------------------------------------------
# Status derivation
# ---------------------------------------------------------------------------


def derive_status(risk: float, health: float) -> NodeStatus:
    if risk > CRITICAL_RISK or health < CRITICAL_HEALTH:
        return NodeStatus.CRITICAL
    if risk > DEGRADED_RISK or health < DEGRADED_HEALTH:
        return NodeStatus.DEGRADED
    return NodeStatus.ONLINE


def derive_cyber_status(cyber_health: float, tamper: float) -> CyberStatus:
    if cyber_health < COMPROMISED_CYBER_HEALTH or tamper > COMPROMISED_TAMPER:
        return CyberStatus.COMPROMISED
    if cyber_health < WARNING_CYBER_HEALTH or tamper > WARNING_TAMPER:
        return CyberStatus.WARNING
    return CyberStatus.SECURE


def refresh_status(node: Node) -> None:
    """Re-derive both status fields in place, leaving isolation pins alone."""
    if node.status is not NodeStatus.ISOLATED:
        node.status = derive_status(node.risk_score, node.health)
    if node.cyber_status is not CyberStatus.ISOLATED:
        node.cyber_status = derive_cyber_status(node.cyber_health, node.tamper_signal)


# ---------------------------------------------------------------------------
# Tick context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TickContext:
    """Ambient inputs for one tick: wall-clock instant and the tick RNG."""

    now: datetime
    rng: Generator

    @property
    def hour(self) -> int:
        return self.now.hour

    @property
    def business_hours(self) -> bool:
        return 8 <= self.hour <= 18

    @property
    def daylight(self) -> bool:
        return 6 <= self.hour <= 18

    @property
    def load_multiplier(self) -> float:
        return 1.2 if self.business_hours else 0.8


# ---------------------------------------------------------------------------
# Risk estimate used by the tick
# ---------------------------------------------------------------------------


def tick_physical_risk(temperature: float, thermal_limit: float, load_ratio: float) -> float:
    overload = 0.3 if load_ratio > 0.85 else load_ratio * 0.2
    return (temperature / thermal_limit) * 0.3 + overload


def tick_cyber_risk(packet_loss: float, tamper: float, latency: float) -> float:
    latency_penalty = 0.2 if latency > 100 else 0.0
    return packet_loss * 2 + tamper * 0.5 + latency_penalty


# ---------------------------------------------------------------------------
# Step
# ---------------------------------------------------------------------------


def advance(node: Node, ctx: TickContext, neighbour_risk: float) -> Node:
    """Return a new ``Node`` advanced by one tick.

    Parameters
    ----------
    node : Node
        Current state; not modified.
    ctx : TickContext
        Hour-of-day flags and the Generator all noise is drawn from.
    neighbour_risk : float
        Mean pre-tick risk score of the node's connections (0.0 if none).

    Returns
    -------
    Node
        Advanced copy with re-derived status fields.
    """
    # Ten uniform draws per node keeps the stream layout fixed per tick.
    r = ctx.rng.random(10)

    load_delta = (r[0] - 0.5) * 0.05 * ctx.load_multiplier
    if node.type is NodeType.SOLAR_FARM:
        load_delta += 0.02 if ctx.daylight else -0.02
    load_ratio = clamp(node.load_ratio + load_delta, 0.1, 0.95)

    thermal_delta = (load_ratio - 0.5) * 2 + (r[1] - 0.5) * 2
    temperature = clamp(
        node.temperature + thermal_delta,
        MIN_TEMPERATURE,
        node.thermal_limit + THERMAL_HEADROOM,
    )

    voltage = clamp(node.voltage + (r[2] - 0.5) * 0.5, *VOLTAGE_BAND)
    frequency = clamp(node.frequency + (r[3] - 0.5) * 0.01, *FREQUENCY_BAND)
    latency = clamp(node.latency + (r[4] - 0.5) * 5, *LATENCY_BAND)
    packet_loss = clamp(node.packet_loss + (r[5] - 0.5) * 0.005, 0.0, PACKET_LOSS_MAX)
    # biased slightly downward: tamper evidence decays absent an active threat
    tamper = clamp(node.tamper_signal + (r[6] - 0.52) * 0.02, 0.0, 1.0)

    physical = tick_physical_risk(temperature, node.thermal_limit, load_ratio)
    cyber = tick_cyber_risk(packet_loss, tamper, latency)
    risk = clamp(
        physical * PHYSICAL_WEIGHT
        + cyber * CYBER_WEIGHT
        + neighbour_risk * NEIGHBOUR_WEIGHT
        + (r[7] - 0.5) * 0.05,
        0.0,
        1.0,
    )
    health = clamp(1 - risk * 0.5 + (r[8] - 0.5) * 0.02, MIN_HEALTH, 1.0)
    cyber_health = clamp(1 - cyber + (r[9] - 0.5) * 0.02, MIN_HEALTH, 1.0)

    new = dataclasses.replace(
        node,
        load_ratio=load_ratio,
        current_load=load_ratio * node.rated_capacity,
        temperature=temperature,
        voltage=voltage,
        frequency=frequency,
        latency=latency,
        packet_loss=packet_loss,
        tamper_signal=tamper,
        risk_score=risk,
        health=health,
        cyber_health=cyber_health,
        last_seen=ctx.now,
    )
    refresh_status(new)
    return new


def neighbour_risk_means(
    store: GraphStore, snapshot: Mapping[str, float] | None = None
) -> dict[str, float]:
    """Mean neighbour risk for every node, from *snapshot* or current values."""
    if snapshot is None:
        snapshot = {node.id: node.risk_score for node in store.nodes()}
    means: dict[str, float] = {}
    for node in store.nodes():
        conns = node.connections
        means[node.id] = (
            sum(snapshot[c] for c in conns) / len(conns) if conns else 0.0
        )
    return means


def advance_all(store: GraphStore, ctx: TickContext) -> int:
    """Advance every node in *store* synchronously; return the node count."""
    means = neighbour_risk_means(store)
    for node in list(store.nodes()):
        store.replace_node(advance(node, ctx, means[node.id]))
    return len(means)
