"""
Risk scoring and failure prediction.

``score`` blends five components into an overall risk in [0, 1]:

    physical       0.30   thermal ratio, load, voltage / frequency deviation
    cyber          0.25   tamper, latency, packet loss, (1 - cyber health)
    operational    0.20   (1 - health), failed authentications
    environmental  0.10   bounded random placeholder, drawn in [0, 0.3)
    cascading      0.15   0.7 x mean neighbour risk

Scores are computed on demand and never stored on the node.  A
``Prediction`` is produced only for nodes whose overall risk is >= 0.5; its
type is chosen by a fixed precedence (see ``prediction_type``).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from numpy.random import Generator

from twin_engine.cascade import predict_cascade_path
from twin_engine.graph import GraphStore
from twin_engine.model import (
    ActionType,
    CyberStatus,
    LeadingFactor,
    NOMINAL_FREQUENCY,
    NOMINAL_VOLTAGE,
    Node,
    NodeStatus,
    PredictionType,
    RiskComponents,
    RiskScore,
    SeverityLevel,
    Trend,
    to_jsonable,
    require_complete,
    utcnow,
)
from twin_engine.utils import clamp, normal_interval, short_id


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

COMPONENT_WEIGHTS = {
    "physical": 0.30,
    "cyber": 0.25,
    "operational": 0.20,
    "environmental": 0.10,
    "cascading": 0.15,
}

ENVIRONMENTAL_MAX = 0.3
PREDICTION_MIN_RISK = 0.5
CASCADE_PATH_MIN_RISK = 0.7
MAX_PREDICTIONS = 20

# overall -> hours until failure, checked top-down
TIME_TO_FAILURE_STEPS: tuple[tuple[float, float], ...] = (
    (0.9, 0.5),
    (0.8, 2.0),
    (0.6, 6.0),
    (0.4, 24.0),
)
TIME_TO_FAILURE_FLOOR = 48.0

SEVERITY_STEPS: tuple[tuple[float, float], ...] = (
    (0.8, 0.9),
    (0.6, 0.7),
    (0.4, 0.5),
)
SEVERITY_FLOOR = 0.3

SEVERITY_ORDER = {
    SeverityLevel.CRITICAL: 0,
    SeverityLevel.HIGH: 1,
    SeverityLevel.MEDIUM: 2,
    SeverityLevel.LOW: 3,
}
PRIORITY_ORDER = {"immediate": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(frozen=True)
class HistoricalPattern:
    id: str
    name: str
    indicators: tuple[str, ...]
    outcome: str
    similarity: float


HISTORICAL_PATTERNS: tuple[HistoricalPattern, ...] = (
    HistoricalPattern(
        "pattern-thermal-cascade", "Thermal Cascade Failure",
        ("high_temperature", "high_load", "neighbor_stress"),
        "Cascading thermal failure affecting 12+ nodes", 0.85,
    ),
    HistoricalPattern(
        "pattern-cyber-propagation", "Cyber Attack Propagation",
        ("tamper_signal", "packet_loss", "latency_spike"),
        "Compromise spread to control systems", 0.78,
    ),
    HistoricalPattern(
        "pattern-overload-cascade", "Load-Induced Cascade",
        ("overload", "voltage_deviation", "frequency_drop"),
        "Regional blackout affecting distribution network", 0.92,
    ),
    HistoricalPattern(
        "pattern-generation-loss", "Generation Capacity Loss",
        ("generator_trip", "frequency_deviation", "voltage_sag"),
        "Emergency load shedding required", 0.88,
    ),
)

_PATTERN_FOR_TYPE = {
    PredictionType.THERMAL_STRESS: "pattern-thermal-cascade",
    PredictionType.CYBER_VULNERABILITY: "pattern-cyber-propagation",
    PredictionType.OVERLOAD: "pattern-overload-cascade",
}

MITIGATION_TEXT: dict[PredictionType, str] = {
    PredictionType.THERMAL_STRESS:
        "Activate cooling systems for {name}, consider load shedding if "
        "temperature exceeds {limit:.0f}°C",
    PredictionType.OVERLOAD:
        "Implement load shedding for {name}, reroute power to neighboring nodes",
    PredictionType.CYBER_VULNERABILITY:
        "Initiate cyber lockdown on {name}, isolate from SCADA network, "
        "dispatch security team",
    PredictionType.CASCADE_FAILURE:
        "Pre-emptively isolate {name} to prevent cascade propagation, "
        "activate backup systems",
    PredictionType.EQUIPMENT_FAILURE:
        "Dispatch maintenance to {name}, prepare backup equipment for hot swap",
}
require_complete(MITIGATION_TEXT, PredictionType, "MITIGATION_TEXT")


# ---------------------------------------------------------------------------
# Component scores
# ---------------------------------------------------------------------------


def thermal_risk(node: Node) -> float:
    if node.temperature >= node.thermal_limit:
        return 0.9
    if node.temperature >= node.thermal_limit * 0.9:
        return 0.6
    return node.temperature / node.thermal_limit


def load_risk(load_ratio: float) -> float:
    if load_ratio >= 0.95:
        return 0.95
    if load_ratio >= 0.85:
        return 0.7
    if load_ratio >= 0.70:
        return 0.4
    return load_ratio * 0.5


def physical_risk(node: Node) -> float:
    voltage_dev = abs(node.voltage - NOMINAL_VOLTAGE) / 20
    freq_dev = abs(node.frequency - NOMINAL_FREQUENCY) / 0.5
    return (
        thermal_risk(node) * 0.35
        + load_risk(node.load_ratio) * 0.35
        + voltage_dev * 0.15
        + freq_dev * 0.15
    )


def tamper_risk(tamper: float) -> float:
    return 0.9 if tamper >= 0.7 else tamper


def cyber_risk(node: Node) -> float:
    latency = 0.8 if node.latency >= 200 else node.latency / 300
    packets = 0.9 if node.packet_loss >= 0.3 else node.packet_loss * 2
    return (
        tamper_risk(node.tamper_signal) * 0.4
        + latency * 0.2
        + packets * 0.2
        + (1 - node.cyber_health) * 0.2
    )


def operational_risk(node: Node) -> float:
    auth = 0.4 if node.failed_auth_count > 3 else node.failed_auth_count * 0.1
    return (1 - node.health) * 0.6 + auth


def time_to_failure(overall: float) -> float:
    for bound, hours in TIME_TO_FAILURE_STEPS:
        if overall >= bound:
            return hours
    return TIME_TO_FAILURE_FLOOR


def severity_bucket(overall: float) -> float:
    for bound, sev in SEVERITY_STEPS:
        if overall >= bound:
            return sev
    return SEVERITY_FLOOR


def severity_level(overall: float) -> SeverityLevel:
    if overall >= 0.8:
        return SeverityLevel.CRITICAL
    if overall >= 0.6:
        return SeverityLevel.HIGH
    if overall >= 0.4:
        return SeverityLevel.MEDIUM
    return SeverityLevel.LOW


def _leading_factors(node: Node, thermal: float, load: float, tamper: float,
                     cascading: float) -> tuple[LeadingFactor, ...]:
    factors: list[LeadingFactor] = []
    if thermal > 0.5:
        factors.append(LeadingFactor(
            name="Thermal Stress",
            contribution=thermal,
            value=node.temperature,
            threshold=node.thermal_limit,
            trend=Trend.INCREASING if node.temperature > 60 else Trend.STABLE,
            explanation=(
                f"Temperature at {node.temperature:.1f}°C approaching thermal "
                f"limit of {node.thermal_limit:.0f}°C"
            ),
        ))
    if load > 0.5:
        factors.append(LeadingFactor(
            name="Load Overload",
            contribution=load,
            value=node.load_ratio,
            threshold=0.85,
            trend=Trend.INCREASING if node.load_ratio > 0.8 else Trend.STABLE,
            explanation=(
                f"Load ratio at {node.load_ratio * 100:.0f}% exceeds safe "
                f"operating threshold"
            ),
        ))
    if tamper > 0.3:
        factors.append(LeadingFactor(
            name="Cyber Tampering",
            contribution=tamper,
            value=node.tamper_signal,
            threshold=0.5,
            trend=Trend.INCREASING if node.tamper_signal > 0.4 else Trend.STABLE,
            explanation="Anomalous telemetry patterns detected suggesting potential tampering",
        ))
    if cascading > 0.3:
        factors.append(LeadingFactor(
            name="Neighbor Risk Propagation",
            contribution=cascading,
            value=cascading,
            threshold=0.4,
            trend=Trend.STABLE,
            explanation="Connected nodes showing elevated risk levels",
        ))
    factors.sort(key=lambda f: f.contribution, reverse=True)
    return tuple(factors)


# ---------------------------------------------------------------------------
# Public scoring
# ---------------------------------------------------------------------------


def score(node: Node, neighbour_risk_average: float, rng: Generator) -> RiskScore:
    """Compute the composite risk score for *node*.

    Parameters
    ----------
    node : Node
        Node whose current telemetry is scored; not modified.
    neighbour_risk_average : float
        Mean risk score of the node's graph neighbours.
    rng : Generator
        Source of the environmental placeholder draw.

    Returns
    -------
    RiskScore
    """
    thermal = thermal_risk(node)
    load = load_risk(node.load_ratio)
    tamper = tamper_risk(node.tamper_signal)

    components = RiskComponents(
        physical=physical_risk(node),
        cyber=cyber_risk(node),
        operational=operational_risk(node),
        environmental=float(rng.uniform(0.0, ENVIRONMENTAL_MAX)),
        cascading=neighbour_risk_average * 0.7,
    )
    overall = clamp(
        sum(getattr(components, k) * w for k, w in COMPONENT_WEIGHTS.items()),
        0.0,
        1.0,
    )

    if overall > node.risk_score * 1.1:
        trend = Trend.INCREASING
    elif overall < node.risk_score * 0.9:
        trend = Trend.DECREASING
    else:
        trend = Trend.STABLE

    return RiskScore(
        overall=overall,
        probability=min(1.0, overall * 1.2),
        severity=severity_bucket(overall),
        time_to_failure=time_to_failure(overall),
        confidence_interval=normal_interval(overall, 0.15),
        trend=trend,
        components=components,
        leading_factors=_leading_factors(node, thermal, load, tamper, components.cascading),
    )


def score_node(store: GraphStore, node_id: str, rng: Generator) -> RiskScore | None:
    """Score a node by id using its current neighbourhood; None if unknown."""
    node = store.get_node(node_id)
    if node is None:
        return None
    return score(node, store.neighbour_risk_average(node_id), rng)


def prediction_type(node: Node, risk: RiskScore) -> PredictionType:
    """Pick the prediction type; earlier rules take precedence on ties."""
    c = risk.components
    if c.cyber > 0.6:
        return PredictionType.CYBER_VULNERABILITY
    if c.physical > 0.6 and node.temperature > node.thermal_limit * 0.85:
        return PredictionType.THERMAL_STRESS
    if node.load_ratio > 0.85:
        return PredictionType.OVERLOAD
    if c.cascading > 0.4:
        return PredictionType.CASCADE_FAILURE
    return PredictionType.EQUIPMENT_FAILURE


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SuggestedAction:
    action: str
    priority: str
    impact: str
    estimated_effect: float
    automated: bool
    action_type: ActionType


@dataclass(frozen=True)
class PatternMatch:
    pattern_id: str
    similarity: float
    historical_outcome: str


@dataclass(frozen=True)
class PredictionReasoning:
    root_cause: str
    leading_signals: tuple[str, ...]
    historical_pattern: str
    risk_shift: str
    confidence_driver: str
    recommended_mitigation: str
    pattern_match: PatternMatch | None = None


@dataclass(frozen=True)
class Prediction:
    id: str
    node_id: str
    node_name: str
    type: PredictionType
    probability: float
    confidence: float
    hours_to_event: float
    predicted_time: datetime
    severity: SeverityLevel
    risk: RiskScore
    reasoning: PredictionReasoning
    contributing_factors: tuple[LeadingFactor, ...]
    suggested_actions: tuple[SuggestedAction, ...]
    cascade_path: tuple[str, ...] | None
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


_PRIMARY_FACTOR_KEY = {
    PredictionType.CYBER_VULNERABILITY: "Cyber",
    PredictionType.THERMAL_STRESS: "Thermal",
    PredictionType.OVERLOAD: "Load",
    PredictionType.CASCADE_FAILURE: "Neighbor",
}


def suggested_actions(ptype: PredictionType, node: Node,
                      risk: RiskScore) -> tuple[SuggestedAction, ...]:
    """Up to five actions, most urgent first."""
    actions: list[SuggestedAction] = []
    if ptype is PredictionType.THERMAL_STRESS or node.temperature > node.thermal_limit * 0.9:
        actions.append(SuggestedAction(
            "Activate auxiliary cooling systems", "immediate", "high", 0.3, True,
            ActionType.ENABLE_COOLING,
        ))
    if ptype is PredictionType.OVERLOAD or node.load_ratio > 0.85:
        actions.append(SuggestedAction(
            "Implement emergency load shedding", "immediate", "critical", 0.4, True,
            ActionType.LOAD_SHED,
        ))
        actions.append(SuggestedAction(
            "Reroute power to adjacent substations", "high", "high", 0.25, False,
            ActionType.REROUTE,
        ))
    if ptype is PredictionType.CYBER_VULNERABILITY or node.cyber_status is not CyberStatus.SECURE:
        actions.append(SuggestedAction(
            "Initiate network isolation protocol", "immediate", "critical", 0.5, False,
            ActionType.CYBER_LOCKDOWN,
        ))
    if ptype is PredictionType.CASCADE_FAILURE or risk.components.cascading > 0.5:
        actions.append(SuggestedAction(
            "Isolate node from grid to prevent cascade", "high", "critical", 0.6, False,
            ActionType.ISOLATE,
        ))
    if node.health < 0.6:
        actions.append(SuggestedAction(
            "Dispatch maintenance crew", "high", "medium", 0.2, False,
            ActionType.DISPATCH_MAINTENANCE,
        ))
    actions.append(SuggestedAction(
        "Activate backup systems", "medium", "high", 0.35, True,
        ActionType.ACTIVATE_BACKUP,
    ))
    actions.sort(key=lambda a: PRIORITY_ORDER[a.priority])
    return tuple(actions[:5])


def build_prediction(
    store: GraphStore,
    node: Node,
    risk_rng: Generator,
    id_rng: Generator,
    cascade_rng: Generator,
    now: datetime | None = None,
) -> Prediction | None:
    """Build a prediction for *node*, or None when overall risk < 0.5."""
    risk = score(node, store.neighbour_risk_average(node.id), risk_rng)
    if risk.overall < PREDICTION_MIN_RISK:
        return None
    now = now or utcnow()

    ptype = prediction_type(node, risk)
    key = _PRIMARY_FACTOR_KEY.get(ptype)
    if key is None:
        primary = risk.leading_factors[0] if risk.leading_factors else None
    else:
        primary = next((f for f in risk.leading_factors if key in f.name), None)

    pattern_id = _PATTERN_FOR_TYPE.get(ptype)
    pattern = next((p for p in HISTORICAL_PATTERNS if p.id == pattern_id), None)

    if risk.trend is Trend.INCREASING:
        shift = (
            f"Risk level increasing from {node.risk_score * 100:.0f}% "
            f"to {risk.overall * 100:.0f}%"
        )
    else:
        shift = f"Risk level stable at {risk.overall * 100:.0f}%"

    reasoning = PredictionReasoning(
        root_cause=primary.explanation if primary else f"Elevated risk detected in {node.name}",
        leading_signals=tuple(f.explanation for f in risk.leading_factors[:4]),
        historical_pattern=(
            pattern.outcome if pattern
            else "Similar conditions have led to equipment degradation"
        ),
        risk_shift=shift,
        confidence_driver=(
            f"Based on {len(risk.leading_factors)} contributing factors with "
            f"{risk.probability * 100:.0f}% confidence"
        ),
        recommended_mitigation=MITIGATION_TEXT[ptype].format(
            name=node.name, limit=node.thermal_limit
        ),
        pattern_match=(
            PatternMatch(pattern.id, pattern.similarity, pattern.outcome) if pattern else None
        ),
    )

    cascade_path = None
    if risk.overall > CASCADE_PATH_MIN_RISK:
        cascade_path = tuple(predict_cascade_path(store, node.id, cascade_rng))

    return Prediction(
        id=short_id(id_rng, "pred"),
        node_id=node.id,
        node_name=node.name,
        type=ptype,
        probability=risk.probability,
        confidence=float(0.7 + risk_rng.uniform(0.0, 0.25)),
        hours_to_event=risk.time_to_failure,
        predicted_time=now + timedelta(hours=risk.time_to_failure),
        severity=severity_level(risk.overall),
        risk=risk,
        reasoning=reasoning,
        contributing_factors=risk.leading_factors[:5],
        suggested_actions=suggested_actions(ptype, node, risk),
        cascade_path=cascade_path,
        created_at=now,
    )


def is_prediction_candidate(node: Node) -> bool:
    return (
        node.risk_score > PREDICTION_MIN_RISK
        or node.status is NodeStatus.CRITICAL
        or node.cyber_status is not CyberStatus.SECURE
    )


def generate_predictions(
    store: GraphStore,
    risk_rng: Generator,
    id_rng: Generator,
    cascade_rng: Generator,
    now: datetime | None = None,
) -> list[Prediction]:
    """Predictions for all candidate nodes, most severe first, capped at 20."""
    now = now or utcnow()
    predictions = []
    for node in store.nodes():
        if not is_prediction_candidate(node):
            continue
        pred = build_prediction(store, node, risk_rng, id_rng, cascade_rng, now)
        if pred is not None:
            predictions.append(pred)
    predictions.sort(key=lambda p: (SEVERITY_ORDER[p.severity], -p.probability))
    return predictions[:MAX_PREDICTIONS]
