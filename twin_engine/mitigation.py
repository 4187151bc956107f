"""
Mitigation applicator: a fixed catalogue of corrective actions.

Each ``ActionType`` maps to a telemetry-delta function in ``ACTION_EFFECTS``.
After an action the node's status is re-derived unless it is isolated;
``isolate`` and ``cyber_lockdown`` pin status / cyber status to ISOLATED,
and only ``manual_override`` releases the pins.

On top of the raw ``apply`` the ``MitigationApplicator`` keeps an execution
log, recommendation records generated from predictions and incidents, and
the auto-mitigation policy for critical nodes.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterable

from numpy.random import Generator

from twin_engine.evolution import MIN_HEALTH, refresh_status
from twin_engine.graph import GraphStore
from twin_engine.incidents import Incident, IncidentStore
from twin_engine.model import (
    ActionType,
    CyberStatus,
    Node,
    NodeStatus,
    PredictionType,
    parse_enum,
    require_complete,
    to_jsonable,
    utcnow,
)
from twin_engine.risk import PRIORITY_ORDER, Prediction
from twin_engine.utils import clamp, short_id

logger = logging.getLogger(__name__)

MAX_HISTORY = 500
MAX_RECOMMENDATIONS = 500


# ---------------------------------------------------------------------------
# Telemetry deltas
# ---------------------------------------------------------------------------

COOLING_FLOOR = 30.0


def _lower_risk(node: Node, amount: float) -> None:
    node.risk_score = clamp(node.risk_score - amount, 0.0, 1.0)


def _isolate(node: Node) -> None:
    node.status = NodeStatus.ISOLATED
    _lower_risk(node, 0.3)


def _load_shed(node: Node) -> None:
    node.load_ratio = max(min(node.load_ratio, 0.2), node.load_ratio - 0.3)
    node.current_load = node.load_ratio * node.rated_capacity
    _lower_risk(node, 0.2)


def _reroute(node: Node) -> None:
    node.load_ratio = max(min(node.load_ratio, 0.3), node.load_ratio - 0.2)
    node.current_load = node.load_ratio * node.rated_capacity
    _lower_risk(node, 0.15)


def _activate_backup(node: Node) -> None:
    node.health = clamp(node.health + 0.3, MIN_HEALTH, 1.0)
    _lower_risk(node, 0.25)


def _dispatch_maintenance(node: Node) -> None:
    node.health = clamp(node.health + 0.1, MIN_HEALTH, 1.0)


def _enable_cooling(node: Node) -> None:
    # never cools below the floor, and never warms a node already under it
    if node.temperature > COOLING_FLOOR:
        node.temperature = max(COOLING_FLOOR, node.temperature - 15.0)
    _lower_risk(node, 0.1)


def _cyber_lockdown(node: Node) -> None:
    node.cyber_status = CyberStatus.ISOLATED
    node.cyber_health = clamp(node.cyber_health + 0.2, MIN_HEALTH, 1.0)
    node.tamper_signal = clamp(node.tamper_signal - 0.3, 0.0, 1.0)


def _manual_override(node: Node) -> None:
    if node.status is NodeStatus.ISOLATED:
        node.status = NodeStatus.ONLINE
    if node.cyber_status is CyberStatus.ISOLATED:
        node.cyber_status = CyberStatus.SECURE
    _lower_risk(node, 0.1)


ACTION_EFFECTS: dict[ActionType, Callable[[Node], None]] = {
    ActionType.ISOLATE: _isolate,
    ActionType.LOAD_SHED: _load_shed,
    ActionType.REROUTE: _reroute,
    ActionType.ACTIVATE_BACKUP: _activate_backup,
    ActionType.DISPATCH_MAINTENANCE: _dispatch_maintenance,
    ActionType.ENABLE_COOLING: _enable_cooling,
    ActionType.CYBER_LOCKDOWN: _cyber_lockdown,
    ActionType.MANUAL_OVERRIDE: _manual_override,
}
require_complete(ACTION_EFFECTS, ActionType, "ACTION_EFFECTS")


def apply_action(node: Node, action: ActionType) -> None:
    """Apply *action* to *node* in place and re-derive its status."""
    ACTION_EFFECTS[action](node)
    refresh_status(node)


# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionProfile:
    description: str
    expected_reduction: float
    minutes: int
    automatable: bool
    prerequisites: tuple[ActionType, ...] = ()


ACTION_PROFILES: dict[ActionType, ActionProfile] = {
    ActionType.ISOLATE: ActionProfile(
        "Isolate node from the grid", 0.6, 1, False, (ActionType.REROUTE,)),
    ActionType.LOAD_SHED: ActionProfile(
        "Shed non-critical load", 0.4, 2, True),
    ActionType.REROUTE: ActionProfile(
        "Reroute flow through adjacent nodes", 0.35, 5, False),
    ActionType.ACTIVATE_BACKUP: ActionProfile(
        "Bring backup systems online", 0.45, 3, True),
    ActionType.DISPATCH_MAINTENANCE: ActionProfile(
        "Dispatch a maintenance crew", 0.2, 30, False),
    ActionType.ENABLE_COOLING: ActionProfile(
        "Activate auxiliary cooling", 0.3, 1, True),
    ActionType.CYBER_LOCKDOWN: ActionProfile(
        "Lock down network access", 0.5, 2, False, (ActionType.ISOLATE,)),
    ActionType.MANUAL_OVERRIDE: ActionProfile(
        "Hand control to an operator", 0.25, 10, False),
}
require_complete(ACTION_PROFILES, ActionType, "ACTION_PROFILES")

# prediction type -> (action, priority) in recommendation order
PREDICTION_PLAYBOOK: dict[PredictionType, tuple[tuple[ActionType, str], ...]] = {
    PredictionType.THERMAL_STRESS: (
        (ActionType.ENABLE_COOLING, "immediate"),
        (ActionType.LOAD_SHED, "high"),
    ),
    PredictionType.OVERLOAD: (
        (ActionType.LOAD_SHED, "immediate"),
        (ActionType.REROUTE, "high"),
        (ActionType.ACTIVATE_BACKUP, "medium"),
    ),
    PredictionType.CYBER_VULNERABILITY: (
        (ActionType.CYBER_LOCKDOWN, "immediate"),
        (ActionType.ISOLATE, "high"),
    ),
    PredictionType.CASCADE_FAILURE: (
        (ActionType.ISOLATE, "immediate"),
        (ActionType.ACTIVATE_BACKUP, "high"),
        (ActionType.REROUTE, "high"),
    ),
    PredictionType.EQUIPMENT_FAILURE: (
        (ActionType.DISPATCH_MAINTENANCE, "high"),
        (ActionType.ACTIVATE_BACKUP, "medium"),
    ),
}
require_complete(PREDICTION_PLAYBOOK, PredictionType, "PREDICTION_PLAYBOOK")

AUTO_SHED_LOAD = 0.9
AUTO_COOL_RATIO = 0.95


def auto_action_for(node: Node) -> ActionType:
    if node.load_ratio > AUTO_SHED_LOAD:
        return ActionType.LOAD_SHED
    if node.temperature > node.thermal_limit * AUTO_COOL_RATIO:
        return ActionType.ENABLE_COOLING
    return ActionType.ACTIVATE_BACKUP


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Recommendation:
    id: str
    node_id: str
    action_type: ActionType
    priority: str
    description: str
    expected_risk_reduction: float
    estimated_minutes: int
    automatable: bool
    requires_approval: bool
    prerequisites: tuple[ActionType, ...]
    created_at: datetime
    prediction_id: str | None = None
    incident_id: str | None = None
    status: str = "pending"

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class MitigationRecord:
    id: str
    node_id: str
    action_type: ActionType
    success: bool
    risk_before: float
    risk_after: float
    risk_reduction: float
    message: str
    timestamp: datetime
    operator: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class BatchResult:
    records: tuple[MitigationRecord, ...]
    success_count: int
    failed_count: int
    total_risk_reduction: float

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


# ---------------------------------------------------------------------------
# Applicator
# ---------------------------------------------------------------------------


class MitigationApplicator:
    """Applies actions to nodes of one store and tracks what was done.

    Parameters
    ----------
    store : GraphStore
    id_rng : Generator
        Draws for record and recommendation ids.
    incidents : IncidentStore, optional
        Executions are logged against every unclosed incident that lists
        the node.
    clock : callable
    max_history, max_recommendations : int
        Only the most recent records of each kind are kept.
    """

    def __init__(
        self,
        store: GraphStore,
        id_rng: Generator,
        incidents: IncidentStore | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_history: int = MAX_HISTORY,
        max_recommendations: int = MAX_RECOMMENDATIONS,
    ) -> None:
        self.store = store
        self._id_rng = id_rng
        self.incidents = incidents
        self._clock = clock
        self.max_history = int(max_history)
        self.max_recommendations = int(max_recommendations)
        self.history: list[MitigationRecord] = []
        self._recommendations: dict[str, Recommendation] = {}

    def apply(self, node_id: str, action: ActionType | str) -> bool:
        """Apply *action* to *node_id*; False only if the node is unknown."""
        action = parse_enum(ActionType, action, "action type")
        node = self.store.get_node(node_id)
        if node is None:
            return False
        apply_action(node, action)
        return True

    def execute(
        self,
        node_id: str,
        action: ActionType | str,
        operator: str | None = None,
    ) -> MitigationRecord:
        """Apply *action* and record the outcome.

        Matching pending or approved recommendations for the same node and
        action are marked completed.
        """
        action = parse_enum(ActionType, action, "action type")
        node = self.store.get_node(node_id)
        now = self._clock()
        if node is None:
            record = MitigationRecord(
                id=short_id(self._id_rng, "mit"),
                node_id=node_id,
                action_type=action,
                success=False,
                risk_before=0.0,
                risk_after=0.0,
                risk_reduction=0.0,
                message=f"Node {node_id} not found",
                timestamp=now,
                operator=operator,
            )
            self._log(record)
            return record

        before = node.risk_score
        apply_action(node, action)
        after = node.risk_score
        record = MitigationRecord(
            id=short_id(self._id_rng, "mit"),
            node_id=node_id,
            action_type=action,
            success=True,
            risk_before=before,
            risk_after=after,
            risk_reduction=before - after,
            message=f"{ACTION_PROFILES[action].description} on {node.name}",
            timestamp=now,
            operator=operator,
        )
        self._log(record)

        for rec in self._recommendations.values():
            if (rec.node_id == node_id and rec.action_type is action
                    and rec.status in ("pending", "approved")):
                rec.status = "completed"
        if self.incidents is not None:
            for incident in self.incidents.all():
                if incident.status != "closed" and node_id in incident.affected_nodes:
                    self.incidents.add_mitigation(incident.id, node_id, action.value, operator)

        logger.info(
            "Mitigation %s on %s: risk %.3f -> %.3f, status %s",
            action.value, node_id, before, after, node.status.value,
        )
        return record

    def _log(self, record: MitigationRecord) -> None:
        self.history.append(record)
        del self.history[:-self.max_history]

    def execute_batch(
        self,
        actions: Iterable[tuple[str, ActionType | str]],
        operator: str | None = None,
    ) -> BatchResult:
        """Execute several (node_id, action) pairs; one failure does not stop the rest.

        Every action type is validated up front, so an unknown type rejects
        the whole batch before anything is applied.
        """
        pairs = [(node_id, parse_enum(ActionType, a, "action type")) for node_id, a in actions]
        records = tuple(self.execute(node_id, a, operator) for node_id, a in pairs)
        ok = [r for r in records if r.success]
        return BatchResult(
            records=records,
            success_count=len(ok),
            failed_count=len(records) - len(ok),
            total_risk_reduction=sum(r.risk_reduction for r in ok),
        )

    def auto_mitigate_critical(self, operator: str = "auto") -> list[MitigationRecord]:
        """Apply the auto policy to every critical node that is not isolated."""
        targets = [n for n in self.store.get_critical_nodes() if not n.is_isolated]
        records = [self.execute(n.id, auto_action_for(n), operator) for n in targets]
        if records:
            logger.info("Auto-mitigation touched %d critical node(s)", len(records))
        return records

    # -- recommendations ----------------------------------------------------

    def _recommend(self, node_id: str, action: ActionType, priority: str,
                   prediction_id: str | None = None,
                   incident_id: str | None = None) -> Recommendation:
        profile = ACTION_PROFILES[action]
        rec = Recommendation(
            id=short_id(self._id_rng, "rec"),
            node_id=node_id,
            action_type=action,
            priority=priority,
            description=profile.description,
            expected_risk_reduction=profile.expected_reduction,
            estimated_minutes=profile.minutes,
            automatable=profile.automatable,
            requires_approval=not profile.automatable,
            prerequisites=profile.prerequisites,
            created_at=self._clock(),
            prediction_id=prediction_id,
            incident_id=incident_id,
        )
        self._recommendations[rec.id] = rec
        while len(self._recommendations) > self.max_recommendations:
            del self._recommendations[next(iter(self._recommendations))]
        return rec

    def recommend_for_prediction(self, prediction: Prediction) -> list[Recommendation]:
        return [
            self._recommend(prediction.node_id, action, priority, prediction_id=prediction.id)
            for action, priority in PREDICTION_PLAYBOOK[prediction.type]
        ]

    def recommend_for_incident(self, incident: Incident) -> list[Recommendation]:
        """Per affected node: isolate if critical, shed if overloaded, lock down if not secure."""
        recs: list[Recommendation] = []
        for node_id in incident.affected_nodes:
            node = self.store.get_node(node_id)
            if node is None:
                continue
            if node.status is NodeStatus.CRITICAL:
                priority = "immediate"
            elif node.status is NodeStatus.DEGRADED:
                priority = "high"
            else:
                priority = "medium"
            actions = []
            if node.status is NodeStatus.CRITICAL:
                actions.append(ActionType.ISOLATE)
            if node.load_ratio > 0.85:
                actions.append(ActionType.LOAD_SHED)
            if node.cyber_status is not CyberStatus.SECURE:
                actions.append(ActionType.CYBER_LOCKDOWN)
            recs.extend(
                self._recommend(node_id, a, priority, incident_id=incident.id) for a in actions
            )
        return recs

    def recommendations(
        self,
        node_id: str | None = None,
        prediction_id: str | None = None,
        incident_id: str | None = None,
        status: str | None = None,
    ) -> list[Recommendation]:
        """Filtered recommendations, most urgent first."""
        out = [
            r for r in self._recommendations.values()
            if (node_id is None or r.node_id == node_id)
            and (prediction_id is None or r.prediction_id == prediction_id)
            and (incident_id is None or r.incident_id == incident_id)
            and (status is None or r.status == status)
        ]
        out.sort(key=lambda r: PRIORITY_ORDER[r.priority])
        return out

    def approve(self, recommendation_id: str) -> bool:
        rec = self._recommendations.get(recommendation_id)
        if rec is None or rec.status != "pending":
            return False
        rec.status = "approved"
        return True
