"""Alert rules, cooldowns and the alert lifecycle (active -> acknowledged -> resolved)."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Iterable

from numpy.random import Generator

from twin_engine.model import Node, PredictionType, parse_enum, to_jsonable, utcnow
from twin_engine.risk import Prediction
from twin_engine.utils import short_id

logger = logging.getLogger(__name__)

MAX_ALERTS = 1000


class AlertStatus(str, Enum):
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


@dataclass
class AlertRule:
    """A named condition over one kind of subject.

    ``scope`` is ``"prediction"``, ``"node"`` or ``"system"``; ``condition``
    receives a ``Prediction``, a ``Node`` or the system health float
    respectively.  Node rules keep one cooldown per node, the others one
    per rule.
    """

    id: str
    name: str
    scope: str
    condition: Callable[[Any], bool]
    alert_type: str
    severity: str
    cooldown_minutes: float
    enabled: bool = True
    last_triggered: datetime | None = None


@dataclass
class Alert:
    id: str
    rule_id: str
    type: str
    severity: str
    title: str
    message: str
    node_ids: tuple[str, ...]
    created_at: datetime
    prediction_id: str | None = None
    status: AlertStatus = AlertStatus.ACTIVE
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


def default_rules() -> list[AlertRule]:
    return [
        AlertRule(
            "alert_critical_risk", "Critical Risk Threshold", "node",
            lambda n: n.risk_score > 0.8,
            "threshold_breach", "critical", 5,
        ),
        AlertRule(
            "alert_prediction_urgent", "Urgent Prediction", "prediction",
            lambda p: p.hours_to_event < 6 and p.probability > 0.7,
            "prediction_triggered", "error", 15,
        ),
        AlertRule(
            "alert_cascade_detected", "Cascade Event Detected", "prediction",
            lambda p: p.type is PredictionType.CASCADE_FAILURE,
            "cascade_detected", "critical", 10,
        ),
        AlertRule(
            "alert_system_degradation", "System Health Degradation", "system",
            lambda health: health < 0.6,
            "system_degradation", "warning", 30,
        ),
    ]


class AlertManager:
    """Evaluates rules and keeps the alert log.

    Parameters
    ----------
    id_rng : Generator
        Draws for alert ids.
    rules : list of AlertRule, optional
        Defaults to ``default_rules()``.
    clock : callable
        Used when a check or transition is not given an explicit time.
    max_alerts : int
        Only the most recent alerts are kept.
    """

    def __init__(
        self,
        id_rng: Generator,
        rules: list[AlertRule] | None = None,
        clock: Callable[[], datetime] = utcnow,
        max_alerts: int = MAX_ALERTS,
    ) -> None:
        self._id_rng = id_rng
        self._clock = clock
        self.max_alerts = int(max_alerts)
        self._rules = {r.id: r for r in (rules if rules is not None else default_rules())}
        self._alerts: list[Alert] = []
        self._cooldowns: dict[str, datetime] = {}

    # -- rules ----------------------------------------------------------------

    def rules(self) -> list[AlertRule]:
        return list(self._rules.values())

    def toggle_rule(self, rule_id: str, enabled: bool) -> bool:
        rule = self._rules.get(rule_id)
        if rule is None:
            return False
        rule.enabled = bool(enabled)
        return True

    def _cooling_down(self, key: str, rule: AlertRule, now: datetime) -> bool:
        last = self._cooldowns.get(key)
        return last is not None and now - last < timedelta(minutes=rule.cooldown_minutes)

    def _raise(self, rule: AlertRule, key: str, now: datetime, title: str, message: str,
               node_ids: Iterable[str], prediction_id: str | None = None) -> Alert:
        alert = Alert(
            id=short_id(self._id_rng, "alert"),
            rule_id=rule.id,
            type=rule.alert_type,
            severity=rule.severity,
            title=title,
            message=message,
            node_ids=tuple(node_ids),
            created_at=now,
            prediction_id=prediction_id,
        )
        self._alerts.append(alert)
        del self._alerts[:-self.max_alerts]
        self._cooldowns[key] = now
        rule.last_triggered = now
        logger.warning("[%s] %s: %s", rule.severity.upper(), title, message)
        return alert

    # -- checks ---------------------------------------------------------------

    def check_predictions(self, predictions: Iterable[Prediction],
                          now: datetime | None = None) -> list[Alert]:
        now = now or self._clock()
        raised = []
        for pred in predictions:
            for rule in self._rules.values():
                if not rule.enabled or rule.scope != "prediction":
                    continue
                if self._cooling_down(rule.id, rule, now) or not rule.condition(pred):
                    continue
                raised.append(self._raise(
                    rule, rule.id, now,
                    title=f"{rule.name}: {pred.node_name}",
                    message=(
                        f"{pred.type.value} predicted for {pred.node_name} in "
                        f"{pred.hours_to_event:g}h ({pred.probability * 100:.0f}% probability)"
                    ),
                    node_ids=(pred.node_id,) + tuple(pred.cascade_path or ())[1:],
                    prediction_id=pred.id,
                ))
        return raised

    def check_system(self, health: float, nodes: Iterable[Node] = (),
                     now: datetime | None = None) -> list[Alert]:
        """Evaluate system rules against *health* and node rules against *nodes*."""
        now = now or self._clock()
        raised = []
        for rule in self._rules.values():
            if not rule.enabled or rule.scope != "system":
                continue
            if self._cooling_down(rule.id, rule, now) or not rule.condition(health):
                continue
            raised.append(self._raise(
                rule, rule.id, now,
                title=rule.name,
                message=f"System health at {health * 100:.0f}%",
                node_ids=(),
            ))
        for node in nodes:
            for rule in self._rules.values():
                if not rule.enabled or rule.scope != "node":
                    continue
                key = f"{rule.id}_{node.id}"
                if self._cooling_down(key, rule, now) or not rule.condition(node):
                    continue
                raised.append(self._raise(
                    rule, key, now,
                    title=f"{rule.name}: {node.name}",
                    message=f"Risk score {node.risk_score * 100:.0f}% on {node.name}",
                    node_ids=(node.id,),
                ))
        return raised

    # -- lifecycle ------------------------------------------------------------

    def get(self, alert_id: str) -> Alert | None:
        return next((a for a in self._alerts if a.id == alert_id), None)

    def get_alerts(self, status: AlertStatus | str | None = None) -> list[Alert]:
        """Alerts newest first, optionally filtered by status."""
        alerts = reversed(self._alerts)
        if status is None:
            return list(alerts)
        status = parse_enum(AlertStatus, status, "alert status")
        return [a for a in alerts if a.status is status]

    def acknowledge(self, alert_id: str, by: str | None = None) -> bool:
        alert = self.get(alert_id)
        if alert is None or alert.status is not AlertStatus.ACTIVE:
            return False
        alert.status = AlertStatus.ACKNOWLEDGED
        alert.acknowledged_at = self._clock()
        alert.acknowledged_by = by
        return True

    def resolve(self, alert_id: str) -> bool:
        alert = self.get(alert_id)
        if alert is None or alert.status is AlertStatus.RESOLVED:
            return False
        alert.status = AlertStatus.RESOLVED
        alert.resolved_at = self._clock()
        return True

    def clear_old_alerts(self, max_age_hours: float = 24, now: datetime | None = None) -> int:
        """Drop alerts older than *max_age_hours* unless still active; returns the count."""
        cutoff = (now or self._clock()) - timedelta(hours=max_age_hours)
        before = len(self._alerts)
        self._alerts = [
            a for a in self._alerts
            if a.created_at > cutoff or a.status is AlertStatus.ACTIVE
        ]
        return before - len(self._alerts)

    def clear(self) -> None:
        self._alerts.clear()
        self._cooldowns.clear()
        for rule in self._rules.values():
            rule.last_triggered = None
