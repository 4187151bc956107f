"""
Threat registry: deploy, propagate and expire time-bounded threats.

A threat is active from creation until ``now >= ends_at`` (checked once per
tick by :meth:`ThreatRegistry.tick`) or an explicit end.  Its affected set
only grows: each tick every (affected node, unaffected neighbour) pair
recruits the neighbour with probability ``propagation_rate * 0.1``, and
recruits take the threat's effect at 0.7x severity.  Ending a threat never
reverts telemetry; mitigation and later ticks do that.

Per-type effects live in ``THREAT_EFFECTS``, a table that must cover every
``ThreatType`` member.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from numpy.random import Generator

from twin_engine.evolution import MIN_HEALTH, refresh_status
from twin_engine.graph import GraphStore
from twin_engine.incidents import IncidentStore
from twin_engine.model import (
    REGIONS,
    Category,
    InvalidParameterError,
    Node,
    SeverityLevel,
    Threat,
    ThreatSubtype,
    ThreatType,
    parse_enum,
    require_complete,
    utcnow,
)
from twin_engine.utils import clamp, short_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Tables
# ---------------------------------------------------------------------------

BASE_PROPAGATION_RATES: dict[ThreatType, float] = {
    ThreatType.CYBER_ATTACK: 0.4,
    ThreatType.PHYSICAL_INTRUSION: 0.1,
    ThreatType.EQUIPMENT_FAILURE: 0.3,
    ThreatType.OVERLOAD: 0.5,
    ThreatType.WEATHER_STRESS: 0.6,
    ThreatType.CASCADE_ORIGIN: 0.7,
    ThreatType.SENSOR_SPOOFING: 0.2,
    ThreatType.TELECOM_OUTAGE: 0.4,
    ThreatType.SUPPLY_CHAIN: 0.1,
}
require_complete(BASE_PROPAGATION_RATES, ThreatType, "BASE_PROPAGATION_RATES")

RECRUIT_SEVERITY_FACTOR = 0.7
RECRUIT_PROBABILITY_FACTOR = 0.1
DEFAULT_SEVERITY = 0.6


def _cyber_attack(node: Node, s: float) -> None:
    node.cyber_health = clamp(node.cyber_health - s * 0.4, MIN_HEALTH, 1.0)
    node.tamper_signal = clamp(node.tamper_signal + s * 0.5, 0.0, 1.0)
    node.packet_loss = clamp(node.packet_loss + s * 0.1, 0.0, 0.5)
    node.risk_score = clamp(node.risk_score + s * 0.3, 0.0, 1.0)


def _physical_intrusion(node: Node, s: float) -> None:
    node.health = clamp(node.health - s * 0.2, MIN_HEALTH, 1.0)
    node.tamper_signal = clamp(node.tamper_signal + s * 0.3, 0.0, 1.0)
    node.risk_score = clamp(node.risk_score + s * 0.2, 0.0, 1.0)


def _equipment_failure(node: Node, s: float) -> None:
    node.health = clamp(node.health - s * 0.5, MIN_HEALTH, 1.0)
    node.risk_score = clamp(node.risk_score + s * 0.5, 0.0, 1.0)


def _overload(node: Node, s: float) -> None:
    node.load_ratio = clamp(node.load_ratio + s * 0.3, 0.0, 1.0)
    node.current_load = node.load_ratio * node.rated_capacity
    node.temperature = min(node.thermal_limit + 20, node.temperature + s * 15)
    node.risk_score = clamp(node.risk_score + s * 0.4, 0.0, 1.0)


def _weather_stress(node: Node, s: float) -> None:
    node.temperature = min(node.thermal_limit + 15, node.temperature + s * 10)
    node.risk_score = clamp(node.risk_score + s * 0.2, 0.0, 1.0)


def _cascade_origin(node: Node, s: float) -> None:
    node.risk_score = clamp(node.risk_score + s * 0.5, 0.0, 1.0)
    node.health = clamp(node.health - s * 0.3, MIN_HEALTH, 1.0)


def _sensor_spoofing(node: Node, s: float) -> None:
    node.tamper_signal = clamp(node.tamper_signal + s * 0.7, 0.0, 1.0)
    node.risk_score = clamp(node.risk_score + s * 0.2, 0.0, 1.0)


def _telecom_outage(node: Node, s: float) -> None:
    node.latency = min(1000.0, node.latency + s * 500)
    node.packet_loss = clamp(node.packet_loss + s * 0.5, 0.0, 0.8)
    node.cyber_health = clamp(node.cyber_health - s * 0.3, MIN_HEALTH, 1.0)


def _supply_chain(node: Node, s: float) -> None:
    node.health = clamp(node.health - s * 0.2, MIN_HEALTH, 1.0)
    node.risk_score = clamp(node.risk_score + s * 0.1, 0.0, 1.0)


THREAT_EFFECTS: dict[ThreatType, Callable[[Node, float], None]] = {
    ThreatType.CYBER_ATTACK: _cyber_attack,
    ThreatType.PHYSICAL_INTRUSION: _physical_intrusion,
    ThreatType.EQUIPMENT_FAILURE: _equipment_failure,
    ThreatType.OVERLOAD: _overload,
    ThreatType.WEATHER_STRESS: _weather_stress,
    ThreatType.CASCADE_ORIGIN: _cascade_origin,
    ThreatType.SENSOR_SPOOFING: _sensor_spoofing,
    ThreatType.TELECOM_OUTAGE: _telecom_outage,
    ThreatType.SUPPLY_CHAIN: _supply_chain,
}
require_complete(THREAT_EFFECTS, ThreatType, "THREAT_EFFECTS")

SUMMARY_TEMPLATES: dict[ThreatType, str] = {
    ThreatType.CYBER_ATTACK: "Cyber attack affecting {n} nodes",
    ThreatType.PHYSICAL_INTRUSION: "Unauthorized physical access detected",
    ThreatType.EQUIPMENT_FAILURE: "Equipment failure at {n} locations",
    ThreatType.OVERLOAD: "System overload affecting {n} nodes",
    ThreatType.WEATHER_STRESS: "Weather-induced stress on {n} nodes",
    ThreatType.CASCADE_ORIGIN: "Cascade failure initiated",
    ThreatType.SENSOR_SPOOFING: "Sensor data integrity compromised",
    ThreatType.TELECOM_OUTAGE: "Communication loss affecting {n} nodes",
    ThreatType.SUPPLY_CHAIN: "Supply chain disruption detected",
}
require_complete(SUMMARY_TEMPLATES, ThreatType, "SUMMARY_TEMPLATES")

ROOT_CAUSES: dict[ThreatType, str] = {
    ThreatType.CYBER_ATTACK: "Coordinated cyber intrusion targeting control systems",
    ThreatType.PHYSICAL_INTRUSION: "Unauthorized access to secured facility",
    ThreatType.EQUIPMENT_FAILURE: "Component degradation exceeding rated limits",
    ThreatType.OVERLOAD: "Demand exceeding generation and transfer capacity",
    ThreatType.WEATHER_STRESS: "Extreme weather conditions exceeding design parameters",
    ThreatType.CASCADE_ORIGIN: "Initial failure triggering cascading effects",
    ThreatType.SENSOR_SPOOFING: "Compromised sensor data integrity",
    ThreatType.TELECOM_OUTAGE: "Communication infrastructure failure",
    ThreatType.SUPPLY_CHAIN: "Critical component supply disruption",
}
require_complete(ROOT_CAUSES, ThreatType, "ROOT_CAUSES")

SUBTYPE_ROOT_CAUSES: dict[ThreatSubtype, str] = {
    ThreatSubtype.RANSOMWARE: "Ransomware infection through phishing vector",
    ThreatSubtype.DOS_ATTACK: "Coordinated DDoS attack from multiple sources",
    ThreatSubtype.COMMAND_INJECTION: "SCADA command injection via compromised HMI",
    ThreatSubtype.CREDENTIAL_THEFT: "Credential compromise through social engineering",
    ThreatSubtype.MAN_IN_MIDDLE: "Network traffic interception at switch level",
    ThreatSubtype.FALSE_DATA_INJECTION: "Falsified sensor data from compromised RTU",
    ThreatSubtype.GPS_SPOOFING: "GPS synchronization attack affecting PMUs",
    ThreatSubtype.FIRMWARE_ATTACK: "Malicious firmware update pushed to devices",
    ThreatSubtype.VOLTAGE_MANIPULATION: "Voltage setpoint manipulation via SCADA",
    ThreatSubtype.FREQUENCY_DEVIATION: "Frequency regulation compromise",
}
require_complete(SUBTYPE_ROOT_CAUSES, ThreatSubtype, "SUBTYPE_ROOT_CAUSES")

ATTACK_DESCRIPTIONS: dict[ThreatSubtype, str] = {
    ThreatSubtype.RANSOMWARE: "Ransomware infection targeting control systems",
    ThreatSubtype.DOS_ATTACK: "Distributed denial of service attack on network infrastructure",
    ThreatSubtype.COMMAND_INJECTION: "Malicious commands injected into SCADA systems",
    ThreatSubtype.CREDENTIAL_THEFT: "Credential compromise allowing unauthorized access",
    ThreatSubtype.MAN_IN_MIDDLE: "Network interception modifying control signals",
    ThreatSubtype.FALSE_DATA_INJECTION: "Falsified sensor data injected into monitoring systems",
    ThreatSubtype.GPS_SPOOFING: "GPS timing signals spoofed affecting synchronization",
    ThreatSubtype.FIRMWARE_ATTACK: "Malicious firmware uploaded to embedded devices",
    ThreatSubtype.VOLTAGE_MANIPULATION: "Voltage setpoints manipulated remotely",
    ThreatSubtype.FREQUENCY_DEVIATION: "Frequency regulation systems compromised",
}
require_complete(ATTACK_DESCRIPTIONS, ThreatSubtype, "ATTACK_DESCRIPTIONS")

# spoofed quantity -> extra tamper signal on the target
SPOOF_TAMPER_BOOST = {"load": 0.5, "temperature": 0.4, "voltage": 0.6, "frequency": 0.6}


def propagation_rate(threat_type: ThreatType, severity: float) -> float:
    return BASE_PROPAGATION_RATES[threat_type] * severity


def incident_severity(severity: float) -> SeverityLevel:
    if severity >= 0.8:
        return SeverityLevel.HIGH
    if severity >= 0.5:
        return SeverityLevel.MEDIUM
    return SeverityLevel.LOW


def threat_summary(threat: Threat) -> str:
    return SUMMARY_TEMPLATES[threat.type].format(n=len(threat.affected_nodes))


def threat_root_cause(threat: Threat) -> str:
    if threat.subtype is not None:
        return SUBTYPE_ROOT_CAUSES[threat.subtype]
    return ROOT_CAUSES[threat.type]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ThreatRegistry:
    """Active-threat table bound to one ``GraphStore``.

    Not internally locked; the owning engine serialises access.

    Parameters
    ----------
    store : GraphStore
        Grid the threats act on.
    rng : Generator
        Draws for affected-node selection and per-tick recruitment.
    id_rng : Generator
        Draws for threat ids.
    incidents : IncidentStore
        Receives an incident for every sufficiently severe, wide threat.
    clock : callable
        Returns the current aware datetime; injectable for tests.
    default_duration_s : float
        Lifetime used when a deploy call gives none.
    incident_min_severity, incident_min_nodes
        Incident creation thresholds (defaults 0.6 and 3).
    """

    def __init__(
        self,
        store: GraphStore,
        rng: Generator,
        id_rng: Generator,
        incidents: IncidentStore,
        clock: Callable[[], datetime] = utcnow,
        default_duration_s: float = 120.0,
        incident_min_severity: float = 0.6,
        incident_min_nodes: int = 3,
    ) -> None:
        self.store = store
        self._rng = rng
        self._id_rng = id_rng
        self.incidents = incidents
        self._clock = clock
        self.default_duration_s = float(default_duration_s)
        self.incident_min_severity = float(incident_min_severity)
        self.incident_min_nodes = int(incident_min_nodes)
        self._active: dict[str, Threat] = {}
        self._unreported: list[str] = []

    # -- creation -----------------------------------------------------------

    def deploy(
        self,
        threat_type: ThreatType | str,
        severity: float = DEFAULT_SEVERITY,
        target: str | None = None,
        region: str | None = None,
        subtype: ThreatSubtype | str | None = None,
        duration_s: float | None = None,
        nodes: Iterable[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Threat | None:
        """Create an active threat and apply its initial effect.

        Affected nodes are, in order of precedence: the explicit *nodes*
        list; *target* plus ``floor(severity * degree)`` of its neighbours;
        ``floor(severity * |region|)`` nodes of *region*; or
        ``floor(severity * 0.2 * N)`` nodes drawn from the whole grid.

        Returns
        -------
        Threat or None
            None if *target* or any id in *nodes* is unknown.

        Raises
        ------
        InvalidParameterError
            Unknown type, subtype or region, severity outside [0, 1], or a
            non-positive duration.  Raised before any mutation.
        """
        threat_type = parse_enum(ThreatType, threat_type, "threat type")
        if subtype is not None:
            subtype = parse_enum(ThreatSubtype, subtype, "threat subtype")
        if not (0.0 <= float(severity) <= 1.0):
            raise InvalidParameterError(f"severity must be in [0, 1], got {severity!r}")
        severity = float(severity)
        duration = self.default_duration_s if duration_s is None else float(duration_s)
        if duration <= 0:
            raise InvalidParameterError(f"duration must be positive, got {duration_s!r}")
        if region is not None and region not in REGIONS:
            raise InvalidParameterError(
                f"Unknown region {region!r}; expected one of {list(REGIONS)}"
            )

        if nodes is not None:
            affected = list(dict.fromkeys(nodes))
            if any(n not in self.store for n in affected):
                return None
        elif target is not None:
            if target not in self.store:
                return None
            affected = [target] + self._sample(
                [n.id for n in self.store.get_neighbors(target)], severity
            )
        elif region is not None:
            affected = self._sample(
                [n.id for n in self.store.get_nodes_by_region(region)], severity
            )
        else:
            affected = self._sample(self.store.node_ids(), severity * 0.2)

        now = self._clock()
        threat = Threat(
            id=short_id(self._id_rng, "threat"),
            type=threat_type,
            subtype=subtype,
            severity=severity,
            target=target,
            region=region,
            started_at=now,
            ends_at=now + timedelta(seconds=duration),
            propagation_rate=propagation_rate(threat_type, severity),
            affected_nodes=affected,
            metadata={"created_by": "simulation", **(metadata or {})},
        )
        self._active[threat.id] = threat
        self._apply(affected, threat_type, severity)

        logger.info(
            "Threat deployed: %s %s severity=%.2f affected=%d duration=%.0fs",
            threat.id, threat_type.value, severity, len(affected), duration,
        )

        if severity >= self.incident_min_severity and len(affected) >= self.incident_min_nodes:
            incident = self.incidents.create(
                severity=incident_severity(severity),
                affected_nodes=affected,
                summary=threat_summary(threat),
                root_cause=threat_root_cause(threat),
                threat_type=threat_type,
                started_at=now,
            )
            threat.metadata["incident_id"] = incident.id
        return threat

    def _sample(self, pool: list[str], fraction: float) -> list[str]:
        """Pick ``floor(fraction * len(pool))`` ids, keeping pool order."""
        k = int(len(pool) * fraction)
        if k <= 0:
            return []
        idx = sorted(self._rng.choice(len(pool), size=k, replace=False).tolist())
        return [pool[i] for i in idx]

    def _apply(self, node_ids: Iterable[str], threat_type: ThreatType, severity: float) -> None:
        effect = THREAT_EFFECTS[threat_type]
        for node_id in node_ids:
            node = self.store.get_node(node_id)
            if node is None:
                continue
            effect(node, severity)
            refresh_status(node)

    # -- convenience constructors -------------------------------------------

    def cyber_attack(self, target: str | None, subtype: ThreatSubtype | str,
                     severity: float = 0.7) -> Threat | None:
        subtype = parse_enum(ThreatSubtype, subtype, "threat subtype")
        threat = self.deploy(ThreatType.CYBER_ATTACK, severity, target=target,
                             subtype=subtype, duration_s=180)
        if threat is not None:
            logger.info("%s (%s)", ATTACK_DESCRIPTIONS[subtype], threat.id)
        return threat

    def sensor_spoof(self, target: str, spoof_type: str,
                     severity: float = 0.5) -> Threat | None:
        if spoof_type not in SPOOF_TAMPER_BOOST:
            raise InvalidParameterError(
                f"Unknown spoof type {spoof_type!r}; expected one of {sorted(SPOOF_TAMPER_BOOST)}"
            )
        threat = self.deploy(ThreatType.SENSOR_SPOOFING, severity, target=target,
                             duration_s=120, metadata={"spoof_type": spoof_type})
        if threat is not None:
            node = self.store.get_node(target)
            node.tamper_signal = clamp(node.tamper_signal + SPOOF_TAMPER_BOOST[spoof_type], 0.0, 1.0)
            refresh_status(node)
            logger.info("Sensor spoofing: %s values falsified on %s", spoof_type, target)
        return threat

    def overload(self, targets: Iterable[str], severity: float = 0.7) -> Threat | None:
        return self.deploy(ThreatType.OVERLOAD, severity, nodes=list(targets), duration_s=90)

    def telecom_outage(self, region: str | None = None,
                       severity: float = 0.6) -> Threat | None:
        if region is not None and region not in REGIONS:
            raise InvalidParameterError(
                f"Unknown region {region!r}; expected one of {list(REGIONS)}"
            )
        if region is not None:
            targets = [
                n.id for n in self.store.get_nodes_by_region(region)
                if n.category in (Category.TELECOM, Category.CONTROL)
            ]
        else:
            targets = [n.id for n in self.store.get_nodes_by_category(Category.TELECOM)]
        return self.deploy(ThreatType.TELECOM_OUTAGE, severity, region=region,
                           nodes=targets, duration_s=150)

    # -- per-tick update ----------------------------------------------------

    def tick(self, now: datetime | None = None) -> tuple[list[str], int]:
        """Expire due threats, then let each remaining one recruit neighbours.

        Returns
        -------
        (expired_ids, recruited) : tuple
            Ids expired since the previous tick and the number of nodes
            newly recruited.
        """
        self.expire_due(now)
        expired, self._unreported = self._unreported, []

        recruited = 0
        for threat in list(self._active.values()):
            recruited += self._propagate(threat)
        return expired, recruited

    def _propagate(self, threat: Threat) -> int:
        p = threat.propagation_rate * RECRUIT_PROBABILITY_FACTOR
        known = set(threat.affected_nodes)
        newly: list[str] = []
        for node_id in list(threat.affected_nodes):
            for neighbour in self.store.get_neighbors(node_id):
                if neighbour.id in known:
                    continue
                if self._rng.random() < p:
                    known.add(neighbour.id)
                    newly.append(neighbour.id)
        if newly:
            threat.affected_nodes.extend(newly)
            self._apply(newly, threat.type, threat.severity * RECRUIT_SEVERITY_FACTOR)
            logger.info(
                "Threat %s (%s) propagated to %d node(s), %d total",
                threat.id, threat.type.value, len(newly), len(threat.affected_nodes),
            )
        return len(newly)

    # -- ending -------------------------------------------------------------

    def expire_due(self, now: datetime | None = None) -> list[str]:
        """End every threat whose end time has passed.

        Runs before each query as well as on tick, so expiry does not depend
        on the tick loop.  Ids are queued until the next ``tick`` reports
        them; each threat is ended at most once.
        """
        now = now or self._clock()
        due = [tid for tid, t in self._active.items() if t.is_expired(now)]
        for tid in due:
            self.end(tid, reason="expired")
        self._unreported.extend(due)
        return due

    def end(self, threat_id: str, reason: str = "ended") -> bool:
        threat = self._active.pop(threat_id, None)
        if threat is None:
            return False
        threat.active = False
        logger.info(
            "Threat %s %s (%s), %d node(s) affected in total",
            threat_id, reason, threat.type.value, len(threat.affected_nodes),
        )
        return True

    def end_all(self) -> int:
        ids = list(self._active)
        for tid in ids:
            self.end(tid)
        return len(ids)

    # -- queries ------------------------------------------------------------

    def get(self, threat_id: str) -> Threat | None:
        self.expire_due()
        return self._active.get(threat_id)

    def active(self) -> list[Threat]:
        self.expire_due()
        return list(self._active.values())

    def by_type(self, threat_type: ThreatType | str) -> list[Threat]:
        threat_type = parse_enum(ThreatType, threat_type, "threat type")
        self.expire_due()
        return [t for t in self._active.values() if t.type is threat_type]

    def affecting(self, node_id: str) -> list[Threat]:
        self.expire_due()
        return [t for t in self._active.values() if node_id in t.affected_nodes]

    def is_node_under_threat(self, node_id: str) -> bool:
        self.expire_due()
        return any(node_id in t.affected_nodes for t in self._active.values())

    def __len__(self) -> int:
        self.expire_due()
        return len(self._active)
