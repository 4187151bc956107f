"""
Data model for the digital-twin engine.

Closed enumerations for every tagged value (node type, status, threat type,
mitigation action, ...) plus the records that flow between components:

    Node           mutable telemetry record, one per infrastructure asset
    Edge           immutable undirected link
    Threat         time-bounded perturbation (affected set only grows)
    CascadeEvent   immutable record of one cascade walk
    RiskScore      computed value object, never stored on a node

Effect and lookup tables elsewhere in the package are keyed by these enums
and checked for completeness at import time with ``require_complete``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class NodeType(str, Enum):
    SUBSTATION = "substation"
    TRANSFORMER = "transformer"
    GENERATOR = "generator"
    DATACENTER = "datacenter"
    TELECOM_TOWER = "telecom_tower"
    WATER_PUMP = "water_pump"
    CONTROL_CENTER = "control_center"
    SOLAR_FARM = "solar_farm"
    WIND_TURBINE = "wind_turbine"
    BATTERY_STORAGE = "battery_storage"
    SCADA_SERVER = "scada_server"
    RELAY_SWITCH = "relay_switch"


class Category(str, Enum):
    TRANSMISSION = "transmission"
    DISTRIBUTION = "distribution"
    GENERATION = "generation"
    DATACENTER = "datacenter"
    TELECOM = "telecom"
    CONTROL = "control"
    STORAGE = "storage"


class NodeStatus(str, Enum):
    ONLINE = "online"
    DEGRADED = "degraded"
    CRITICAL = "critical"
    ISOLATED = "isolated"


class CyberStatus(str, Enum):
    SECURE = "secure"
    WARNING = "warning"
    COMPROMISED = "compromised"
    ISOLATED = "isolated"


class EdgeType(str, Enum):
    POWER = "power"
    DATA = "data"
    CONTROL = "control"


class ThreatType(str, Enum):
    CYBER_ATTACK = "cyber_attack"
    PHYSICAL_INTRUSION = "physical_intrusion"
    EQUIPMENT_FAILURE = "equipment_failure"
    OVERLOAD = "overload"
    WEATHER_STRESS = "weather_stress"
    CASCADE_ORIGIN = "cascade_origin"
    SENSOR_SPOOFING = "sensor_spoofing"
    TELECOM_OUTAGE = "telecom_outage"
    SUPPLY_CHAIN = "supply_chain"


class ThreatSubtype(str, Enum):
    RANSOMWARE = "ransomware"
    DOS_ATTACK = "dos_attack"
    COMMAND_INJECTION = "command_injection"
    CREDENTIAL_THEFT = "credential_theft"
    MAN_IN_MIDDLE = "man_in_middle"
    FALSE_DATA_INJECTION = "false_data_injection"
    GPS_SPOOFING = "gps_spoofing"
    FIRMWARE_ATTACK = "firmware_attack"
    VOLTAGE_MANIPULATION = "voltage_manipulation"
    FREQUENCY_DEVIATION = "frequency_deviation"


class ActionType(str, Enum):
    ISOLATE = "isolate"
    LOAD_SHED = "load_shed"
    REROUTE = "reroute"
    ACTIVATE_BACKUP = "activate_backup"
    DISPATCH_MAINTENANCE = "dispatch_maintenance"
    ENABLE_COOLING = "enable_cooling"
    CYBER_LOCKDOWN = "cyber_lockdown"
    MANUAL_OVERRIDE = "manual_override"


class PredictionType(str, Enum):
    CYBER_VULNERABILITY = "cyber_vulnerability"
    THERMAL_STRESS = "thermal_stress"
    OVERLOAD = "overload"
    CASCADE_FAILURE = "cascade_failure"
    EQUIPMENT_FAILURE = "equipment_failure"


class SeverityLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class InvalidParameterError(ValueError):
    """Raised when a command carries an out-of-range or unknown parameter.

    Always raised before any state is touched, so a rejected command never
    leaves a partial mutation behind.
    """


def require_complete(table: Mapping, enum_cls: type[Enum], name: str) -> None:
    """Fail at import time if *table* does not cover every member of *enum_cls*."""
    missing = set(enum_cls) - set(table)
    if missing:
        raise RuntimeError(
            f"{name} is missing entries for: {sorted(m.value for m in missing)}"
        )


def parse_enum(enum_cls: type[Enum], value: Any, what: str):
    """Coerce *value* to *enum_cls* or raise ``InvalidParameterError``."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise InvalidParameterError(
            f"Unknown {what} {value!r}; expected one of {allowed}"
        ) from None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Static per-type tables
# ---------------------------------------------------------------------------

# type -> (category, rated capacity, thermal limit in degC)
NODE_TYPE_SPECS: dict[NodeType, tuple[Category, float, float]] = {
    NodeType.SUBSTATION:      (Category.TRANSMISSION, 500.0, 85.0),
    NodeType.TRANSFORMER:     (Category.DISTRIBUTION, 100.0, 95.0),
    NodeType.GENERATOR:       (Category.GENERATION, 1000.0, 90.0),
    NodeType.DATACENTER:      (Category.DATACENTER, 50.0, 75.0),
    NodeType.TELECOM_TOWER:   (Category.TELECOM, 10.0, 70.0),
    NodeType.WATER_PUMP:      (Category.DISTRIBUTION, 20.0, 80.0),
    NodeType.CONTROL_CENTER:  (Category.CONTROL, 5.0, 65.0),
    NodeType.SOLAR_FARM:      (Category.GENERATION, 200.0, 85.0),
    NodeType.WIND_TURBINE:    (Category.GENERATION, 150.0, 80.0),
    NodeType.BATTERY_STORAGE: (Category.STORAGE, 100.0, 60.0),
    NodeType.SCADA_SERVER:    (Category.CONTROL, 2.0, 55.0),
    NodeType.RELAY_SWITCH:    (Category.TRANSMISSION, 50.0, 90.0),
}
require_complete(NODE_TYPE_SPECS, NodeType, "NODE_TYPE_SPECS")

# Relative sampling weights used when generating a synthetic grid.
NODE_TYPE_WEIGHTS: dict[NodeType, float] = {
    NodeType.SUBSTATION:      20.0,
    NodeType.TRANSFORMER:     25.0,
    NodeType.GENERATOR:       10.0,
    NodeType.DATACENTER:      8.0,
    NodeType.TELECOM_TOWER:   10.0,
    NodeType.WATER_PUMP:      5.0,
    NodeType.CONTROL_CENTER:  3.0,
    NodeType.SOLAR_FARM:      6.0,
    NodeType.WIND_TURBINE:    5.0,
    NodeType.BATTERY_STORAGE: 4.0,
    NodeType.SCADA_SERVER:    2.0,
    NodeType.RELAY_SWITCH:    2.0,
}
require_complete(NODE_TYPE_WEIGHTS, NodeType, "NODE_TYPE_WEIGHTS")

REGIONS: tuple[str, ...] = ("North", "South", "East", "West", "Central")

# Physical bands enforced on every tick.
VOLTAGE_BAND = (220.0, 240.0)
FREQUENCY_BAND = (59.9, 60.1)
LATENCY_BAND = (5.0, 200.0)
PACKET_LOSS_MAX = 0.2
NOMINAL_VOLTAGE = 230.0
NOMINAL_FREQUENCY = 60.0


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class Node:
    """A synthetic infrastructure asset.

    Physical fields are bounded per node type (temperature by
    ``thermal_limit``, voltage and frequency by narrow bands around 230 V
    and 60 Hz); the ratio-valued fields live in [0, 1].  ``status`` is only
    ever written through :func:`twin_engine.evolution.derive_status` or
    pinned to ``ISOLATED`` by a mitigation.
    """

    id: str
    name: str
    type: NodeType
    category: Category
    region: str
    x: float
    y: float

    # physical telemetry
    risk_score: float
    health: float
    load_ratio: float
    temperature: float
    power_draw: float
    voltage: float
    frequency: float
    rated_capacity: float
    current_load: float
    thermal_limit: float

    # cyber telemetry
    cyber_health: float
    packet_loss: float
    latency: float
    tamper_signal: float
    failed_auth_count: int
    last_auth_time: datetime
    # sampled age of last_auth_time at creation; independent of the wall clock
    auth_age_s: float = 0.0

    status: NodeStatus = NodeStatus.ONLINE
    cyber_status: CyberStatus = CyberStatus.SECURE
    last_seen: datetime = field(default_factory=utcnow)

    # topology (kept in sync with the GraphStore's networkx graphs)
    connections: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    dependents: list[str] = field(default_factory=list)

    @property
    def is_isolated(self) -> bool:
        return self.status is NodeStatus.ISOLATED

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    type: EdgeType
    weight: float
    latency: float
    bandwidth: float
    is_active: bool = True

    @property
    def key(self) -> tuple[str, str]:
        return edge_key(self.source, self.target)

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


def edge_key(a: str, b: str) -> tuple[str, str]:
    """Order-independent key for an undirected edge."""
    return (a, b) if a <= b else (b, a)


@dataclass
class Threat:
    id: str
    type: ThreatType
    severity: float
    started_at: datetime
    ends_at: datetime
    propagation_rate: float
    affected_nodes: list[str]
    subtype: ThreatSubtype | None = None
    target: str | None = None
    region: str | None = None
    active: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.ends_at

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class PropagationStep:
    source: str
    target: str
    risk_transfer: float
    depth: int
    timestamp: datetime


@dataclass(frozen=True)
class CascadeEvent:
    id: str
    origin_node: str
    severity: float
    affected_nodes: tuple[str, ...]
    propagation_path: tuple[PropagationStep, ...]
    impact_score: float
    total_damage: float
    start_time: datetime
    end_time: datetime
    mitigated: bool = False

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class LeadingFactor:
    name: str
    contribution: float
    value: float
    threshold: float
    trend: Trend
    explanation: str


@dataclass(frozen=True)
class RiskComponents:
    physical: float
    cyber: float
    operational: float
    environmental: float
    cascading: float


@dataclass(frozen=True)
class RiskScore:
    overall: float
    probability: float
    severity: float
    time_to_failure: float
    confidence_interval: tuple[float, float]
    trend: Trend
    components: RiskComponents
    leading_factors: tuple[LeadingFactor, ...]

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


@dataclass(frozen=True)
class SystemState:
    total_nodes: int
    status_counts: dict[str, int]
    cyber_status_counts: dict[str, int]
    max_risk: float
    avg_risk: float
    avg_health: float
    avg_load: float
    critical_nodes: tuple[str, ...]
    warning_nodes: tuple[str, ...]
    compromised_nodes: tuple[str, ...]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


# ---------------------------------------------------------------------------
# Serialisation helper
# ---------------------------------------------------------------------------


def to_jsonable(value: Any) -> Any:
    """Recursively convert enums, datetimes and tuples for JSON output."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
