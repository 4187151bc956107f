"""In-memory incident store fed by the threat registry."""

from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable

from twin_engine.model import SeverityLevel, ThreatType, to_jsonable, utcnow

logger = logging.getLogger(__name__)


@dataclass
class Incident:
    id: str
    started_at: datetime
    severity: SeverityLevel
    affected_nodes: list[str]
    summary: str
    root_cause: str
    threat_type: ThreatType
    status: str = "open"
    mitigation_actions: list[dict[str, Any]] = field(default_factory=list)
    closed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(asdict(self))


class IncidentStore:
    """Thread-safe incident log; ids are sequential (``inc_0001`` ...)."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._incidents: dict[str, Incident] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def create(
        self,
        severity: SeverityLevel,
        affected_nodes: list[str],
        summary: str,
        root_cause: str,
        threat_type: ThreatType,
        started_at: datetime | None = None,
    ) -> Incident:
        with self._lock:
            incident = Incident(
                id=f"inc_{next(self._counter):04d}",
                started_at=started_at or self._clock(),
                severity=severity,
                affected_nodes=list(affected_nodes),
                summary=summary,
                root_cause=root_cause,
                threat_type=threat_type,
            )
            self._incidents[incident.id] = incident
        logger.info("Incident %s opened (%s): %s", incident.id, severity.value, summary)
        return incident

    def get(self, incident_id: str) -> Incident | None:
        return self._incidents.get(incident_id)

    def all(self) -> list[Incident]:
        """All incidents, newest first."""
        return sorted(
            self._incidents.values(), key=lambda i: (i.started_at, i.id), reverse=True
        )

    def open_incidents(self) -> list[Incident]:
        return [i for i in self.all() if i.status == "open"]

    def add_mitigation(self, incident_id: str, node_id: str, action: str,
                       operator: str | None = None) -> bool:
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                return False
            incident.mitigation_actions.append({
                "node_id": node_id,
                "action": action,
                "operator": operator,
                "timestamp": self._clock().isoformat(),
            })
            if incident.status == "open":
                incident.status = "mitigated"
        return True

    def close(self, incident_id: str) -> bool:
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None or incident.status == "closed":
                return False
            incident.status = "closed"
            incident.closed_at = self._clock()
        logger.info("Incident %s closed", incident_id)
        return True

    def __len__(self) -> int:
        return len(self._incidents)
