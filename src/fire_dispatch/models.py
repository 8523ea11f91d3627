from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

PENDING = "pending"
IN_PROGRESS = "in_progress"
RESOLVED = "resolved"
CANCELLED = "cancelled"

STATUSES = (PENDING, IN_PROGRESS, RESOLVED, CANCELLED)
TERMINAL_STATUSES = frozenset({RESOLVED, CANCELLED})

CIVILIAN = "civilian"
FIREFIGHTER = "firefighter"
DISPATCHER = "dispatcher"

ROLES = (CIVILIAN, FIREFIGHTER, DISPATCHER)


@dataclass(frozen=True)
class Coordinates:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Incident:
    id: int
    incident_type: str
    description: str
    station_id: int
    reported_by: str
    status: str = PENDING
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    dispatcher_id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    resolved_at: Optional[str] = None

    @property
    def location(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(self.latitude, self.longitude)

    @property
    def raw_location(self) -> str:
        """Stored location the way it is shown before resolution."""
        if self.address:
            return self.address
        if self.latitude is None or self.longitude is None:
            return ""
        return f"{self.latitude},{self.longitude}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Incident":
        return cls(**{name: row[name] for name in cls.__dataclass_fields__ if name in row})


@dataclass(frozen=True)
class Station:
    id: int
    name: str
    phone: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class Responder:
    id: int
    station_id: int
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_active: bool = True

    @property
    def location(self) -> Optional[Coordinates]:
        if self.latitude is None or self.longitude is None:
            return None
        return Coordinates(self.latitude, self.longitude)


@dataclass(frozen=True)
class AssignmentResult:
    responder: Responder
    distance_km: Optional[float] = None


@dataclass(frozen=True)
class ChatMessage:
    id: int
    incident_id: int
    sender_id: str
    body: str
    created_at: str = ""


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    committed_at: str = ""

    @property
    def record(self) -> Dict[str, Any]:
        """Post-change row, or the removed row for deletes."""
        return self.new or self.old

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "kind": self.kind,
            "new": self.new,
            "old": self.old,
            "committed_at": self.committed_at,
        }


@dataclass(frozen=True)
class Session:
    role: str
    user_id: str
    station_id: Optional[int] = None


@dataclass(frozen=True)
class TransitionOutcome:
    incident: Incident
    message: str
    assignment: Optional[AssignmentResult] = None
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        assigned = None
        if self.assignment is not None:
            assigned = {
                "id": self.assignment.responder.id,
                "name": self.assignment.responder.name,
                "distance_km": self.assignment.distance_km,
            }
        return {
            "incident": self.incident.to_dict(),
            "message": self.message,
            "assigned_dispatcher": assigned,
            "degraded": self.degraded,
        }
