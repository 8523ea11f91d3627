"""Incident status lifecycle.

    pending ──approve──▶ in_progress ──resolve──▶ resolved
       │                     │
       └──reject/withdraw──▶ cancelled ◀──cancel──┘

``resolved`` and ``cancelled`` are terminal. Transitions are validated
against the record as last read; the write itself is last-write-wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List

from fire_dispatch.errors import InvalidTransition, NotPermitted
from fire_dispatch.models import (
    CANCELLED,
    CIVILIAN,
    DISPATCHER,
    FIREFIGHTER,
    IN_PROGRESS,
    PENDING,
    RESOLVED,
    TERMINAL_STATUSES,
    Incident,
    Session,
)

APPROVE = "approve"
REJECT = "reject"
WITHDRAW = "withdraw"
RESOLVE = "resolve"
CANCEL = "cancel"


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    roles: FrozenSet[str]


EDGES: Dict[str, Edge] = {
    APPROVE: Edge(PENDING, IN_PROGRESS, frozenset({FIREFIGHTER})),
    REJECT: Edge(PENDING, CANCELLED, frozenset({FIREFIGHTER})),
    WITHDRAW: Edge(PENDING, CANCELLED, frozenset({CIVILIAN})),
    RESOLVE: Edge(IN_PROGRESS, RESOLVED, frozenset({DISPATCHER, FIREFIGHTER})),
    CANCEL: Edge(IN_PROGRESS, CANCELLED, frozenset({FIREFIGHTER})),
}

ACTIONS = tuple(EDGES)


@dataclass(frozen=True)
class Transition:
    incident_id: int
    action: str
    source: str
    target: str
    changes: Dict[str, Any] = field(default_factory=dict)


def _owns(incident: Incident, session: Session) -> bool:
    if session.role == FIREFIGHTER:
        return session.station_id is None or session.station_id == incident.station_id
    if session.role == DISPATCHER:
        return incident.dispatcher_id is not None and str(incident.dispatcher_id) == session.user_id
    if session.role == CIVILIAN:
        return incident.reported_by == session.user_id
    return False


def plan_transition(incident: Incident, action: str, session: Session, now: str) -> Transition:
    edge = EDGES.get(action)
    if edge is None:
        raise InvalidTransition(incident.status, action)
    if session.role not in edge.roles or not _owns(incident, session):
        raise NotPermitted(session.role, action)
    if incident.status != edge.source:
        raise InvalidTransition(incident.status, action)

    changes: Dict[str, Any] = {"status": edge.target, "updated_at": now}
    if edge.target in TERMINAL_STATUSES:
        changes["resolved_at"] = now
    if edge.target == CANCELLED:
        changes["dispatcher_id"] = None
    return Transition(
        incident_id=incident.id,
        action=action,
        source=incident.status,
        target=edge.target,
        changes=changes,
    )


def allowed_actions(incident: Incident, session: Session) -> List[str]:
    return [
        action
        for action, edge in EDGES.items()
        if edge.source == incident.status and session.role in edge.roles and _owns(incident, session)
    ]


def is_legal_edge(source: str, target: str) -> bool:
    return any(edge.source == source and edge.target == target for edge in EDGES.values())
