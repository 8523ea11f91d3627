from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx

from fire_dispatch import config
from fire_dispatch.errors import AssignmentError, InvalidTransition, NotPermitted
from fire_dispatch.geo import fallback_responder, haversine_km, nearest_responder
from fire_dispatch.lifecycle import APPROVE, CANCEL, REJECT, RESOLVE, WITHDRAW, plan_transition
from fire_dispatch.models import (
    FIREFIGHTER,
    IN_PROGRESS,
    AssignmentResult,
    Incident,
    Responder,
    Session,
    TransitionOutcome,
)
from fire_dispatch.store import RowStore

logger = logging.getLogger(__name__)


class AssignmentStrategy(ABC):
    """Picks a responder for an incident; raises AssignmentError on failure."""

    name = "strategy"

    @abstractmethod
    def assign(self, incident: Incident) -> Optional[AssignmentResult]:
        ...


class LocalAssignment(AssignmentStrategy):
    name = "local"

    def __init__(self, store: RowStore, without_coordinates: bool = config.ASSIGN_WITHOUT_COORDINATES) -> None:
        self.store = store
        self.without_coordinates = without_coordinates

    def assign(self, incident: Incident) -> Optional[AssignmentResult]:
        roster = self.store.active_responders(incident.station_id)
        result = nearest_responder(incident.location, roster)
        if result is None and self.without_coordinates:
            result = fallback_responder(roster)
        return result


class DelegatedAssignment(AssignmentStrategy):
    """Forwards matching to the external assignment service."""

    name = "delegated"

    def __init__(
        self,
        url: str = config.ASSIGNMENT_SERVICE_URL,
        timeout: float = config.ASSIGNMENT_TIMEOUT,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.client = client

    def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        if self.client is not None:
            return self.client.post(self.url, json=payload, timeout=self.timeout)
        with httpx.Client(timeout=self.timeout) as client:
            return client.post(self.url, json=payload)

    def assign(self, incident: Incident) -> Optional[AssignmentResult]:
        if not self.url:
            raise AssignmentError("Assignment service URL is not configured")
        payload = {
            "incident_id": incident.id,
            "incident_lat": incident.latitude,
            "incident_lng": incident.longitude,
            "station_id": incident.station_id,
        }
        try:
            response = self._post(payload)
            data = response.json()
        except httpx.TimeoutException as exc:
            raise AssignmentError(f"Assignment service timed out after {self.timeout}s") from exc
        except (httpx.HTTPError, ValueError) as exc:
            raise AssignmentError(f"Assignment service unreachable: {exc}") from exc

        if response.status_code >= 400 or not isinstance(data, dict) or data.get("error"):
            detail = data.get("error") if isinstance(data, dict) else data
            raise AssignmentError(f"Assignment service error ({response.status_code}): {detail}")

        assigned = data.get("assigned_dispatcher")
        if not assigned:
            return None
        try:
            responder = Responder(
                id=int(assigned["id"]),
                station_id=int(assigned.get("station_id", incident.station_id)),
                name=str(assigned.get("name", "")),
                latitude=assigned.get("latitude"),
                longitude=assigned.get("longitude"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise AssignmentError(f"Malformed assignment payload: {assigned!r}") from exc

        distance = assigned.get("distance_km")
        if distance is None and incident.location is not None and responder.location is not None:
            distance = round(haversine_km(incident.location, responder.location), 2)
        return AssignmentResult(responder=responder, distance_km=distance)


def build_strategy(store: RowStore, name: str = config.ASSIGNMENT_STRATEGY) -> AssignmentStrategy:
    if name == LocalAssignment.name:
        return LocalAssignment(store)
    if name == DelegatedAssignment.name:
        return DelegatedAssignment()
    raise ValueError(f"Unknown assignment strategy {name!r}")


class AssignmentCoordinator:
    """Runs lifecycle transitions; approval also attempts an assignment.

    Approval always advances the incident to in_progress. Assignment is best
    effort: a failed or empty match leaves ``dispatcher_id`` unset, which
    reconcile_unassigned() or reassign() can close later.
    """

    def __init__(self, store: RowStore, strategy: AssignmentStrategy) -> None:
        self.store = store
        self.strategy = strategy

    def _attempt(self, incident: Incident) -> Optional[AssignmentResult]:
        try:
            return self.strategy.assign(incident)
        except AssignmentError as exc:
            logger.warning("Assignment via %s failed for incident %s: %s", self.strategy.name, incident.id, exc)
            return None
        except Exception:
            logger.exception("Assignment via %s crashed for incident %s", self.strategy.name, incident.id)
            return None

    def _fallback_message(self, incident: Incident) -> str:
        station = self.store.get_station(incident.station_id)
        if station is None:
            return "Incident approved (Status: IN PROGRESS). A responder will be assigned shortly."
        contact = f" ({station.phone})" if station.phone else ""
        return (
            f"Incident approved (Status: IN PROGRESS). A responder from {station.name}{contact} "
            "will be assigned shortly."
        )

    def approve(self, incident_id: int, session: Session) -> TransitionOutcome:
        incident = self.store.get_incident(incident_id)
        transition = plan_transition(incident, APPROVE, session, self.store.now())

        result = self._attempt(incident)
        changes = dict(transition.changes)
        if result is not None:
            changes["dispatcher_id"] = result.responder.id
        updated = self.store.update_incident(incident_id, changes)

        if result is None:
            logger.info("Incident %s in progress without a dispatcher", incident_id)
            return TransitionOutcome(incident=updated, message=self._fallback_message(incident), degraded=True)

        distance = f" {result.distance_km} km away" if result.distance_km is not None else ""
        logger.info("Incident %s assigned to dispatcher %s", incident_id, result.responder.id)
        return TransitionOutcome(
            incident=updated,
            message=f"Incident approved and assigned to {result.responder.name}{distance} (Status: IN PROGRESS)",
            assignment=result,
        )

    def _simple(self, incident_id: int, action: str, session: Session, message: str) -> TransitionOutcome:
        incident = self.store.get_incident(incident_id)
        transition = plan_transition(incident, action, session, self.store.now())
        updated = self.store.update_incident(incident_id, transition.changes)
        logger.info("Incident %s %s -> %s by %s", incident_id, transition.source, transition.target, session.role)
        return TransitionOutcome(incident=updated, message=message)

    def reject(self, incident_id: int, session: Session) -> TransitionOutcome:
        return self._simple(incident_id, REJECT, session, "Incident has been rejected")

    def withdraw(self, incident_id: int, session: Session) -> TransitionOutcome:
        return self._simple(incident_id, WITHDRAW, session, "Your report has been withdrawn")

    def resolve(self, incident_id: int, session: Session) -> TransitionOutcome:
        return self._simple(incident_id, RESOLVE, session, "Incident marked as resolved")

    def cancel(self, incident_id: int, session: Session) -> TransitionOutcome:
        return self._simple(incident_id, CANCEL, session, "Incident has been cancelled")

    def apply(self, incident_id: int, action: str, session: Session) -> TransitionOutcome:
        handlers = {
            APPROVE: self.approve,
            REJECT: self.reject,
            WITHDRAW: self.withdraw,
            RESOLVE: self.resolve,
            CANCEL: self.cancel,
        }
        handler = handlers.get(action)
        if handler is None:
            incident = self.store.get_incident(incident_id)
            raise InvalidTransition(incident.status, action)
        return handler(incident_id, session)

    def reassign(self, incident_id: int, dispatcher_id: int, session: Session) -> TransitionOutcome:
        incident = self.store.get_incident(incident_id)
        if session.role != FIREFIGHTER or (session.station_id is not None and session.station_id != incident.station_id):
            raise NotPermitted(session.role, "reassign")
        if incident.status != IN_PROGRESS:
            raise InvalidTransition(incident.status, "reassign")
        responder = self.store.get_responder(dispatcher_id)
        if responder is None or responder.station_id != incident.station_id or not responder.is_active:
            raise NotPermitted(session.role, f"assign dispatcher {dispatcher_id} to")

        updated = self.store.update_incident(incident_id, {"dispatcher_id": responder.id})
        distance = None
        if incident.location is not None and responder.location is not None:
            distance = round(haversine_km(incident.location, responder.location), 2)
        return TransitionOutcome(
            incident=updated,
            message=f"Incident reassigned to {responder.name}",
            assignment=AssignmentResult(responder=responder, distance_km=distance),
        )

    def reconcile_unassigned(self, station_id: int) -> List[TransitionOutcome]:
        """Retry assignment for in-progress incidents that never got a dispatcher."""
        outcomes = []
        for incident in self.store.list_incidents(station_id=station_id, status=IN_PROGRESS, dispatcher_id=None):
            result = self._attempt(incident)
            if result is None:
                continue
            updated = self.store.update_incident(incident.id, {"dispatcher_id": result.responder.id})
            outcomes.append(
                TransitionOutcome(
                    incident=updated,
                    message=f"Incident assigned to {result.responder.name}",
                    assignment=result,
                )
            )
        logger.info("Reconciled %d unassigned incident(s) for station %s", len(outcomes), station_id)
        return outcomes

    def status_summary(self) -> Dict[str, Any]:
        unassigned = self.store.list_incidents(status=IN_PROGRESS, dispatcher_id=None)
        return {
            "status_counts": self.store.status_counts(),
            "unassigned_in_progress": [i.id for i in unassigned],
        }
