import json
from pathlib import Path

import httpx
import pytest

from fire_dispatch.assignment import (
    AssignmentCoordinator,
    DelegatedAssignment,
    LocalAssignment,
    build_strategy,
)
from fire_dispatch.errors import AssignmentError, InvalidTransition, NotPermitted
from fire_dispatch.models import CANCELLED, CIVILIAN, DISPATCHER, FIREFIGHTER, IN_PROGRESS, RESOLVED, Session
from fire_dispatch.realtime import ChangeFeed, Dashboard, FanoutRouter
from fire_dispatch.store import RowStore

CIVILIAN_SESSION = Session(role=CIVILIAN, user_id="civ-1")


def _setup(tmp_path: Path):
    feed = ChangeFeed()
    store = RowStore(tmp_path / "dispatch.db", publisher=feed)
    store.init_db()
    station = store.add_station("Accra Central", phone="+233 30 222 1234")
    return feed, store, station


def _report(store: RowStore, station_id: int, lat=5.60, lng=-0.18):
    return store.create_incident(
        incident_type="fire",
        description="Smoke from a market stall",
        station_id=station_id,
        reported_by=CIVILIAN_SESSION.user_id,
        latitude=lat,
        longitude=lng,
    )


def _delegated(handler) -> DelegatedAssignment:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return DelegatedAssignment(url="https://assign.test/assign-nearest", timeout=2, client=client)


def test_approval_assigns_nearest_and_notifies_dispatcher_once(tmp_path: Path) -> None:
    feed, store, station = _setup(tmp_path)
    near = store.add_responder(station.id, "Kofi", latitude=5.618, longitude=-0.18)
    store.add_responder(station.id, "Ama", latitude=5.663, longitude=-0.18)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)

    incident = _report(store, station.id)
    assert incident.status == "pending"

    router = FanoutRouter(feed)
    updates = []
    board = Dashboard.for_session(router, store, Session(DISPATCHER, str(near.id)), on_change=updates.append)
    board.mount()

    outcome = AssignmentCoordinator(store, LocalAssignment(store)).approve(incident.id, firefighter)

    assert outcome.incident.status == IN_PROGRESS
    assert outcome.incident.dispatcher_id == near.id
    assert 1.9 < outcome.assignment.distance_km < 2.1
    assert not outcome.degraded
    assert len(updates) == 1
    assert updates[0].kind == "UPDATE"
    assert updates[0].new["dispatcher_id"] == near.id
    assert [i.id for i in board.incidents()] == [incident.id]


def test_approval_without_eligible_responder_still_advances(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    store.add_responder(station.id, "No GPS")
    incident = _report(store, station.id)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)

    outcome = AssignmentCoordinator(store, LocalAssignment(store, without_coordinates=False)).approve(
        incident.id, firefighter
    )

    assert outcome.incident.status == IN_PROGRESS
    assert outcome.incident.dispatcher_id is None
    assert outcome.degraded
    assert "Accra Central" in outcome.message
    assert "assigned shortly" in outcome.message


def test_unexpected_strategy_crash_still_advances(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    incident = _report(store, station.id)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)

    def handler(request: httpx.Request) -> httpx.Response:
        raise RuntimeError("transport bug")

    outcome = AssignmentCoordinator(store, _delegated(handler)).approve(incident.id, firefighter)

    assert outcome.incident.status == IN_PROGRESS
    assert outcome.degraded
    assert store.get_incident(incident.id).status == IN_PROGRESS


def test_local_strategy_can_fall_back_to_first_responder(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    first = store.add_responder(station.id, "No GPS")
    incident = _report(store, station.id)

    result = LocalAssignment(store, without_coordinates=True).assign(incident)

    assert result.responder.id == first.id
    assert result.distance_km is None


def test_delegated_failure_is_not_fatal(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    incident = _report(store, station.id)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "no dispatchers online"})

    outcome = AssignmentCoordinator(store, _delegated(handler)).approve(incident.id, firefighter)

    assert outcome.incident.status == IN_PROGRESS
    assert outcome.degraded
    assert outcome.message


def test_delegated_timeout_is_not_fatal(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    incident = _report(store, station.id)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("too slow", request=request)

    strategy = _delegated(handler)
    with pytest.raises(AssignmentError):
        strategy.assign(incident)

    outcome = AssignmentCoordinator(store, strategy).approve(incident.id, firefighter)
    assert outcome.incident.status == IN_PROGRESS
    assert "assigned shortly" in outcome.message


def test_delegated_success_records_dispatcher(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    responder = store.add_responder(station.id, "Kofi", latitude=5.618, longitude=-0.18)
    incident = _report(store, station.id)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={"assigned_dispatcher": {"id": responder.id, "name": "Kofi", "latitude": 5.618, "longitude": -0.18}},
        )

    outcome = AssignmentCoordinator(store, _delegated(handler)).approve(incident.id, firefighter)

    assert seen == {"incident_id": incident.id, "incident_lat": 5.60, "incident_lng": -0.18, "station_id": station.id}
    assert outcome.incident.dispatcher_id == responder.id
    assert 1.9 < outcome.assignment.distance_km < 2.1


def test_build_strategy_selects_by_name(tmp_path: Path) -> None:
    _, store, _ = _setup(tmp_path)

    assert isinstance(build_strategy(store, "local"), LocalAssignment)
    assert isinstance(build_strategy(store, "delegated"), DelegatedAssignment)
    with pytest.raises(ValueError):
        build_strategy(store, "carrier-pigeon")


def test_reject_resolve_and_cancel(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    responder = store.add_responder(station.id, "Kofi", latitude=5.618, longitude=-0.18)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)
    coordinator = AssignmentCoordinator(store, LocalAssignment(store))

    rejected = coordinator.reject(_report(store, station.id).id, firefighter)
    assert rejected.incident.status == CANCELLED
    assert rejected.incident.resolved_at
    assert rejected.incident.dispatcher_id is None

    approved = coordinator.approve(_report(store, station.id).id, firefighter)
    resolved = coordinator.apply(approved.incident.id, "resolve", Session(DISPATCHER, str(responder.id)))
    assert resolved.incident.status == RESOLVED
    assert resolved.incident.dispatcher_id == responder.id

    approved = coordinator.approve(_report(store, station.id).id, firefighter)
    cancelled = coordinator.cancel(approved.incident.id, firefighter)
    assert cancelled.incident.status == CANCELLED
    assert cancelled.incident.dispatcher_id is None

    with pytest.raises(InvalidTransition):
        coordinator.approve(rejected.incident.id, firefighter)


def test_reconcile_closes_unassigned_gap(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)
    coordinator = AssignmentCoordinator(store, LocalAssignment(store))
    incident = _report(store, station.id)
    coordinator.approve(incident.id, firefighter)
    assert coordinator.status_summary()["unassigned_in_progress"] == [incident.id]

    responder = store.add_responder(station.id, "Late shift", latitude=5.61, longitude=-0.18)
    outcomes = coordinator.reconcile_unassigned(station.id)

    assert [o.incident.dispatcher_id for o in outcomes] == [responder.id]
    summary = coordinator.status_summary()
    assert summary["unassigned_in_progress"] == []
    assert summary["status_counts"] == {IN_PROGRESS: 1}


def test_reassign_requires_station_staff_and_roster_member(tmp_path: Path) -> None:
    _, store, station = _setup(tmp_path)
    other = store.add_station("Tema")
    first = store.add_responder(station.id, "Kofi", latitude=5.618, longitude=-0.18)
    second = store.add_responder(station.id, "Ama", latitude=5.663, longitude=-0.18)
    outsider = store.add_responder(other.id, "Yaw")
    firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)
    coordinator = AssignmentCoordinator(store, LocalAssignment(store))
    incident = coordinator.approve(_report(store, station.id).id, firefighter).incident
    assert incident.dispatcher_id == first.id

    outcome = coordinator.reassign(incident.id, second.id, firefighter)
    assert outcome.incident.dispatcher_id == second.id

    with pytest.raises(NotPermitted):
        coordinator.reassign(incident.id, outsider.id, firefighter)
    with pytest.raises(NotPermitted):
        coordinator.reassign(incident.id, first.id, Session(DISPATCHER, str(second.id)))
