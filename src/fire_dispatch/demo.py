from __future__ import annotations

import tempfile
from pathlib import Path

from fire_dispatch.assignment import AssignmentCoordinator, LocalAssignment
from fire_dispatch.location import Landmark, LandmarkGeocoder, LocationResolver
from fire_dispatch.models import CIVILIAN, DISPATCHER, FIREFIGHTER, Coordinates, Session
from fire_dispatch.realtime import ChangeFeed, Dashboard, FanoutRouter
from fire_dispatch.store import RowStore


def main() -> None:
    with tempfile.TemporaryDirectory() as workdir:
        feed = ChangeFeed()
        store = RowStore(Path(workdir) / "demo.db", publisher=feed)
        store.init_db()
        router = FanoutRouter(feed)

        station = store.add_station("Accra Central Fire Station", phone="+233 30 222 1234", latitude=5.55, longitude=-0.20)
        near = store.add_responder(station.id, "Kofi Mensah", latitude=5.618, longitude=-0.18)
        store.add_responder(station.id, "Ama Osei", latitude=5.663, longitude=-0.18)

        civilian = Session(role=CIVILIAN, user_id="civ-1")
        firefighter = Session(role=FIREFIGHTER, user_id="ff-1", station_id=station.id)
        dispatcher = Session(role=DISPATCHER, user_id=str(near.id))

        received = []
        station_board = Dashboard.for_session(router, store, firefighter)
        dispatcher_board = Dashboard.for_session(router, store, dispatcher, on_change=received.append)
        station_board.mount()
        dispatcher_board.mount()

        incident = store.create_incident(
            incident_type="fire",
            description="Smoke from a market stall near the roundabout",
            station_id=station.id,
            reported_by=civilian.user_id,
            latitude=5.60,
            longitude=-0.18,
        )

        coordinator = AssignmentCoordinator(store, LocalAssignment(store))
        outcome = coordinator.approve(incident.id, firefighter)
        resolver = LocationResolver(
            local=LandmarkGeocoder([Landmark("Kwame Nkrumah Circle", Coordinates(5.5713, -0.2165))], radius_km=10),
        )

        print("=== Fire Dispatch Walk-through ===")
        print(f"Incident #{incident.id}: {incident.incident_type} at {resolver.resolve(incident.raw_location)}")
        print(f"Station view: {[i.status for i in station_board.incidents()]}")
        print(outcome.message)
        print(f"Dispatcher {near.name} received {len(received)} update(s)")

        resolved = coordinator.resolve(incident.id, dispatcher)
        print(resolved.message)
        print(f"Dispatcher active list: {len(dispatcher_board.incidents())} incident(s)")

        station_board.unmount()
        dispatcher_board.unmount()


if __name__ == "__main__":
    main()
