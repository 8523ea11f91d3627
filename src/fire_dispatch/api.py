from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import Depends, FastAPI, Form, Header, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fire_dispatch import config
from fire_dispatch.assignment import AssignmentCoordinator, build_strategy
from fire_dispatch.auth import session_from_token
from fire_dispatch.errors import IncidentNotFound, InvalidTransition, NotPermitted, StoreError
from fire_dispatch.lifecycle import allowed_actions
from fire_dispatch.location import LocationResolver, build_resolver
from fire_dispatch.models import CIVILIAN, DISPATCHER, FIREFIGHTER, Incident, Session
from fire_dispatch.realtime import ActivityTracker, ChangeFeed, FanoutRouter, filter_for_session
from fire_dispatch.store import RowStore

logger = logging.getLogger(__name__)


class DispatchServices:
    """Everything one process needs, wired around a single change feed."""

    def __init__(
        self,
        db_path: Path | str = config.DB_PATH,
        strategy: str = config.ASSIGNMENT_STRATEGY,
        resolver: Optional[LocationResolver] = None,
    ) -> None:
        self.feed = ChangeFeed()
        self.store = RowStore(db_path, publisher=self.feed)
        self.store.init_db()
        self.activity = ActivityTracker()
        self.router = FanoutRouter(self.feed, activity=self.activity)
        self.coordinator = AssignmentCoordinator(self.store, build_strategy(self.store, strategy))
        self.resolver = resolver or build_resolver()


_services: Optional[DispatchServices] = None


def get_services() -> DispatchServices:
    global _services
    if _services is None:
        _services = DispatchServices()
    return _services


app = FastAPI(title="Fire Dispatch")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup() -> None:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@app.exception_handler(IncidentNotFound)
def incident_not_found(request: Request, exc: IncidentNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(NotPermitted)
def not_permitted(request: Request, exc: NotPermitted) -> JSONResponse:
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
def invalid_transition(request: Request, exc: InvalidTransition) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StoreError)
def store_error(request: Request, exc: StoreError) -> JSONResponse:
    logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Request failed, pull to refresh and try again"})


def get_current_session(authorization: str = Header(default="")) -> Session:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return session_from_token(authorization.replace("Bearer ", "", 1))


def role_guard(session: Session, allowed: set[str]) -> None:
    if session.role not in allowed:
        raise HTTPException(status_code=403, detail="Forbidden")


def visible_incident(services: DispatchServices, incident_id: int, session: Session) -> Incident:
    incident = services.store.get_incident(incident_id)
    if not filter_for_session(session).matches(incident.to_dict()):
        raise HTTPException(status_code=404, detail=f"Incident {incident_id} not found")
    return incident


def present(incident: Incident, services: DispatchServices, session: Session) -> dict:
    data = incident.to_dict()
    data["display_location"] = services.resolver.resolve(incident.raw_location)
    data["allowed_actions"] = allowed_actions(incident, session)
    return data


@app.post("/incidents")
def create_incident(
    incident_type: str = Form(...),
    description: str = Form(...),
    station_id: int = Form(...),
    latitude: Optional[float] = Form(None),
    longitude: Optional[float] = Form(None),
    address: str = Form(""),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    role_guard(session, {CIVILIAN})
    if (latitude is None) != (longitude is None):
        raise HTTPException(status_code=400, detail="latitude and longitude must be sent together")
    if services.store.get_station(station_id) is None:
        raise HTTPException(status_code=400, detail=f"Unknown station {station_id}")
    incident = services.store.create_incident(
        incident_type=incident_type,
        description=description,
        station_id=station_id,
        reported_by=session.user_id,
        latitude=latitude,
        longitude=longitude,
        address=address.strip() or None,
    )
    return incident.to_dict()


@app.get("/incidents")
def list_incidents(
    status: Optional[List[str]] = Query(None),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    scope = filter_for_session(session)
    incidents = services.store.list_incidents(statuses=status, **{scope.column: scope.value})
    return [i.to_dict() for i in incidents]


@app.get("/incidents/summary")
def incident_summary(
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    role_guard(session, {FIREFIGHTER})
    return services.coordinator.status_summary()


@app.get("/incidents/{incident_id}")
def get_incident(
    incident_id: int,
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    incident = visible_incident(services, incident_id, session)
    return present(incident, services, session)


@app.patch("/incidents/{incident_id}/status")
def update_status(
    incident_id: int,
    action: str = Form(...),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    outcome = services.coordinator.apply(incident_id, action, session)
    return outcome.to_dict()


@app.patch("/incidents/{incident_id}/dispatcher")
def reassign_dispatcher(
    incident_id: int,
    dispatcher_id: int = Form(...),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    outcome = services.coordinator.reassign(incident_id, dispatcher_id, session)
    return outcome.to_dict()


@app.post("/stations/{station_id}/reconcile")
def reconcile_station(
    station_id: int,
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    role_guard(session, {FIREFIGHTER})
    if session.station_id is not None and session.station_id != station_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    outcomes = services.coordinator.reconcile_unassigned(station_id)
    return {"assigned": [o.to_dict() for o in outcomes]}


@app.post("/incidents/{incident_id}/messages")
def post_message(
    incident_id: int,
    body: str = Form(...),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    incident = visible_incident(services, incident_id, session)
    if incident.is_terminal:
        raise HTTPException(status_code=409, detail="Chat is closed for resolved or cancelled incidents")
    message = services.store.add_message(incident_id, session.user_id, body)
    return {"id": message.id, "incident_id": incident_id, "sender_id": message.sender_id, "created_at": message.created_at}


@app.get("/incidents/{incident_id}/messages/unread")
def unread_count(
    incident_id: int,
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    visible_incident(services, incident_id, session)
    return {"incident_id": incident_id, "unread": services.store.count_unread(incident_id, session.user_id)}


@app.post("/incidents/{incident_id}/messages/read")
def mark_read(
    incident_id: int,
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    visible_incident(services, incident_id, session)
    services.store.mark_all_read(incident_id, session.user_id)
    return {"incident_id": incident_id, "unread": 0}


@app.websocket("/ws/incidents")
async def incidents_socket(
    websocket: WebSocket,
    token: str = "",
    services: DispatchServices = Depends(get_services),
):
    try:
        session = session_from_token(token)
        scope = filter_for_session(session)
    except (HTTPException, ValueError):
        await websocket.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    listener = services.router.listen(
        "incidents",
        lambda event: loop.call_soon_threadsafe(queue.put_nowait, event),
        scope,
    )
    await websocket.accept()

    async def pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_json(event.to_dict())

    sender = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        listener.close()
        logger.debug("Websocket for %s %s closed", session.role, session.user_id)


@app.patch("/responders/me/location")
def update_my_location(
    latitude: float = Form(...),
    longitude: float = Form(...),
    session: Session = Depends(get_current_session),
    services: DispatchServices = Depends(get_services),
):
    role_guard(session, {DISPATCHER})
    if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
        raise HTTPException(status_code=400, detail="Coordinates out of range")
    responder = services.store.update_responder_location(int(session.user_id), latitude, longitude)
    if responder is None:
        raise HTTPException(status_code=404, detail="Responder not found")
    return {"id": responder.id, "latitude": responder.latitude, "longitude": responder.longitude}


@app.get("/health")
def health(services: DispatchServices = Depends(get_services)):
    return {
        "status": "ok",
        "realtime_connected": services.feed.connected,
        "realtime_idle_seconds": services.activity.idle_seconds(),
    }


def run(host: str = "0.0.0.0", port: int = 8080) -> None:
    import uvicorn

    uvicorn.run(app, host=host, port=port)
