"""Change-event fan-out for dashboards.

The row store publishes one :class:`ChangeEvent` per committed write to a
:class:`ChangeFeed`. The :class:`FanoutRouter` keeps one filtered channel per
listener, re-opens all of them after a feed reconnect and asks each listener
to re-poll, since events published while disconnected are lost.

Local views merge events and polls last-write-wins on ``updated_at``; there is
no ordering guarantee between the event stream and a poll.
"""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from fire_dispatch.models import CIVILIAN, DISPATCHER, FIREFIGHTER, ChangeEvent, Incident, Session
from fire_dispatch.store import DELETE, RowStore

logger = logging.getLogger(__name__)

SUBSCRIBED = "SUBSCRIBED"
CHANNEL_ERROR = "CHANNEL_ERROR"
CLOSED = "CLOSED"

EventCallback = Callable[[ChangeEvent], None]


@dataclass(frozen=True)
class Filter:
    """Equality predicate on one column, written ``column=eq.value``."""

    column: str
    value: Any

    @classmethod
    def parse(cls, text: str) -> "Filter":
        column, _, rest = text.partition("=")
        op, _, value = rest.partition(".")
        if not column or op != "eq" or not value:
            raise ValueError(f"Unsupported filter {text!r}")
        return cls(column=column, value=value)

    def matches(self, record: Dict[str, Any]) -> bool:
        if not record:
            return False
        current = record.get(self.column)
        return current is not None and str(current) == str(self.value)

    def __str__(self) -> str:
        return f"{self.column}=eq.{self.value}"


def filter_for_session(session: Session) -> Filter:
    if session.role == FIREFIGHTER:
        if session.station_id is None:
            raise ValueError("Firefighter session has no station")
        return Filter("station_id", session.station_id)
    if session.role == DISPATCHER:
        return Filter("dispatcher_id", int(session.user_id))
    if session.role == CIVILIAN:
        return Filter("reported_by", session.user_id)
    raise ValueError(f"Unknown role {session.role!r}")


def filter_for_incident(incident_id: int) -> Filter:
    return Filter("id", incident_id)


class Channel:
    _ids = itertools.count(1)

    def __init__(self, feed: "ChangeFeed", table: str, callback: EventCallback, predicate: Optional[Filter]) -> None:
        self.id = next(self._ids)
        self.feed = feed
        self.table = table
        self.callback = callback
        self.predicate = predicate
        self.state = SUBSCRIBED

    def accepts(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        if self.predicate is None:
            return True
        return self.predicate.matches(event.new) or self.predicate.matches(event.old)

    def unsubscribe(self) -> None:
        self.feed.remove(self)
        self.state = CLOSED


class ChangeFeed:
    """In-process change-data-capture bus."""

    def __init__(self) -> None:
        self.connected = True
        self._channels: Dict[int, Channel] = {}
        self._state_listeners: List[Callable[[str], None]] = []

    @property
    def channels(self) -> List[Channel]:
        return list(self._channels.values())

    def subscribe(self, table: str, callback: EventCallback, predicate: Optional[Filter] = None) -> Channel:
        channel = Channel(self, table, callback, predicate)
        if not self.connected:
            channel.state = CHANNEL_ERROR
            return channel
        self._channels[channel.id] = channel
        logger.debug("Channel %s subscribed to %s (%s)", channel.id, table, predicate or "*")
        return channel

    def remove(self, channel: Channel) -> None:
        self._channels.pop(channel.id, None)

    def on_state_change(self, listener: Callable[[str], None]) -> None:
        self._state_listeners.append(listener)

    def publish(self, event: ChangeEvent) -> None:
        if not self.connected:
            logger.warning("Dropping %s event on %s while disconnected", event.kind, event.table)
            return
        for channel in self.channels:
            if not channel.accepts(event):
                continue
            try:
                channel.callback(event)
            except Exception:
                logger.exception("Listener on channel %s failed for %s event", channel.id, event.kind)

    def disconnect(self) -> None:
        """Transient network loss: every open channel errors out."""
        self.connected = False
        for channel in self.channels:
            channel.state = CHANNEL_ERROR
        self._channels.clear()
        self._notify(CHANNEL_ERROR)

    def reconnect(self) -> None:
        if self.connected:
            return
        self.connected = True
        self._notify(SUBSCRIBED)

    def _notify(self, state: str) -> None:
        for listener in list(self._state_listeners):
            listener(state)


class ActivityTracker:
    """Last time any realtime traffic reached this client."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.last_activity: Optional[float] = None
        self.events_seen = 0

    def touch(self) -> None:
        self.last_activity = self.clock()
        self.events_seen += 1

    def idle_seconds(self) -> Optional[float]:
        if self.last_activity is None:
            return None
        return self.clock() - self.last_activity


class Listener:
    def __init__(
        self,
        router: "FanoutRouter",
        table: str,
        callback: EventCallback,
        predicate: Optional[Filter],
        on_resume: Optional[Callable[[], None]],
    ) -> None:
        self.router = router
        self.table = table
        self.callback = callback
        self.predicate = predicate
        self.on_resume = on_resume
        self.channel: Optional[Channel] = None

    def open(self) -> None:
        if self.channel is not None:
            self.channel.unsubscribe()
        self.channel = self.router.feed.subscribe(self.table, self._deliver, self.predicate)

    def _deliver(self, event: ChangeEvent) -> None:
        if self.router.activity is not None:
            self.router.activity.touch()
        self.callback(event)

    def close(self) -> None:
        if self.channel is not None:
            self.channel.unsubscribe()
            self.channel = None
        self.router.forget(self)


class FanoutRouter:
    def __init__(self, feed: ChangeFeed, activity: Optional[ActivityTracker] = None) -> None:
        self.feed = feed
        self.activity = activity
        self._listeners: List[Listener] = []
        feed.on_state_change(self._on_feed_state)

    @property
    def listeners(self) -> List[Listener]:
        return list(self._listeners)

    def listen(
        self,
        table: str,
        callback: EventCallback,
        predicate: Optional[Filter] = None,
        on_resume: Optional[Callable[[], None]] = None,
    ) -> Listener:
        listener = Listener(self, table, callback, predicate, on_resume)
        listener.open()
        self._listeners.append(listener)
        return listener

    def forget(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _on_feed_state(self, state: str) -> None:
        if state != SUBSCRIBED:
            logger.warning("Realtime feed lost; %d listener(s) waiting for reconnect", len(self._listeners))
            return
        for listener in self.listeners:
            listener.open()
            if listener.on_resume is None:
                continue
            try:
                listener.on_resume()
            except Exception:
                logger.exception("Resync after reconnect failed on %s", listener.table)


class LocalView:
    """Incident rows held by one dashboard, keyed by incident id."""

    def __init__(self, keep: Optional[Callable[[Dict[str, Any]], bool]] = None) -> None:
        self.keep = keep
        self.rows: Dict[int, Dict[str, Any]] = {}

    def _keeps(self, record: Dict[str, Any]) -> bool:
        return self.keep is None or self.keep(record)

    def apply(self, event: ChangeEvent) -> bool:
        record = event.record
        incident_id = record.get("id")
        if incident_id is None:
            return False

        held = self.rows.get(incident_id)
        if held is not None and event.kind != DELETE and held.get("updated_at", "") >= record.get("updated_at", ""):
            return False

        if event.kind == DELETE or not self._keeps(record):
            return self.rows.pop(incident_id, None) is not None
        self.rows[incident_id] = dict(record)
        return True

    def reconcile(self, records: Iterable[Dict[str, Any]]) -> None:
        fresh: Dict[int, Dict[str, Any]] = {}
        for record in records:
            held = self.rows.get(record["id"])
            if held is not None and held.get("updated_at", "") > record.get("updated_at", ""):
                fresh[record["id"]] = held
            else:
                fresh[record["id"]] = dict(record)
        self.rows = fresh

    def incidents(self) -> List[Incident]:
        ordered = sorted(self.rows.values(), key=lambda r: (r.get("created_at", ""), r["id"]), reverse=True)
        return [Incident.from_row(r) for r in ordered]

    def get(self, incident_id: int) -> Optional[Incident]:
        record = self.rows.get(incident_id)
        return Incident.from_row(record) if record else None


class Dashboard:
    """One client's live incident list: poll on mount/refresh, events in between."""

    def __init__(
        self,
        router: FanoutRouter,
        store: RowStore,
        scope: Filter,
        statuses: Optional[Iterable[str]] = None,
        on_change: Optional[EventCallback] = None,
    ) -> None:
        self.router = router
        self.store = store
        self.scope = scope
        self.statuses = frozenset(statuses) if statuses is not None else None
        self.on_change = on_change
        self.view = LocalView(keep=self._in_scope)
        self.listener: Optional[Listener] = None

    @classmethod
    def for_session(cls, router: FanoutRouter, store: RowStore, session: Session, **kwargs: Any) -> "Dashboard":
        return cls(router, store, filter_for_session(session), **kwargs)

    def _in_scope(self, record: Dict[str, Any]) -> bool:
        if not self.scope.matches(record):
            return False
        return self.statuses is None or record.get("status") in self.statuses

    @property
    def mounted(self) -> bool:
        return self.listener is not None

    def mount(self) -> None:
        if self.listener is None:
            self.listener = self.router.listen("incidents", self.handle, self.scope, on_resume=self.refresh)
        self.refresh()

    def refresh(self) -> None:
        incidents = self.store.list_incidents(statuses=self.statuses, **{self.scope.column: self.scope.value})
        self.view.reconcile(i.to_dict() for i in incidents)

    def handle(self, event: ChangeEvent) -> None:
        if self.view.apply(event) and self.on_change is not None:
            self.on_change(event)

    def unmount(self) -> None:
        if self.listener is not None:
            self.listener.close()
            self.listener = None

    def incidents(self) -> List[Incident]:
        return self.view.incidents()
