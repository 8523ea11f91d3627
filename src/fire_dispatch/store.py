from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

from fire_dispatch.errors import IncidentNotFound, StoreError
from fire_dispatch.models import (
    PENDING,
    ChangeEvent,
    ChatMessage,
    Incident,
    Responder,
    Station,
)

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

INCIDENT_COLUMNS = (
    "id",
    "incident_type",
    "description",
    "station_id",
    "reported_by",
    "status",
    "latitude",
    "longitude",
    "address",
    "dispatcher_id",
    "created_at",
    "updated_at",
    "resolved_at",
)

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS stations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        phone TEXT NOT NULL DEFAULT '',
        latitude REAL,
        longitude REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dispatchers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        station_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        latitude REAL,
        longitude REAL,
        is_active INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY(station_id) REFERENCES stations(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS incidents (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        incident_type TEXT NOT NULL,
        description TEXT NOT NULL,
        station_id INTEGER NOT NULL,
        reported_by TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'pending',
        latitude REAL,
        longitude REAL,
        address TEXT,
        dispatcher_id INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        resolved_at TEXT,
        FOREIGN KEY(station_id) REFERENCES stations(id),
        FOREIGN KEY(dispatcher_id) REFERENCES dispatchers(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        incident_id INTEGER NOT NULL,
        sender_id TEXT NOT NULL,
        body TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY(incident_id) REFERENCES incidents(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_reads (
        incident_id INTEGER NOT NULL,
        viewer_id TEXT NOT NULL,
        last_read_at TEXT NOT NULL,
        PRIMARY KEY (incident_id, viewer_id)
    )
    """,
)


class ChangePublisher(Protocol):
    def publish(self, event: ChangeEvent) -> None:
        ...


class RowStore:
    """sqlite-backed row store with change notifications after each commit."""

    def __init__(self, db_path: Path | str, publisher: Optional[ChangePublisher] = None) -> None:
        self.db_path = str(db_path)
        self.publisher = publisher
        self._lock = threading.Lock()
        self._last_stamp: Optional[datetime] = None

    def init_db(self) -> None:
        with self._conn() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @contextmanager
    def _conn(self):
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error("Row store failure on %s: %s", self.db_path, exc)
            raise StoreError(str(exc)) from exc
        finally:
            conn.close()

    def now(self) -> str:
        """Strictly increasing ISO timestamp, used as the row version."""
        with self._lock:
            stamp = datetime.utcnow()
            if self._last_stamp is not None and stamp <= self._last_stamp:
                stamp = self._last_stamp + timedelta(microseconds=1)
            self._last_stamp = stamp
        return stamp.isoformat(timespec="microseconds")

    def _publish(self, table: str, kind: str, new: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
        if self.publisher is None:
            return
        event = ChangeEvent(table=table, kind=kind, new=new, old=old or {}, committed_at=self.now())
        self.publisher.publish(event)

    # stations / roster

    def add_station(
        self,
        name: str,
        phone: str = "",
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> Station:
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO stations (name,phone,latitude,longitude) VALUES (?,?,?,?)",
                (name, phone, latitude, longitude),
            )
            station_id = cursor.lastrowid
        return Station(id=station_id, name=name, phone=phone, latitude=latitude, longitude=longitude)

    def get_station(self, station_id: int) -> Optional[Station]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM stations WHERE id=?", (station_id,)).fetchone()
        return Station(**dict(row)) if row else None

    def add_responder(
        self,
        station_id: int,
        name: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        is_active: bool = True,
    ) -> Responder:
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO dispatchers (station_id,name,latitude,longitude,is_active) VALUES (?,?,?,?,?)",
                (station_id, name, latitude, longitude, int(is_active)),
            )
            responder_id = cursor.lastrowid
        return Responder(
            id=responder_id,
            station_id=station_id,
            name=name,
            latitude=latitude,
            longitude=longitude,
            is_active=is_active,
        )

    @staticmethod
    def _responder(row: sqlite3.Row) -> Responder:
        data = dict(row)
        data["is_active"] = bool(data["is_active"])
        return Responder(**data)

    def get_responder(self, responder_id: int) -> Optional[Responder]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM dispatchers WHERE id=?", (responder_id,)).fetchone()
        return self._responder(row) if row else None

    def active_responders(self, station_id: int) -> List[Responder]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM dispatchers WHERE station_id=? AND is_active=1 ORDER BY id",
                (station_id,),
            ).fetchall()
        return [self._responder(r) for r in rows]

    def update_responder_location(self, responder_id: int, latitude: float, longitude: float) -> Optional[Responder]:
        with self._conn() as conn:
            conn.execute(
                "UPDATE dispatchers SET latitude=?, longitude=? WHERE id=?",
                (latitude, longitude, responder_id),
            )
        return self.get_responder(responder_id)

    # incidents

    def create_incident(
        self,
        incident_type: str,
        description: str,
        station_id: int,
        reported_by: str,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        address: Optional[str] = None,
    ) -> Incident:
        stamp = self.now()
        with self._conn() as conn:
            cursor = conn.execute(
                """
                INSERT INTO incidents (
                    incident_type,description,station_id,reported_by,status,latitude,longitude,address,created_at,updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (incident_type, description, station_id, reported_by, PENDING, latitude, longitude, address, stamp, stamp),
            )
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (cursor.lastrowid,)).fetchone()
        record = dict(row)
        logger.info("Created incident %s for station %s", record["id"], station_id)
        self._publish("incidents", INSERT, record)
        return Incident.from_row(record)

    def get_incident(self, incident_id: int) -> Incident:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
        if not row:
            raise IncidentNotFound(incident_id)
        return Incident.from_row(dict(row))

    def list_incidents(self, statuses: Optional[Iterable[str]] = None, **equals: Any) -> List[Incident]:
        clauses = []
        params: List[Any] = []
        for column, value in equals.items():
            if column not in INCIDENT_COLUMNS:
                raise StoreError(f"Unknown incident column {column!r}")
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column}=?")
                params.append(value)
        if statuses is not None:
            statuses = list(statuses)
            clauses.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(statuses)

        query = "SELECT * FROM incidents"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, id DESC"
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Incident.from_row(dict(r)) for r in rows]

    def update_incident(self, incident_id: int, changes: Dict[str, Any]) -> Incident:
        """Apply ``changes`` to one row as a single write, last-write-wins."""
        unknown = set(changes) - set(INCIDENT_COLUMNS) - {"id"}
        if unknown or "id" in changes:
            raise StoreError(f"Cannot update incident columns {sorted(unknown or {'id'})}")
        changes = {**changes, "updated_at": self.now()}

        assignments = ", ".join(f"{column}=?" for column in changes)
        with self._conn() as conn:
            old = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
            if not old:
                raise IncidentNotFound(incident_id)
            conn.execute(
                f"UPDATE incidents SET {assignments} WHERE id=?",
                (*changes.values(), incident_id),
            )
            new = conn.execute("SELECT * FROM incidents WHERE id=?", (incident_id,)).fetchone()
        self._publish("incidents", UPDATE, dict(new), dict(old))
        return Incident.from_row(dict(new))

    def status_counts(self) -> Dict[str, int]:
        with self._conn() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS c FROM incidents GROUP BY status").fetchall()
        return {r["status"]: r["c"] for r in rows}

    # chat

    def add_message(self, incident_id: int, sender_id: str, body: str) -> ChatMessage:
        stamp = self.now()
        with self._conn() as conn:
            cursor = conn.execute(
                "INSERT INTO chat_messages (incident_id,sender_id,body,created_at) VALUES (?,?,?,?)",
                (incident_id, sender_id, body, stamp),
            )
            message_id = cursor.lastrowid
        message = ChatMessage(id=message_id, incident_id=incident_id, sender_id=sender_id, body=body, created_at=stamp)
        self._publish(
            "chat_messages",
            INSERT,
            {"id": message_id, "incident_id": incident_id, "sender_id": sender_id, "body": body, "created_at": stamp},
        )
        return message

    def count_unread(self, incident_id: int, viewer_id: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS c FROM chat_messages m
                LEFT JOIN chat_reads r ON r.incident_id = m.incident_id AND r.viewer_id = ?
                WHERE m.incident_id = ? AND m.sender_id != ?
                  AND (r.last_read_at IS NULL OR m.created_at > r.last_read_at)
                """,
                (viewer_id, incident_id, viewer_id),
            ).fetchone()
        return int(row["c"])

    def mark_all_read(self, incident_id: int, viewer_id: str) -> None:
        stamp = self.now()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO chat_reads (incident_id,viewer_id,last_read_at) VALUES (?,?,?)
                ON CONFLICT(incident_id, viewer_id) DO UPDATE SET last_read_at=excluded.last_read_at
                """,
                (incident_id, viewer_id, stamp),
            )
