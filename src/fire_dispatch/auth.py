from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta

from fastapi import HTTPException, status

from fire_dispatch.config import SECRET_KEY, TOKEN_EXPIRE_HOURS
from fire_dispatch.models import DISPATCHER, ROLES, Session


def create_token(payload: dict) -> str:
    exp = (datetime.utcnow() + timedelta(hours=TOKEN_EXPIRE_HOURS)).timestamp()
    body = {**payload, "exp": exp}
    raw = json.dumps(body, separators=(",", ":")).encode()
    b64 = base64.urlsafe_b64encode(raw).decode().rstrip("=")
    sig = hmac.new(SECRET_KEY.encode(), b64.encode(), hashlib.sha256).hexdigest()
    return f"{b64}.{sig}"


def session_token(session: Session) -> str:
    return create_token({"user_id": session.user_id, "role": session.role, "station_id": session.station_id})


def decode_token(token: str) -> dict:
    try:
        b64, sig = token.split(".")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    expected = hmac.new(SECRET_KEY.encode(), b64.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(sig, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    padded = b64 + "=" * (-len(b64) % 4)
    payload = json.loads(base64.urlsafe_b64decode(padded.encode()).decode())
    if datetime.utcnow().timestamp() > payload.get("exp", 0):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    return payload


def session_from_token(token: str) -> Session:
    payload = decode_token(token)
    role = payload.get("role")
    if role not in ROLES or not payload.get("user_id"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token carries no session")
    if role == DISPATCHER and not str(payload["user_id"]).isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Dispatcher token needs a numeric user_id")
    station_id = payload.get("station_id")
    return Session(
        role=role,
        user_id=str(payload["user_id"]),
        station_id=int(station_id) if station_id is not None else None,
    )
