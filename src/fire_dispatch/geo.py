from __future__ import annotations

import math
from typing import Iterable, List, Optional

from fire_dispatch.models import AssignmentResult, Coordinates, Responder

EARTH_RADIUS_KM = 6371.0


def haversine_km(origin: Coordinates, target: Coordinates) -> float:
    lat1, lon1 = math.radians(origin.latitude), math.radians(origin.longitude)
    lat2, lon2 = math.radians(target.latitude), math.radians(target.longitude)
    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def eligible_responders(roster: Iterable[Responder]) -> List[Responder]:
    return [r for r in roster if r.is_active and r.location is not None]


def nearest_responder(
    location: Optional[Coordinates],
    roster: Iterable[Responder],
) -> Optional[AssignmentResult]:
    """Closest active responder with a known position, or None.

    Equal distances go to the lowest responder id.
    """
    if location is None:
        return None

    best: Optional[Responder] = None
    best_key = None
    best_distance = 0.0
    for responder in eligible_responders(roster):
        distance = haversine_km(location, responder.location)
        key = (distance, responder.id)
        if best_key is None or key < best_key:
            best, best_key, best_distance = responder, key, distance

    if best is None:
        return None
    return AssignmentResult(responder=best, distance_km=round(best_distance, 2))


def fallback_responder(roster: Iterable[Responder]) -> Optional[AssignmentResult]:
    """First active responder by id when no distance can be computed."""
    active = sorted((r for r in roster if r.is_active), key=lambda r: r.id)
    if not active:
        return None
    return AssignmentResult(responder=active[0], distance_km=None)
