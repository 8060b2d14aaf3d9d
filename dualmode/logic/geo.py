"""Geographic helpers for test data.

Straight-line (haversine) distances on a spherical earth, used to check the
documented nearest-route assignments of fixture bundles.
"""

from __future__ import annotations

import math
from typing import Dict, Iterable, Optional, Sequence

from dualmode.models.records import TestRoute, TestTicket

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def nearest_route(ticket: TestTicket, routes: Iterable[TestRoute], require_capacity: bool = False) -> Optional[TestRoute]:
    """Return the closest route to `ticket`; ties keep the earlier route."""
    if ticket.latitude is None or ticket.longitude is None:
        return None
    best: Optional[TestRoute] = None
    best_distance = math.inf
    for route in routes:
        if route.latitude is None or route.longitude is None:
            continue
        remaining = route.remaining_capacity
        # Unknown capacity is not treated as full
        if require_capacity and remaining is not None and remaining <= 0:
            continue
        distance = haversine_km(ticket.latitude, ticket.longitude, route.latitude, route.longitude)
        if distance < best_distance:
            best, best_distance = route, distance
    return best


def assign_nearest(tickets: Sequence[TestTicket], routes: Sequence[TestRoute], require_capacity: bool = False) -> Dict[str, Optional[str]]:
    """Map each ticket id to the id of its nearest route (or None)."""
    assignments: Dict[str, Optional[str]] = {}
    for ticket in tickets:
        route = nearest_route(ticket, routes, require_capacity=require_capacity)
        assignments[ticket.id] = route.id if route is not None else None
    return assignments


__all__ = ["EARTH_RADIUS_KM", "haversine_km", "nearest_route", "assign_nearest"]
