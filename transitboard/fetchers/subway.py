"""Subway arrivals extracted from a decoded GTFS-Realtime feed."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from ..models import ArrivalRecord, Connection, Occupancy, minutes_between
from ..routes import RouteIdentity
from .gtfs import DecodedFeed, StopTimePrediction, TripUpdateRecord


RAIL_INTAKE_WINDOW: Tuple[int, int] = (0, 60)

# GTFS direction_id the MTA uses for northbound (Manhattan-bound) trips.
NORTHBOUND_DIRECTION_ID = 1

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopMatcher:
    """Decides whether a stop-time update belongs to the monitored platform.

    With no ``tokens`` the stop id must equal ``stop_id``. With tokens, every
    token must appear in the stop id and the direction must agree: either the
    id carries ``direction_marker`` or the trip's ``direction_id`` equals
    ``direction_id``.
    """

    stop_id: str
    tokens: Tuple[str, ...] = ()
    direction_marker: Optional[str] = "N"
    direction_id: Optional[int] = NORTHBOUND_DIRECTION_ID

    def matches(self, stop_id: str, trip_direction_id: Optional[int] = None) -> bool:
        if not stop_id:
            return False
        if not self.tokens:
            return stop_id == self.stop_id
        if not all(token in stop_id for token in self.tokens):
            return False
        if self.direction_marker and self.direction_marker in stop_id:
            return True
        return self.direction_id is not None and trip_direction_id == self.direction_id


@dataclass(frozen=True)
class ConnectionStop:
    stop_id: str
    label: str


def collect_occupancy(feed: DecodedFeed, route: RouteIdentity) -> Dict[str, Occupancy]:
    occupancy_by_trip: Dict[str, Occupancy] = {}
    for vehicle in feed.vehicles:
        if not vehicle.trip_id or not route.matches(vehicle.route_id):
            continue
        # EMPTY is a reported status, not an absent one.
        if vehicle.occupancy is not None:
            occupancy_by_trip[vehicle.trip_id] = vehicle.occupancy
    return occupancy_by_trip


def _find_connection(
    stop_times: Sequence[StopTimePrediction],
    connection: ConnectionStop,
    primary_minutes: int,
    now: float,
) -> Optional[Connection]:
    for update in stop_times:
        if update.stop_id != connection.stop_id or update.time is None:
            continue
        minutes = minutes_between(update.time, now)
        if minutes > primary_minutes:
            return Connection(minutes_until=minutes, label=connection.label)
        logger.debug(
            "Dropping connection at %s: %s min is not after %s min",
            connection.stop_id,
            minutes,
            primary_minutes,
        )
        return None
    return None


def _trip_arrivals(
    trip: TripUpdateRecord,
    route: RouteIdentity,
    matcher: StopMatcher,
    connection: Optional[ConnectionStop],
    occupancy: Optional[Occupancy],
    station: Optional[str],
    now: float,
) -> List[ArrivalRecord]:
    low, high = RAIL_INTAKE_WINDOW
    records: List[ArrivalRecord] = []
    for index, update in enumerate(trip.stop_times):
        if not matcher.matches(update.stop_id, trip.direction_id):
            continue
        arrival_ts = update.time
        if arrival_ts is None:
            continue
        minutes = minutes_between(arrival_ts, now)
        if not low <= minutes < high:
            continue
        connection_eta = None
        if connection is not None:
            connection_eta = _find_connection(
                trip.stop_times[index + 1 :], connection, minutes, now
            )
        records.append(
            ArrivalRecord(
                route=route.canonical,
                minutes_until=minutes,
                predicted_at=datetime.fromtimestamp(arrival_ts, tz=timezone.utc),
                trip_id=trip.trip_id or None,
                station=station,
                occupancy=occupancy,
                connection=connection_eta,
            )
        )
    return records


def extract_arrivals(
    feed: DecodedFeed,
    route: RouteIdentity,
    matcher: StopMatcher,
    connection: Optional[ConnectionStop] = None,
    station: Optional[str] = None,
    now: Optional[float] = None,
) -> List[ArrivalRecord]:
    """Arrivals of ``route`` at the platform selected by ``matcher``.

    Every matching stop-time update yields its own record, even when one trip
    matches twice; de-duplication and ordering happen later in the rules.
    """
    now_ts = time.time() if now is None else now
    occupancy_by_trip = collect_occupancy(feed, route)

    arrivals: List[ArrivalRecord] = []
    for trip in feed.trip_updates:
        if not route.matches(trip.route_id):
            continue
        arrivals.extend(
            _trip_arrivals(
                trip,
                route,
                matcher,
                connection,
                occupancy_by_trip.get(trip.trip_id),
                station,
                now_ts,
            )
        )

    logger.debug(
        "Route %s at %s: %s arrivals",
        route.canonical,
        matcher.stop_id,
        len(arrivals),
    )
    return arrivals
