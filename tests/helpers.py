"""Builders for GTFS-Realtime and Bus Time payloads used across the tests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from google.transit import gtfs_realtime_pb2

from transitboard.fetchers.client import FetchError


NOW = 1_700_000_000.0

BDFM_URL = "https://feeds.test/gtfs-bdfm"
NQRW_URL = "https://feeds.test/gtfs-nqrw"
IRT_URL = "https://feeds.test/gtfs"


def trip(
    trip_id: str,
    route_id: str,
    stops: Sequence[Tuple[str, int]],
    direction_id: Optional[int] = None,
) -> Dict[str, Any]:
    return {"trip_id": trip_id, "route_id": route_id, "stops": stops, "direction_id": direction_id}


def vehicle(
    trip_id: str,
    route_id: str,
    status: Optional[int] = None,
    percentage: Optional[int] = None,
) -> Dict[str, Any]:
    return {"trip_id": trip_id, "route_id": route_id, "status": status, "percentage": percentage}


def build_feed(
    trips: Sequence[Mapping[str, Any]] = (),
    vehicles: Sequence[Mapping[str, Any]] = (),
    timestamp: float = NOW,
) -> bytes:
    """Serialized FeedMessage; stop offsets are seconds relative to NOW."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.timestamp = int(timestamp)
    for index, spec in enumerate(vehicles):
        entity = feed.entity.add()
        entity.id = f"vehicle-{index}"
        entity.vehicle.trip.trip_id = spec["trip_id"]
        entity.vehicle.trip.route_id = spec["route_id"]
        if spec.get("status") is not None:
            entity.vehicle.occupancy_status = spec["status"]
        if spec.get("percentage") is not None:
            entity.vehicle.occupancy_percentage = spec["percentage"]
    for index, spec in enumerate(trips):
        entity = feed.entity.add()
        entity.id = f"trip-{index}"
        descriptor = entity.trip_update.trip
        descriptor.trip_id = spec["trip_id"]
        descriptor.route_id = spec["route_id"]
        if spec.get("direction_id") is not None:
            descriptor.direction_id = spec["direction_id"]
        for stop_id, offset in spec["stops"]:
            update = entity.trip_update.stop_time_update.add()
            update.stop_id = stop_id
            update.arrival.time = int(NOW + offset)
    return feed.SerializeToString()


def iso(offset_seconds: float) -> str:
    return datetime.fromtimestamp(NOW + offset_seconds, tz=timezone.utc).isoformat()


def siri_visit(
    offset_seconds: Optional[float],
    destination: str = "DOWNTOWN BKLYN CADMAN PLZ",
    trip_id: Optional[str] = "T1",
    line: str = "B41",
    occupancy: Optional[str] = None,
    count: Optional[int] = None,
    capacity: Optional[int] = None,
    aimed_offset_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    call: Dict[str, Any] = {}
    if offset_seconds is not None:
        call["ExpectedArrivalTime"] = iso(offset_seconds)
    if aimed_offset_seconds is not None:
        call["AimedArrivalTime"] = iso(aimed_offset_seconds)
    capacities = {}
    if count is not None:
        capacities["EstimatedPassengerCount"] = count
    if capacity is not None:
        capacities["EstimatedPassengerCapacity"] = capacity
    if capacities:
        call["Extensions"] = {"Capacities": capacities}
    journey: Dict[str, Any] = {
        "LineRef": f"MTA NYCT_{line}",
        "PublishedLineName": line,
        "DestinationName": destination,
        "MonitoredCall": call,
    }
    if trip_id is not None:
        journey["FramedVehicleJourneyRef"] = {"DatedVehicleJourneyRef": trip_id}
    if occupancy is not None:
        journey["Occupancy"] = occupancy
    return {"MonitoredVehicleJourney": journey}


def stop_monitoring(*visits: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "Siri": {
            "ServiceDelivery": {
                "StopMonitoringDelivery": [{"MonitoredStopVisit": list(visits)}],
            }
        }
    }


def vehicle_monitoring(*journeys: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "Siri": {
            "ServiceDelivery": {
                "VehicleMonitoringDelivery": [
                    {"VehicleActivity": [{"MonitoredVehicleJourney": j} for j in journeys]}
                ],
            }
        }
    }


def oba_prediction(
    offset_seconds: Optional[float],
    trip_id: str = "MTA NYCT_FB_B49-1",
    route_id: str = "MTA NYCT_B49",
    short_name: str = "B49",
    headsign: str = "BED STUY FULTON ST",
    scheduled_offset_seconds: Optional[float] = None,
) -> Dict[str, Any]:
    return {
        "routeId": route_id,
        "routeShortName": short_name,
        "tripId": trip_id,
        "tripHeadsign": headsign,
        "predictedArrivalTime": 0 if offset_seconds is None else int((NOW + offset_seconds) * 1000),
        "scheduledArrivalTime": (
            0 if scheduled_offset_seconds is None else int((NOW + scheduled_offset_seconds) * 1000)
        ),
    }


def oba_arrivals(*predictions: Mapping[str, Any]) -> Dict[str, Any]:
    return {"code": 200, "text": "OK", "data": {"entry": {"arrivalsAndDepartures": list(predictions)}}}


JsonHandler = Callable[[str, Mapping[str, Any]], Any]


class FakeFetcher:
    """Stands in for FeedFetcher; records every call it receives."""

    def __init__(
        self,
        feeds: Optional[Mapping[str, Any]] = None,
        json_handler: Optional[JsonHandler] = None,
    ) -> None:
        self.feeds = dict(feeds or {})
        self.json_handler = json_handler
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []

    def fetch_bytes(self, url: str) -> bytes:
        self.calls.append(("bytes", url, {}))
        value = self.feeds.get(url)
        if value is None:
            raise FetchError(f"no feed for {url}")
        if isinstance(value, Exception):
            raise value
        return value

    def fetch_json(self, url: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        self.calls.append(("json", url, dict(params or {})))
        if self.json_handler is None:
            raise FetchError(f"no handler for {url}")
        value = self.json_handler(url, dict(params or {}))
        if isinstance(value, Exception):
            raise value
        return value

    def json_calls(self) -> List[Tuple[str, str, Dict[str, Any]]]:
        return [call for call in self.calls if call[0] == "json"]
