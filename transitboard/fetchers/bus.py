"""MTA Bus Time arrivals: SIRI stop/vehicle monitoring and the OneBusAway fallback."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from ..models import ArrivalRecord, Occupancy, ServiceVariant, minutes_between
from ..routes import RouteIdentity
from .client import DecodeError, FeedFetcher, FetchError


BUS_INTAKE_WINDOW: Tuple[int, int] = (-2, 120)
LIMITED_MARKERS: Tuple[str, ...] = ("LTD", "LIMITED")

logger = logging.getLogger(__name__)


@dataclass
class BusExtraction:
    arrivals: List[ArrivalRecord] = field(default_factory=list)
    vehicle_by_trip: Dict[str, Occupancy] = field(default_factory=dict)


def classify_variant(*texts: Optional[str]) -> ServiceVariant:
    for text in texts:
        upper = (text or "").upper()
        if any(marker in upper for marker in LIMITED_MARKERS):
            return ServiceVariant.LIMITED
    return ServiceVariant.LOCAL


def _first_text(value: Any) -> Optional[str]:
    # SIRI JSON renders some NL string fields as one-element lists.
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _parse_siri_time(value: Any) -> Optional[float]:
    text = _first_text(value)
    if text is None:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable SIRI timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _percentage(count: Optional[int], capacity: Optional[int]) -> Optional[int]:
    if count is None or not capacity or capacity <= 0:
        return None
    return min(100, max(0, int(math.floor(count * 100 / capacity + 0.5))))


def build_occupancy(
    status: Any = None,
    percentage: Any = None,
    passenger_count: Any = None,
    passenger_capacity: Any = None,
) -> Optional[Occupancy]:
    count = _safe_int(passenger_count)
    capacity = _safe_int(passenger_capacity)
    direct = _safe_int(percentage)
    occupancy = Occupancy(
        status=_first_text(status),
        percentage=direct if direct is not None else _percentage(count, capacity),
        passenger_count=count,
        passenger_capacity=capacity,
    )
    if occupancy == Occupancy():
        return None
    return occupancy


def _journey_occupancy(journey: Mapping[str, Any]) -> Optional[Occupancy]:
    call_extensions = _mapping(_mapping(journey.get("MonitoredCall")).get("Extensions"))
    journey_extensions = _mapping(journey.get("Extensions"))
    capacities = _mapping(call_extensions.get("Capacities")) or _mapping(
        journey_extensions.get("Capacities")
    )
    legacy = _mapping(journey_extensions.get("Occupancy"))
    return build_occupancy(
        status=journey.get("Occupancy"),
        percentage=journey.get("OccupancyPercentage", legacy.get("OccupancyPercentage")),
        passenger_count=capacities.get(
            "EstimatedPassengerCount", legacy.get("PassengerCount", journey.get("PassengerCount"))
        ),
        passenger_capacity=capacities.get("EstimatedPassengerCapacity"),
    )


def _trip_id(journey: Mapping[str, Any]) -> Optional[str]:
    framed = _mapping(journey.get("FramedVehicleJourneyRef"))
    return _first_text(framed.get("DatedVehicleJourneyRef"))


def _service_delivery(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping) or not isinstance(payload.get("Siri"), Mapping):
        raise DecodeError("SIRI response missing Siri root object.")
    return _mapping(payload["Siri"].get("ServiceDelivery"))


def _deliveries(service_delivery: Mapping[str, Any], key: str) -> List[Mapping[str, Any]]:
    deliveries = service_delivery.get(key) or []
    if isinstance(deliveries, Mapping):
        deliveries = [deliveries]
    if not isinstance(deliveries, list):
        raise DecodeError(f"SIRI {key} is not a list.")
    results: List[Mapping[str, Any]] = []
    for delivery in deliveries:
        delivery = _mapping(delivery)
        error = _mapping(delivery.get("ErrorCondition"))
        if error:
            description = _first_text(error.get("Description")) or _first_text(
                _mapping(error.get("OtherError")).get("ErrorText")
            )
            raise FetchError(f"Bus Time reported an error: {description or 'unknown error'}")
        results.append(delivery)
    return results


def _in_window(minutes: int) -> bool:
    low, high = BUS_INTAKE_WINDOW
    return low <= minutes < high


def extract_stop_monitoring(
    payload: Any,
    route: RouteIdentity,
    station: Optional[str] = None,
    now: Optional[float] = None,
) -> BusExtraction:
    """Arrivals from a SIRI ``stop-monitoring`` response.

    Returns the arrivals plus a trip id → occupancy map so records obtained
    through another call for the same trips can be hydrated later.

    Raises:
        DecodeError: the payload is not a SIRI document.
        FetchError: Bus Time answered with an ErrorCondition.
    """
    now_ts = time.time() if now is None else now
    extraction = BusExtraction()
    service_delivery = _service_delivery(payload)

    for delivery in _deliveries(service_delivery, "StopMonitoringDelivery"):
        for visit in delivery.get("MonitoredStopVisit") or []:
            journey = _mapping(_mapping(visit).get("MonitoredVehicleJourney"))
            call = _mapping(journey.get("MonitoredCall"))
            if not journey or not call:
                continue
            line_ref = _first_text(journey.get("LineRef"))
            if line_ref and not route.matches(line_ref):
                continue
            arrival_ts = _parse_siri_time(call.get("ExpectedArrivalTime")) or _parse_siri_time(
                call.get("AimedArrivalTime")
            )
            if arrival_ts is None:
                continue
            minutes = minutes_between(arrival_ts, now_ts)
            if not _in_window(minutes):
                continue

            trip_id = _trip_id(journey)
            headsign = _first_text(journey.get("DestinationName")) or ""
            occupancy = _journey_occupancy(journey)
            extraction.arrivals.append(
                ArrivalRecord(
                    route=_first_text(journey.get("PublishedLineName")) or route.canonical,
                    minutes_until=max(0, minutes),
                    predicted_at=datetime.fromtimestamp(arrival_ts, tz=timezone.utc),
                    trip_id=trip_id,
                    station=station,
                    service_variant=classify_variant(headsign),
                    headsign=headsign,
                    occupancy=occupancy,
                )
            )
            if trip_id and occupancy is not None:
                extraction.vehicle_by_trip[trip_id] = occupancy

    return extraction


def extract_vehicle_monitoring(payload: Any, route: RouteIdentity) -> Dict[str, Occupancy]:
    """Trip id → occupancy from a SIRI ``vehicle-monitoring`` response."""
    service_delivery = _service_delivery(payload)
    vehicle_by_trip: Dict[str, Occupancy] = {}
    for delivery in _deliveries(service_delivery, "VehicleMonitoringDelivery"):
        for activity in delivery.get("VehicleActivity") or []:
            journey = _mapping(_mapping(activity).get("MonitoredVehicleJourney"))
            line_ref = _first_text(journey.get("LineRef"))
            if line_ref and not route.matches(line_ref):
                continue
            trip_id = _trip_id(journey)
            occupancy = _journey_occupancy(journey)
            if trip_id and occupancy is not None:
                vehicle_by_trip[trip_id] = occupancy
    return vehicle_by_trip


def extract_stop_arrivals(
    payload: Any,
    route: RouteIdentity,
    station: Optional[str] = None,
    now: Optional[float] = None,
) -> List[ArrivalRecord]:
    """Arrivals from a OneBusAway ``arrivals-and-departures-for-stop`` response.

    These predictions carry no load data of their own; see :func:`hydrate`.
    """
    now_ts = time.time() if now is None else now
    if not isinstance(payload, Mapping):
        raise DecodeError("Arrivals response is not a JSON object.")
    code = _safe_int(payload.get("code"))
    if code is not None and code != 200:
        raise FetchError(f"Bus Time arrivals returned code {code}: {payload.get('text')}")
    data = _mapping(payload.get("data"))
    predictions = data.get("arrivalsAndDepartures")
    if predictions is None:
        predictions = _mapping(data.get("entry")).get("arrivalsAndDepartures")
    if not isinstance(predictions, list):
        raise DecodeError("Arrivals response missing arrivalsAndDepartures list.")

    arrivals: List[ArrivalRecord] = []
    for prediction in predictions:
        prediction = _mapping(prediction)
        short_name = _first_text(prediction.get("routeShortName"))
        if not (route.matches(prediction.get("routeId")) or route.matches(short_name)):
            continue
        arrival_ms = _safe_int(prediction.get("predictedArrivalTime")) or _safe_int(
            prediction.get("scheduledArrivalTime")
        )
        if not arrival_ms:
            continue
        arrival_ts = arrival_ms / 1000
        minutes = minutes_between(arrival_ts, now_ts)
        if not _in_window(minutes):
            continue

        trip_id = _first_text(prediction.get("tripId"))
        headsign = _first_text(prediction.get("tripHeadsign")) or ""
        variant = classify_variant(headsign, short_name, prediction.get("routeLongName"))
        if trip_id and ("_LTD" in trip_id or "_Limited" in trip_id):
            variant = ServiceVariant.LIMITED
        arrivals.append(
            ArrivalRecord(
                route=short_name or route.canonical,
                minutes_until=max(0, minutes),
                predicted_at=datetime.fromtimestamp(arrival_ts, tz=timezone.utc),
                trip_id=trip_id,
                station=station,
                service_variant=variant,
                headsign=headsign,
                occupancy=build_occupancy(
                    status=prediction.get("occupancyStatus"),
                    percentage=prediction.get("occupancyPercentage"),
                ),
            )
        )
    return arrivals


def hydrate(
    records: Iterable[ArrivalRecord],
    vehicle_by_trip: Mapping[str, Occupancy],
) -> List[ArrivalRecord]:
    """Fill occupancy missing from ``records`` using a trip id → occupancy map."""
    hydrated: List[ArrivalRecord] = []
    for record in records:
        known = vehicle_by_trip.get(record.trip_id) if record.trip_id else None
        if known is None:
            hydrated.append(record)
            continue
        occupancy = record.occupancy.merged_with(known) if record.occupancy else known
        hydrated.append(replace(record, occupancy=occupancy))
    return hydrated


class BusTimeSource:
    """Fetches and extracts Bus Time data for one route/stop at a time."""

    def __init__(
        self,
        fetcher: FeedFetcher,
        api_key: str,
        siri_url: str,
        oba_url: str,
    ) -> None:
        self._fetcher = fetcher
        self._api_key = api_key
        self._siri_url = siri_url.rstrip("/")
        self._oba_url = oba_url.rstrip("/")

    def stop_monitoring(
        self,
        route: RouteIdentity,
        stop_id: str,
        station: Optional[str] = None,
        now: Optional[float] = None,
    ) -> BusExtraction:
        payload = self._fetcher.fetch_json(
            f"{self._siri_url}/stop-monitoring.json",
            params={
                "key": self._api_key,
                "MonitoringRef": stop_id,
                "LineRef": route.line_ref,
            },
        )
        return extract_stop_monitoring(payload, route, station=station, now=now)

    def vehicle_monitoring(self, route: RouteIdentity) -> Dict[str, Occupancy]:
        payload = self._fetcher.fetch_json(
            f"{self._siri_url}/vehicle-monitoring.json",
            params={
                "key": self._api_key,
                "VehicleMonitoringDetailLevel": "calls",
                "LineRef": route.line_ref,
            },
        )
        return extract_vehicle_monitoring(payload, route)

    def stop_arrivals(
        self,
        route: RouteIdentity,
        stop_id: str,
        station: Optional[str] = None,
        now: Optional[float] = None,
    ) -> List[ArrivalRecord]:
        payload = self._fetcher.fetch_json(
            f"{self._oba_url}/arrivals-and-departures-for-stop/{stop_id}.json",
            params={
                "key": self._api_key,
                "includePolylines": "false",
                "minutesBefore": 5,
                "minutesAfter": 120,
            },
        )
        return extract_stop_arrivals(payload, route, station=station, now=now)

    def stop_with_fallback(
        self,
        route: RouteIdentity,
        stop_id: str,
        station: Optional[str] = None,
        now: Optional[float] = None,
    ) -> BusExtraction:
        """SIRI first; when it has nothing, OneBusAway hydrated from vehicle monitoring."""
        extraction = self.stop_monitoring(route, stop_id, station=station, now=now)
        if extraction.arrivals:
            return extraction

        logger.info("No SIRI arrivals for %s at %s; trying arrivals fallback.", route.canonical, stop_id)
        records = self.stop_arrivals(route, stop_id, station=station, now=now)
        vehicle_by_trip = dict(extraction.vehicle_by_trip)
        if records:
            try:
                vehicle_by_trip.update(self.vehicle_monitoring(route))
            except (FetchError, DecodeError) as exc:
                logger.warning("Vehicle monitoring unavailable for %s: %s", route.canonical, exc)
        return BusExtraction(arrivals=hydrate(records, vehicle_by_trip), vehicle_by_trip=vehicle_by_trip)
