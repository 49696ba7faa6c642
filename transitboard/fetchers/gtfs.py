"""Decoding of GTFS-Realtime protobuf feeds into plain, immutable records."""

from __future__ import annotations

import gzip
import logging
import zlib
from dataclasses import dataclass
from typing import List, Optional, Tuple

from google.protobuf.message import DecodeError as ProtobufDecodeError
from google.transit import gtfs_realtime_pb2

from ..models import Occupancy
from .client import DecodeError


GZIP_MAGIC = b"\x1f\x8b"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StopTimePrediction:
    stop_id: str
    arrival_time: Optional[int]
    departure_time: Optional[int]

    @property
    def time(self) -> Optional[int]:
        return self.arrival_time if self.arrival_time is not None else self.departure_time


@dataclass(frozen=True)
class TripUpdateRecord:
    trip_id: str
    route_id: str
    direction_id: Optional[int]
    stop_times: Tuple[StopTimePrediction, ...]


@dataclass(frozen=True)
class VehiclePositionRecord:
    trip_id: str
    route_id: str
    occupancy: Optional[Occupancy]


@dataclass(frozen=True)
class DecodedFeed:
    timestamp: int
    vehicles: Tuple[VehiclePositionRecord, ...]
    trip_updates: Tuple[TripUpdateRecord, ...]


def _event_time(message, field: str) -> Optional[int]:
    if not message.HasField(field):
        return None
    event = getattr(message, field)
    if not event.HasField("time") or event.time <= 0:
        return None
    return int(event.time)


def _decode_occupancy(vehicle) -> Optional[Occupancy]:
    has_status = vehicle.HasField("occupancy_status")
    has_percentage = vehicle.HasField("occupancy_percentage")
    if not has_status and not has_percentage:
        return None
    status = None
    if has_status:
        status = gtfs_realtime_pb2.VehiclePosition.OccupancyStatus.Name(vehicle.occupancy_status)
    return Occupancy(
        status=status,
        percentage=int(vehicle.occupancy_percentage) if has_percentage else None,
    )


def _decode_trip_update(trip_update) -> TripUpdateRecord:
    trip = trip_update.trip
    stop_times = tuple(
        StopTimePrediction(
            stop_id=update.stop_id,
            arrival_time=_event_time(update, "arrival"),
            departure_time=_event_time(update, "departure"),
        )
        for update in trip_update.stop_time_update
    )
    return TripUpdateRecord(
        trip_id=trip.trip_id,
        route_id=trip.route_id,
        direction_id=trip.direction_id if trip.HasField("direction_id") else None,
        stop_times=stop_times,
    )


def decode_feed(raw: bytes) -> DecodedFeed:
    """Parse a GTFS-Realtime ``FeedMessage`` buffer.

    Raises:
        DecodeError: the buffer is truncated, malformed, or is missing fields
            the GTFS-Realtime schema marks as required.
    """
    if raw[:2] == GZIP_MAGIC:
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError, zlib.error) as exc:
            raise DecodeError(f"Corrupt gzip feed body: {exc}") from exc

    message = gtfs_realtime_pb2.FeedMessage()
    try:
        message.ParseFromString(raw)
    except ProtobufDecodeError as exc:
        raise DecodeError(f"Malformed GTFS-Realtime feed: {exc}") from exc
    if not message.IsInitialized():
        missing = ", ".join(message.FindInitializationErrors())
        raise DecodeError(f"GTFS-Realtime feed missing required fields: {missing}")

    vehicles: List[VehiclePositionRecord] = []
    trip_updates: List[TripUpdateRecord] = []
    for entity in message.entity:
        if entity.HasField("vehicle") and entity.vehicle.HasField("trip"):
            vehicle = entity.vehicle
            vehicles.append(
                VehiclePositionRecord(
                    trip_id=vehicle.trip.trip_id,
                    route_id=vehicle.trip.route_id,
                    occupancy=_decode_occupancy(vehicle),
                )
            )
        if entity.HasField("trip_update"):
            trip_updates.append(_decode_trip_update(entity.trip_update))

    logger.debug(
        "Decoded feed: %s vehicles, %s trip updates",
        len(vehicles),
        len(trip_updates),
    )
    return DecodedFeed(
        timestamp=int(message.header.timestamp),
        vehicles=tuple(vehicles),
        trip_updates=tuple(trip_updates),
    )
