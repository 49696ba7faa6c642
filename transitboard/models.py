from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union


class ServiceVariant(str, Enum):
    LOCAL = "Local"
    LIMITED = "Limited"


@dataclass(frozen=True)
class Occupancy:
    """Load data reported for one vehicle.

    A record without any occupancy carries ``None`` instead of an instance of
    this class, so a reported "EMPTY" status or a zero count is always
    distinguishable from "nothing reported". Subway feeds are known to report
    EMPTY for every train; consumers may use :attr:`is_reported_empty` to hide
    that value.
    """

    status: Optional[str] = None
    percentage: Optional[int] = None
    passenger_count: Optional[int] = None
    passenger_capacity: Optional[int] = None

    def authoritative(self) -> Optional[Tuple[str, Union[int, str]]]:
        # Absolute count beats percentage, percentage beats coarse status.
        if self.passenger_count is not None:
            return ("passenger_count", self.passenger_count)
        if self.percentage is not None:
            return ("percentage", self.percentage)
        if self.status is not None:
            return ("status", self.status)
        return None

    @property
    def is_reported_empty(self) -> bool:
        source = self.authoritative()
        if source is None:
            return False
        _, value = source
        return value == 0 or str(value).upper() == "EMPTY"

    def merged_with(self, other: "Occupancy") -> "Occupancy":
        """Fill fields missing here from ``other``."""
        return Occupancy(
            status=self.status if self.status is not None else other.status,
            percentage=self.percentage if self.percentage is not None else other.percentage,
            passenger_count=(
                self.passenger_count if self.passenger_count is not None else other.passenger_count
            ),
            passenger_capacity=(
                self.passenger_capacity
                if self.passenger_capacity is not None
                else other.passenger_capacity
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        source = self.authoritative()
        return {
            "status": self.status,
            "percentage": self.percentage,
            "passenger_count": self.passenger_count,
            "passenger_capacity": self.passenger_capacity,
            "source": source[0] if source else None,
            "reported_empty": self.is_reported_empty,
        }


@dataclass(frozen=True)
class Connection:
    minutes_until: int
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"minutes_until": self.minutes_until, "label": self.label}


@dataclass(frozen=True)
class ArrivalRecord:
    route: str
    minutes_until: int
    predicted_at: datetime
    trip_id: Optional[str] = None
    station: Optional[str] = None
    service_variant: Optional[ServiceVariant] = None
    headsign: Optional[str] = None
    occupancy: Optional[Occupancy] = None
    connection: Optional[Connection] = None

    def __post_init__(self) -> None:
        if self.minutes_until < 0:
            raise ValueError(f"minutes_until must be >= 0, got {self.minutes_until}")
        if self.connection is not None and self.connection.minutes_until <= self.minutes_until:
            raise ValueError(
                f"connection at {self.connection.minutes_until} min is not after "
                f"arrival at {self.minutes_until} min"
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "route": self.route,
            "minutes_until": self.minutes_until,
            "predicted_at": self.predicted_at.isoformat(),
            "trip_id": self.trip_id,
            "station": self.station,
            "service_variant": self.service_variant.value if self.service_variant else None,
            "headsign": self.headsign,
            "occupancy": self.occupancy.to_dict() if self.occupancy else None,
            "connection": self.connection.to_dict() if self.connection else None,
        }


def minutes_between(target_epoch: float, now_epoch: float) -> int:
    """Signed whole minutes from ``now_epoch`` to ``target_epoch``, halves rounded up."""
    return int(math.floor((target_epoch - now_epoch) / 60 + 0.5))
