"""Per-line display rules applied to extracted arrivals.

Everything here is a pure function of its inputs: no I/O, no shared state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .models import ArrivalRecord, ServiceVariant


DEFAULT_HORIZON_MINUTES = 30

# Destination text for one direction is not spelled consistently upstream.
DEFAULT_DIRECTION_ALIASES: Dict[str, Tuple[str, ...]] = {
    "fulton": ("bed stuy", "bed-stuy", "bedford-stuyvesant"),
    "cadman plaza": ("cadman", "downtown"),
}

logger = logging.getLogger(__name__)


class VariantPolicy(str, Enum):
    FORCE = "force"
    FILTER = "filter"


@dataclass(frozen=True)
class VariantRule:
    """Service-variant override for one physical stop.

    ``force`` keeps every record and relabels it with ``variant``; ``filter``
    drops records whose variant differs from ``variant``.
    """

    policy: VariantPolicy
    variant: ServiceVariant

    def resolve(self, raw: Optional[ServiceVariant]) -> Optional[ServiceVariant]:
        """Final variant for a record, or ``None`` when the record is dropped."""
        if self.policy is VariantPolicy.FORCE:
            return self.variant
        return raw if raw is self.variant else None


def sort_and_cap(
    records: Iterable[ArrivalRecord],
    max_minutes: int = DEFAULT_HORIZON_MINUTES,
) -> List[ArrivalRecord]:
    # sorted() is stable, so equal times keep the caller's precedence.
    ordered = sorted(records, key=lambda record: record.minutes_until)
    return [record for record in ordered if record.minutes_until <= max_minutes]


def dedupe_by_trip(*record_lists: Sequence[ArrivalRecord]) -> List[ArrivalRecord]:
    """Concatenate ``record_lists`` keeping only the first record of each trip.

    Records without a trip id are always kept. Callers choose precedence by
    argument order.
    """
    seen: Set[str] = set()
    unique: List[ArrivalRecord] = []
    for records in record_lists:
        for record in records:
            if record.trip_id:
                if record.trip_id in seen:
                    continue
                seen.add(record.trip_id)
            unique.append(record)
    return unique


def apply_variant_rule(
    records: Iterable[ArrivalRecord],
    rule: Optional[VariantRule],
) -> List[ArrivalRecord]:
    if rule is None:
        return list(records)
    results: List[ArrivalRecord] = []
    for record in records:
        variant = rule.resolve(record.service_variant)
        if variant is None:
            continue
        if variant is not record.service_variant:
            record = replace(record, service_variant=variant)
        results.append(record)
    return results


def filter_by_headsign_direction(
    records: Iterable[ArrivalRecord],
    direction: Optional[str],
    aliases: Mapping[str, Sequence[str]] = DEFAULT_DIRECTION_ALIASES,
) -> List[ArrivalRecord]:
    if not direction:
        return list(records)
    token = direction.strip().lower()
    tokens = {token, *(alias.lower() for alias in aliases.get(token, ()))}
    return [
        record
        for record in records
        if any(candidate in (record.headsign or "").lower() for candidate in tokens)
    ]


def label_station(records: Iterable[ArrivalRecord], station: str) -> List[ArrivalRecord]:
    return [
        record if record.station == station else replace(record, station=station)
        for record in records
    ]


def combine_sources(
    sources: Sequence[Sequence[ArrivalRecord]],
    max_minutes: int = DEFAULT_HORIZON_MINUTES,
    max_results: Optional[int] = None,
) -> List[ArrivalRecord]:
    """Merge the per-stop lists of one line into its display list.

    ``sources`` must already be labelled and filtered per stop and ordered by
    preference; the first list wins trip duplicates.
    """
    unique = dedupe_by_trip(*sources)
    capped = sort_and_cap(unique, max_minutes)
    if max_results is not None:
        capped = capped[:max_results]
    logger.debug("Combined %s sources into %s arrivals", len(sources), len(capped))
    return capped
