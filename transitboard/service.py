from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import BoardConfig, BusGroup, BusStopTarget, SubwayGroup, load_config
from .fetchers.bus import BusExtraction, BusTimeSource, hydrate
from .fetchers.client import DecodeError, FeedFetcher, FetchError
from .fetchers.gtfs import DecodedFeed, decode_feed
from .fetchers.subway import extract_arrivals
from .models import ArrivalRecord, Occupancy
from .rules import apply_variant_rule, combine_sources, filter_by_headsign_direction, label_station


MAX_WORKERS = 8

logger = logging.getLogger(__name__)


class ArrivalsUnavailableError(RuntimeError):
    """Every upstream request of an aggregation call failed."""

    def __init__(self, warnings: Sequence[str]) -> None:
        super().__init__(f"All arrival sources failed: {', '.join(warnings) or 'none'}")
        self.warnings = list(warnings)


@dataclass
class ArrivalsSnapshot:
    subway: Dict[str, List[ArrivalRecord]]
    buses: Dict[str, List[ArrivalRecord]]
    generated_at: datetime
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subway": {key: [r.to_dict() for r in records] for key, records in self.subway.items()},
            "buses": {key: [r.to_dict() for r in records] for key, records in self.buses.items()},
            "warnings": list(self.warnings),
            "timestamp": self.generated_at.isoformat(),
        }


@dataclass
class _Outcome:
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def _resolve(future: Future, description: str) -> _Outcome:
    try:
        return _Outcome(value=future.result())
    except (FetchError, DecodeError) as exc:
        logger.warning("%s unavailable: %s", description, exc)
        return _Outcome(error=exc)
    except Exception as exc:  # One broken source must not sink the others.
        logger.exception("Unexpected error loading %s", description)
        return _Outcome(error=exc)


def _warn(warnings: List[str], token: str) -> None:
    if token not in warnings:
        warnings.append(token)


def _load_bus_stop(
    source: BusTimeSource,
    group: BusGroup,
    stop: BusStopTarget,
    now: float,
) -> BusExtraction:
    if stop.fallback:
        return source.stop_with_fallback(group.route, stop.stop_id, station=stop.location, now=now)
    return source.stop_monitoring(group.route, stop.stop_id, station=stop.location, now=now)


class AggregationService:
    """Builds one arrivals snapshot per call from every configured source.

    Upstream requests run concurrently on a short-lived thread pool; extraction
    and rules run afterwards on the calling thread. Nothing is cached between
    calls.
    """

    def __init__(
        self,
        config: BoardConfig,
        fetcher: Optional[FeedFetcher] = None,
        clock: Callable[[], float] = time.time,
        max_workers: int = MAX_WORKERS,
    ) -> None:
        self._config = config
        self._fetcher = fetcher or FeedFetcher(
            timeout_seconds=config.request_timeout_seconds,
            feed_api_key=config.feed_api_key,
        )
        self._clock = clock
        self._max_workers = max(1, max_workers)
        self._bus_source: Optional[BusTimeSource] = None
        if config.has_bus_api_key:
            self._bus_source = BusTimeSource(
                self._fetcher,
                api_key=config.bus_api_key or "",
                siri_url=config.siri_url,
                oba_url=config.oba_url,
            )
        elif config.bus_groups:
            logger.info("BUS_TIME_API_KEY is not set; bus arrivals disabled.")

    @property
    def config(self) -> BoardConfig:
        return self._config

    def get_all_arrivals(self) -> ArrivalsSnapshot:
        """Fetch, extract and apply rules for every subway and bus group.

        Raises:
            ArrivalsUnavailableError: every upstream request failed. A partial
                failure only adds warning tokens to the snapshot.
        """
        now = self._clock()
        bus_source = self._bus_source
        bus_jobs: List[Tuple[BusGroup, int, BusStopTarget]] = []
        if bus_source is not None:
            bus_jobs = [
                (group, index, stop)
                for group in self._config.bus_groups
                for index, stop in enumerate(group.stops)
            ]

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            feed_futures = {
                url: pool.submit(self._load_feed, url, now) for url in self._config.feed_urls()
            }
            bus_futures = {
                (group.id, index): pool.submit(_load_bus_stop, bus_source, group, stop, now)
                for group, index, stop in bus_jobs
            }
            feeds = {url: _resolve(future, f"Feed {url}") for url, future in feed_futures.items()}
            bus_outcomes = {
                key: _resolve(future, f"Bus {key[0]} stop #{key[1]}")
                for key, future in bus_futures.items()
            }

        warnings: List[str] = []
        subway = {
            group.id: self._subway_group(group, feeds, now, warnings)
            for group in self._config.subway_groups
        }
        buses = {
            group.id: self._bus_group(group, bus_outcomes, warnings)
            for group in self._config.bus_groups
        }

        outcomes = [*feeds.values(), *bus_outcomes.values()]
        if outcomes and all(outcome.failed for outcome in outcomes):
            raise ArrivalsUnavailableError(warnings)

        return ArrivalsSnapshot(
            subway=subway,
            buses=buses,
            generated_at=datetime.fromtimestamp(now, tz=timezone.utc),
            warnings=warnings,
        )

    def _load_feed(self, url: str, now: float) -> DecodedFeed:
        feed = decode_feed(self._fetcher.fetch_bytes(url))
        age = now - feed.timestamp
        if feed.timestamp and age > self._config.stale_threshold_seconds:
            logger.warning("Feed %s is stale: generated %ss ago.", url, int(age))
        return feed

    def _subway_group(
        self,
        group: SubwayGroup,
        feeds: Dict[str, _Outcome],
        now: float,
        warnings: List[str],
    ) -> List[ArrivalRecord]:
        sources: List[List[ArrivalRecord]] = []
        for target in group.targets:
            outcome = feeds[target.feed_url]
            if outcome.failed:
                _warn(warnings, f"subway.{group.id}")
                continue
            try:
                sources.append(
                    extract_arrivals(
                        outcome.value,
                        target.route,
                        target.matcher,
                        connection=target.connection,
                        station=group.label,
                        now=now,
                    )
                )
            except Exception:  # Keep the other routes of this station.
                logger.exception(
                    "Failed to extract %s arrivals for %s", target.route.canonical, group.label
                )
                _warn(warnings, f"subway.{group.id}")
        return combine_sources(sources, group.horizon_minutes, group.max_results)

    def _bus_group(
        self,
        group: BusGroup,
        outcomes: Dict[Tuple[str, int], _Outcome],
        warnings: List[str],
    ) -> List[ArrivalRecord]:
        if self._bus_source is None:
            return []

        sources: List[List[ArrivalRecord]] = []
        vehicle_by_trip: Dict[str, Occupancy] = {}
        for index, stop in enumerate(group.stops):
            outcome = outcomes[(group.id, index)]
            if outcome.failed:
                _warn(warnings, f"bus.{group.id}")
                continue
            extraction: BusExtraction = outcome.value
            vehicle_by_trip.update(extraction.vehicle_by_trip)
            records = label_station(extraction.arrivals, stop.location)
            records = filter_by_headsign_direction(
                records, stop.direction, self._config.direction_aliases
            )
            sources.append(apply_variant_rule(records, stop.variant_rule))

        sources = [hydrate(records, vehicle_by_trip) for records in sources]
        return combine_sources(sources, group.horizon_minutes, group.max_results)


def _render_output(config: BoardConfig, snapshot: ArrivalsSnapshot) -> str:
    output_lines: List[str] = []
    output_lines.append("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    for group in config.subway_groups:
        output_lines.append(group.label.upper())
        records = snapshot.subway.get(group.id, [])
        if not records:
            output_lines.append("  (no upcoming trains)")
        for record in records:
            line = f"  {record.route} train → {record.minutes_until} min"
            if record.connection:
                line += f" ({record.connection.label} in {record.connection.minutes_until} min)"
            output_lines.append(line)
        output_lines.append("")
    for group in config.bus_groups:
        output_lines.append(group.label.upper())
        records = snapshot.buses.get(group.id, [])
        if not records:
            output_lines.append("  (no upcoming buses)")
        for record in records:
            variant = record.service_variant.value if record.service_variant else ""
            output_lines.append(
                f"  {record.route} {variant} @ {record.station} → {record.minutes_until} min"
            )
        output_lines.append("")
    output_lines.append("━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━")
    if snapshot.warnings:
        output_lines.append(f"Unavailable: {', '.join(snapshot.warnings)}")
    output_lines.append(f"Last updated: {snapshot.generated_at.astimezone():%Y-%m-%d %H:%M:%S}")
    return "\n".join(output_lines)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    try:
        config = load_config()
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return

    service = AggregationService(config)
    try:
        snapshot = service.get_all_arrivals()
    except ArrivalsUnavailableError as exc:
        logger.error("%s", exc)
        return
    print(_render_output(config, snapshot))


if __name__ == "__main__":
    main()
