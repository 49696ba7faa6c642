from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .fetchers.subway import ConnectionStop, StopMatcher
from .health import DEFAULT_STALENESS_CRITICAL_SEC, DEFAULT_STALENESS_WARNING_SEC
from .models import ServiceVariant
from .routes import RouteIdentity, normalize_route
from .rules import DEFAULT_DIRECTION_ALIASES, DEFAULT_HORIZON_MINUTES, VariantPolicy, VariantRule


ROOT_DIR = Path(__file__).resolve().parents[1]
CONFIG_PATH = ROOT_DIR / "config.yaml"

DEFAULT_TIMEOUT_SECONDS = 10
DEFAULT_STALE_THRESHOLD_SECONDS = 120
DEFAULT_SIRI_URL = "https://bustime.mta.info/api/siri"
DEFAULT_OBA_URL = "https://bustime.mta.info/api/where"

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class FeedTarget:
    route: RouteIdentity
    feed_url: str
    matcher: StopMatcher
    connection: Optional[ConnectionStop] = None


@dataclass(frozen=True)
class SubwayGroup:
    id: str
    label: str
    targets: Tuple[FeedTarget, ...]
    horizon_minutes: int = DEFAULT_HORIZON_MINUTES
    max_results: Optional[int] = None


@dataclass(frozen=True)
class BusStopTarget:
    stop_id: str
    location: str
    variant_rule: Optional[VariantRule] = None
    direction: Optional[str] = None
    fallback: bool = False


@dataclass(frozen=True)
class BusGroup:
    id: str
    label: str
    route: RouteIdentity
    stops: Tuple[BusStopTarget, ...]
    horizon_minutes: int = DEFAULT_HORIZON_MINUTES
    max_results: Optional[int] = None


@dataclass(frozen=True)
class BoardConfig:
    subway_groups: Tuple[SubwayGroup, ...] = ()
    bus_groups: Tuple[BusGroup, ...] = ()
    request_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    stale_threshold_seconds: int = DEFAULT_STALE_THRESHOLD_SECONDS
    staleness_warning_seconds: int = DEFAULT_STALENESS_WARNING_SEC
    staleness_critical_seconds: int = DEFAULT_STALENESS_CRITICAL_SEC
    siri_url: str = DEFAULT_SIRI_URL
    oba_url: str = DEFAULT_OBA_URL
    bus_api_key: Optional[str] = field(default=None, repr=False)
    feed_api_key: Optional[str] = field(default=None, repr=False)
    direction_aliases: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType(dict(DEFAULT_DIRECTION_ALIASES))
    )

    @property
    def has_bus_api_key(self) -> bool:
        return bool(self.bus_api_key)

    def feed_urls(self) -> List[str]:
        urls: List[str] = []
        for group in self.subway_groups:
            for target in group.targets:
                if target.feed_url not in urls:
                    urls.append(target.feed_url)
        return urls


def _slugify(value: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "_", value.strip().lower())
    return cleaned.strip("_") or "group"


def _safe_int(value: Any, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return fallback


def _optional_int(value: Any, where: str) -> Optional[int]:
    if value is None:
        return None
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where} must be an integer.") from exc
    if parsed < 1:
        raise ConfigurationError(f"{where} must be at least 1.")
    return parsed


def _require_str(raw: Mapping[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, (str, int)) or not str(value).strip():
        raise ConfigurationError(f"{where} missing {key}.")
    return str(value).strip()


def _section(config: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = config.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"Config section {key} must be a mapping.")
    return value


def _parse_connection(raw: Any, where: str) -> Optional[ConnectionStop]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} connection must be a mapping.")
    return ConnectionStop(
        stop_id=_require_str(raw, "stop_id", f"{where} connection"),
        label=_require_str(raw, "label", f"{where} connection"),
    )


def _parse_matcher(raw: Mapping[str, Any], where: str) -> StopMatcher:
    stop_id = _require_str(raw, "stop_id", where)
    pattern = raw.get("pattern") or []
    if not isinstance(pattern, list):
        raise ConfigurationError(f"{where} pattern must be a list.")
    tokens = tuple(str(token).strip() for token in pattern if str(token).strip())
    direction = str(raw.get("direction", "N")).strip().upper()
    if direction not in {"N", "S"}:
        raise ConfigurationError(f"{where} direction must be 'N' or 'S'.")
    return StopMatcher(
        stop_id=stop_id,
        tokens=tokens,
        direction_marker=direction,
        direction_id=1 if direction == "N" else 0,
    )


def _parse_subway_groups(subway: Mapping[str, Any], horizon: int) -> Tuple[SubwayGroup, ...]:
    feeds = subway.get("feeds", {}) or {}
    connections = subway.get("connections", {}) or {}
    stations = subway.get("stations", []) or []
    if not isinstance(feeds, dict) or not isinstance(connections, dict):
        raise ConfigurationError("subway.feeds and subway.connections must be mappings.")
    if not isinstance(stations, list):
        raise ConfigurationError("subway.stations must be a list.")

    route_connections: Dict[str, Optional[ConnectionStop]] = {
        normalize_route(str(route)).canonical: _parse_connection(raw, f"Route {route}")
        for route, raw in connections.items()
    }

    groups: List[SubwayGroup] = []
    for station_raw in stations:
        if not isinstance(station_raw, dict):
            raise ConfigurationError("Each subway station entry must be a mapping.")
        label = _require_str(station_raw, "name", "Subway station")
        targets_raw = station_raw.get("targets")
        if not isinstance(targets_raw, list) or not targets_raw:
            raise ConfigurationError(f"Station {label} missing targets.")

        targets: List[FeedTarget] = []
        for target_raw in targets_raw:
            if not isinstance(target_raw, dict):
                raise ConfigurationError(f"Station {label} has an invalid target entry.")
            route = normalize_route(_require_str(target_raw, "route", f"Station {label} target"))
            where = f"Station {label} route {route.canonical}"
            feed_name = _require_str(target_raw, "feed", where)
            feed_url = feeds.get(feed_name, feed_name if "://" in feed_name else None)
            if not feed_url:
                raise ConfigurationError(f"{where} references unknown feed {feed_name}.")
            if "connection" in target_raw:
                connection = _parse_connection(target_raw["connection"], where)
            else:
                connection = route_connections.get(route.canonical)
            targets.append(
                FeedTarget(
                    route=route,
                    feed_url=str(feed_url),
                    matcher=_parse_matcher(target_raw, where),
                    connection=connection,
                )
            )

        groups.append(
            SubwayGroup(
                id=str(station_raw.get("id") or _slugify(label)),
                label=label,
                targets=tuple(targets),
                horizon_minutes=_safe_int(station_raw.get("horizon_minutes"), horizon),
                max_results=_optional_int(station_raw.get("max_results"), f"Station {label} max_results"),
            )
        )
    return tuple(groups)


def _parse_variant_rule(raw: Any, where: str) -> Optional[VariantRule]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{where} variant must be a mapping.")
    try:
        policy = VariantPolicy(str(raw.get("policy", "")).strip().lower())
        variant = ServiceVariant(str(raw.get("value", "")).strip().capitalize())
    except ValueError as exc:
        raise ConfigurationError(
            f"{where} variant needs policy force|filter and value Local|Limited."
        ) from exc
    return VariantRule(policy=policy, variant=variant)


def _parse_bus_groups(bus: Mapping[str, Any], horizon: int) -> Tuple[BusGroup, ...]:
    routes = bus.get("routes", []) or []
    if not isinstance(routes, list):
        raise ConfigurationError("bus.routes must be a list.")

    groups: List[BusGroup] = []
    for route_raw in routes:
        if not isinstance(route_raw, dict):
            raise ConfigurationError("Each bus route entry must be a mapping.")
        route = normalize_route(_require_str(route_raw, "route", "Bus route"))
        where = f"Bus route {route.canonical}"
        stops_raw = route_raw.get("stops")
        if not isinstance(stops_raw, list) or not stops_raw:
            raise ConfigurationError(f"{where} missing stops.")

        stops: List[BusStopTarget] = []
        for stop_raw in stops_raw:
            if not isinstance(stop_raw, dict):
                raise ConfigurationError(f"{where} has an invalid stop entry.")
            stop_id = _require_str(stop_raw, "stop_id", where)
            direction = stop_raw.get("direction")
            stops.append(
                BusStopTarget(
                    stop_id=stop_id,
                    location=str(stop_raw.get("location") or stop_id).strip(),
                    variant_rule=_parse_variant_rule(stop_raw.get("variant"), f"{where} stop {stop_id}"),
                    direction=str(direction).strip() if direction else None,
                    fallback=bool(stop_raw.get("fallback", False)),
                )
            )

        groups.append(
            BusGroup(
                id=str(route_raw.get("id") or _slugify(route.canonical)),
                label=str(route_raw.get("label") or route.canonical),
                route=route,
                stops=tuple(stops),
                horizon_minutes=_safe_int(route_raw.get("horizon_minutes"), horizon),
                max_results=_optional_int(route_raw.get("max_results"), f"{where} max_results"),
            )
        )
    return tuple(groups)


def _display_thresholds(display: Mapping[str, Any]) -> Tuple[int, int]:
    warning = max(
        0, _safe_int(display.get("staleness_warning_sec"), DEFAULT_STALENESS_WARNING_SEC)
    )
    critical = max(
        0, _safe_int(display.get("staleness_critical_sec"), DEFAULT_STALENESS_CRITICAL_SEC)
    )
    if critical < warning:
        critical = warning
    return warning, critical


def _parse_direction_aliases(raw: Any) -> Dict[str, Tuple[str, ...]]:
    if raw is None:
        return dict(DEFAULT_DIRECTION_ALIASES)
    if not isinstance(raw, dict):
        raise ConfigurationError("bus.direction_aliases must be a mapping.")
    aliases: Dict[str, Tuple[str, ...]] = {}
    for token, values in raw.items():
        if not isinstance(values, list):
            raise ConfigurationError(f"Direction aliases for {token} must be a list.")
        aliases[str(token).strip().lower()] = tuple(str(value).strip().lower() for value in values)
    return aliases


def parse_config(data: Any, environ: Optional[Mapping[str, str]] = None) -> BoardConfig:
    """Build the immutable board configuration from parsed YAML and the environment."""
    if not isinstance(data, dict):
        raise ConfigurationError("Config root must be a mapping.")
    env = os.environ if environ is None else environ

    display = _section(data, "display")
    subway = _section(data, "subway")
    bus = _section(data, "bus")
    horizon = max(0, _safe_int(display.get("horizon_minutes"), DEFAULT_HORIZON_MINUTES))
    staleness_warning, staleness_critical = _display_thresholds(display)

    config = BoardConfig(
        subway_groups=_parse_subway_groups(subway, horizon),
        bus_groups=_parse_bus_groups(bus, horizon),
        request_timeout_seconds=max(
            1, _safe_int(display.get("request_timeout_seconds"), DEFAULT_TIMEOUT_SECONDS)
        ),
        stale_threshold_seconds=max(
            0, _safe_int(display.get("stale_threshold_seconds"), DEFAULT_STALE_THRESHOLD_SECONDS)
        ),
        staleness_warning_seconds=staleness_warning,
        staleness_critical_seconds=staleness_critical,
        siri_url=str(bus.get("siri_url") or DEFAULT_SIRI_URL),
        oba_url=str(bus.get("oba_url") or DEFAULT_OBA_URL),
        bus_api_key=(env.get("BUS_TIME_API_KEY") or "").strip() or None,
        feed_api_key=(env.get("MTA_API_KEY") or "").strip() or None,
        direction_aliases=MappingProxyType(_parse_direction_aliases(bus.get("direction_aliases"))),
    )
    logger.info(
        "Loaded %s subway groups and %s bus groups",
        len(config.subway_groups),
        len(config.bus_groups),
    )
    return config


def load_config(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BoardConfig:
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = Path(env.get("TRANSITBOARD_CONFIG") or CONFIG_PATH)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    logger.info("Loading config from %s", config_path)
    with config_path.open() as handle:
        data = yaml.safe_load(handle)
    return parse_config(data, environ=env)
