import pytest

from transitboard.app import create_app
from transitboard.config import BoardConfig, FeedTarget, SubwayGroup
from transitboard.fetchers.client import FetchError
from transitboard.fetchers.subway import StopMatcher
from transitboard.health import HealthTracker
from transitboard.routes import normalize_route
from transitboard.service import AggregationService, ArrivalsUnavailableError

from helpers import BDFM_URL, NOW, FakeFetcher, build_feed, trip


def make_service(feed, **config_kwargs):
    config = BoardConfig(
        **config_kwargs,
        subway_groups=(
            SubwayGroup(
                id="church_ave",
                label="Church Ave",
                targets=(
                    FeedTarget(
                        route=normalize_route("B"),
                        feed_url=BDFM_URL,
                        matcher=StopMatcher("D28N", ("D28", "N")),
                    ),
                ),
            ),
        ),
    )
    return AggregationService(config, fetcher=FakeFetcher(feeds={BDFM_URL: feed}), clock=lambda: NOW)


@pytest.fixture
def feed():
    return build_feed(trips=[trip("B1", "B", [("D28N", 180)])])


def test_arrivals_endpoint(feed):
    client = create_app(make_service(feed)).test_client()

    resp = client.get("/api/arrivals")

    assert resp.status_code == 200
    data = resp.get_json()
    assert data["warnings"] == []
    assert data["buses"] == {}
    record = data["subway"]["church_ave"][0]
    assert record["route"] == "B"
    assert record["minutes_until"] == 3
    assert record["station"] == "Church Ave"


def test_arrivals_endpoint_allows_cross_origin(feed):
    client = create_app(make_service(feed)).test_client()

    resp = client.get("/api/arrivals", headers={"Origin": "http://board.test"})

    assert resp.headers.get("Access-Control-Allow-Origin") in {"*", "http://board.test"}


def test_total_failure_returns_503():
    tracker = HealthTracker()
    client = create_app(make_service(FetchError("timeout")), tracker).test_client()

    resp = client.get("/api/arrivals")

    assert resp.status_code == 503
    data = resp.get_json()
    assert data["error"] == "Failed to fetch arrival data"
    assert data["warnings"] == ["subway.church_ave"]
    assert tracker.get_all()["subway.church_ave"]["error_count"] == 1


def test_unavailable_from_service_maps_to_503(monkeypatch, feed):
    service = make_service(feed)

    def boom():
        raise ArrivalsUnavailableError(["subway.church_ave"])

    monkeypatch.setattr(service, "get_all_arrivals", boom)
    client = create_app(service).test_client()

    assert client.get("/api/arrivals").status_code == 503


def test_health_before_any_request(feed):
    client = create_app(make_service(feed)).test_client()

    data = client.get("/api/health").get_json()

    assert data["status"] == "down"
    assert data["groups"] == {}


def test_health_after_successful_request(feed):
    client = create_app(make_service(feed)).test_client()
    client.get("/api/arrivals")

    for path in ("/api/health", "/health"):
        data = client.get(path).get_json()
        assert data["status"] == "healthy"
        group = data["groups"]["subway.church_ave"]
        assert group["status"] == "healthy"
        assert group["fetch_count"] == 1
        assert group["error_count"] == 0


def test_health_uses_configured_thresholds(feed):
    service = make_service(feed, staleness_warning_seconds=0, staleness_critical_seconds=3600)
    client = create_app(service).test_client()
    client.get("/api/arrivals")

    data = client.get("/api/health").get_json()

    assert data["groups"]["subway.church_ave"]["status"] == "stale"
    assert data["status"] == "degraded"
