from __future__ import annotations

import logging
import os
import time
from typing import Any, List, Optional

from flask import Flask, jsonify
from flask_cors import CORS

from .config import load_config
from .health import HealthTracker, get_health_status
from .service import AggregationService, ArrivalsUnavailableError


logger = logging.getLogger(__name__)


def _group_keys(service: AggregationService) -> List[str]:
    config = service.config
    keys = [f"subway.{group.id}" for group in config.subway_groups]
    if config.has_bus_api_key:
        keys.extend(f"bus.{group.id}" for group in config.bus_groups)
    return keys


def create_app(
    service: AggregationService,
    tracker: Optional[HealthTracker] = None,
) -> Flask:
    app = Flask(__name__)
    CORS(app)
    health = tracker or HealthTracker()

    @app.route("/api/arrivals")
    def api_arrivals() -> Any:
        now = int(time.time())
        try:
            snapshot = service.get_all_arrivals()
        except ArrivalsUnavailableError as exc:
            logger.error("Arrivals unavailable: %s", exc)
            for key in _group_keys(service):
                health.record_error(key, str(exc), now)
            return (
                jsonify(
                    {
                        "error": "Failed to fetch arrival data",
                        "warnings": exc.warnings,
                    }
                ),
                503,
            )

        health.record_snapshot(_group_keys(service), snapshot.warnings, now)
        if snapshot.warnings:
            logger.warning("Partial arrivals; unavailable: %s", ", ".join(snapshot.warnings))
        return jsonify(snapshot.to_dict())

    @app.route("/health")
    def health_alias() -> Any:
        return api_health()

    @app.route("/api/health")
    def api_health() -> Any:
        config = service.config
        status = get_health_status(
            health,
            config.staleness_warning_seconds,
            config.staleness_critical_seconds,
        )
        return jsonify(status)

    return app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    try:
        config = load_config()
    except Exception as exc:
        logger.error("Failed to load config: %s", exc)
        return

    app = create_app(AggregationService(config))
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "5000"))
    logger.info("Flask server starting on http://%s:%s", host, port)
    app.run(host=host, port=port)


if __name__ == "__main__":
    main()
