"""
Prometheus metrics for the KMS server.

Metrics live in a dedicated registry and are served by a separate FastAPI app
on ``--metrics-host``.
"""

from __future__ import annotations

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

REGISTRY = CollectorRegistry()

HTTP_REQUESTS = Counter(
    "kms_http_requests_total",
    "HTTP requests handled by the KMS server.",
    ["method", "status"],
    registry=REGISTRY,
)


def record_request(method: str, status_code: int) -> None:
    HTTP_REQUESTS.labels(method=method, status=str(status_code)).inc()


def create_metrics_app(registry: CollectorRegistry = REGISTRY, path: str = "/metrics") -> FastAPI:
    app = FastAPI(title="KMS Server Metrics", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(path, include_in_schema=False)
    def _metrics() -> Response:
        return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app
