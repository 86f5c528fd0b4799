"""Tracing for catalog syncs and downloads.

Spans always go through opentelemetry-api. Without ``UPTRACE_DSN`` the API's
no-op provider drops them; with it they are exported to Uptrace, and aiohttp
requests to Steam get client spans of their own.
"""

import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import urlparse

from opentelemetry import trace

SERVICE_NAME = "workshop-installer"

_exporting: bool | None = None


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    tracer = trace.get_tracer(SERVICE_NAME)
    cleaned = {key: value for key, value in (attributes or {}).items() if value is not None}
    with tracer.start_as_current_span(name, attributes=cleaned) as span:
        yield span


def init_telemetry(deployment_environment: str = "") -> bool:
    """Configure Uptrace export once; returns whether spans are exported."""
    global _exporting

    if _exporting is not None:
        return _exporting
    _exporting = False

    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        logging.debug("UPTRACE_DSN is not set, spans are not exported")
        return False

    try:
        import uptrace
    except ImportError:
        logging.warning("UPTRACE_DSN is set but uptrace is missing, install the telemetry extra")
        return False

    try:
        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=os.environ.get("OTEL_SERVICE_NAME", "").strip() or SERVICE_NAME,
            deployment_environment=os.environ.get(
                "OTEL_DEPLOYMENT_ENVIRONMENT", deployment_environment
            ).strip(),
        )
    except (RuntimeError, ValueError, TypeError) as exc:
        logging.error("Failed to configure Uptrace: %s", exc)
        return False

    _instrument_aiohttp()
    _exporting = True
    logging.info("Exporting spans to Uptrace")
    return True


def shutdown_telemetry() -> None:
    if not _exporting:
        return
    import uptrace

    try:
        uptrace.shutdown()
    except (RuntimeError, ValueError) as exc:
        logging.error("Failed to flush spans: %s", exc)


def _instrument_aiohttp() -> None:
    try:
        from opentelemetry.instrumentation.aiohttp_client import AioHttpClientInstrumentor
    except ImportError:
        logging.warning("aiohttp client spans are disabled, instrumentation is not installed")
        return
    AioHttpClientInstrumentor().instrument(request_hook=_name_steam_request)


def _name_steam_request(span: Any, params: Any) -> None:
    if span is None or not span.is_recording():
        return
    url = urlparse(str(params.url))
    route = normalize_route(url.path)
    span.update_name(f"{params.method.upper()} {url.hostname}{route}")
    span.set_attribute("http.route", route)


def normalize_route(path: str) -> str:
    """Collapse numeric path segments so workshop ids do not multiply span names."""
    segments = [segment for segment in path.split("/") if segment]
    return "/" + "/".join("{id}" if segment.isdigit() else segment for segment in segments)
