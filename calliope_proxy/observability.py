from __future__ import annotations

import logging

import httpx
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from calliope_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


def setup_optional_tracing(
    *,
    app_obj: FastAPI,
    clients: list[httpx.AsyncClient],
    settings: Settings,
) -> bool:
    """Instrument the app and outbound clients when tracing is enabled."""
    if not settings.observability_tracing_enabled:
        return False

    provider = TracerProvider(
        resource=Resource.create({"service.name": settings.observability_service_name})
    )
    endpoint = settings.observability_otlp_endpoint
    if endpoint:
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint))
        )
    trace.set_tracer_provider(provider)

    try:
        FastAPIInstrumentor.instrument_app(app_obj, tracer_provider=provider)
    except Exception as exc:
        logger.warning(
            "observability_fastapi_instrumentation_failed reason=%s", str(exc)
        )
    instrumentor = HTTPXClientInstrumentor()
    for client in clients:
        try:
            instrumentor.instrument_client(client, tracer_provider=provider)
        except Exception as exc:
            logger.warning(
                "observability_httpx_instrumentation_failed reason=%s", str(exc)
            )
    logger.info(
        "observability_tracing_enabled service=%s otlp_endpoint=%s clients=%d",
        settings.observability_service_name,
        endpoint,
        len(clients),
    )
    return True
