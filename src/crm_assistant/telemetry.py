"""Tracing for the assistant API and its model calls.

``OBSERVABILITY`` selects the backend:

- ``"logfire"``: Pydantic Logfire (set ``LOGFIRE_TOKEN``)
- ``"otel"``: OpenTelemetry SDK with the OTLP HTTP span exporter
- ``"off"``: nothing is instrumented (default)

Both backends ship in the ``observability`` extra and are imported only when
selected.
"""

from __future__ import annotations

from fastapi import FastAPI
from loguru import logger

from crm_assistant import __version__
from crm_assistant.config import Settings

_MODES = ("off", "logfire", "otel")


def observability_mode(settings: Settings) -> str:
    mode = settings.observability.strip().lower()
    if mode not in _MODES:
        logger.warning("Unknown observability mode '{}', treating as off", mode)
        return "off"
    return mode


def is_observability_active(settings: Settings) -> bool:
    return observability_mode(settings) != "off"


def setup_telemetry(app: FastAPI, settings: Settings) -> None:
    """Instrument *app* for the configured mode. No-op when off."""
    mode = observability_mode(settings)
    if mode == "off":
        logger.info("Observability disabled")
        return
    if mode == "logfire":
        _setup_logfire(app, settings)
    else:
        _setup_otel(app, settings)


def _setup_logfire(app: FastAPI, settings: Settings) -> None:
    import logfire

    logfire.configure(service_name=settings.otel_service_name, service_version=__version__)
    logfire.instrument_fastapi(app)
    logger.info("Logfire tracing on | service={}", settings.otel_service_name)


def _setup_otel(app: FastAPI, settings: Settings) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(
        resource=Resource.create(
            {"service.name": settings.otel_service_name, "service.version": __version__}
        )
    )
    endpoint = settings.otel_exporter_otlp_endpoint.rstrip("/") + "/v1/traces"
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    if settings.otel_console_exporter:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    logger.info(
        "OpenTelemetry tracing on | service={} endpoint={}",
        settings.otel_service_name,
        endpoint,
    )


def get_instrumentation_settings(settings: Settings):
    """PydanticAI ``InstrumentationSettings`` when tracing is on, else ``None``.

    Passed to every generation ``Agent`` so provider calls show up as spans.
    """
    if not is_observability_active(settings):
        return None

    from pydantic_ai.models.instrumented import InstrumentationSettings

    return InstrumentationSettings()
