# telemetry.py — OpenTelemetry instrumentation for PulseStage
"""
Exports traces to an OTLP collector when OTEL_EXPORTER_OTLP_ENDPOINT is set;
otherwise does nothing. The OpenTelemetry packages are an optional extra.
"""
import os
import logging

logger = logging.getLogger("pulsestage.telemetry")

SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "pulsestage-api")
SERVICE_VERSION = "1.0.0"
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")
OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "")


def setup_telemetry(app=None, endpoint: str = OTLP_ENDPOINT):
    """Install a tracer provider and instrument FastAPI and SQLAlchemy.

    Returns the provider, or None when disabled or the SDK is not installed.
    """
    if not endpoint:
        logger.info("OpenTelemetry disabled (OTEL_EXPORTER_OTLP_ENDPOINT not set)")
        return None

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        from opentelemetry.sdk.resources import Resource, SERVICE_NAME as RES_SVC_NAME
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    except ImportError:
        logger.warning("OpenTelemetry SDK not installed (pip install pulsestage-api[telemetry]); tracing disabled")
        return None

    resource = Resource.create({
        RES_SVC_NAME: SERVICE_NAME,
        "service.version": SERVICE_VERSION,
        "deployment.environment": ENVIRONMENT,
    })
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
    trace.set_tracer_provider(provider)

    if app is not None:
        try:
            from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
            FastAPIInstrumentor.instrument_app(app, excluded_urls="health", tracer_provider=provider)
            logger.info("FastAPI instrumented with OpenTelemetry")
        except ImportError:
            logger.warning("opentelemetry-instrumentation-fastapi not installed")

    try:
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from database import engine
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine, tracer_provider=provider)
        logger.info("SQLAlchemy instrumented with OpenTelemetry")
    except ImportError:
        logger.warning("opentelemetry-instrumentation-sqlalchemy not installed")

    logger.info(f"OpenTelemetry initialised -> {endpoint}")
    return provider
