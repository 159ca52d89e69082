# app/utils/telemetry.py
# OpenTelemetry setup for the session API: one tracer provider per process,
# FastAPI request spans, SQLAlchemy query spans, and a tracer for service spans.

from opentelemetry import trace
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor

_provider: TracerProvider | None = None
_instrumented_engines: set[int] = set()


def get_tracer(name: str) -> trace.Tracer:
    """Tracer usable before init_otel; spans attach once the provider is installed."""
    return trace.get_tracer(name)


def init_otel(app=None, engine=None, service_name: str = "session-sync", debug: bool = False):
    """Install the tracer provider and instrument ``app`` and ``engine``.

    Spans go to stdout: synchronously in debug mode so they interleave with
    the request logs, batched otherwise.
    """
    global _provider
    if _provider is None:
        _provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
        processor_cls = SimpleSpanProcessor if debug else BatchSpanProcessor
        _provider.add_span_processor(processor_cls(ConsoleSpanExporter()))
        trace.set_tracer_provider(_provider)

    if app is not None:
        FastAPIInstrumentor.instrument_app(app, excluded_urls="/health,/health/live,/health/ready,/metrics")

    # Same engine instrumented twice would double every query span
    if engine is not None and id(engine) not in _instrumented_engines:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
        _instrumented_engines.add(id(engine))

    return trace.get_tracer(service_name)
