"""
Tracing - OpenTelemetry setup and spans for batch jobs.

Request and query spans come from the FastAPI and SQLAlchemy
instrumentations. Batch runs (auto-topup, subscription renewals) open one
span each and record their counters and per-user failures on it.
Setup is a no-op unless TRACING_ENABLED is set.
"""

from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Span, Status, StatusCode
from sqlalchemy.ext.asyncio import AsyncEngine

from chatcredits.config import Settings
from chatcredits.config import settings as default_settings

BATCH_TRACER = "chatcredits.batch"


def setup_tracing(app: FastAPI, settings: Settings = default_settings) -> bool:
    """
    Export spans over OTLP and instrument the app's requests.

    Returns whether tracing was enabled.
    """
    if not settings.tracing_enabled:
        return False

    provider = TracerProvider(
        resource=Resource.create(
            {SERVICE_NAME: settings.service_name, SERVICE_VERSION: settings.api_version}
        )
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.otlp_insecure)
        )
    )
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)
    return True


def instrument_engine(engine: AsyncEngine, settings: Settings = default_settings) -> None:
    """Trace queries issued through the database engine."""
    if settings.tracing_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


class BatchSpan:
    """Span of one batch run. Counters are stored as batch.<name> attributes."""

    def __init__(self, span: Span) -> None:
        self.span = span

    def count(self, **counters: int) -> None:
        for name, value in counters.items():
            self.span.set_attribute(f"batch.{name}", value)

    def failure(self, exc: Exception, subject: str) -> None:
        """Record a failed item; the run goes on and the span ends in error."""
        self.span.record_exception(exc, attributes={"batch.subject": subject})
        self.span.set_status(Status(StatusCode.ERROR, f"{type(exc).__name__}: {exc}"))


@contextmanager
def batch_span(job: str) -> Iterator[BatchSpan]:
    """Open the span for one run of a batch job."""
    tracer = trace.get_tracer(BATCH_TRACER)
    with tracer.start_as_current_span(f"batch.{job}", attributes={"batch.job": job}) as span:
        yield BatchSpan(span)
