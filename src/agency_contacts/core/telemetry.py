"""OpenTelemetry initialization and span wrappers for contacts operations."""

from __future__ import annotations

import functools
import logging
import os
from contextvars import Token
from uuid import UUID

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

from agency_contacts.core.logging import reset_agency_context, set_agency_context

logger = logging.getLogger(__name__)

_TRACER_NAME = "agency_contacts"

# True once the global TracerProvider has been installed.
_tracer_provider_installed: bool = False


def init_telemetry(service_name: str = "agency-contacts") -> trace.Tracer:
    """Initialize OpenTelemetry tracing.

    When ``OTEL_EXPORTER_OTLP_ENDPOINT`` is set, installs a TracerProvider with
    an OTLP gRPC exporter on the first call. Otherwise returns the default
    no-op tracer.

    Args:
        service_name: Service name reported to the tracing backend.

    Returns:
        A Tracer instance (real or no-op depending on config)
    """
    global _tracer_provider_installed

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT")

    if not endpoint:
        logger.info("OTEL_EXPORTER_OTLP_ENDPOINT not set, using no-op tracer")
        return trace.get_tracer(service_name)

    if _tracer_provider_installed:
        return trace.get_tracer(service_name)

    # Import exporter only when needed
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    resource = Resource.create({"service.name": service_name})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))

    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s", endpoint)

    return trace.get_tracer(service_name)


class operation_span:
    """Create an OpenTelemetry span around a contacts operation.

    Can be used as a **context manager** or as a **decorator** on async functions.

    Context manager usage::

        with operation_span("reconcile.link_backfill", agency_id=agency_id):
            ...

    Decorator usage::

        @operation_span("resolver.resolve_contact")
        async def resolve_contact(pool, agency_id, ...):
            ...

    When decorating, an ``agency_id`` keyword argument (or the second
    positional argument) of the wrapped call is attached to the span and set
    as the logging agency context until the span ends. Exceptions are recorded on the span and
    the status is set to ERROR before the exception is re-raised.
    """

    def __init__(self, name: str, *, agency_id: UUID | str | None = None) -> None:
        self._name = name
        self._agency_id = agency_id
        self._span: trace.Span | None = None
        self._token: object | None = None
        self._agency_token: Token[str | None] | None = None

    def __enter__(self) -> trace.Span:
        tracer = trace.get_tracer(_TRACER_NAME)
        self._span = tracer.start_span(f"agency_contacts.{self._name}")
        if self._agency_id is not None:
            self._span.set_attribute("agency.id", str(self._agency_id))
            self._agency_token = set_agency_context(self._agency_id)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
        if self._agency_token is not None:
            reset_agency_context(self._agency_token)
            self._agency_token = None

    def __call__(self, func):  # noqa: ANN001, ANN204
        # Each invocation gets a fresh operation_span so concurrent calls do
        # not share _span / _token state.
        name = self._name

        @functools.wraps(func)
        async def _wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
            agency_id = kwargs.get("agency_id")
            if agency_id is None and len(args) > 1:
                agency_id = args[1]
            with operation_span(name, agency_id=agency_id):
                return await func(*args, **kwargs)

        return _wrapper
