"""OpenTelemetry span helpers for the bridge.

Only the OpenTelemetry API is used here. Without an installed SDK the
tracer is a no-op; a host that installs a TracerProvider gets real spans.
"""

from __future__ import annotations

from opentelemetry import trace

_TRACER_NAME = "hassbridge"


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    """Get a tracer from the current provider (useful for modules)."""
    return trace.get_tracer(name)


def tag_bridge_span(span: trace.Span, bridge_name: str | None) -> None:
    """Set bridge attribution attributes on a span.

    Args:
        span: The span to annotate.
        bridge_name: Bridge instance name. Nothing is set when ``None``.
    """
    if not bridge_name:
        return
    span.set_attribute("bridge.name", bridge_name)
    span.set_attribute("service.name", f"hassbridge.{bridge_name}")
