"""Metrics sink, correlation ids and span enrichment for tool invocations."""

from __future__ import annotations

import logging
import uuid
from typing import Optional, Protocol

from opentelemetry import trace

logger = logging.getLogger(__name__)


class MetricsSink(Protocol):
    def record_tool_invocation(
        self,
        tool_name: str,
        status_code: int,
        is_error: bool,
        duration_ms: float,
        correlation_id: Optional[str] = None,
    ) -> None: ...


class NoOpMetricsSink:
    def record_tool_invocation(
        self,
        tool_name: str,
        status_code: int,
        is_error: bool,
        duration_ms: float,
        correlation_id: Optional[str] = None,
    ) -> None:
        return None


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def enrich_current_span(
    tool_name: str,
    status_code: int,
    is_error: bool,
    duration_ms: float,
    correlation_id: Optional[str] = None,
) -> None:
    """Attach the invocation outcome to whatever span the host has active."""
    span = trace.get_current_span()
    if not span.is_recording():
        return
    span.set_attribute("mcp.tool", tool_name)
    span.set_attribute("mcp.status_code", status_code)
    span.set_attribute("mcp.is_error", is_error)
    span.set_attribute("mcp.duration_ms", duration_ms)
    if correlation_id:
        span.set_attribute("mcp.correlation_id", correlation_id)


class InvocationRecorder:
    """Fans one invocation outcome out to the log, the metrics sink and the span."""

    def __init__(self, metrics_sink: Optional[MetricsSink] = None, enrich_spans: bool = False) -> None:
        self.metrics_sink = metrics_sink or NoOpMetricsSink()
        self.enrich_spans = enrich_spans

    def record(
        self,
        tool_name: str,
        status_code: int,
        is_error: bool,
        duration_ms: float,
        correlation_id: Optional[str] = None,
    ) -> None:
        logger.log(
            logging.WARNING if is_error else logging.DEBUG,
            "Tool invocation tool=%s status=%s error=%s duration_ms=%.1f correlation_id=%s",
            tool_name,
            status_code,
            is_error,
            duration_ms,
            correlation_id,
        )
        try:
            self.metrics_sink.record_tool_invocation(
                tool_name, status_code, is_error, duration_ms, correlation_id
            )
        except Exception:
            logger.exception("Metrics sink failed for tool=%s", tool_name)
        if self.enrich_spans:
            enrich_current_span(tool_name, status_code, is_error, duration_ms, correlation_id)
