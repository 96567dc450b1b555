"""
OpenTelemetry helpers for provisioning runs.

Each Step runs inside a ``provision.step`` span; the Plan outcome is
added as a span event. Only the API package is used, so everything is a
no-op unless the embedding process configures an SDK.

Usage::

    from dokkuprov.otel import record_step_outcome, step_span

    with step_span("server", step) as span:
        ...
        record_step_outcome(span, result)
"""

from __future__ import annotations

import contextlib
import logging
from typing import TYPE_CHECKING, Generator

from opentelemetry import trace as otel_trace

if TYPE_CHECKING:
    from dokkuprov.runner import PlanReport
    from dokkuprov.steps import ExecutionResult, Step

logger = logging.getLogger(__name__)

_tracer = otel_trace.get_tracer("dokkuprov")


@contextlib.contextmanager
def step_span(plan: str, step: "Step") -> Generator[otel_trace.Span, None, None]:
    with _tracer.start_as_current_span(
        "provision.step",
        attributes={
            "provision.plan": plan,
            "provision.step": step.name,
            "provision.criticality": step.criticality.value,
            "provision.idempotency": step.idempotency.value,
        },
    ) as span:
        yield span


def record_step_outcome(span: otel_trace.Span, result: "ExecutionResult") -> None:
    if not span.is_recording():
        return
    span.set_attribute("provision.outcome", result.outcome.value)
    if result.reason:
        span.set_attribute("provision.reason", result.reason)
    if result.is_fatal:
        span.set_status(otel_trace.Status(otel_trace.StatusCode.ERROR, result.reason))


def emit_plan_result(report: "PlanReport") -> None:
    """Add a ``provision.plan.result`` event to the current span, if any."""
    span = otel_trace.get_current_span()
    if span and span.is_recording():
        span.add_event(
            name="provision.plan.result",
            attributes={
                "provision.plan": report.plan,
                "provision.state": report.state.value,
                "provision.exit_code": int(report.exit_code),
            },
        )
