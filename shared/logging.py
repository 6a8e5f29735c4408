"""
Shared logging configuration for the RuleGate rule evaluation layer.

Every log event carries the component (from the ``rules.<component>`` logger
name), the active trace, and the correlation context of the call being
served: request id, tenant and the rule under evaluation.
"""

import sys
import structlog
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional
from contextvars import ContextVar

from opentelemetry import trace

# Correlation context for the current engine call
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
tenant_id_var: ContextVar[Optional[str]] = ContextVar('tenant_id', default=None)
rule_name_var: ContextVar[Optional[str]] = ContextVar('rule_name', default=None)


def configure_logging(service_name: str, log_level: str = "info", json_logs: bool = True) -> None:
    """Configure structured logging for a service.

    ``json_logs=False`` renders key/value lines for local development.
    """
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            add_component_context,
            add_trace_context,
            add_correlation_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )
    structlog.get_logger("rules.logging").debug("Logging configured", service=service_name, json=json_logs)


def add_component_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``rules.store`` style logger names into service and component."""
    logger_name = event_dict.get("logger", "")
    if "." in logger_name:
        service_name, component = logger_name.split(".", 1)
        event_dict["service"] = service_name
        event_dict["component"] = component
    return event_dict


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"
    return event_dict


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request, tenant and rule context to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict["request_id"] = request_id

    tenant_id = tenant_id_var.get()
    if tenant_id:
        event_dict["tenant_id"] = tenant_id

    rule_name = rule_name_var.get()
    if rule_name and "rule" not in event_dict:
        event_dict["rule"] = rule_name

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = f"req_{uuid.uuid4().hex[:12]}"
    request_id_var.set(request_id)
    return request_id


def set_tenant_context(tenant_id: Optional[str] = None):
    """Set tenant context in logging."""
    if tenant_id:
        tenant_id_var.set(tenant_id)


@contextmanager
def rule_context(rule_name: str) -> Iterator[None]:
    """Tag log events emitted while ``rule_name`` is being evaluated."""
    token = rule_name_var.set(rule_name)
    try:
        yield
    finally:
        rule_name_var.reset(token)


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)
    tenant_id_var.set(None)
    rule_name_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
