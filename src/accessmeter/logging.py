"""
Structured logging for the access-control core.

structlog is configured once on import from the ``observability`` settings.
Module loggers carry operational events (denials, retries, storage failures);
the audit logger records every change to who may do what: invitations, role
changes, plan changes and quota corrections.
"""

import logging

import structlog

from accessmeter.settings import Settings, get_settings

AUDIT_LOGGER_NAME = "accessmeter.audit"


def setup_logging(settings: Settings | None = None) -> None:
    """
    Configure structlog on top of the standard library logger.

    Request-scoped values bound with ``structlog.contextvars`` (principal,
    permission) are merged into every event.
    """
    observability = (settings or get_settings()).observability
    logging.basicConfig(format="%(message)s", level=observability.log_level.value)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if observability.enable_correlation_ids:
        processors.insert(
            1,
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.THREAD_NAME]
            ),
        )

    if observability.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module logger; pass ``__name__``."""
    return structlog.get_logger(name)


def log_audit_event(
    action: str,
    category: str,
    actor_id: str | None = None,
    organization_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    **details: object,
) -> None:
    """
    Record an audit event.

    Args:
        action: Dotted event name, e.g. ``invitation.accepted``
        category: ``membership``, ``billing`` or ``quota``
        actor_id: Principal that caused the change
        organization_id: Organization the change applies to, if any
        resource_type: Kind of record changed
        resource_id: Identifier of the record (tokens are truncated by callers)
        **details: Before/after values
    """
    structlog.get_logger(AUDIT_LOGGER_NAME).info(
        action,
        audit_category=category,
        audit_actor_id=actor_id,
        audit_organization_id=organization_id,
        audit_resource_type=resource_type,
        audit_resource_id=resource_id,
        **details,
    )


# Initialize on import
setup_logging()
