"""Logging setup for the ShardShift orchestrator."""
import logging
import structlog


def get_valkey_log_handler():
    """Get the ValkeyLogHandler class, imported only when Valkey logging is enabled."""
    from shardshift.custom_logging.valkey_log_handler import ValkeyLogHandler
    return ValkeyLogHandler


def configure_logging(settings, valkey_client=None):
    """
    Configure structlog for a run.

    Args:
        settings: Settings instance (VERBOSE, LOG_TO_VALKEY, CATALOG_PREFIX)
        valkey_client: Client used for the diagnostic stream when enabled

    Returns:
        The ValkeyLogHandler in use, or None
    """
    processors = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    handler = None
    if settings.LOG_TO_VALKEY and valkey_client is not None:
        ValkeyLogHandler = get_valkey_log_handler()
        handler = ValkeyLogHandler(valkey_client, prefix=settings.CATALOG_PREFIX)
        processors.append(handler)

    if settings.VERBOSE:
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if settings.VERBOSE else logging.INFO
        ),
    )
    return handler


__all__ = ['configure_logging', 'get_valkey_log_handler']
