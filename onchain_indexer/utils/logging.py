import structlog
import logging


def setup_logging(level: str = "INFO"):
    """Setup structured logging configuration"""
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )


def bind_session_context(**kwargs):
    """Bind session-scoped values (session id, chain) to every log line of the current thread"""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_session_context():
    structlog.contextvars.clear_contextvars()
