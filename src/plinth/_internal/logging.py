"""structlog configuration for the CLI (internal).

Library modules only call ``structlog.get_logger(__name__)``; the entry
point decides where records go and how they render.
"""

import logging
import sys

import structlog


def configure_logging(level: str = "INFO", json_output: bool = False, quiet: bool = False) -> None:
    """Route structlog through stdlib logging on stderr.

    stdout stays reserved for command output (plans, outputs, templates).
    """
    if quiet:
        level = "ERROR"
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper(), logging.INFO),
        force=True,
    )
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        # ConsoleRenderer formats exceptions itself
        processors.append(structlog.dev.ConsoleRenderer(colors=False))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfigured per CLI invocation; cached loggers would keep the old level
        cache_logger_on_first_use=False,
    )
