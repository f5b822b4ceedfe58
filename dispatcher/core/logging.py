"""structlog setup for the dispatcher.

All output goes through one stdlib handler: dispatcher events and third-party
records (uvicorn, kubernetes, botocore) render the same way, JSON in
production and colored console lines in debug. Context variables are merged
into every entry; the event router binds ``session_key`` per inbound event.

Slack and GitHub credentials pass through this process, so a redaction step
runs before rendering.
"""

import logging
import logging.config
import re

import structlog

REDACTED = "[redacted]"

SENSITIVE_FIELDS = frozenset(
    {
        "token",
        "access_token",
        "refresh_token",
        "client_secret",
        "signing_secret",
        "authorization",
        "github_token",
    }
)

# Slack bot/user/refresh tokens and GitHub personal/OAuth tokens
_TOKEN_PATTERN = re.compile(r"\b(xox[abeprs]-[A-Za-z0-9-]+|gh[opsu]_[A-Za-z0-9]{20,})\b")

# Libraries that log every request at INFO
QUIET_LOGGERS = ("uvicorn.access", "httpx", "botocore", "urllib3", "kubernetes.client.rest")


def redact_secrets(logger, method_name, event_dict):
    """Mask credential fields and token-shaped substrings."""
    for key, value in event_dict.items():
        if key.lower() in SENSITIVE_FIELDS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and ("xox" in value or "gh" in value):
            event_dict[key] = _TOKEN_PATTERN.sub(REDACTED, value)
    return event_dict


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the processor chain and the stdlib bridge.

    Must run before any module calls structlog.get_logger() and logs, since
    loggers are cached on first use.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        redact_secrets,
    ]

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors,
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
