"""
Structured logging configuration.

Events are rendered as JSON by structlog and written through the stdlib
root logger. Correlation ids bound per ``initiate``/``confirm`` call are
merged into every event; payer contact details are masked and raw gateway
payloads only survive in events emitted by the gateway adapters.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from violation_payments.config import Settings, get_settings

# Loggers allowed to carry provider payloads
ADAPTER_LOGGER_PREFIX = "violation_payments.integrations"

EMAIL_KEYS = frozenset({"payer_email", "email"})
PHONE_KEYS = frozenset({"payer_phone", "phone"})
PAYLOAD_KEYS = frozenset({"gateway_response", "provider_response", "response"})

REDACTED = "[redacted]"


def mask_email(value: str) -> str:
    """
    Keep the first character of the local part and the domain.

    >>> mask_email("juan@example.com")
    'j***@example.com'
    """
    local, sep, domain = value.partition("@")
    if not sep:
        return REDACTED
    return f"{local[:1]}***@{domain}"


def mask_phone(value: str) -> str:
    """
    >>> mask_phone("09171234567")
    '*******4567'
    """
    digits = value.strip()
    if len(digits) <= 4:
        return REDACTED
    return "*" * (len(digits) - 4) + digits[-4:]


class AppContext:
    """Processor stamping every event with the application name and environment."""

    def __init__(self, settings: Settings):
        self.app_name = settings.app_name
        self.app_env = settings.app_env

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("app_name", self.app_name)
        event_dict.setdefault("app_env", self.app_env)
        return event_dict


def redact_payer_details(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask payer contact details wherever they are logged."""
    for key in EMAIL_KEYS.intersection(event_dict):
        if isinstance(event_dict[key], str):
            event_dict[key] = mask_email(event_dict[key])
    for key in PHONE_KEYS.intersection(event_dict):
        if isinstance(event_dict[key], str):
            event_dict[key] = mask_phone(event_dict[key])
    return event_dict


def drop_gateway_payloads(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Replace raw provider payloads outside the gateway adapters."""
    if str(event_dict.get("logger", "")).startswith(ADAPTER_LOGGER_PREFIX):
        return event_dict
    for key in PAYLOAD_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root JSON handler for the reconciliation engine."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            redact_payer_details,
            drop_gateway_payloads,
            AppContext(settings),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )
    root_logger.addHandler(json_handler)

    # Drivers and SDKs log every request at INFO
    for name in ("httpx", "sqlalchemy.engine", "aiosqlite", "asyncpg", "stripe"):
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        app_env=settings.app_env,
        sandbox_mode=settings.sandbox_mode,
    )
