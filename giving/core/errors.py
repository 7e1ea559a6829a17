"""
Error reporting with Sentry integration.

Provides centralized error capture with:
- Sentry error tracking (when a DSN is configured)
- Structured logging with delivery context (request id, webhook event id)
- Custom fingerprinting so integrity failures group per event kind

Usage:
    # Capture an exception
    capture_exception(exc, context={"contribution_id": "c0ffee"})

    # Capture a message (non-exception event)
    capture_message("Contribution not found for payment", level="error")
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import sentry_sdk
import structlog
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from giving.core.context import get_context_dict, get_event_id, get_request_id

logger = structlog.get_logger(__name__)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]

_sentry_initialized: bool = False


def init_sentry(
    dsn: str,
    environment: str = "production",
    traces_sample_rate: float = 0.0,
    release: Optional[str] = None,
) -> bool:
    """
    Initialize Sentry SDK for error tracking.

    Args:
        dsn: Sentry DSN (from project settings)
        environment: Environment name (production, staging, development)
        traces_sample_rate: Percentage of transactions to trace (0.0-1.0)
        release: Release version (defaults to GIT_COMMIT_SHA)

    Returns:
        True if initialization successful, False otherwise
    """
    global _sentry_initialized

    if not dsn:
        logger.info("Sentry disabled (no DSN provided)")
        return False

    if not release:
        release = os.environ.get("GIT_COMMIT_SHA")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        release=release,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        ignore_errors=[
            KeyboardInterrupt,
            SystemExit,
        ],
        before_send=_before_send,
    )

    _sentry_initialized = True
    logger.info("Sentry initialized", environment=environment, release=release)
    return True


def _before_send(event: Dict[str, Any], hint: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tag every event with the delivery it belongs to."""
    request_id = get_request_id()
    if request_id:
        event.setdefault("tags", {})["request_id"] = request_id

    event_id = get_event_id()
    if event_id:
        event.setdefault("tags", {})["webhook_event_id"] = event_id

    return event


def _enrich(context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        **get_context_dict(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **(context or {}),
    }


def capture_exception(
    exc: BaseException,
    context: Optional[Dict[str, Any]] = None,
    level: str = "error",
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Capture an exception with Sentry and structured logging.

    Args:
        exc: Exception to capture
        context: Additional context dict (e.g., {"contribution_id": "..."})
        level: Severity level (debug, info, warning, error, fatal)
        fingerprint: Custom grouping fingerprint for Sentry

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = _enrich({"error_type": type(exc).__name__, **(context or {})})

    # Always log, even without Sentry
    logger.error("Exception captured", exc_info=exc, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return sentry_sdk.capture_exception(exc)
    except Exception as e:
        logger.warning("Failed to send exception to Sentry", error=str(e))
        return None


def capture_message(
    message: str,
    level: str = "info",
    context: Optional[Dict[str, Any]] = None,
    fingerprint: Optional[list[str]] = None,
) -> Optional[str]:
    """
    Capture a message with Sentry (for failures that are results, not exceptions).

    Used for data-integrity failures reported by webhook handlers: the
    handler returns a result instead of raising, but drift between the
    gateway and the store still needs a human to look at it.

    Returns:
        Sentry event ID or None if not sent
    """
    enriched_context = _enrich(context)

    log_func = getattr(logger, level, logger.info)
    log_func(message, **enriched_context)

    if not _sentry_initialized:
        return None

    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in enriched_context.items():
                if value is not None:
                    scope.set_extra(key, value)
            if fingerprint:
                scope.fingerprint = fingerprint
            scope.level = level
            return sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.warning("Failed to send message to Sentry", error=str(e))
        return None
