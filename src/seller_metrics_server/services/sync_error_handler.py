"""Classification of per-user sync failures.

Order syncs and token refreshes both route their exceptions through
``SyncErrorHandler.classify``. The resulting ``SyncError`` is what the
orchestrator writes to the credential's ``last_sync_error`` and to the
sync log, so the bookkeeping UI and the logs always agree on what happened.

Categories the scheduler retries on its own are those with a delay in
``RETRY_DELAYS``. The rest wait for the seller: reconnecting the account,
or a code fix for payloads eBay sends that we cannot map.
"""

import json
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from seller_metrics_server.core.security import TokenDecryptionError
from seller_metrics_server.models.sync_log import SyncErrorType
from seller_metrics_server.services.credentials import (
    NotConnectedError,
    ReauthorizationRequiredError,
)
from seller_metrics_server.services.ebay_client import EbayApiError

logger = structlog.get_logger()

# Seconds before the scheduler should try again; None waits for the seller
RETRY_DELAYS: dict[SyncErrorType, int | None] = {
    SyncErrorType.RATE_LIMITED: 15 * 60,
    SyncErrorType.API_UNAVAILABLE: 5 * 60,
    SyncErrorType.API_TIMEOUT: 60,
    SyncErrorType.DATABASE_ERROR: 60,
    SyncErrorType.INTERNAL_ERROR: 5 * 60,
    SyncErrorType.NOT_CONNECTED: None,
    SyncErrorType.REAUTH_REQUIRED: None,
    SyncErrorType.TOKEN_INVALID: None,
    SyncErrorType.API_ERROR: None,
    SyncErrorType.INVALID_RESPONSE: None,
    SyncErrorType.TRANSFORM_ERROR: None,
    SyncErrorType.FETCH_TRUNCATED: None,
}

# Trimmed copies of eBay bodies and exception text kept in sync log details
DETAIL_LIMIT = 500
LOG_BODY_LIMIT = 200


def get_retry_delay(error_type: SyncErrorType) -> int | None:
    """Seconds to wait before retrying, or None when only the seller can fix it."""
    return RETRY_DELAYS.get(error_type)


def is_retryable(error_type: SyncErrorType) -> bool:
    """Whether the scheduler may retry this category without user action."""
    return get_retry_delay(error_type) is not None


@dataclass
class SyncError:
    """A classified failure, ready to persist.

    Attributes:
        error_type: Category shown to the seller and used for retry policy
        message: Text stored as the credential's last_sync_error
        details: Context for the sync log (user_id, endpoint, trimmed bodies)
        retry_after_seconds: From RETRY_DELAYS for the category
        is_transient: True when a later pass may succeed unaided
        original_exception: What was raised
    """

    error_type: SyncErrorType
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    retry_after_seconds: int | None = None
    is_transient: bool = False
    original_exception: Exception | None = None

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten into structlog keyword arguments."""
        return {
            **self.details,
            "error_type": self.error_type.value,
            "message": self.message,
            "is_transient": self.is_transient,
            "retry_after_seconds": self.retry_after_seconds,
        }


def _exception_details(exception: Exception) -> dict[str, Any]:
    return {"error_type": type(exception).__name__, "error": str(exception)[:DETAIL_LIMIT]}


def _api_error_type(exception: EbayApiError) -> SyncErrorType:
    status = exception.status_code
    if status == 401:
        return SyncErrorType.TOKEN_INVALID
    # invalid_grant from the token endpoint means the refresh token is dead
    if status == 400 and exception.endpoint.startswith("token"):
        return SyncErrorType.TOKEN_INVALID
    if status == 429:
        return SyncErrorType.RATE_LIMITED
    if status >= 500:
        return SyncErrorType.API_UNAVAILABLE
    return SyncErrorType.API_ERROR


_API_MESSAGES: dict[SyncErrorType, str] = {
    SyncErrorType.TOKEN_INVALID: (
        "eBay rejected the access token. Please reconnect your eBay account."
    ),
    SyncErrorType.RATE_LIMITED: "Rate limited by eBay API. Sync will retry later.",
    SyncErrorType.API_UNAVAILABLE: (
        "eBay API unavailable (HTTP {status}). Sync will retry later."
    ),
    SyncErrorType.API_ERROR: "eBay API error (HTTP {status}) from {endpoint}.",
}


@dataclass(frozen=True)
class _Rule:
    """Maps a family of exceptions to a category and seller-facing message."""

    exceptions: tuple[type[BaseException], ...]
    error_type: SyncErrorType
    message: Callable[[Exception], str]
    with_details: bool = True


# First match wins. TokenDecryptionError, ValidationError and JSONDecodeError
# are ValueErrors, so they sit above the generic transform rule.
_RULES: tuple[_Rule, ...] = (
    _Rule((NotConnectedError,), SyncErrorType.NOT_CONNECTED, str, with_details=False),
    _Rule(
        (ReauthorizationRequiredError,),
        SyncErrorType.REAUTH_REQUIRED,
        str,
        with_details=False,
    ),
    _Rule(
        (TokenDecryptionError,),
        SyncErrorType.TOKEN_INVALID,
        lambda e: (
            "Stored eBay token could not be decrypted. Please reconnect your eBay account."
        ),
        with_details=False,
    ),
    _Rule(
        (httpx.TimeoutException,),
        SyncErrorType.API_TIMEOUT,
        lambda e: f"Request to eBay timed out: {e}",
    ),
    _Rule(
        (httpx.NetworkError,),
        SyncErrorType.API_UNAVAILABLE,
        lambda e: f"Failed to connect to eBay API: {e}",
    ),
    _Rule(
        (ValidationError, json.JSONDecodeError),
        SyncErrorType.INVALID_RESPONSE,
        lambda e: "eBay returned an unexpected response.",
    ),
    _Rule(
        (SQLAlchemyError,),
        SyncErrorType.DATABASE_ERROR,
        lambda e: f"Database error: {type(e).__name__}",
    ),
    _Rule(
        (ValueError, KeyError, TypeError),
        SyncErrorType.TRANSFORM_ERROR,
        lambda e: f"Data transformation failed: {e}",
    ),
)


class SyncErrorHandler:
    """Turns exceptions from a per-user operation into ``SyncError`` records."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="sync_error_handler")

    def classify(
        self,
        exception: Exception,
        context: dict[str, Any] | None = None,
    ) -> SyncError:
        """Categorize ``exception`` and log it once.

        Args:
            exception: What the sync or refresh raised
            context: Merged into details, typically user_id and operation

        Returns:
            The classified error
        """
        context = dict(context or {})

        if isinstance(exception, EbayApiError):
            error = self._from_api_error(exception, context)
        else:
            error = self._from_rules(exception, context)

        self._log(error)
        return error

    def _from_api_error(self, exception: EbayApiError, context: dict[str, Any]) -> SyncError:
        error_type = _api_error_type(exception)
        body = exception.response_body or None
        return self._build(
            error_type,
            _API_MESSAGES[error_type].format(
                status=exception.status_code, endpoint=exception.endpoint
            ),
            exception,
            {
                "endpoint": exception.endpoint,
                "status_code": exception.status_code,
                "response_body": body[:DETAIL_LIMIT] if body else None,
                **context,
            },
        )

    def _from_rules(self, exception: Exception, context: dict[str, Any]) -> SyncError:
        for rule in _RULES:
            if isinstance(exception, rule.exceptions):
                details = {**_exception_details(exception), **context}
                return self._build(
                    rule.error_type,
                    rule.message(exception),
                    exception,
                    details if rule.with_details else context,
                )

        return self._build(
            SyncErrorType.INTERNAL_ERROR,
            f"Unexpected error: {type(exception).__name__}: {exception}",
            exception,
            {**_exception_details(exception), **context},
        )

    @staticmethod
    def _build(
        error_type: SyncErrorType,
        message: str,
        exception: Exception,
        details: dict[str, Any],
    ) -> SyncError:
        return SyncError(
            error_type=error_type,
            message=message,
            details=details,
            retry_after_seconds=get_retry_delay(error_type),
            is_transient=is_retryable(error_type),
            original_exception=exception,
        )

    def _log(self, error: SyncError) -> None:
        fields = error.to_log_dict()
        if isinstance(fields.get("response_body"), str):
            fields["response_body"] = fields["response_body"][:LOG_BODY_LIMIT]

        if error.error_type is SyncErrorType.INTERNAL_ERROR:
            self.logger.error(
                "Unexpected sync failure", exc_info=error.original_exception, **fields
            )
        elif error.is_transient:
            self.logger.warning("Sync failed, will retry", **fields)
        elif error.error_type in (
            SyncErrorType.NOT_CONNECTED,
            SyncErrorType.REAUTH_REQUIRED,
            SyncErrorType.TOKEN_INVALID,
        ):
            self.logger.warning("Sync needs seller action", **fields)
        else:
            self.logger.error("Sync failed", **fields)
