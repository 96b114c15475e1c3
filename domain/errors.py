"""
Error kinds for the bet lifecycle and aggregation service.

Every error carries a machine-readable kind and a human-readable message.
Validation errors also carry field-level details. Store and cache failures
never leak driver text to callers.
"""

import functools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError


logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Machine-readable error kinds"""
    VALIDATION = "validation_error"
    DUPLICATE_SUBMISSION = "duplicate_submission"
    NOT_FOUND = "not_found"
    INVALID_STATE = "invalid_state"
    UNAUTHORIZED = "unauthorized"
    DAILY_LIMIT = "daily_limit_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"
    CACHE_UNAVAILABLE = "cache_unavailable"


@dataclass
class FieldError:
    field: str
    message: str


class BettingError(Exception):
    """Base exception for all service errors"""

    kind: ErrorKind = ErrorKind.VALIDATION
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[List[FieldError]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or []
        self.original_error = original_error
        self.timestamp = time.time()

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing representation; never includes the original error"""
        return {
            "success": False,
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": [{"field": d.field, "message": d.message} for d in self.details],
        }


class ValidationError(BettingError):
    """Malformed or out-of-range input"""
    kind = ErrorKind.VALIDATION

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(f"Invalid {field}: {message}", details=[FieldError(field, message)])


class DuplicateSubmission(BettingError):
    """Replay of an already recorded transaction hash"""
    kind = ErrorKind.DUPLICATE_SUBMISSION


class NotFound(BettingError):
    kind = ErrorKind.NOT_FOUND


class InvalidState(BettingError):
    """Operation attempted against a bet outside the required state"""
    kind = ErrorKind.INVALID_STATE


class Unauthorized(BettingError):
    kind = ErrorKind.UNAUTHORIZED


class DailyLimitExceeded(BettingError):
    kind = ErrorKind.DAILY_LIMIT


class StoreUnavailable(BettingError):
    """Record store I/O failure; safe to retry"""
    kind = ErrorKind.STORE_UNAVAILABLE
    retryable = True


class CacheUnavailable(BettingError):
    """Cache I/O failure; always bypassed, never surfaced"""
    kind = ErrorKind.CACHE_UNAVAILABLE
    retryable = True


def translate_store_errors(operation: str, conflicts_are_duplicates: bool = False):
    """
    Decorator mapping SQLAlchemy failures to service errors.

    With ``conflicts_are_duplicates`` a uniqueness violation becomes
    DuplicateSubmission; otherwise it is a store failure like anything else
    from the store and becomes StoreUnavailable. Service errors pass through
    untouched.

    Usage:
    @translate_store_errors("place bet", conflicts_are_duplicates=True)
    async def place_bet(self, ...):
        ...
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except BettingError:
                raise
            except IntegrityError as e:
                if not conflicts_are_duplicates:
                    logger.error(f"Integrity violation during {operation}: {e.orig}")
                    raise StoreUnavailable(
                        "Record store temporarily unavailable, please retry",
                        original_error=e
                    )
                logger.warning(f"Integrity violation during {operation}: {e.orig}")
                raise DuplicateSubmission(
                    f"Duplicate submission rejected during {operation}",
                    original_error=e
                )
            except SQLAlchemyError as e:
                logger.error(f"Record store failure during {operation}: {e}")
                raise StoreUnavailable(
                    "Record store temporarily unavailable, please retry",
                    original_error=e
                )

        return wrapper
    return decorator
