"""
Retry policy for engine reads and writes.

Writes: the whole read-compute-write operation is re-run when the
conditional write loses (ConcurrentModificationError). When attempts run
out, or persistence itself fails, callers get TransientFailureError.

Reads: one retry after a short backoff, then TransientFailureError.

Configuration:
- ENTITLEMENT_WRITE_MAX_ATTEMPTS: Attempts per write operation (default: 3)
- ENTITLEMENT_READ_RETRY_BACKOFF_SECONDS: Delay before the read retry (default: 0.05)
"""

import logging
import os
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from harbor_entitlements.entitlements.errors import (
    ConcurrentModificationError,
    TransientFailureError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_WRITE_ATTEMPTS = int(os.getenv("ENTITLEMENT_WRITE_MAX_ATTEMPTS", "3"))
READ_RETRY_BACKOFF_SECONDS = float(os.getenv("ENTITLEMENT_READ_RETRY_BACKOFF_SECONDS", "0.05"))


class LookupFailedError(Exception):
    """An external read collaborator (e.g. ownership lookup) failed."""


# Failures worth one more read attempt
RETRYABLE_READ_ERRORS: Tuple[Type[BaseException], ...] = (SQLAlchemyError, LookupFailedError)


def run_with_optimistic_retry(
    operation: Callable[[], T],
    *,
    operation_name: str,
    entity_id: str,
    max_attempts: int = MAX_WRITE_ATTEMPTS,
) -> T:
    """
    Run a read-compute-write operation, re-running it on write conflicts.

    `operation` must re-read everything it depends on; it is called again
    from scratch after each conflict.

    Raises:
        TransientFailureError: Conflicts persisted past max_attempts, or
            persistence failed
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except ConcurrentModificationError as e:
            if attempt >= max_attempts:
                logger.warning(
                    "Write conflict retries exhausted",
                    extra={
                        "operation": operation_name,
                        "entity_id": entity_id,
                        "attempts": attempt,
                    },
                )
                raise TransientFailureError(operation_name, str(e)) from e
            logger.info(
                "Write conflict, retrying operation",
                extra={
                    "operation": operation_name,
                    "entity_id": entity_id,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                },
            )
        except SQLAlchemyError as e:
            logger.error(
                "Persistence failure during write",
                extra={"operation": operation_name, "entity_id": entity_id, "error": str(e)},
            )
            raise TransientFailureError(operation_name, str(e)) from e


def read_with_retry(
    operation: Callable[[], T],
    *,
    operation_name: str,
    backoff_seconds: float = READ_RETRY_BACKOFF_SECONDS,
    before_retry: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run a read, retrying once after `backoff_seconds` on I/O failure.

    before_retry runs between the attempts (e.g. a session rollback).

    Raises:
        TransientFailureError: The retry failed as well
    """
    try:
        return operation()
    except RETRYABLE_READ_ERRORS as first_error:
        logger.warning(
            "Read failed, retrying once",
            extra={"operation": operation_name, "error": str(first_error)},
        )
    sleep(backoff_seconds)
    if before_retry is not None:
        before_retry()
    try:
        return operation()
    except RETRYABLE_READ_ERRORS as e:
        logger.error(
            "Read failed after retry",
            extra={"operation": operation_name, "error": str(e)},
        )
        raise TransientFailureError(operation_name, str(e)) from e
