"""
Structured error classes for the entitlement and delegation engine.

Every error carries a stable machine-readable ``error_code`` and the HTTP
status routes should answer with, so resource services and the API layer
can translate them without string matching.
"""

from typing import Any, Iterable, Optional

from fastapi import status

# Starlette renamed its 422 constant between releases.
HTTP_422_UNPROCESSABLE = 422


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "ENTITLEMENT_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class TierNotFoundError(EntitlementError):
    """Tier id does not resolve in the catalog."""

    error_code = "TIER_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tier_id: str):
        self.tier_id = tier_id
        super().__init__(f"Tier not found: {tier_id}", tier_id=tier_id)


class TierCatalogConfigError(EntitlementError):
    """Tier catalog configuration is malformed."""

    error_code = "TIER_CATALOG_INVALID"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR


class AccountNotFoundError(EntitlementError):
    error_code = "ACCOUNT_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}", account_id=account_id)


class AccountAlreadyExistsError(EntitlementError):
    error_code = "ACCOUNT_ALREADY_EXISTS"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account already exists: {account_id}", account_id=account_id)


class SubAccountNotFoundError(EntitlementError):
    error_code = "SUB_ACCOUNT_NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, sub_account_id: str):
        self.sub_account_id = sub_account_id
        super().__init__(
            f"Sub-account not found: {sub_account_id}",
            sub_account_id=sub_account_id,
        )


class SubAccountLimitReachedError(EntitlementError):
    """Parent already has as many active sub-accounts as its tier allows."""

    error_code = "SUB_ACCOUNT_LIMIT_REACHED"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, parent_account_id: str, current_count: int, max_count: int):
        self.parent_account_id = parent_account_id
        self.current_count = current_count
        self.max_count = max_count
        super().__init__(
            f"Sub-account limit reached: {current_count}/{max_count}",
            parent_account_id=parent_account_id,
            current_count=current_count,
            max_count=max_count,
        )


class InvalidTierTransitionError(EntitlementError):
    """Account class mismatch or a downgrade path that is not allowed."""

    error_code = "INVALID_TIER_TRANSITION"
    http_status = HTTP_422_UNPROCESSABLE


class InvalidAccessScopeError(EntitlementError):
    """Access scope names listings the parent account does not own."""

    error_code = "INVALID_ACCESS_SCOPE"
    http_status = HTTP_422_UNPROCESSABLE

    def __init__(self, parent_account_id: str, listing_ids: Iterable[str]):
        self.listing_ids = sorted(listing_ids)
        super().__init__(
            "Access scope includes listings not owned by the parent account",
            parent_account_id=parent_account_id,
            listing_ids=self.listing_ids,
        )


class PermissionNotDelegatableError(EntitlementError):
    """Attempt to delegate a permission the parent itself does not hold."""

    error_code = "PERMISSION_NOT_DELEGATABLE"
    http_status = HTTP_422_UNPROCESSABLE

    def __init__(self, parent_account_id: str, permissions: Iterable[str]):
        self.permissions = sorted(str(getattr(p, "value", p)) for p in permissions)
        super().__init__(
            "Parent account does not hold the requested permissions",
            parent_account_id=parent_account_id,
            permissions=self.permissions,
        )


class SubAccountSuspendedError(EntitlementError):
    error_code = "SUSPENDED"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, sub_account_id: str):
        self.sub_account_id = sub_account_id
        super().__init__(
            f"Sub-account is suspended: {sub_account_id}",
            sub_account_id=sub_account_id,
        )


class ParentEntitlementLapsedError(EntitlementError):
    """The parent account no longer holds the feature behind a delegated action."""

    error_code = "PARENT_ENTITLEMENT_LAPSED"
    http_status = status.HTTP_402_PAYMENT_REQUIRED

    def __init__(self, parent_account_id: str, feature_id: str):
        self.parent_account_id = parent_account_id
        self.feature_id = feature_id
        super().__init__(
            f"Parent account no longer holds feature '{feature_id}'",
            parent_account_id=parent_account_id,
            feature_id=feature_id,
        )


class AuthorizationDeniedError(EntitlementError):
    """Generic denial for reasons without a dedicated error class."""

    error_code = "AUTHORIZATION_DENIED"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, reason: str, actor_id: str, action: str, resource_id: Optional[str] = None):
        self.reason = reason
        super().__init__(
            f"Action '{action}' denied: {reason}",
            reason=reason,
            actor_id=actor_id,
            action=action,
            resource_id=resource_id,
        )


class InvalidAccountTypeError(EntitlementError):
    """Operation needs a different account class (e.g. a dealer parent)."""

    error_code = "INVALID_ACCOUNT_TYPE"
    http_status = HTTP_422_UNPROCESSABLE

    def __init__(self, account_id: str, account_class: str, expected: str):
        super().__init__(
            f"Account {account_id} is a {account_class} account, expected {expected}",
            account_id=account_id,
            account_class=account_class,
            expected=expected,
        )


class BillingFailedError(EntitlementError):
    error_code = "BILLING_FAILED"
    http_status = status.HTTP_402_PAYMENT_REQUIRED


class BulkOperationLimitError(EntitlementError):
    error_code = "BULK_LIMIT_EXCEEDED"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, requested: int, maximum: int):
        super().__init__(
            f"Maximum {maximum} items per bulk operation, got {requested}",
            requested=requested,
            maximum=maximum,
        )


class TransientFailureError(EntitlementError):
    """
    Internal I/O failed (persistence, ownership lookup) or write retries ran out.

    Callers decide whether to retry the whole user-facing operation.
    """

    error_code = "TRANSIENT_FAILURE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, operation: str, cause: str):
        self.operation = operation
        super().__init__(
            f"Transient failure during {operation}: {cause}",
            operation=operation,
            cause=cause,
        )


class ConcurrentModificationError(EntitlementError):
    """
    Conditional write lost to a concurrent writer.

    Internal: retried by the write path and surfaced as TransientFailureError
    once attempts run out.
    """

    error_code = "CONCURRENT_MODIFICATION"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, entity_id: str, expected_version: int):
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_id} changed since version {expected_version}",
            entity_id=entity_id,
            expected_version=expected_version,
        )
