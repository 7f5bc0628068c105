"""
API Dependencies module.

Provides shared FastAPI dependencies for route handlers.
"""

from harbor_entitlements.api.dependencies.engine import (
    create_authorization_check,
    get_account_repository,
    get_audit_sink,
    get_billing_gateway,
    get_ownership_lookup,
    get_tier_catalog,
    raise_http_error,
)

__all__ = [
    "create_authorization_check",
    "get_account_repository",
    "get_audit_sink",
    "get_billing_gateway",
    "get_ownership_lookup",
    "get_tier_catalog",
    "raise_http_error",
]
