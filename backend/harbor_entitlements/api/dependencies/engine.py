"""
Engine dependencies for route handlers.

Collaborators (catalog, ownership lookup, audit sink, billing) are process
singletons; repositories are per request. Tests swap any of them through
app.dependency_overrides.
"""

import logging
from threading import Lock
from typing import Callable, NoReturn, Optional

from fastapi import Depends, Header, HTTPException, Request

from harbor_entitlements.constants.permissions import Action
from harbor_entitlements.database.session import get_db_session
from harbor_entitlements.entitlements.audit import AuditSink, LoggingAuditSink
from harbor_entitlements.entitlements.billing import BillingGateway, LoggingBillingGateway
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.delegation import (
    AuthorizationDecision,
    DelegationAuthorizationEngine,
)
from harbor_entitlements.entitlements.errors import EntitlementError
from harbor_entitlements.entitlements.ownership import OwnershipLookup, get_default_ownership_lookup
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

_lock = Lock()
_catalog: Optional[TierCatalog] = None
_ownership: Optional[OwnershipLookup] = None
_audit_sink: Optional[AuditSink] = None
_billing: Optional[BillingGateway] = None


def get_tier_catalog() -> TierCatalog:
    global _catalog
    with _lock:
        if _catalog is None:
            _catalog = TierCatalog()
        return _catalog


def get_ownership_lookup() -> OwnershipLookup:
    global _ownership
    with _lock:
        if _ownership is None:
            _ownership = get_default_ownership_lookup()
        return _ownership


def get_audit_sink() -> AuditSink:
    global _audit_sink
    with _lock:
        if _audit_sink is None:
            _audit_sink = LoggingAuditSink()
        return _audit_sink


def get_billing_gateway() -> BillingGateway:
    global _billing
    with _lock:
        if _billing is None:
            _billing = LoggingBillingGateway()
        return _billing


def get_account_repository(db_session=Depends(get_db_session)) -> AccountRepository:
    return AccountRepository(db_session)


def raise_http_error(error: EntitlementError) -> NoReturn:
    """Translate an engine error into an HTTPException carrying its error body."""
    if error.http_status >= 500:
        logger.error("Entitlement operation failed", extra=error.to_dict())
    raise HTTPException(status_code=error.http_status, detail=error.to_dict())


def create_authorization_check(action: Action, resource_param: Optional[str] = None) -> Callable:
    """
    Factory for a dependency that authorizes the calling actor for an action.

    The actor comes from the X-Actor-Id header. When resource_param is given,
    the resource id is read from that path parameter.

    Usage:
        check_listing_edit = create_authorization_check(Action.LISTING_EDIT, "listing_id")

        @router.put("/listings/{listing_id}")
        async def edit_listing(listing_id: str, decision=Depends(check_listing_edit)):
            ...

    Returns:
        A FastAPI dependency returning the AuthorizationDecision. Denials
        raise the HTTP error of the matching engine error.
    """

    def check_authorization(
        request: Request,
        x_actor_id: str = Header(..., alias="X-Actor-Id"),
        repository: AccountRepository = Depends(get_account_repository),
        catalog: TierCatalog = Depends(get_tier_catalog),
        ownership: OwnershipLookup = Depends(get_ownership_lookup),
        audit_sink: AuditSink = Depends(get_audit_sink),
    ) -> AuthorizationDecision:
        resource_id = request.path_params.get(resource_param) if resource_param else None
        engine = DelegationAuthorizationEngine(
            repository, EntitlementResolver(catalog), ownership, audit_sink
        )
        try:
            decision = engine.authorize(x_actor_id, action, resource_id)
            decision.raise_if_denied()
        except EntitlementError as e:
            logger.warning(
                "Action not authorized",
                extra={"actor_id": x_actor_id, "action": Action(action).value, "resource_id": resource_id},
            )
            raise_http_error(e)
        return decision

    return check_authorization
