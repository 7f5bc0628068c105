"""
Authorization API route.

The single check resource services call before performing a mutation:

    POST /api/authorize {"actor_id", "action", "resource_id"?} -> {"allowed", "reason"}

A denial is a normal 200 response with allowed=false and a reason code.
Errors are reserved for failures of the check itself.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from harbor_entitlements.api.dependencies import (
    get_account_repository,
    get_audit_sink,
    get_ownership_lookup,
    get_tier_catalog,
    raise_http_error,
)
from harbor_entitlements.constants.permissions import Action
from harbor_entitlements.entitlements.audit import AuditSink
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.delegation import DelegationAuthorizationEngine
from harbor_entitlements.entitlements.errors import EntitlementError
from harbor_entitlements.entitlements.ownership import OwnershipLookup
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["authorization"])


# Request/Response models

class AuthorizeRequest(BaseModel):
    actor_id: str = Field(..., description="Account or sub-account id", min_length=1, max_length=255)
    action: Action = Field(..., description="Action the actor wants to perform")
    resource_id: Optional[str] = Field(None, description="Targeted resource, e.g. a listing id", max_length=255)


class AuthorizeResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None


def get_authorization_engine(
    repository: AccountRepository = Depends(get_account_repository),
    catalog: TierCatalog = Depends(get_tier_catalog),
    ownership: OwnershipLookup = Depends(get_ownership_lookup),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> DelegationAuthorizationEngine:
    """Get authorization engine instance."""
    return DelegationAuthorizationEngine(
        repository, EntitlementResolver(catalog), ownership, audit_sink
    )


# Routes

@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize(
    body: AuthorizeRequest,
    engine: DelegationAuthorizationEngine = Depends(get_authorization_engine),
):
    try:
        decision = engine.authorize(body.actor_id, body.action, body.resource_id)
    except EntitlementError as e:
        raise_http_error(e)
    return AuthorizeResponse(**decision.to_dict())
