"""
Account entitlement and premium membership routes.

- GET    /api/accounts/{account_id}/entitlements   resolved features and limits
- POST   /api/accounts/{account_id}/membership     activate or renew premium
- DELETE /api/accounts/{account_id}/membership     end premium, fall back to baseline
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from harbor_entitlements.api.dependencies import (
    get_account_repository,
    get_audit_sink,
    get_billing_gateway,
    get_tier_catalog,
    raise_http_error,
)
from harbor_entitlements.entitlements.accounts import load_account
from harbor_entitlements.entitlements.audit import AuditSink
from harbor_entitlements.entitlements.billing import BillingGateway
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.errors import EntitlementError
from harbor_entitlements.entitlements.membership import MembershipLifecycleManager
from harbor_entitlements.entitlements.models import Account, BillingCycle
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["accounts"])


# Request/Response models

class EntitlementResponse(BaseModel):
    account_id: str
    tier_id: str
    premium_active: bool
    features: List[str]
    limits: dict
    resolved_at: str


class ActivateMembershipRequest(BaseModel):
    tier_id: str = Field(..., description="Premium tier to activate", min_length=1, max_length=100)
    billing_cycle: BillingCycle = Field(BillingCycle.MONTHLY, description="monthly or yearly")
    payment_method_id: Optional[str] = Field(None, description="Payment method reference", max_length=255)
    actor_id: Optional[str] = Field(None, description="Acting user or admin", max_length=255)
    idempotency_key: Optional[str] = Field(
        None, description="Reuse when retrying so billing records one charge", max_length=255
    )


class MembershipResponse(BaseModel):
    account_id: str
    account_class: str
    tier_id: str
    premium_active: bool
    plan_tier_id: Optional[str] = None
    expires_at: Optional[str] = None
    billing_cycle: Optional[str] = None
    auto_renew: bool = False


def get_membership_manager(
    repository: AccountRepository = Depends(get_account_repository),
    catalog: TierCatalog = Depends(get_tier_catalog),
    billing: BillingGateway = Depends(get_billing_gateway),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> MembershipLifecycleManager:
    """Get membership lifecycle manager instance."""
    return MembershipLifecycleManager(repository, catalog, billing=billing, audit_sink=audit_sink)


def _membership_response(account: Account) -> MembershipResponse:
    membership = account.membership
    return MembershipResponse(
        account_id=account.account_id,
        account_class=account.account_class.value,
        tier_id=account.current_tier_id,
        premium_active=membership.premium_active,
        plan_tier_id=membership.plan_tier_id,
        expires_at=membership.expires_at.isoformat() if membership.expires_at else None,
        billing_cycle=membership.billing_cycle.value if membership.billing_cycle else None,
        auto_renew=membership.auto_renew,
    )


# Routes

@router.get("/{account_id}/entitlements", response_model=EntitlementResponse)
async def get_entitlements(
    account_id: str,
    repository: AccountRepository = Depends(get_account_repository),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    """Resolve the account's effective features and limits right now."""
    try:
        account = load_account(repository, account_id)
        entitlement = EntitlementResolver(catalog).resolve(account)
    except EntitlementError as e:
        raise_http_error(e)
    return EntitlementResponse(**entitlement.to_dict())


@router.post("/{account_id}/membership", response_model=MembershipResponse)
async def activate_membership(
    account_id: str,
    body: ActivateMembershipRequest,
    manager: MembershipLifecycleManager = Depends(get_membership_manager),
):
    """
    Activate premium membership, or renew it.

    Renewal starts a fresh term from now.
    """
    logger.info(
        "Membership activation requested",
        extra={"account_id": account_id, "tier_id": body.tier_id, "billing_cycle": body.billing_cycle.value},
    )
    try:
        account = manager.activate(
            account_id,
            body.tier_id,
            body.billing_cycle,
            payment_method_id=body.payment_method_id,
            actor_id=body.actor_id,
            idempotency_key=body.idempotency_key,
        )
    except EntitlementError as e:
        raise_http_error(e)
    return _membership_response(account)


@router.delete("/{account_id}/membership", response_model=MembershipResponse)
async def deactivate_membership(
    account_id: str,
    actor_id: Optional[str] = Query(None, description="Acting user or admin"),
    reason: Optional[str] = Query(None, description="Why the membership ends", max_length=500),
    manager: MembershipLifecycleManager = Depends(get_membership_manager),
):
    """End premium membership. No-op when the account is not premium."""
    try:
        account = manager.deactivate(account_id, actor_id=actor_id, reason=reason)
    except EntitlementError as e:
        raise_http_error(e)
    return _membership_response(account)
