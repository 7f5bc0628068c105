"""
Tier Catalog API routes.

Read-only listing of published tiers for display and plan selection.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from harbor_entitlements.api.dependencies import get_tier_catalog, raise_http_error
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.errors import EntitlementError
from harbor_entitlements.entitlements.models import AccountClass, Tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tiers", tags=["tiers"])


# Response models

class TierPricingResponse(BaseModel):
    currency: str
    monthly_cents: Optional[int] = None
    yearly_cents: Optional[int] = None


class TierSummaryResponse(BaseModel):
    """Tier information for display and selection."""
    tier_id: str
    name: str
    account_class: str
    is_premium: bool
    features: List[str]
    limits: dict
    pricing: TierPricingResponse
    display_order: int


class TiersListResponse(BaseModel):
    tiers: List[TierSummaryResponse]
    total: int


def _tier_response(tier: Tier) -> TierSummaryResponse:
    return TierSummaryResponse(
        tier_id=tier.tier_id,
        name=tier.name,
        account_class=tier.account_class.value,
        is_premium=tier.is_premium,
        features=sorted(tier.feature_ids),
        limits=tier.limits.to_dict(),
        pricing=TierPricingResponse(
            currency=tier.pricing.currency,
            monthly_cents=tier.pricing.monthly_cents,
            yearly_cents=tier.pricing.yearly_cents,
        ),
        display_order=tier.display_order,
    )


# Routes

@router.get("", response_model=TiersListResponse)
async def list_tiers(
    account_class: Optional[AccountClass] = Query(None, description="Only tiers of this account class"),
    catalog: TierCatalog = Depends(get_tier_catalog),
):
    """List active tiers sorted by display order."""
    tiers = catalog.list_active_tiers(account_class)
    return TiersListResponse(tiers=[_tier_response(t) for t in tiers], total=len(tiers))


@router.get("/{tier_id}", response_model=TierSummaryResponse)
async def get_tier(tier_id: str, catalog: TierCatalog = Depends(get_tier_catalog)):
    try:
        return _tier_response(catalog.get_tier(tier_id))
    except EntitlementError as e:
        raise_http_error(e)
