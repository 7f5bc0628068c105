"""
Health check route. No authentication, no database access.
"""

from fastapi import APIRouter, Depends

from harbor_entitlements import __version__
from harbor_entitlements.api.dependencies import get_tier_catalog
from harbor_entitlements.entitlements.catalog import TierCatalog

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(catalog: TierCatalog = Depends(get_tier_catalog)):
    return {
        "status": "ok",
        "version": __version__,
        "tier_catalog_version": catalog.loader.version,
        "active_tiers": len(catalog.list_active_tiers()),
    }
