"""
Tier catalog: read-only registry of published tiers.

Lookup failures surface as TierNotFoundError and are never silently
substituted with another tier. Callers decide fallback policy.
"""

import logging
from typing import List, Optional

from harbor_entitlements.config.tier_catalog import TierCatalogLoader, get_tier_catalog_loader
from harbor_entitlements.entitlements.errors import TierNotFoundError
from harbor_entitlements.entitlements.models import AccountClass, Tier

logger = logging.getLogger(__name__)


class TierCatalog:
    """
    Tier lookups backed by the YAML catalog loader.

    Usage:
        catalog = TierCatalog()
        tier = catalog.get_tier("dealer-premium")
        tiers = catalog.list_active_tiers(AccountClass.DEALER)
    """

    def __init__(self, loader: Optional[TierCatalogLoader] = None):
        self.loader = loader or get_tier_catalog_loader()

    def get_tier(self, tier_id: str) -> Tier:
        """
        Get a tier by id. Deactivated tiers still resolve for existing accounts.

        Raises:
            TierNotFoundError: Unknown tier id
        """
        tier = self.loader.tiers.get(tier_id)
        if tier is None:
            logger.warning("Tier lookup failed", extra={"tier_id": tier_id})
            raise TierNotFoundError(tier_id)
        return tier

    def list_active_tiers(self, account_class: Optional[AccountClass] = None) -> List[Tier]:
        """Active tiers, optionally for one account class, sorted by display_order."""
        tiers = [
            t for t in self.loader.tiers.values()
            if t.active and (account_class is None or t.account_class == AccountClass(account_class))
        ]
        return sorted(tiers, key=lambda t: (t.display_order, t.tier_id))

    def baseline_tier(self, account_class: AccountClass) -> Tier:
        """
        Non-premium tier an account of this class falls back to.

        Raises:
            TierNotFoundError: No baseline configured for the class
        """
        tier_id = self.loader.baselines.get(AccountClass(account_class))
        if tier_id is None:
            raise TierNotFoundError(f"baseline:{AccountClass(account_class).value}")
        return self.get_tier(tier_id)
