"""
Entitlement resolver: tier (or premium snapshot) + live capability grants.

Resolution order (deterministic):
    1. Premium snapshot if membership is premium at `now`, else the live tier
    2. Authoritative grant per feature (latest record wins)
    3. Live grants only: enabled and not expired
    4. Features = base features UNION live grant features
    5. Limits = base limits extended by each live grant's overrides (max per field)

Grants only ever add. A revoked or expired grant can never take a feature
away from what the tier itself provides.

live_grants() is the only place grant expiry is interpreted.
"""

import logging
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional

from harbor_entitlements.entitlements.models import (
    CapabilityGrant,
    EffectiveEntitlement,
    HasEntitlement,
    Limits,
    Tier,
    utcnow,
)

logger = logging.getLogger(__name__)


def authoritative_grants(grants: Iterable[CapabilityGrant]) -> Dict[str, CapabilityGrant]:
    """
    Reduce an append-only grant history to the current record per feature.

    The most recently granted record wins; on equal timestamps the one
    appended later wins.
    """
    current: Dict[str, CapabilityGrant] = {}
    for grant in grants:
        existing = current.get(grant.feature_id)
        if existing is None or grant.granted_at >= existing.granted_at:
            current[grant.feature_id] = grant
    return current


def live_grants(grants: Iterable[CapabilityGrant], now: datetime) -> List[CapabilityGrant]:
    """Authoritative grants that are enabled and not expired at `now`."""
    return [
        grant
        for grant in authoritative_grants(grants).values()
        if grant.enabled and (grant.expires_at is None or grant.expires_at > now)
    ]


def resolve_entitlement(
    account: HasEntitlement,
    tier: Optional[Tier],
    now: Optional[datetime] = None,
) -> EffectiveEntitlement:
    """
    Resolve the effective entitlement of an account. Pure function.

    Args:
        account: Any account variant
        tier: The account's current tier. May be None only while the premium
            snapshot is in force.
        now: Evaluation instant (defaults to current UTC time)

    Raises:
        ValueError: tier is None and no premium snapshot applies
    """
    now = now or utcnow()
    membership = account.membership

    # 1. Base features/limits
    if membership.is_premium_at(now) and membership.limits_snapshot is not None:
        base_features: FrozenSet[str] = membership.features_snapshot
        base_limits: Limits = membership.limits_snapshot
        tier_id = membership.plan_tier_id or account.current_tier_id
        premium_active = True
    else:
        if tier is None:
            raise ValueError(f"Tier required to resolve account {account.account_id}")
        base_features = tier.feature_ids
        base_limits = tier.limits
        tier_id = tier.tier_id
        premium_active = False

    # 2-3. Live grants
    grants = live_grants(account.capabilities, now)

    # 4. Union features
    features = base_features.union(g.feature_id for g in grants)

    # 5. Max-merge limit overrides
    limits = base_limits
    for grant in grants:
        if grant.limits:
            limits = limits.extended_by(grant.limits)

    return EffectiveEntitlement(
        account_id=account.account_id,
        tier_id=tier_id,
        features=frozenset(features),
        limits=limits,
        premium_active=premium_active,
        resolved_at=now,
    )


class EntitlementResolver:
    """
    Resolves accounts against the tier catalog.

    The catalog is only consulted when the premium snapshot is not in force,
    which isolates premium accounts from catalog changes mid-subscription.
    An account still pointing at a premium tier after its membership lapsed
    (not yet swept) resolves against its class baseline.
    """

    def __init__(self, catalog):
        self.catalog = catalog

    def resolve(self, account: HasEntitlement, now: Optional[datetime] = None) -> EffectiveEntitlement:
        """
        Raises:
            TierNotFoundError: Current tier does not exist and no snapshot applies
        """
        now = now or utcnow()
        tier = None
        if not account.membership.is_premium_at(now) or account.membership.limits_snapshot is None:
            tier = self.catalog.get_tier(account.current_tier_id)
            if tier.is_premium:
                tier = self.catalog.baseline_tier(account.account_class)
        return resolve_entitlement(account, tier, now)
