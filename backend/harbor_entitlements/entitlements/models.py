"""
Entitlement models: canonical types for tiers, grants, memberships and accounts.

Provides:
- Limits: Numeric and boolean tier limits with max-merge for grant overrides
- Tier: Immutable catalog entry (features, limits, pricing)
- CapabilityGrant: Append-only per-account feature grant with optional expiry
- MembershipDetails: Premium membership state and point-in-time snapshot
- IndividualAccount / DealerAccount / SalesAccount: closed account variant
- SubAccount / AccessScope: Delegated identity acting under a dealer
- EffectiveEntitlement: Resolved features and limits at an instant

"Is this account premium right now" is answered in exactly one place:
MembershipDetails.is_premium_at(). Nothing else compares expires_at for
membership purposes.

CRITICAL: All value objects are frozen. State changes produce new objects
via dataclasses.replace() and are persisted with a conditional write.
"""

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import (
    Any, ClassVar, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Tuple, Union,
)

from harbor_entitlements.constants.permissions import (
    DelegatedPermission,
    ScopeArea,
    SubAccountRole,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class AccountClass(str, Enum):
    """Kind of primary account."""
    INDIVIDUAL = "individual"
    DEALER = "dealer"
    SALES = "sales"


# Tiers are only published for these classes; sales accounts borrow a baseline.
TIER_ACCOUNT_CLASSES = frozenset({AccountClass.INDIVIDUAL, AccountClass.DEALER})


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def term(self) -> timedelta:
        """Length of one paid term. Renewal always starts from activation time."""
        if self == BillingCycle.YEARLY:
            return timedelta(days=365)
        return timedelta(days=30)


class SubAccountStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


# ---------------------------------------------------------------------------
# Limits
# ---------------------------------------------------------------------------

NUMERIC_LIMITS = ("max_listings", "max_images", "featured_listings", "max_sub_accounts")
BOOLEAN_LIMITS = (
    "priority_placement",
    "analytics_access",
    "bulk_operations",
    "advanced_search",
    "premium_support",
)


@dataclass(frozen=True)
class Limits:
    """
    Tier limits. Numeric limits are non-negative integers.

    Grants may only extend limits: extended_by() takes the maximum per field,
    and for boolean limits the maximum of False/True is a logical OR.
    """
    max_listings: int = 0
    max_images: int = 0
    featured_listings: int = 0
    max_sub_accounts: int = 0
    priority_placement: bool = False
    analytics_access: bool = False
    bulk_operations: bool = False
    advanced_search: bool = False
    premium_support: bool = False

    def __post_init__(self):
        for name in NUMERIC_LIMITS:
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"Limit '{name}' must be a non-negative integer, got {value!r}")
        for name in BOOLEAN_LIMITS:
            if not isinstance(getattr(self, name), bool):
                raise ValueError(f"Limit '{name}' must be a boolean")

    @staticmethod
    def validate_overrides(overrides: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Validate a grant's limit override map.

        Raises:
            ValueError: Unknown limit name or invalid value
        """
        cleaned: Dict[str, Any] = {}
        for name, value in (overrides or {}).items():
            if name in NUMERIC_LIMITS:
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ValueError(f"Override '{name}' must be a non-negative integer")
            elif name in BOOLEAN_LIMITS:
                if not isinstance(value, bool):
                    raise ValueError(f"Override '{name}' must be a boolean")
            else:
                raise ValueError(f"Unknown limit: {name}")
            cleaned[name] = value
        return cleaned

    def extended_by(self, overrides: Mapping[str, Any]) -> "Limits":
        changes: Dict[str, Any] = {}
        for name, value in overrides.items():
            if name in NUMERIC_LIMITS:
                changes[name] = max(getattr(self, name), int(value))
            elif name in BOOLEAN_LIMITS:
                changes[name] = getattr(self, name) or bool(value)
        return replace(self, **changes) if changes else self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Limits":
        unknown = set(data) - set(NUMERIC_LIMITS) - set(BOOLEAN_LIMITS)
        if unknown:
            raise ValueError(f"Unknown limits: {sorted(unknown)}")
        return cls(**dict(data))


# ---------------------------------------------------------------------------
# Tier catalog types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Feature:
    feature_id: str
    enabled: bool = True


@dataclass(frozen=True)
class TierPricing:
    """Prices in minor units (cents)."""
    currency: str = "USD"
    monthly_cents: Optional[int] = None
    yearly_cents: Optional[int] = None

    def amount_for(self, cycle: BillingCycle) -> Optional[int]:
        if cycle == BillingCycle.YEARLY:
            return self.yearly_cents
        return self.monthly_cents


@dataclass(frozen=True)
class Tier:
    """
    A published tier. Immutable once published.

    A new version of a tier is a new record with a new tier_id; limits are
    never changed in place.
    """
    tier_id: str
    name: str
    account_class: AccountClass
    is_premium: bool
    features: Tuple[Feature, ...]
    limits: Limits
    pricing: TierPricing = field(default_factory=TierPricing)
    active: bool = True
    display_order: int = 0

    def __post_init__(self):
        if self.account_class not in TIER_ACCOUNT_CLASSES:
            raise ValueError(f"Tiers cannot be published for {self.account_class!r}")

    @property
    def feature_ids(self) -> FrozenSet[str]:
        """Enabled feature ids of this tier."""
        return frozenset(f.feature_id for f in self.features if f.enabled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "name": self.name,
            "account_class": self.account_class.value,
            "is_premium": self.is_premium,
            "features": [asdict(f) for f in self.features],
            "limits": self.limits.to_dict(),
            "pricing": asdict(self.pricing),
            "active": self.active,
            "display_order": self.display_order,
        }


# ---------------------------------------------------------------------------
# Capability grants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CapabilityGrant:
    """
    One append-only grant record in an account's capability list.

    A grant without expires_at is permanent until a later record for the
    same feature revokes it (enabled=False).
    """
    feature_id: str
    enabled: bool = True
    expires_at: Optional[datetime] = None
    granted_by: Optional[str] = None
    granted_at: datetime = field(default_factory=utcnow)
    limits: Mapping[str, Any] = field(default_factory=dict)
    grant_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "feature_id": self.feature_id,
            "enabled": self.enabled,
            "expires_at": _iso(self.expires_at),
            "granted_by": self.granted_by,
            "granted_at": _iso(self.granted_at),
            "limits": dict(self.limits),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CapabilityGrant":
        return cls(
            grant_id=data["grant_id"],
            feature_id=data["feature_id"],
            enabled=bool(data.get("enabled", True)),
            expires_at=_parse_dt(data.get("expires_at")),
            granted_by=data.get("granted_by"),
            granted_at=_parse_dt(data["granted_at"]),
            limits=dict(data.get("limits") or {}),
        )


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MembershipDetails:
    """
    Premium membership state attached to an account.

    features_snapshot/limits_snapshot are copies taken at activation, not live
    references into the catalog.
    """
    premium_active: bool = False
    plan_tier_id: Optional[str] = None
    features_snapshot: FrozenSet[str] = frozenset()
    limits_snapshot: Optional[Limits] = None
    expires_at: Optional[datetime] = None
    auto_renew: bool = False
    billing_cycle: Optional[BillingCycle] = None
    activated_at: Optional[datetime] = None

    def is_premium_at(self, now: datetime) -> bool:
        """The single authoritative "is this account premium" check."""
        return (
            self.premium_active
            and self.expires_at is not None
            and self.expires_at > now
        )

    def is_due(self, now: datetime) -> bool:
        return (
            self.premium_active
            and self.expires_at is not None
            and self.expires_at <= now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "premium_active": self.premium_active,
            "plan_tier_id": self.plan_tier_id,
            "features_snapshot": sorted(self.features_snapshot),
            "limits_snapshot": self.limits_snapshot.to_dict() if self.limits_snapshot else None,
            "expires_at": _iso(self.expires_at),
            "auto_renew": self.auto_renew,
            "billing_cycle": self.billing_cycle.value if self.billing_cycle else None,
            "activated_at": _iso(self.activated_at),
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "MembershipDetails":
        if not data:
            return cls()
        limits = data.get("limits_snapshot")
        cycle = data.get("billing_cycle")
        return cls(
            premium_active=bool(data.get("premium_active", False)),
            plan_tier_id=data.get("plan_tier_id"),
            features_snapshot=frozenset(data.get("features_snapshot") or ()),
            limits_snapshot=Limits.from_dict(limits) if limits else None,
            expires_at=_parse_dt(data.get("expires_at")),
            auto_renew=bool(data.get("auto_renew", False)),
            billing_cycle=BillingCycle(cycle) if cycle else None,
            activated_at=_parse_dt(data.get("activated_at")),
        )


# ---------------------------------------------------------------------------
# Accounts (closed variant)
# ---------------------------------------------------------------------------

class HasEntitlement(Protocol):
    """What the resolver needs from an account."""
    account_id: str
    current_tier_id: str
    membership: MembershipDetails
    capabilities: Tuple[CapabilityGrant, ...]


@dataclass(frozen=True)
class IndividualAccount:
    account_id: str
    current_tier_id: str
    membership: MembershipDetails = field(default_factory=MembershipDetails)
    capabilities: Tuple[CapabilityGrant, ...] = ()
    payment_method_id: Optional[str] = None
    version: int = 1

    account_class: ClassVar[AccountClass] = AccountClass.INDIVIDUAL


@dataclass(frozen=True)
class DealerAccount:
    account_id: str
    current_tier_id: str
    membership: MembershipDetails = field(default_factory=MembershipDetails)
    capabilities: Tuple[CapabilityGrant, ...] = ()
    payment_method_id: Optional[str] = None
    business_name: Optional[str] = None
    version: int = 1

    account_class: ClassVar[AccountClass] = AccountClass.DEALER


@dataclass(frozen=True)
class SalesAccount:
    """Internal sales rep. Holds no premium membership of its own."""
    account_id: str
    current_tier_id: str
    capabilities: Tuple[CapabilityGrant, ...] = ()
    assigned_customer_ids: FrozenSet[str] = frozenset()
    version: int = 1

    account_class: ClassVar[AccountClass] = AccountClass.SALES

    @property
    def membership(self) -> MembershipDetails:
        return MembershipDetails()


Account = Union[IndividualAccount, DealerAccount, SalesAccount]

ACCOUNT_TYPES: Dict[AccountClass, type] = {
    AccountClass.INDIVIDUAL: IndividualAccount,
    AccountClass.DEALER: DealerAccount,
    AccountClass.SALES: SalesAccount,
}


# ---------------------------------------------------------------------------
# Sub-accounts
# ---------------------------------------------------------------------------

ALL_LISTINGS = "all"


@dataclass(frozen=True)
class AccessScope:
    """
    Subset of the parent's business a sub-account may act on.

    listings is either "all" or an explicit frozenset of listing ids.
    """
    listings: Union[str, FrozenSet[str]] = ALL_LISTINGS
    leads: bool = False
    analytics: bool = False
    inventory: bool = False
    pricing: bool = False
    communications: bool = False

    def __post_init__(self):
        if isinstance(self.listings, str):
            if self.listings != ALL_LISTINGS:
                raise ValueError(f"listings must be '{ALL_LISTINGS}' or a set of ids")
        else:
            object.__setattr__(self, "listings", frozenset(self.listings))

    @property
    def all_listings(self) -> bool:
        return self.listings == ALL_LISTINGS

    @property
    def listing_ids(self) -> FrozenSet[str]:
        return frozenset() if self.all_listings else self.listings

    def covers_listing(self, listing_id: str) -> bool:
        return self.all_listings or listing_id in self.listings

    def allows(self, area: ScopeArea) -> bool:
        # Listing access is narrowed per resource, not switched off as a whole
        if area == ScopeArea.LISTINGS:
            return True
        return bool(getattr(self, area.value))

    def merged(self, changes: Mapping[str, Any]) -> "AccessScope":
        return AccessScope.from_dict({**self.to_dict(), **changes})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "listings": ALL_LISTINGS if self.all_listings else sorted(self.listings),
            "leads": self.leads,
            "analytics": self.analytics,
            "inventory": self.inventory,
            "pricing": self.pricing,
            "communications": self.communications,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "AccessScope":
        if not data:
            return cls()
        unknown = set(data) - {"listings", *(a.value for a in ScopeArea)}
        if unknown:
            raise ValueError(f"Unknown access scope fields: {sorted(unknown)}")
        listings = data.get("listings", ALL_LISTINGS)
        if not isinstance(listings, str):
            listings = frozenset(listings)
        return cls(
            listings=listings,
            leads=bool(data.get("leads", False)),
            analytics=bool(data.get("analytics", False)),
            inventory=bool(data.get("inventory", False)),
            pricing=bool(data.get("pricing", False)),
            communications=bool(data.get("communications", False)),
        )


class HasDelegation(Protocol):
    """What the authorization engine needs from a delegated identity."""
    account_id: str
    parent_account_id: str
    status: SubAccountStatus
    access_scope: AccessScope
    delegated_permissions: FrozenSet[DelegatedPermission]


@dataclass(frozen=True)
class SubAccount:
    sub_account_id: str
    parent_account_id: str
    email: str
    role: SubAccountRole
    access_scope: AccessScope
    delegated_permissions: FrozenSet[DelegatedPermission]
    name: Optional[str] = None
    status: SubAccountStatus = SubAccountStatus.ACTIVE
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    version: int = 1

    @property
    def account_id(self) -> str:
        return self.sub_account_id

    @property
    def is_active(self) -> bool:
        return self.status == SubAccountStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub_account_id": self.sub_account_id,
            "parent_account_id": self.parent_account_id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "access_scope": self.access_scope.to_dict(),
            "delegated_permissions": sorted(p.value for p in self.delegated_permissions),
            "status": self.status.value,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }


def permission_set(values: Iterable[Union[str, DelegatedPermission]]) -> FrozenSet[DelegatedPermission]:
    """Coerce raw permission ids; unknown ids raise ValueError."""
    return frozenset(DelegatedPermission(v) for v in values)


# ---------------------------------------------------------------------------
# Resolved entitlement
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EffectiveEntitlement:
    """
    Resolved features and limits for one account at one instant.

    Immutable: safe to cache per (account_id, version).
    """
    account_id: str
    tier_id: str
    features: FrozenSet[str]
    limits: Limits
    premium_active: bool
    resolved_at: datetime

    def has_feature(self, feature_id: str) -> bool:
        return feature_id in self.features

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "tier_id": self.tier_id,
            "features": sorted(self.features),
            "limits": self.limits.to_dict(),
            "premium_active": self.premium_active,
            "resolved_at": _iso(self.resolved_at),
        }
