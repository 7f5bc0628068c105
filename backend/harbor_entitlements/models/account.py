"""
Account and sub-account models.

One physical row per account: membership and capability grants are JSON
sub-documents of that row, so a single conditional write keeps tier,
membership and grants consistent. premium_active / premium_expires_at are
denormalised from the membership document for the expiration sweep index.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Index, String,
)

from harbor_entitlements.db_base import Base
from harbor_entitlements.constants.permissions import DelegatedPermission, SubAccountRole
from harbor_entitlements.entitlements.models import (
    ACCOUNT_TYPES,
    AccessScope,
    Account,
    AccountClass,
    CapabilityGrant,
    DealerAccount,
    IndividualAccount,
    MembershipDetails,
    SalesAccount,
    SubAccount,
    SubAccountStatus,
)
from harbor_entitlements.models.base import TimestampMixin, VersionedMixin, as_utc, generate_uuid


class AccountRecord(Base, TimestampMixin, VersionedMixin):
    """
    Primary account row.

    account_class selects the variant returned by to_domain().
    """

    __tablename__ = "accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    account_class = Column(
        String(20),
        nullable=False,
        index=True,
        comment="individual, dealer or sales"
    )

    current_tier_id = Column(
        String(100),
        nullable=False,
        comment="Tier id from the tier catalog"
    )

    premium_active = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Mirror of membership.premium_active for the sweep index"
    )

    premium_expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Mirror of membership.expires_at for the sweep index"
    )

    membership = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="MembershipDetails document"
    )

    capabilities = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Append-only list of capability grant documents"
    )

    payment_method_id = Column(
        String(255),
        nullable=True,
        comment="Payment method recorded at premium activation"
    )

    business_name = Column(
        String(255),
        nullable=True,
        comment="Dealer business name"
    )

    assigned_customer_ids = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Customer account ids assigned to a sales account"
    )

    __table_args__ = (
        Index("ix_accounts_premium_expiry", "premium_active", "premium_expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountRecord(id={self.id}, class={self.account_class}, "
            f"tier={self.current_tier_id}, version={self.version})>"
        )

    def to_domain(self) -> Account:
        account_class = AccountClass(self.account_class)
        capabilities = tuple(CapabilityGrant.from_dict(g) for g in (self.capabilities or []))

        if account_class == AccountClass.SALES:
            return SalesAccount(
                account_id=self.id,
                current_tier_id=self.current_tier_id,
                capabilities=capabilities,
                assigned_customer_ids=frozenset(self.assigned_customer_ids or ()),
                version=self.version,
            )

        membership = MembershipDetails.from_dict(self.membership)
        if account_class == AccountClass.DEALER:
            return DealerAccount(
                account_id=self.id,
                current_tier_id=self.current_tier_id,
                membership=membership,
                capabilities=capabilities,
                payment_method_id=self.payment_method_id,
                business_name=self.business_name,
                version=self.version,
            )
        return IndividualAccount(
            account_id=self.id,
            current_tier_id=self.current_tier_id,
            membership=membership,
            capabilities=capabilities,
            payment_method_id=self.payment_method_id,
            version=self.version,
        )

    @staticmethod
    def column_values(account: Account) -> Dict[str, Any]:
        """Column values for an account variant (everything except id/version)."""
        if type(account) not in ACCOUNT_TYPES.values():
            raise TypeError(f"Not an account variant: {type(account).__name__}")
        membership = account.membership
        return {
            "account_class": account.account_class.value,
            "current_tier_id": account.current_tier_id,
            "premium_active": membership.premium_active,
            "premium_expires_at": membership.expires_at,
            "membership": membership.to_dict(),
            "capabilities": [g.to_dict() for g in account.capabilities],
            "payment_method_id": getattr(account, "payment_method_id", None),
            "business_name": getattr(account, "business_name", None),
            "assigned_customer_ids": sorted(getattr(account, "assigned_customer_ids", ())),
        }


class SubAccountRecord(Base, TimestampMixin, VersionedMixin):
    """
    Dealer sub-account row.

    Never hard-deleted: suspension is the soft delete, so past actions stay
    attributable.
    """

    __tablename__ = "sub_accounts"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid,
        comment="Primary key (UUID)"
    )

    parent_account_id = Column(
        String(36),
        ForeignKey("accounts.id"),
        nullable=False,
        comment="Owning dealer account"
    )

    email = Column(String(255), nullable=False, comment="Sub-account login email")
    name = Column(String(255), nullable=True, comment="Display name")

    role = Column(
        String(20),
        nullable=False,
        comment="admin, manager or staff"
    )

    access_scope = Column(
        JSON,
        nullable=False,
        default=dict,
        comment="AccessScope document"
    )

    delegated_permissions = Column(
        JSON,
        nullable=False,
        default=list,
        comment="Delegated permission ids"
    )

    status = Column(
        String(20),
        nullable=False,
        default=SubAccountStatus.ACTIVE.value,
        comment="active or suspended"
    )

    created_by = Column(String(255), nullable=True, comment="Actor that created the sub-account")

    __table_args__ = (
        Index("ix_sub_accounts_parent_status", "parent_account_id", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SubAccountRecord(id={self.id}, parent={self.parent_account_id}, "
            f"role={self.role}, status={self.status})>"
        )

    def to_domain(self) -> SubAccount:
        return SubAccount(
            sub_account_id=self.id,
            parent_account_id=self.parent_account_id,
            email=self.email,
            name=self.name,
            role=SubAccountRole(self.role),
            access_scope=AccessScope.from_dict(self.access_scope),
            delegated_permissions=frozenset(
                DelegatedPermission(p) for p in (self.delegated_permissions or [])
            ),
            status=SubAccountStatus(self.status),
            created_by=self.created_by,
            created_at=as_utc(self.created_at),
            version=self.version,
        )

    @staticmethod
    def column_values(sub_account: SubAccount) -> Dict[str, Any]:
        return {
            "parent_account_id": sub_account.parent_account_id,
            "email": sub_account.email,
            "name": sub_account.name,
            "role": sub_account.role.value,
            "access_scope": sub_account.access_scope.to_dict(),
            "delegated_permissions": sorted(p.value for p in sub_account.delegated_permissions),
            "status": sub_account.status.value,
            "created_by": sub_account.created_by,
        }
