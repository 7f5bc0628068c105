"""
Capability store: per-account feature grants.

Grants are append-only. Revoking writes a new enabled=False record for the
feature instead of mutating the old one, so the full history stays on the
account for audit.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Any, List, Mapping, Optional, Tuple

from harbor_entitlements.entitlements.accounts import load_account
from harbor_entitlements.entitlements.audit import AuditAction, AuditEvent, AuditSink, emit_audit_event
from harbor_entitlements.entitlements.models import Account, CapabilityGrant, Limits, utcnow
from harbor_entitlements.entitlements.resolver import authoritative_grants, live_grants
from harbor_entitlements.entitlements.retry import run_with_optimistic_retry
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)


class CapabilityStore:
    """
    Grant and revoke individual features on an account.

    Usage:
        store = CapabilityStore(repository, audit_sink)
        store.grant(account_id, "bulk-listing-boost", granted_by="admin-1",
                    limits={"max_listings": 10})
    """

    def __init__(self, repository: AccountRepository, audit_sink: Optional[AuditSink] = None):
        self.repository = repository
        self.audit_sink = audit_sink

    def grant(
        self,
        account_id: str,
        feature_id: str,
        granted_by: str,
        expires_at: Optional[datetime] = None,
        limits: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> CapabilityGrant:
        """
        Append an enabled grant.

        Args:
            account_id: Account receiving the feature
            feature_id: Feature identifier
            granted_by: Actor id (admin or system)
            expires_at: Optional expiry; None means permanent until revoked
            limits: Optional limit overrides; can only raise limits

        Raises:
            ValueError: Empty feature id, invalid limit overrides, or expiry in the past
            AccountNotFoundError: No such account
        """
        if not feature_id:
            raise ValueError("feature_id is required")
        overrides = Limits.validate_overrides(limits)
        now = now or utcnow()
        if expires_at is not None and expires_at <= now:
            raise ValueError("expires_at must be in the future")

        grant = CapabilityGrant(
            feature_id=feature_id,
            enabled=True,
            expires_at=expires_at,
            granted_by=granted_by,
            granted_at=now,
            limits=overrides,
        )

        def _write() -> Account:
            account = load_account(self.repository, account_id)
            return self.repository.save_account(
                replace(account, capabilities=account.capabilities + (grant,))
            )

        run_with_optimistic_retry(_write, operation_name="capability_grant", entity_id=account_id)

        logger.info(
            "Capability granted",
            extra={
                "account_id": account_id,
                "feature_id": feature_id,
                "granted_by": granted_by,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.CAPABILITY_GRANTED,
            actor_id=granted_by,
            target_account_id=account_id,
            timestamp=now.isoformat(),
            details={"grant": grant.to_dict()},
        ))
        return grant

    def revoke(
        self,
        account_id: str,
        feature_id: str,
        revoked_by: str,
        now: Optional[datetime] = None,
    ) -> Optional[CapabilityGrant]:
        """
        Append an enabled=False record for the feature.

        No-op (returns None) when the feature has no enabled grant.

        Raises:
            AccountNotFoundError: No such account
        """
        now = now or utcnow()

        def _write() -> Tuple[Account, Optional[CapabilityGrant]]:
            account = load_account(self.repository, account_id)
            current = authoritative_grants(account.capabilities).get(feature_id)
            if current is None or not current.enabled:
                return account, None
            revocation = CapabilityGrant(
                feature_id=feature_id,
                enabled=False,
                granted_by=revoked_by,
                granted_at=now,
            )
            saved = self.repository.save_account(
                replace(account, capabilities=account.capabilities + (revocation,))
            )
            return saved, revocation

        _, revocation = run_with_optimistic_retry(
            _write, operation_name="capability_revoke", entity_id=account_id
        )
        if revocation is None:
            logger.info(
                "Capability revoke skipped, no enabled grant",
                extra={"account_id": account_id, "feature_id": feature_id},
            )
            return None

        logger.info(
            "Capability revoked",
            extra={"account_id": account_id, "feature_id": feature_id, "revoked_by": revoked_by},
        )
        emit_audit_event(self.audit_sink, AuditEvent(
            action=AuditAction.CAPABILITY_REVOKED,
            actor_id=revoked_by,
            target_account_id=account_id,
            timestamp=now.isoformat(),
            details={"feature_id": feature_id, "grant_id": revocation.grant_id},
        ))
        return revocation

    def list_grants(
        self,
        account_id: str,
        include_inactive: bool = False,
        now: Optional[datetime] = None,
    ) -> List[CapabilityGrant]:
        """
        Current grant per feature, sorted by feature id.

        Expired and revoked grants are left out unless include_inactive.
        """
        account = load_account(self.repository, account_id)
        if include_inactive:
            grants = list(authoritative_grants(account.capabilities).values())
        else:
            grants = live_grants(account.capabilities, now or utcnow())
        return sorted(grants, key=lambda g: g.feature_id)

    def history(self, account_id: str) -> List[CapabilityGrant]:
        """Full append-only grant history in write order."""
        return list(load_account(self.repository, account_id).capabilities)
