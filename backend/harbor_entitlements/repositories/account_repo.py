"""
Account repository with version-conditioned writes.

CRITICAL: Every mutation is `UPDATE ... WHERE id = :id AND version = :read`.
A zero row count means another writer committed first; the repository
raises ConcurrentModificationError and the caller retries the whole
operation from a fresh read. Partial writes are never merged.
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from harbor_entitlements.entitlements.errors import AccountAlreadyExistsError, ConcurrentModificationError
from harbor_entitlements.entitlements.models import Account, SubAccount, SubAccountStatus
from harbor_entitlements.models.account import AccountRecord, SubAccountRecord

logger = logging.getLogger(__name__)

# Rows fetched per round trip while iterating expiring accounts
EXPIRING_FETCH_SIZE = 100


class AccountRepository:
    """
    Persistence for accounts and sub-accounts.

    Returns frozen domain objects, never ORM rows, so callers cannot mutate
    state outside a conditional write.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    # =========================================================================
    # Accounts
    # =========================================================================

    def get_account(self, account_id: str) -> Optional[Account]:
        stmt = (
            select(AccountRecord)
            .where(AccountRecord.id == account_id)
            .execution_options(populate_existing=True)
        )
        record = self.db.execute(stmt).scalar_one_or_none()
        return record.to_domain() if record else None

    def add_account(self, account: Account) -> Account:
        """
        Insert a new account at version 1.

        Raises:
            AccountAlreadyExistsError: The account_id is taken
        """
        if self.db.get(AccountRecord, account.account_id) is not None:
            raise AccountAlreadyExistsError(account.account_id)

        record = AccountRecord(
            id=account.account_id,
            version=1,
            **AccountRecord.column_values(account),
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning("Account id already taken", extra={"account_id": account.account_id})
            raise AccountAlreadyExistsError(account.account_id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to commit",
                extra={"operation": "add_account", "entity_id": account.account_id, "error": str(e)},
            )
            raise

        logger.info(
            "Account created",
            extra={
                "account_id": account.account_id,
                "account_class": account.account_class.value,
                "tier_id": account.current_tier_id,
            },
        )
        return replace(account, version=1)

    def save_account(self, account: Account) -> Account:
        """
        Write an account conditioned on the version it was read at.

        Raises:
            ConcurrentModificationError: The row changed since it was read
        """
        self._conditional_update(
            AccountRecord,
            account.account_id,
            account.version,
            **AccountRecord.column_values(account),
        )
        self._commit("save_account", account.account_id)
        return replace(account, version=account.version + 1)

    def iterate_expiring(
        self,
        now: datetime,
        limit: Optional[int] = None,
        after: Optional[Tuple[datetime, str]] = None,
    ) -> Iterator[Account]:
        """
        Accounts with premium_active and expires_at <= now, oldest expiry first.

        Args:
            now: Cutoff instant
            limit: Maximum rows returned
            after: (expires_at, account_id) of the last row of the previous
                page; only rows strictly after it are returned

        Served by ix_accounts_premium_expiry.
        """
        stmt = (
            select(AccountRecord)
            .where(
                AccountRecord.premium_active.is_(True),
                AccountRecord.premium_expires_at.isnot(None),
                AccountRecord.premium_expires_at <= now,
            )
            .order_by(AccountRecord.premium_expires_at, AccountRecord.id)
        )
        if after is not None:
            after_expires_at, after_id = after
            stmt = stmt.where(or_(
                AccountRecord.premium_expires_at > after_expires_at,
                and_(
                    AccountRecord.premium_expires_at == after_expires_at,
                    AccountRecord.id > after_id,
                ),
            ))
        if limit:
            stmt = stmt.limit(limit)

        result = self.db.execute(stmt.execution_options(yield_per=EXPIRING_FETCH_SIZE))
        for record in result.scalars():
            yield record.to_domain()

    # =========================================================================
    # Sub-accounts
    # =========================================================================

    def get_sub_account(self, sub_account_id: str) -> Optional[SubAccount]:
        stmt = (
            select(SubAccountRecord)
            .where(SubAccountRecord.id == sub_account_id)
            .execution_options(populate_existing=True)
        )
        record = self.db.execute(stmt).scalar_one_or_none()
        return record.to_domain() if record else None

    def list_sub_accounts(
        self,
        parent_account_id: str,
        include_suspended: bool = False,
    ) -> List[SubAccount]:
        stmt = select(SubAccountRecord).where(
            SubAccountRecord.parent_account_id == parent_account_id
        )
        if not include_suspended:
            stmt = stmt.where(SubAccountRecord.status == SubAccountStatus.ACTIVE.value)
        stmt = stmt.order_by(SubAccountRecord.created_at, SubAccountRecord.id)
        stmt = stmt.execution_options(populate_existing=True)
        return [r.to_domain() for r in self.db.execute(stmt).scalars()]

    def count_active_sub_accounts(self, parent_account_id: str) -> int:
        stmt = select(func.count(SubAccountRecord.id)).where(
            SubAccountRecord.parent_account_id == parent_account_id,
            SubAccountRecord.status == SubAccountStatus.ACTIVE.value,
        )
        return int(self.db.execute(stmt).scalar() or 0)

    def add_sub_account(self, sub_account: SubAccount, parent_version: int) -> SubAccount:
        """
        Insert a sub-account guarded by the parent row version.

        The caller counted active sub-accounts at parent_version. Bumping the
        parent's version in the same transaction as the insert means two
        concurrent creations cannot both pass the same quota check.

        Raises:
            ConcurrentModificationError: The parent changed since the count
        """
        self._conditional_update(
            AccountRecord,
            sub_account.parent_account_id,
            parent_version,
        )
        record = SubAccountRecord(
            id=sub_account.sub_account_id,
            version=1,
            created_at=sub_account.created_at,
            **SubAccountRecord.column_values(sub_account),
        )
        self.db.add(record)
        self._commit("add_sub_account", sub_account.sub_account_id)
        return replace(sub_account, version=1)

    def save_sub_account(self, sub_account: SubAccount) -> SubAccount:
        """
        Raises:
            ConcurrentModificationError: The row changed since it was read
        """
        self._conditional_update(
            SubAccountRecord,
            sub_account.sub_account_id,
            sub_account.version,
            **SubAccountRecord.column_values(sub_account),
        )
        self._commit("save_sub_account", sub_account.sub_account_id)
        return replace(sub_account, version=sub_account.version + 1)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _conditional_update(self, model, entity_id: str, expected_version: int, **values) -> None:
        stmt = (
            update(model)
            .where(model.id == entity_id, model.version == expected_version)
            .values(version=expected_version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            # End the transaction so the retry reads committed state
            self.db.rollback()
            logger.info(
                "Conditional write lost",
                extra={
                    "entity_type": model.__name__,
                    "entity_id": entity_id,
                    "expected_version": expected_version,
                },
            )
            raise ConcurrentModificationError(entity_id, expected_version)

    def _commit(self, operation: str, entity_id: str) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Failed to commit",
                extra={"operation": operation, "entity_id": entity_id, "error": str(e)},
            )
            raise
