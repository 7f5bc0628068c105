"""
Premium Expiration Sweeper.

Background job that downgrades accounts whose premium membership has
lapsed (premium_active and expires_at <= now) to their class baseline tier.

Each account is expired independently in its own database session. One
account failing never aborts the sweep; the failure is reported and the
next run picks the account up again. A run pages through every due account
before it finishes. expire_if_due is idempotent, so re-running a sweep after
a crash is safe.

Run as: python -m harbor_entitlements.jobs.expiration_sweep

Configuration:
- EXPIRATION_SWEEP_INTERVAL: Seconds between cycles (default: 300)
- EXPIRATION_SWEEP_BATCH_SIZE: Due accounts fetched per page (default: 500)
- EXPIRATION_SWEEP_MAX_WORKERS: Accounts expired in parallel (default: 4)
"""

import logging
import os
import signal
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from harbor_entitlements.entitlements.audit import AuditSink
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.membership import MembershipLifecycleManager
from harbor_entitlements.entitlements.models import utcnow
from harbor_entitlements.repositories.account_repo import AccountRepository

logger = logging.getLogger(__name__)

POLL_INTERVAL = int(os.getenv("EXPIRATION_SWEEP_INTERVAL", "300"))
BATCH_SIZE = int(os.getenv("EXPIRATION_SWEEP_BATCH_SIZE", "500"))
MAX_WORKERS = int(os.getenv("EXPIRATION_SWEEP_MAX_WORKERS", "4"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


@dataclass
class SweepFailure:
    account_id: str
    error_code: str
    message: str

    def to_dict(self) -> dict:
        return {"account_id": self.account_id, "error_code": self.error_code, "message": self.message}


@dataclass
class SweepReport:
    """Track sweep run statistics."""

    processed: int = 0
    downgraded: int = 0
    failed: List[SweepFailure] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "processed": self.processed,
            "downgraded": self.downgraded,
            "failed": [f.to_dict() for f in self.failed],
            "duration_seconds": round(duration, 2),
        }


ManagerFactory = Callable[[Session], MembershipLifecycleManager]


class ExpirationSweeper:
    """
    Usage:
        sweeper = ExpirationSweeper(get_session_factory())
        report = sweeper.run_sweep()
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        catalog: Optional[TierCatalog] = None,
        audit_sink: Optional[AuditSink] = None,
        max_workers: int = MAX_WORKERS,
        batch_size: int = BATCH_SIZE,
        manager_factory: Optional[ManagerFactory] = None,
    ):
        self.session_factory = session_factory
        self.catalog = catalog or TierCatalog()
        self.audit_sink = audit_sink
        self.max_workers = max_workers
        self.batch_size = batch_size
        self.manager_factory = manager_factory or self._default_manager

    def run_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Expire every lapsed membership found at `now`.

        Pages through due accounts batch_size at a time, keyed on
        (expires_at, account_id). Accounts that fail stay behind the cursor
        and are retried by the next run, not this one.
        """
        now = now or utcnow()
        report = SweepReport()
        after: Optional[Tuple[datetime, str]] = None

        while True:
            page = self._expiring_page(now, after)
            if not page:
                break
            self._expire_batch([account_id for _, account_id in page], now, report)
            if not self.batch_size or len(page) < self.batch_size:
                break
            after = page[-1]

        logger.info("Expiration sweep complete", extra=report.to_dict())
        return report

    def _expire_batch(self, account_ids: List[str], now: datetime, report: SweepReport) -> None:
        if self.max_workers <= 1:
            for account_id in account_ids:
                try:
                    expired = self._expire_one(account_id, now)
                except Exception as e:
                    self._record_failure(report, account_id, e)
                else:
                    self._record_success(report, expired)
            return

        with ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix="expiration-sweep",
        ) as pool:
            futures = {
                pool.submit(self._expire_one, account_id, now): account_id
                for account_id in account_ids
            }
            for future in as_completed(futures):
                try:
                    expired = future.result()
                except Exception as e:
                    self._record_failure(report, futures[future], e)
                else:
                    self._record_success(report, expired)

    def _expiring_page(
        self, now: datetime, after: Optional[Tuple[datetime, str]]
    ) -> List[Tuple[datetime, str]]:
        session = self.session_factory()
        try:
            repository = AccountRepository(session)
            return [
                (a.membership.expires_at, a.account_id)
                for a in repository.iterate_expiring(now, limit=self.batch_size, after=after)
            ]
        finally:
            session.close()

    def _expire_one(self, account_id: str, now: datetime) -> bool:
        session = self.session_factory()
        try:
            return self.manager_factory(session).expire_if_due(account_id, now=now)
        finally:
            session.close()

    def _default_manager(self, session: Session) -> MembershipLifecycleManager:
        return MembershipLifecycleManager(
            AccountRepository(session),
            self.catalog,
            audit_sink=self.audit_sink,
        )

    @staticmethod
    def _record_success(report: SweepReport, expired: bool) -> None:
        report.processed += 1
        if expired:
            report.downgraded += 1

    @staticmethod
    def _record_failure(report: SweepReport, account_id: str, error: Exception) -> None:
        report.processed += 1
        report.failed.append(SweepFailure(
            account_id=account_id,
            error_code=getattr(error, "error_code", type(error).__name__),
            message=str(error),
        ))
        logger.error(
            "Failed to expire membership",
            extra={"account_id": account_id, "error": str(error)},
            exc_info=True,
        )


def run_cycle() -> SweepReport:
    """Run one sweep against the configured database."""
    from harbor_entitlements.database.session import get_session_factory

    sweeper = ExpirationSweeper(get_session_factory())
    return sweeper.run_sweep()


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logger.info(
        "Expiration sweeper started",
        extra={"poll_interval": POLL_INTERVAL, "batch_size": BATCH_SIZE, "max_workers": MAX_WORKERS},
    )

    while not _shutdown:
        try:
            run_cycle()
        except Exception:
            logger.error("Expiration sweep cycle failed", exc_info=True)
        # Sleep in 1-second increments for responsive shutdown
        for _ in range(POLL_INTERVAL):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Expiration sweeper stopped")


if __name__ == "__main__":
    main()
