"""
Root test configuration and fixtures.

Database fixtures run on in-memory SQLite shared through a StaticPool, so
the request session and the sweeper's per-account sessions see the same
data. Each test gets a fresh schema.

Shared fixtures:
- now: Fixed evaluation instant; every service call in tests passes it
- catalog: TierCatalog on the shipped tiers.yml
- audit_sink: Collects emitted audit events in memory
- ownership: In-memory listing ownership map
- account_service / capability_store / membership_manager /
  sub_account_service / authorization_engine: services on db_session
- make_yaml_config: Factory for writing YAML configs to a temp dir
"""

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from harbor_entitlements.config.tier_catalog import DEFAULT_CONFIG_PATH, TierCatalogLoader
from harbor_entitlements.entitlements.accounts import AccountService
from harbor_entitlements.entitlements.audit import AuditEvent, AuditSink
from harbor_entitlements.entitlements.billing import LoggingBillingGateway
from harbor_entitlements.entitlements.capabilities import CapabilityStore
from harbor_entitlements.entitlements.catalog import TierCatalog
from harbor_entitlements.entitlements.delegation import DelegationAuthorizationEngine
from harbor_entitlements.entitlements.membership import MembershipLifecycleManager
from harbor_entitlements.entitlements.models import AccountClass, BillingCycle
from harbor_entitlements.entitlements.ownership import InMemoryOwnershipLookup
from harbor_entitlements.entitlements.resolver import EntitlementResolver
from harbor_entitlements.entitlements.sub_accounts import SubAccountService
from harbor_entitlements.repositories.account_repo import AccountRepository

# Set test environment
os.environ.setdefault("ENV", "test")

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class CollectingAuditSink(AuditSink):
    """Audit sink that keeps events in memory."""

    def __init__(self):
        self.events: List[AuditEvent] = []

    def emit(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> List[str]:
        return [e.action for e in self.events]

    def of(self, action) -> List[AuditEvent]:
        value = getattr(action, "value", action)
        return [e for e in self.events if e.action == value]


# =============================================================================
# Database
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite schema per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from harbor_entitlements.db_base import Base
    import harbor_entitlements.models  # noqa: F401 - registers tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def catalog() -> TierCatalog:
    return TierCatalog(TierCatalogLoader(str(DEFAULT_CONFIG_PATH)))


@pytest.fixture
def audit_sink() -> CollectingAuditSink:
    return CollectingAuditSink()


@pytest.fixture
def ownership() -> InMemoryOwnershipLookup:
    return InMemoryOwnershipLookup()


@pytest.fixture
def repository(db_session) -> AccountRepository:
    return AccountRepository(db_session)


@pytest.fixture
def resolver(catalog) -> EntitlementResolver:
    return EntitlementResolver(catalog)


# =============================================================================
# Services
# =============================================================================

@pytest.fixture
def account_service(repository, catalog, audit_sink) -> AccountService:
    return AccountService(repository, catalog, audit_sink=audit_sink)


@pytest.fixture
def capability_store(repository, audit_sink) -> CapabilityStore:
    return CapabilityStore(repository, audit_sink=audit_sink)


@pytest.fixture
def membership_manager(repository, catalog, audit_sink) -> MembershipLifecycleManager:
    return MembershipLifecycleManager(
        repository, catalog, billing=LoggingBillingGateway(), audit_sink=audit_sink
    )


@pytest.fixture
def sub_account_service(repository, resolver, ownership, audit_sink) -> SubAccountService:
    return SubAccountService(repository, resolver, ownership, audit_sink=audit_sink)


@pytest.fixture
def authorization_engine(repository, resolver, ownership, audit_sink) -> DelegationAuthorizationEngine:
    return DelegationAuthorizationEngine(repository, resolver, ownership, audit_sink=audit_sink)


# =============================================================================
# Accounts
# =============================================================================

@pytest.fixture
def individual(account_service):
    return account_service.open_account(AccountClass.INDIVIDUAL, account_id="individual-1")


@pytest.fixture
def dealer(account_service):
    return account_service.open_account(
        AccountClass.DEALER, account_id="dealer-1", business_name="Bayside Boats"
    )


@pytest.fixture
def premium_dealer(account_service, membership_manager, now):
    """Dealer on dealer-premium (yearly) activated at `now`."""
    account_service.open_account(
        AccountClass.DEALER, account_id="dealer-premium-1", business_name="Harbor Yachts"
    )
    return membership_manager.activate(
        "dealer-premium-1", "dealer-premium", BillingCycle.YEARLY, now=now
    )


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "concurrency: optimistic concurrency scenarios")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Config fixtures
# =============================================================================

@pytest.fixture
def make_yaml_config(tmp_path):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("tiers.yml", {"tiers": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = tmp_path / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


@pytest.fixture
def default_catalog_config() -> dict:
    """The shipped tiers.yml as a dict, for tests that tweak it."""
    with open(DEFAULT_CONFIG_PATH) as f:
        return yaml.safe_load(f)
