"""
Resource-ownership lookup collaborator.

OwnerOf(resource_id) -> account id. Used by the delegation engine to check
that a resource a sub-account touches really belongs to its parent, and by
sub-account scope validation.

Implementations:
- InMemoryOwnershipLookup: dict-backed, for wiring without a listing service
- HttpOwnershipLookup: asks the listing service over HTTP

Configuration:
- LISTING_SERVICE_URL: Base URL of the listing service
- LISTING_SERVICE_TIMEOUT_SECONDS: Per-request timeout (default: 2.0)
"""

import logging
import os
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Optional

import httpx

from harbor_entitlements.entitlements.retry import LookupFailedError, read_with_retry

logger = logging.getLogger(__name__)

LISTING_SERVICE_TIMEOUT_SECONDS = float(os.getenv("LISTING_SERVICE_TIMEOUT_SECONDS", "2.0"))


class OwnershipLookup(ABC):

    @abstractmethod
    def owner_of(self, resource_id: str) -> Optional[str]:
        """
        Return the owning account id, or None when the resource is unknown.

        Raises:
            LookupFailedError: The lookup itself failed (retryable)
        """


class InMemoryOwnershipLookup(OwnershipLookup):
    """Thread-safe in-process ownership map."""

    def __init__(self, owners: Optional[Dict[str, str]] = None):
        self._owners: Dict[str, str] = dict(owners or {})
        self._lock = Lock()

    def register(self, resource_id: str, owner_account_id: str) -> None:
        with self._lock:
            self._owners[resource_id] = owner_account_id

    def owner_of(self, resource_id: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(resource_id)


class HttpOwnershipLookup(OwnershipLookup):
    """
    Ownership lookup against the listing service.

    GET {base_url}/listings/{resource_id}/owner -> {"owner_account_id": "..."}
    404 means the resource does not exist.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = LISTING_SERVICE_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout)

    def owner_of(self, resource_id: str) -> Optional[str]:
        url = f"{self.base_url}/listings/{resource_id}/owner"
        try:
            response = self._client.get(url)
        except httpx.HTTPError as e:
            logger.warning(
                "Ownership lookup request failed",
                extra={"resource_id": resource_id, "error": str(e)},
            )
            raise LookupFailedError(f"ownership lookup failed for {resource_id}: {e}") from e

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            logger.warning(
                "Ownership lookup returned error status",
                extra={"resource_id": resource_id, "status_code": response.status_code},
            )
            raise LookupFailedError(
                f"ownership lookup for {resource_id} returned {response.status_code}"
            )
        return response.json().get("owner_account_id")

    def close(self) -> None:
        self._client.close()


def get_default_ownership_lookup() -> OwnershipLookup:
    """HTTP lookup when LISTING_SERVICE_URL is set, otherwise an empty in-memory map."""
    base_url = os.getenv("LISTING_SERVICE_URL")
    if base_url:
        return HttpOwnershipLookup(base_url)
    logger.warning("LISTING_SERVICE_URL not set, ownership lookups use an empty in-memory map")
    return InMemoryOwnershipLookup()


def is_owned_by(lookup: OwnershipLookup, repository, account_id: str, resource_id: str) -> bool:
    """
    True when the resource belongs to the account, directly or through one of
    the account's sub-accounts.

    Lookups are reads and get one retry.

    Raises:
        TransientFailureError: The ownership lookup failed twice
    """
    owner_id = read_with_retry(
        lambda: lookup.owner_of(resource_id),
        operation_name="owner_of",
    )
    if owner_id is None:
        return False
    if owner_id == account_id:
        return True
    owner_sub_account = read_with_retry(
        lambda: repository.get_sub_account(owner_id),
        operation_name="get_sub_account",
        before_retry=repository.db.rollback,
    )
    return owner_sub_account is not None and owner_sub_account.parent_account_id == account_id
