"""
Tier catalog configuration loader.

Loads published tiers and per-class baseline tiers from config/tiers.yml.

Consumers:
  - TierCatalog: tier lookup, active tier listing, baseline resolution

Usage:
    from harbor_entitlements.config.tier_catalog import get_tier_catalog_loader

    loader = get_tier_catalog_loader()
    tier = loader.tiers["individual-basic"]
    baseline = loader.baselines[AccountClass.DEALER]  # "dealer-basic"

Path resolution: explicit config_path, then TIER_CATALOG_PATH, then the
tiers.yml shipped next to this module.
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping, Optional

import yaml

from harbor_entitlements.entitlements.errors import TierCatalogConfigError
from harbor_entitlements.entitlements.models import (
    AccountClass,
    Feature,
    Limits,
    Tier,
    TierPricing,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "tiers.yml"


def _parse_feature(raw: Any) -> Feature:
    if isinstance(raw, str):
        return Feature(feature_id=raw)
    return Feature(feature_id=raw["feature_id"], enabled=bool(raw.get("enabled", True)))


def parse_tier(raw: Mapping[str, Any]) -> Tier:
    """
    Build a Tier from one YAML record.

    Raises:
        TierCatalogConfigError: Missing or invalid field
    """
    tier_id = raw.get("tier_id", "<missing>")
    try:
        pricing = raw.get("pricing") or {}
        return Tier(
            tier_id=raw["tier_id"],
            name=raw.get("name", raw["tier_id"]),
            account_class=AccountClass(raw["account_class"]),
            is_premium=bool(raw.get("is_premium", False)),
            features=tuple(_parse_feature(f) for f in raw.get("features") or ()),
            limits=Limits.from_dict(raw.get("limits") or {}),
            pricing=TierPricing(
                currency=pricing.get("currency", "USD"),
                monthly_cents=pricing.get("monthly_cents"),
                yearly_cents=pricing.get("yearly_cents"),
            ),
            active=bool(raw.get("active", True)),
            display_order=int(raw.get("display_order", 0)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise TierCatalogConfigError(f"Invalid tier '{tier_id}': {e}", tier_id=tier_id) from e


class TierCatalogLoader:
    """
    Thread-safe loader for config/tiers.yml.

    Holds the parsed tiers keyed by tier_id and the baseline tier id per
    account class. Loading fails loudly: a catalog with errors is never
    partially served.
    """

    def __init__(self, config_path: Optional[str] = None):
        self._config_path = config_path
        self._load_lock = Lock()
        self.version: int = 1
        self.tiers: Dict[str, Tier] = {}
        self.baselines: Dict[AccountClass, str] = {}
        self._load()

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)
        env_path = os.getenv("TIER_CATALOG_PATH")
        if env_path:
            return Path(env_path)
        return DEFAULT_CONFIG_PATH

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading tier catalog from %s", path)

            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            tiers: Dict[str, Tier] = {}
            for record in raw.get("tiers") or []:
                tier = parse_tier(record)
                if tier.tier_id in tiers:
                    raise TierCatalogConfigError(
                        f"Duplicate tier id: {tier.tier_id}", tier_id=tier.tier_id
                    )
                tiers[tier.tier_id] = tier

            baselines: Dict[AccountClass, str] = {}
            for account_class, tier_id in (raw.get("baselines") or {}).items():
                try:
                    cls = AccountClass(account_class)
                except ValueError as e:
                    raise TierCatalogConfigError(
                        f"Unknown account class in baselines: {account_class}"
                    ) from e
                tier = tiers.get(tier_id)
                if tier is None or tier.is_premium:
                    raise TierCatalogConfigError(
                        f"Baseline for {account_class} must be a published non-premium tier",
                        tier_id=tier_id,
                    )
                baselines[cls] = tier_id

            self.version = int(raw.get("version", 1))
            self.tiers = tiers
            self.baselines = baselines

            logger.info(
                "Loaded tier catalog: tiers=%d, baselines=%s",
                len(tiers),
                {k.value: v for k, v in baselines.items()},
            )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()


_loader: Optional[TierCatalogLoader] = None
_loader_lock = Lock()


def get_tier_catalog_loader(config_path: Optional[str] = None) -> TierCatalogLoader:
    """Return the process-wide TierCatalogLoader, loading it on first use."""
    global _loader
    if _loader is None:
        with _loader_lock:
            if _loader is None:
                _loader = TierCatalogLoader(config_path)
    return _loader


def reset_tier_catalog_loader() -> None:
    """Reset the shared loader (for tests only)."""
    global _loader
    _loader = None
