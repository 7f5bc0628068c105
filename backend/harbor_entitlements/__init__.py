"""
Harbor entitlement and delegation engine.

Decides what an account (or a dealer's sub-account) may do right now by
merging the tier catalog, capability grants, premium membership state and
delegated permissions into a single allow/deny decision.
"""

__version__ = "0.1.0"
