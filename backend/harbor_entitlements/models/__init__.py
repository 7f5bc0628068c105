"""
Database models.

Importing this package registers every table on Base.metadata.
"""

from harbor_entitlements.models.account import AccountRecord, SubAccountRecord
from harbor_entitlements.models.audit_event import AuditEventRecord

__all__ = ["AccountRecord", "SubAccountRecord", "AuditEventRecord"]
