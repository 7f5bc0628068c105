"""
Entitlement audit event model.

Append-only. Rows are written by DatabaseAuditSink and never updated.
"""

from sqlalchemy import JSON, Column, DateTime, Index, String, Text

from harbor_entitlements.db_base import Base


class AuditEventRecord(Base):
    __tablename__ = "entitlement_audit_events"

    id = Column(
        String(36),
        primary_key=True,
        comment="AuditEvent.event_id"
    )

    action = Column(String(64), nullable=False, comment="AuditAction value")
    actor_id = Column(String(255), nullable=True, comment="Who triggered the change")
    target_account_id = Column(String(36), nullable=True, comment="Account the change applies to")
    reason = Column(Text, nullable=True, comment="Deny reason or free-form reason")
    details = Column(JSON, nullable=False, default=dict, comment="Event-specific payload")

    occurred_at = Column(
        DateTime(timezone=True),
        nullable=False,
        comment="When the event happened"
    )

    __table_args__ = (
        Index("ix_entitlement_audit_target_time", "target_account_id", "occurred_at"),
        Index("ix_entitlement_audit_action", "action"),
    )

    def __repr__(self) -> str:
        return f"<AuditEventRecord(id={self.id}, action={self.action}, target={self.target_account_id})>"
