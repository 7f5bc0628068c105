"""
Entitlement audit trail.

Provides:
- AuditAction: Every auditable state change and notable denial
- AuditEvent: Structured event {action, actor_id, target_account_id, reason, timestamp}
- LoggingAuditSink: Structured log output on the "entitlements.audit" logger
- DatabaseAuditSink: Persistent storage in entitlement_audit_events
- AsyncAuditWriter: Queue + background thread in front of another sink
- emit_audit_event(): Fire-and-forget emission used by every engine component

CRITICAL: Delivery is fire-and-forget. A failing sink must never block or
roll back the state change that produced the event.
"""

import json
import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


class AuditAction(str, Enum):
    CAPABILITY_GRANTED = "CAPABILITY_GRANTED"
    CAPABILITY_REVOKED = "CAPABILITY_REVOKED"
    PREMIUM_MEMBERSHIP_ACTIVATED = "PREMIUM_MEMBERSHIP_ACTIVATED"
    PREMIUM_MEMBERSHIP_DEACTIVATED = "PREMIUM_MEMBERSHIP_DEACTIVATED"
    PREMIUM_MEMBERSHIP_EXPIRED = "PREMIUM_MEMBERSHIP_EXPIRED"
    ACCOUNT_OPENED = "ACCOUNT_OPENED"
    TIER_CHANGED = "TIER_CHANGED"
    BULK_TIER_UPDATE = "BULK_TIER_UPDATE"
    SALES_CUSTOMER_ASSIGNED = "SALES_CUSTOMER_ASSIGNED"
    SUB_ACCOUNT_CREATED = "SUB_ACCOUNT_CREATED"
    SUB_ACCOUNT_UPDATED = "SUB_ACCOUNT_UPDATED"
    SUB_ACCOUNT_SUSPENDED = "SUB_ACCOUNT_SUSPENDED"
    DELEGATION_DENIED = "DELEGATION_DENIED"


@dataclass
class AuditEvent:
    """Structured audit event."""

    action: str
    actor_id: Optional[str]
    target_account_id: Optional[str]
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if isinstance(self.action, AuditAction):
            self.action = self.action.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEvent":
        return cls(**data)


class AuditSink:
    """Destination for audit events."""

    def emit(self, event: AuditEvent) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Writes events to the structured audit logger."""

    def emit(self, event: AuditEvent) -> None:
        audit_logger.info(
            event.action,
            extra={
                "event_type": event.action,
                "audit_data": event.to_dict(),
            },
        )


class DatabaseAuditSink(AuditSink):
    """
    Database audit writer for persistent storage.

    Uses its own session per event so audit writes never share a transaction
    with the state change being audited.
    """

    def __init__(self, db_session_factory: Callable):
        self._db_session_factory = db_session_factory

    def emit(self, event: AuditEvent) -> None:
        from harbor_entitlements.models.audit_event import AuditEventRecord

        session = self._db_session_factory()
        try:
            session.add(AuditEventRecord(
                id=event.event_id,
                action=event.action,
                actor_id=event.actor_id,
                target_account_id=event.target_account_id,
                reason=event.reason,
                details=event.details,
                occurred_at=datetime.fromisoformat(event.timestamp),
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


class AsyncAuditWriter(AuditSink):
    """
    Asynchronous audit writer for non-blocking logging.

    Enqueues events for a background thread that forwards them to the wrapped
    sink. When the queue is full the event is dropped with a warning rather
    than blocking the caller.
    """

    def __init__(self, sink: AuditSink, max_queue_size: int = 10000):
        self._sink = sink
        self._queue: Queue = Queue(maxsize=max_queue_size)
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = Lock()

    def start(self) -> None:
        """Start the background writer thread."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._process_queue, name="entitlement-audit-writer", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread after draining the queue."""
        with self._lock:
            self._running = False
            if self._thread:
                self._thread.join(timeout=timeout)
                self._thread = None

    def emit(self, event: AuditEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except Full:
            logger.warning(
                "Audit queue full, dropping event",
                extra={"action": event.action, "event_id": event.event_id},
            )

    def _process_queue(self) -> None:
        while self._running or not self._queue.empty():
            try:
                event = self._queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                self._sink.emit(event)
            except Exception:
                logger.error(
                    "Audit sink failed",
                    extra={"action": event.action, "event_id": event.event_id},
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued event has been handed to the sink."""
        self._queue.join()


def emit_audit_event(sink: Optional[AuditSink], event: AuditEvent) -> None:
    """
    Emit an event without letting sink failures reach the caller.

    Falls back to the structured audit logger when no sink is configured.
    """
    try:
        (sink or _default_sink).emit(event)
    except Exception:
        logger.warning(
            "Failed to emit audit event",
            extra={"action": event.action, "target_account_id": event.target_account_id},
            exc_info=True,
        )


_default_sink = LoggingAuditSink()
