"""
Append-only audit trail for medical-data access.

``AuditLogger.record`` is called after every authorization decision and
before the response goes out. It never raises: a failing store is logged and
reported as ``False`` so the caller's decision stands.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from fastapi import Request

from clinic.models import AccessLogEntry, AccessType
from clinic.services.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    access_type: str
    resource_type: str
    resource_id: str
    decision: str = "recorded"
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_event(self) -> dict:
        event = asdict(self)
        event["created_at"] = self.created_at.isoformat()
        return event


class AuditStore(Protocol):
    async def append(self, entry: AuditEntry) -> None: ...


class DatabaseAuditStore:
    """Inserts into ``access_log`` through its own short-lived session."""

    def __init__(self, database):
        self.database = database

    async def append(self, entry: AuditEntry) -> None:
        async with self.database.session() as session:
            session.add(
                AccessLogEntry(
                    actor_id=entry.actor_id,
                    access_type=entry.access_type,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    decision=entry.decision,
                    reason=entry.reason,
                    details=entry.details,
                    created_at=entry.created_at,
                )
            )
            await session.commit()


class KafkaAuditStore:
    def __init__(self, producer, topic: str):
        self.producer = producer
        self.topic = topic

    async def append(self, entry: AuditEntry) -> None:
        await self.producer.send_and_wait(self.topic, entry.to_event(), key=entry.actor_id)


class AuditLogger:
    def __init__(self, store: AuditStore):
        self.store = store

    async def record(
        self,
        actor_id: str,
        access_type: str,
        resource_type: str,
        resource_id: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        try:
            details = dict(details or {})
            access = AccessType(access_type).value
        except (TypeError, ValueError):
            logger.error("Rejected malformed audit entry: access type %r, details %r", access_type, details)
            return False

        decision = "recorded"
        if "result" in details:
            decision = "authorized" if details["result"] else "denied"

        entry = AuditEntry(
            actor_id=str(actor_id),
            access_type=access,
            resource_type=resource_type,
            resource_id=str(resource_id),
            decision=decision,
            reason=details.get("reason"),
            details=details,
        )
        try:
            await self.store.append(entry)
        except Exception:
            logger.exception(
                "Failed to write audit entry actor=%s %s %s/%s",
                entry.actor_id, entry.access_type, entry.resource_type, entry.resource_id,
            )
            return False

        logger.info(
            "[AUDIT] actor=%s %s %s/%s decision=%s reason=%s",
            entry.actor_id, entry.access_type, entry.resource_type, entry.resource_id,
            entry.decision, entry.reason,
        )
        return True


def get_audit_logger(request: Request) -> AuditLogger:
    return request.app.state.audit_logger
