"""Audit / notification sink for operator visibility."""

from typing import Any

import sentry_sdk
from pymongo.errors import PyMongoError

from advisor_credits.core.logging import get_logger
from advisor_credits.models.audit_log import AuditLog

log = get_logger(__name__)


async def log_event(
    actor_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    await AuditLog(
        actor_id=actor_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    ).insert()


async def notify(
    actor_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Fire-and-forget variant of log_event: never fails the caller."""
    try:
        await log_event(actor_id, event_type, entity_type, entity_id, metadata)
    except PyMongoError as e:
        log.warning("audit_write_failed", event_type=event_type, entity_id=entity_id, error=str(e))


async def alert(
    event_type: str,
    entity_type: str,
    entity_id: str | None,
    metadata: dict[str, Any],
    actor_id: str | None = None,
) -> None:
    """Inconsistency that needs a human: error log, Sentry message and audit row."""
    log.error(event_type, entity_type=entity_type, entity_id=entity_id, **metadata)
    sentry_sdk.capture_message(f"{event_type}: {entity_type} {entity_id}", level="error")
    await notify(actor_id, event_type, entity_type, entity_id, metadata)
