from __future__ import annotations

from typing import Any, Optional

from tenantgate.logging import get_correlation_id, get_logger
from tenantgate.storage.base import AuthStore
from tenantgate.storage.models import AuditEvent, new_id

logger = get_logger(__name__)


class AuditLogService:
    """Structured security events: one log line plus one stored row each."""

    def __init__(self, store: Optional[AuthStore] = None, *, logger=logger) -> None:
        self.store = store
        self.logger = logger.bind(audit=True)

    def log(
        self,
        event: str,
        *,
        actor: Optional[str] = None,
        tenant_id: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        correlation_id = get_correlation_id()
        if correlation_id:
            metadata.setdefault("correlation_id", correlation_id)
        self.logger.info(event, actor=actor, tenant_id=tenant_id, **metadata)
        if self.store is None:
            return
        try:
            self.store.record_audit_event(
                AuditEvent(
                    id=new_id(),
                    event=event,
                    actor_id=actor,
                    tenant_id=tenant_id,
                    metadata=metadata or None,
                )
            )
        except Exception as exc:
            # the auth flow that produced the event must still complete
            self.logger.error("audit_persist_failed", event=event, error_type=type(exc).__name__)
