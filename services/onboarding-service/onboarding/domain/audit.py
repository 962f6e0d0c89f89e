"""Best-effort audit trail for administrative mutations."""

from __future__ import annotations

import logging
from typing import Any, Protocol

from .models import AuditEntry

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def write_audit_entry(self, entry: AuditEntry) -> None: ...


class AuditTrail:
    """Append audit entries without ever failing the primary mutation."""

    def __init__(self, sink: AuditSink) -> None:
        self._sink = sink

    def record(
        self,
        *,
        actor_id: str | None,
        account_id: str | None,
        action: str,
        resource: str,
        resource_id: str | None,
        meta: dict[str, Any] | None = None,
    ) -> str | None:
        """Write one entry and return the failure message, if any, for the ``audit_error`` field."""
        entry = AuditEntry(
            admin_user_id=actor_id,
            target_account_id=account_id,
            action=action,
            resource=resource,
            resource_id=resource_id,
            meta=meta or {},
        )
        try:
            self._sink.write_audit_entry(entry)
        except Exception as exc:  # audit must never roll back the mutation
            logger.error("audit write failed for %s on %s/%s: %s", action, resource, resource_id, exc)
            return str(exc) or exc.__class__.__name__
        return None
