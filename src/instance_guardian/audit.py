"""Audit Log Writer: records every state-changing decision for later display."""

import logging
from datetime import datetime
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .models import AuditAction, AuditLogEntry
from .store import AuditLogStore, HistoryStore, utcnow

logger = logging.getLogger(__name__)


class AuditLogWriter:
    """Writes the activity log and the historical analysis log.

    A failed write is logged and swallowed: the side effect it describes has
    already happened and must not be reported as failed.
    """

    def __init__(self, audit_store: AuditLogStore, history_store: HistoryStore):
        self.audit_store = audit_store
        self.history_store = history_store

    def record(
        self,
        user_id: str,
        action: AuditAction,
        details: str,
        metadata: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            user_id=user_id,
            action=action,
            details=details,
            metadata=metadata or {},
            timestamp=now or utcnow(),
        )
        try:
            self.audit_store.append(entry)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to log activity [%s] for user %s: %s", action.value, user_id, e)
            return None
        logger.info("Activity logged: [%s] %s (user %s)", action.value, details, user_id)
        return entry

    def record_history(
        self,
        user_id: str,
        action: str,
        fields: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> bool:
        try:
            self.history_store.append(user_id, action, fields, now=now)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to write %s to history for user %s: %s", action, user_id, e)
            return False
        return True
