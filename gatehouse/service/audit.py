from __future__ import annotations

import re
import threading
from typing import Any, Dict, List, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.models import AuditRecord

AUTH_LOGIN = "AUTH_LOGIN"
AUTH_LOGOUT_ALL = "AUTH_LOGOUT_ALL"
AUTH_PASSWORD_CHANGED = "AUTH_PASSWORD_CHANGED"
AUTH_PASSWORD_RESET = "AUTH_PASSWORD_RESET"
USER_CREATE = "USER_CREATE"
USER_ROLE_CHANGED = "USER_ROLE_CHANGED"
USER_DEACTIVATED = "USER_DEACTIVATED"
SECTION_OVERRIDE_SET = "SECTION_OVERRIDE_SET"
SECTION_OVERRIDE_CLEARED = "SECTION_OVERRIDE_CLEARED"
RBAC_SECTION_DEFAULTS_UPDATED = "RBAC_SECTION_DEFAULTS_UPDATED"
SECTION_KILL_SWITCH_UPDATED = "SECTION_KILL_SWITCH_UPDATED"
DIRECTORY_CONFIG_UPDATED = "DIRECTORY_CONFIG_UPDATED"

SUCCESS = "SUCCESS"
FAILURE = "FAILURE"
ERROR = "ERROR"

SAFE_KEYS = frozenset(
    {
        "username",
        "email",
        "role",
        "previous_role",
        "action",
        "timestamp",
        "provider",
        "method",
        "success",
        "reason",
        "first_name",
        "last_name",
        "is_active",
        "strategy",
        "user_agent",
        "created_at",
        "updated_at",
        "id",
        "count",
        "target_user_id",
        "section",
        "sections",
        "enabled",
        "value",
        "changes",
        "degraded",
        "error_code",
    }
)
_SENSITIVE_KEY = re.compile(r"password|token|secret|key|auth|credential|bind", re.IGNORECASE)
_MAX_DEPTH = 5

SENSITIVE_PLACEHOLDER = "***REDACTED***"
REDACTED_PLACEHOLDER = "[REDACTED]"


def sanitize_metadata(value: Any, depth: int = 0) -> Any:
    """Allow-list redaction of audit metadata.

    Safe keys pass through; keys that look like credential material become
    ``***REDACTED***``; any other scalar becomes ``[REDACTED]``. Containers
    are walked up to five levels deep.
    """
    if depth > _MAX_DEPTH:
        return "[REDACTED:MAX_DEPTH]"
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item, depth + 1) for item in value]
    if isinstance(value, dict):
        sanitized: Dict[str, Any] = {}
        for key, item in value.items():
            key = str(key)
            if key in SAFE_KEYS:
                sanitized[key] = sanitize_metadata(item, depth + 1)
            elif _SENSITIVE_KEY.search(key):
                sanitized[key] = SENSITIVE_PLACEHOLDER
            elif isinstance(item, (dict, list, tuple)):
                sanitized[key] = sanitize_metadata(item, depth + 1)
            else:
                sanitized[key] = REDACTED_PLACEHOLDER
        return sanitized
    return value


class AuditLog:
    """Base audit sink. Subclasses implement ``_emit``."""

    def record(
        self,
        action: str,
        *,
        target_type: str,
        target_id: Optional[str],
        result: str,
        metadata: Optional[Dict[str, Any]] = None,
        actor_id: Optional[str] = None,
    ) -> AuditRecord:
        entry = AuditRecord(
            action=action,
            target_type=target_type,
            target_id=target_id,
            result=result,
            metadata=sanitize_metadata(metadata or {}),
            actor_id=actor_id,
        )
        self._emit(entry)
        return entry

    def _emit(self, entry: AuditRecord) -> None:
        raise NotImplementedError


class LoggingAuditLog(AuditLog):
    def __init__(self) -> None:
        self.logger = get_logger("gatehouse.audit")

    def _emit(self, entry: AuditRecord) -> None:
        self.logger.info(
            "audit_event",
            action=entry.action,
            target_type=entry.target_type,
            target_id=entry.target_id,
            result=entry.result,
            actor_id=entry.actor_id,
            metadata=entry.metadata,
        )


class MemoryAuditLog(AuditLog):
    """Keeps records in a list; used by tests and the bootstrap dry run."""

    def __init__(self) -> None:
        self.records: List[AuditRecord] = []
        self._lock = threading.Lock()

    def _emit(self, entry: AuditRecord) -> None:
        with self._lock:
            self.records.append(entry)

    def actions(self) -> List[str]:
        with self._lock:
            return [r.action for r in self.records]

    def clear(self) -> None:
        with self._lock:
            self.records.clear()
