"""
Audit Logging for Studio Ops Core

Every reconciliation job run leaves one entry:
- who triggered it and against which collection
- the final counts, or the error that failed it

Storage: JSON Lines file (append-only)
"""

import json
import threading
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict, Field

from config import get_settings

logger = logging.getLogger(__name__)

# Thread lock for file writes
_write_lock = threading.Lock()


# ==================== ENUMS ====================

class AuditAction(str, Enum):
    """Auditable reconciliation actions"""
    STAFF_LINK_ALL = "identity.staff_link_all"
    STAFF_LINK_SELF = "identity.staff_link_self"
    PROFILE_SYNC_SELF = "identity.profile_sync_self"
    STAFF_PROVISION = "identity.staff_provision"
    OWNERSHIP_FIX = "identity.ownership_fix"
    STAFF_INVITE = "identity.staff_invite"
    CANDIDATE_HIRE = "identity.candidate_hire"


class ResourceType(str, Enum):
    """Resource types for audit logging"""
    USER = "user"
    STAFF = "staff"
    CANDIDATE = "candidate"
    LEAD = "lead"
    BOOKING = "booking"
    ACTIVITY = "activity"


# ==================== MODELS ====================

class AuditLogEntry(BaseModel):
    """Audit log entry model"""
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    user_id: Optional[str] = None
    user_email: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    error_message: Optional[str] = None


# ==================== AUDIT LOGGER ====================

class AuditLogger:
    """
    Append-only audit logger.

    Usage:
        audit = AuditLogger()
        audit.log(
            action=AuditAction.OWNERSHIP_FIX,
            resource_type=ResourceType.LEAD,
            user_id=caller.id,
            details={"fixed": 3}
        )
    """

    def __init__(self, log_file: Optional[Union[str, Path]] = None):
        self.log_file = Path(log_file or get_settings().AUDIT_LOG_FILE)
        self.log_file.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        action: Union[AuditAction, str],
        resource_type: Union[ResourceType, str],
        user_id: Optional[str] = None,
        user_email: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLogEntry:
        """
        Log an audit entry.

        Args:
            action: The action being performed
            resource_type: Type of resource affected
            user_id: ID of the user performing the action
            user_email: Email of the user (for display)
            resource_id: ID of the affected resource, if a single one
            details: Counts and other job output
            success: Whether the action succeeded
            error_message: Error message if action failed

        Returns:
            The created audit log entry
        """
        action_str = action.value if isinstance(action, AuditAction) else action
        resource_type_str = resource_type.value if isinstance(resource_type, ResourceType) else resource_type

        entry = AuditLogEntry(
            user_id=user_id,
            user_email=user_email,
            action=action_str,
            resource_type=resource_type_str,
            resource_id=str(resource_id) if resource_id else None,
            details=details or {},
            success=success,
            error_message=error_message
        )

        self._write_entry(entry)

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {action_str} on {resource_type_str}"
            f"{f'/{resource_id}' if resource_id else ''}"
            f" by {user_email or user_id or 'system'}"
            f"{f' - FAILED: {error_message}' if not success else ''}"
        )

        return entry

    def _write_entry(self, entry: AuditLogEntry):
        """Write an entry to the log file (thread-safe)"""
        with _write_lock:
            try:
                with open(self.log_file, 'a') as f:
                    f.write(json.dumps(entry.model_dump(), default=str) + "\n")
            except OSError as e:
                logger.error(f"Failed to write audit log: {e}")

    def read_entries(self, limit: int = 100) -> List[AuditLogEntry]:
        """Return the most recent entries, newest first."""
        if not self.log_file.exists():
            return []

        with open(self.log_file, 'r') as f:
            lines = [line for line in f if line.strip()]

        entries = [AuditLogEntry(**json.loads(line)) for line in lines[-limit:]]
        entries.reverse()
        return entries


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get the process-wide audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
