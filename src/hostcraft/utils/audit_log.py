"""Audit logging for host changes.

Every action the executor performs (or would perform, in dry-run) is written
as one JSON line to a dedicated audit log, including the observed state
before the change and the desired state after it.
"""
import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

# Dedicated audit logger
audit_logger = logging.getLogger("hostcraft.audit")

DEFAULT_AUDIT_DIR = "~/.hostcraft"


def get_audit_file(log_dir: Optional[str] = None) -> str:
    """Resolve the audit log path (HOSTCRAFT_AUDIT_DIR or ~/.hostcraft)."""
    if log_dir is None:
        log_dir = os.environ.get("HOSTCRAFT_AUDIT_DIR", DEFAULT_AUDIT_DIR)
    return os.path.join(os.path.expanduser(log_dir), "audit.log")


def setup_audit_logging(log_dir: Optional[str] = None) -> str:
    """Configure audit logging to file.

    Args:
        log_dir: Directory for audit logs. Defaults to HOSTCRAFT_AUDIT_DIR
            or ~/.hostcraft/

    Returns:
        Path of the audit log file
    """
    audit_file = get_audit_file(log_dir)
    Path(audit_file).parent.mkdir(parents=True, exist_ok=True)

    audit_logger.setLevel(logging.INFO)
    for handler in list(audit_logger.handlers):
        handler.close()
    audit_logger.handlers.clear()

    handler = RotatingFileHandler(
        audit_file,
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=10,
        encoding="utf-8",
    )
    # One JSON object per line
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)

    # Don't propagate to the main hostcraft logger
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """Record of a single resource change."""
    timestamp: str
    host_id: str
    operation: str  # install, remove, modify, rollback
    resource: str  # identity key, e.g. "package:git"
    user: str
    dry_run: bool
    success: bool
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    output: str = ""
    error: Optional[str] = None
    context: str = ""

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(asdict(self), indent=None, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)


class ChangeTracker:
    """Track and log changes made to one host."""

    def __init__(self, host_id: str, user: Optional[str] = None, context: str = ""):
        self.host_id = host_id
        self.user = user or os.environ.get("USER", "system")
        self.context = context
        self.records: list[ChangeRecord] = []

    def log_change(
        self,
        operation: str,
        resource: str,
        success: bool,
        output: str = "",
        error: Optional[str] = None,
        dry_run: bool = False,
        before_state: Optional[dict] = None,
        after_state: Optional[dict] = None,
    ) -> ChangeRecord:
        """Log a resource change.

        Args:
            operation: The operation performed (e.g., "install")
            resource: Identity key of the resource
            success: Whether the operation succeeded
            output: Command output or result message
            error: Error message if failed
            dry_run: Whether this was a dry-run (no actual changes)
            before_state: Observed state before the change
            after_state: Desired state after the change

        Returns:
            The ChangeRecord that was logged
        """
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            host_id=self.host_id,
            operation=operation,
            resource=resource,
            user=self.user,
            dry_run=dry_run,
            success=success,
            before_state=before_state,
            after_state=after_state,
            output=output[:1000] if output else "",  # Truncate long output
            error=error,
            context=self.context,
        )

        audit_logger.info(record.to_json())
        self.records.append(record)
        return record


def get_recent_changes(
    log_file: Optional[str] = None,
    host_id: Optional[str] = None,
    resource: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Read recent changes from the audit log.

    Args:
        log_file: Path to audit log. Defaults to get_audit_file()
        host_id: Filter by host ID
        resource: Filter by identity key
        limit: Maximum number of records to return

    Returns:
        List of ChangeRecords, most recent first
    """
    if log_file is None:
        log_file = get_audit_file()

    if not os.path.exists(log_file):
        return []

    records = []
    with open(log_file, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                record = ChangeRecord.from_json(line)
            except (json.JSONDecodeError, TypeError):
                continue  # Skip malformed lines

            if host_id and record.host_id != host_id:
                continue
            if resource and record.resource != resource:
                continue
            records.append(record)

    return list(reversed(records[-limit:]))
