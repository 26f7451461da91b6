"""
Audit trail for vault operations.

JSONL (one JSON object per line), append-only, under
``<home>/security/audit.log``. Entries describe what happened to which
vault, member or share. They never contain key material, tokens or
plaintext.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("reachvault.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    user_uuid: Optional[str] = None
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    user_uuid: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> AuditEntry:
    """Append a structured event to the audit log.

    Args:
        home: Vault home directory.
        event_type: Event category (IDENTITY_INIT, VAULT_CREATE,
            MEMBER_ADD, SHARE_ACCEPT, SYNC, BACKUP_EXPORT, etc.).
        detail: Human-readable event description.
        user_uuid: Identity that performed the action, if known.
        metadata: Optional dict of extra structured data.

    Returns:
        AuditEntry: The entry that was written.
    """
    security_dir = home / "security"
    security_dir.mkdir(parents=True, exist_ok=True)

    entry = AuditEntry(
        event_type=event_type,
        detail=detail,
        user_uuid=user_uuid,
        metadata=metadata,
    )
    with (security_dir / AUDIT_LOG_NAME).open("a", encoding="utf-8") as fh:
        fh.write(entry.model_dump_json() + "\n")
    return entry


def safe_audit(
    home: Path,
    event_type: str,
    detail: str,
    user_uuid: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Audit without ever failing the caller's operation."""
    try:
        audit_event(home, event_type, detail, user_uuid=user_uuid, metadata=metadata)
    except OSError as exc:
        logger.debug("Audit logging failed: %s", exc)


def read_audit_log(home: Path, limit: Optional[int] = None) -> list[AuditEntry]:
    """Read entries from the audit log, newest last.

    Malformed lines are skipped.

    Args:
        home: Vault home directory.
        limit: If given, only the most recent ``limit`` entries.

    Returns:
        list[AuditEntry]
    """
    audit_log = home / "security" / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except ValueError:
            continue

    if limit is not None:
        entries = entries[-limit:]
    return entries
