"""Append-only audit trail.

Entries are written with the caller's connection so that an audit row
commits or rolls back together with the change it describes.
"""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import List, Optional

from database import format_timestamp, get_db_connection, utc_now
from errors import ValidationError

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    LEND = "LEND"
    RETURN = "RETURN"
    LOGIN = "LOGIN"
    OTHER = "OTHER"


class AuditLog:
    def __init__(self, id: int, action: str, performed_by: str, entity_type: str,
                 entity_id: str, timestamp: str, details: Optional[str] = None) -> None:
        self.id = id
        self.action = action
        self.performed_by = performed_by
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.timestamp = timestamp
        self.details = details

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "performed_by": self.performed_by,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "details": self.details,
        }


def record_audit(conn: sqlite3.Connection, action: AuditAction, performed_by: str,
                 entity_type: str, entity_id, details: Optional[str] = None,
                 timestamp=None) -> None:
    conn.execute(
        """
        INSERT INTO audit_logs (action, performed_by, entity_type, entity_id, timestamp, details)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            AuditAction(action).value,
            performed_by or "system",
            entity_type,
            str(entity_id),
            format_timestamp(timestamp or utc_now()),
            details,
        ),
    )
    logger.debug(f"Audit {action} {entity_type}:{entity_id} by {performed_by}")


def list_audit_logs(action: Optional[str] = None, entity_type: Optional[str] = None,
                    limit: Optional[int] = None) -> List[AuditLog]:
    """Newest first, optionally filtered by action and entity type."""
    query = "SELECT * FROM audit_logs WHERE 1 = 1"
    params: list = []
    if action:
        try:
            action_value = AuditAction(action.upper()).value
        except ValueError as exc:
            raise ValidationError(f"Unknown audit action: {action}") from exc
        query += " AND action = ?"
        params.append(action_value)
    if entity_type:
        query += " AND entity_type = ?"
        params.append(entity_type)
    query += " ORDER BY timestamp DESC, id DESC"
    if limit:
        query += " LIMIT ?"
        params.append(int(limit))
    conn = get_db_connection()
    try:
        rows = conn.execute(query, params).fetchall()
        return [AuditLog(**dict(row)) for row in rows]
    finally:
        conn.close()
