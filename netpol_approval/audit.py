"""
Audit Spine Manager
Optional append-only PostgreSQL log of admission decisions and approval
state changes. Every write returns the event id so callers can reference it
(the webhook echoes it back in auditAnnotations).

Enabled by setting audit_dsn; components take audit=None otherwise.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional

import psycopg2

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS approval_audit_events (
    id          BIGSERIAL PRIMARY KEY,
    created_at  TIMESTAMPTZ NOT NULL DEFAULT now(),
    actor_id    TEXT NOT NULL,
    action_type TEXT NOT NULL,
    subject     TEXT NOT NULL,
    payload     JSONB NOT NULL DEFAULT '{}'::jsonb
);
CREATE INDEX IF NOT EXISTS approval_audit_events_subject_idx
    ON approval_audit_events (subject, created_at);
"""


class AuditSpineManager:
    """
    Append-only writer for the approval_audit_events table.

    Rows are never updated or deleted through this class.
    """

    def __init__(self, dsn: str, connect_timeout: int = 5):
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    def _connect(self):
        return psycopg2.connect(self._dsn, connect_timeout=self._connect_timeout)

    def init_schema(self) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(SCHEMA_SQL)
            conn.commit()
            cur.close()
        finally:
            conn.close()

    def log_event(
        self,
        actor_id: str,
        action_type: str,
        subject: str,
        payload: dict[str, Any],
        _max_retries: int = 3,
    ) -> str:
        """
        Write one event and return its id.

        Retries on OperationalError (dropped connection, failover); anything
        else propagates so the caller fails closed.
        """
        for attempt in range(_max_retries):
            conn = None
            try:
                conn = self._connect()
                cur = conn.cursor()
                cur.execute(
                    "INSERT INTO approval_audit_events "
                    "(actor_id, action_type, subject, payload) "
                    "VALUES (%s, %s, %s, %s) "
                    "RETURNING id",
                    (actor_id, action_type, subject, json.dumps(payload, sort_keys=True)),
                )
                event_id = str(cur.fetchone()[0])
                conn.commit()
                cur.close()
                return event_id
            except psycopg2.OperationalError as exc:
                if conn is not None:
                    conn.rollback()
                if attempt < _max_retries - 1:
                    logger.warning("audit write failed (attempt %d): %s", attempt + 1, exc)
                    time.sleep(0.05 * (attempt + 1))
                    continue
                raise
            finally:
                if conn is not None:
                    conn.close()
        raise RuntimeError("log_event: exhausted retries")

    def events_for_policy(
        self, namespace: str, name: str, limit: int = 100,
    ) -> list[dict[str, Any]]:
        """Events whose subject is the policy, oldest first."""
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, created_at, actor_id, action_type, subject, payload "
                "FROM approval_audit_events "
                "WHERE subject = %s "
                "ORDER BY created_at ASC, id ASC "
                "LIMIT %s",
                (f"{namespace}/{name}", limit),
            )
            rows = cur.fetchall()
            cur.close()
        finally:
            conn.close()
        return [_row_to_event(row) for row in rows]

    def get_event(self, event_id: str) -> Optional[dict[str, Any]]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT id, created_at, actor_id, action_type, subject, payload "
                "FROM approval_audit_events WHERE id = %s",
                (event_id,),
            )
            row = cur.fetchone()
            cur.close()
        finally:
            conn.close()
        return _row_to_event(row) if row else None


def _row_to_event(row) -> dict[str, Any]:
    created_at = row[1]
    payload = row[5]
    if isinstance(payload, str):
        payload = json.loads(payload)
    return {
        "id": str(row[0]),
        "created_at": created_at.isoformat() if hasattr(created_at, "isoformat") else created_at,
        "actor_id": row[2],
        "action_type": row[3],
        "subject": row[4],
        "payload": payload,
    }
