"""Cursor storage for incremental mailbox sync."""

import json
import logging
import threading
from typing import Any, Protocol

import psycopg

from onebox_common.config import PostgresConfig

from onebox_mail.models import MailboxCursor

logger = logging.getLogger(__name__)


class CursorStore(Protocol):
    """Persistence for per-account sync positions."""

    def load(self, account_id: str) -> MailboxCursor: ...

    def save(self, cursor: MailboxCursor) -> None: ...

    def delete(self, account_id: str) -> bool: ...


class InMemoryCursorStore:
    """Process-local cursor store.

    Lives as long as the owning SyncManager, so positions survive
    reconnects and supervisor restarts but not a process restart.
    """

    def __init__(self) -> None:
        self._cursors: dict[str, MailboxCursor] = {}
        self._lock = threading.Lock()

    def load(self, account_id: str) -> MailboxCursor:
        with self._lock:
            return self._cursors.get(account_id) or MailboxCursor(account_id=account_id)

    def save(self, cursor: MailboxCursor) -> None:
        with self._lock:
            self._cursors[cursor.account_id] = cursor

    def delete(self, account_id: str) -> bool:
        with self._lock:
            return self._cursors.pop(account_id, None) is not None


class PostgresCursorStore:
    """Cursor store backed by the ``mail_cursors`` table."""

    def __init__(self, config: PostgresConfig, scope: str = "INBOX") -> None:
        """Initialize cursor store."""
        self.config = config
        self.scope = scope

    def _get_connection(self) -> psycopg.Connection[tuple[Any, ...]]:
        """Get database connection."""
        return psycopg.connect(self.config.connection_string)

    def load(self, account_id: str) -> MailboxCursor:
        """
        Get the cursor for an account.

        Args:
            account_id: Account identifier

        Returns:
            Stored cursor, or a fresh cursor if none was saved
        """
        query = """
            SELECT cursor_json
            FROM mail_cursors
            WHERE account_id = %s AND scope = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (account_id, self.scope))
            row = cur.fetchone()
            if row:
                return MailboxCursor.from_json(account_id, row[0])

        return MailboxCursor(account_id=account_id)

    def save(self, cursor: MailboxCursor) -> None:
        """
        Insert or update the cursor for its account.

        Args:
            cursor: Cursor to persist
        """
        query = """
            INSERT INTO mail_cursors (account_id, scope, cursor_json)
            VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (account_id, scope)
            DO UPDATE SET
                cursor_json = EXCLUDED.cursor_json,
                updated_at = NOW()
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (cursor.account_id, self.scope, json.dumps(cursor.to_json())))
            conn.commit()

        logger.debug(
            "Saved cursor %s/%s last_uid=%d",
            cursor.account_id,
            self.scope,
            cursor.last_seen_uid,
        )

    def delete(self, account_id: str) -> bool:
        """
        Delete a cursor.

        Returns:
            True if deleted, False if not found
        """
        query = """
            DELETE FROM mail_cursors
            WHERE account_id = %s AND scope = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (account_id, self.scope))
            affected = cur.rowcount
            conn.commit()

        return affected > 0
