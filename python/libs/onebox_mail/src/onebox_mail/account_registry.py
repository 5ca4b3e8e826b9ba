"""Read-only access to mail accounts registered in Postgres."""

import logging
from typing import Any

import psycopg

from onebox_common.config import PostgresConfig

from onebox_mail.models import Account

logger = logging.getLogger(__name__)

_ACCOUNT_COLUMNS = """
    id, imap_user, imap_pass, imap_host, imap_port, mailbox, use_ssl
"""


class AccountRegistry:
    """Loads account definitions; creating and editing them happens elsewhere."""

    def __init__(self, config: PostgresConfig) -> None:
        """Initialize account registry."""
        self.config = config

    def _get_connection(self) -> psycopg.Connection[tuple[Any, ...]]:
        """Get database connection."""
        return psycopg.connect(self.config.connection_string)

    def _row_to_account(self, row: tuple[Any, ...]) -> Account:
        """Convert a database row to Account."""
        return Account(
            id=str(row[0]),
            address=row[1],
            credential=row[2],
            host=row[3] or "imap.gmail.com",
            port=row[4] or 993,
            mailbox=row[5] or "INBOX",
            use_ssl=True if row[6] is None else bool(row[6]),
        )

    def list_enabled_accounts(self) -> list[Account]:
        """
        List accounts that should be synced.

        Returns:
            Enabled accounts ordered by id
        """
        query = f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM mail_accounts
            WHERE enabled = true
            ORDER BY id
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query)
            accounts = [self._row_to_account(row) for row in cur.fetchall()]

        logger.debug("Listed %d enabled accounts", len(accounts))
        return accounts

    def get_account(self, account_id: str) -> Account | None:
        """
        Get a specific account.

        Args:
            account_id: Account identifier

        Returns:
            Account if found, None otherwise
        """
        query = f"""
            SELECT {_ACCOUNT_COLUMNS}
            FROM mail_accounts
            WHERE id = %s
        """

        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(query, (account_id,))
            row = cur.fetchone()
            if row:
                return self._row_to_account(row)

        return None
