"""IMAP session with IDLE push support for Gmail and other IMAP servers."""

import contextlib
import logging
import ssl
import threading
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, date, datetime
from typing import Any, Protocol

from imapclient import IMAPClient
from imapclient.exceptions import LoginError

from onebox_mail.exceptions import SessionClosedError, SessionConnectError
from onebox_mail.models import Account, FetchedMessage, MailboxStatus

logger = logging.getLogger(__name__)

NewMessageCallback = Callable[[], None]

FETCH_ATTRIBUTES = ["BODY.PEEK[]", "FLAGS", "INTERNALDATE"]
FETCH_BATCH_SIZE = 50


class MailboxSession(Protocol):
    """Authenticated, stateful connection to one remote mailbox."""

    def connect(self) -> None: ...

    def status(self) -> MailboxStatus: ...

    def search_uid_range(self, from_uid: int) -> list[int]: ...

    def search_since(self, since: date) -> list[int]: ...

    def search_recent(self, count: int) -> list[int]: ...

    def fetch_sources(self, uids: Sequence[int]) -> Iterator[FetchedMessage]: ...

    def on_new_message(self, callback: NewMessageCallback) -> None: ...

    def idle_start(self) -> None: ...

    def idle_poll(self, timeout: float) -> None: ...

    def idle_done(self) -> None: ...

    def exclusive(self) -> contextlib.AbstractContextManager[None]: ...

    def abort(self) -> None: ...

    def logout(self) -> None: ...


def _decode_flags(flags: Sequence[Any]) -> tuple[str, ...]:
    return tuple(f.decode("utf-8", "replace") if isinstance(f, bytes) else str(f) for f in flags)


class ImapSession:
    """MailboxSession over IMAPClient, bound to a single selected mailbox."""

    def __init__(self, account: Account, timeout: float | None = 60.0) -> None:
        """Initialize IMAP session (no network I/O until connect)."""
        self.account = account
        self.timeout = timeout
        self._client: IMAPClient | None = None
        self._pending: IMAPClient | None = None
        self._lock = threading.Lock()
        self._callbacks: list[NewMessageCallback] = []
        self._idling = False
        self._aborted = False

    def connect(self) -> None:
        """Open the connection, log in and select the mailbox."""
        if self._client is not None:
            return
        if self._aborted:
            raise SessionClosedError(f"Session for {self.account.address} was aborted")

        logger.debug("Connecting to IMAP server %s:%d", self.account.host, self.account.port)

        try:
            client = IMAPClient(
                self.account.host,
                port=self.account.port,
                ssl=self.account.use_ssl,
                ssl_context=ssl.create_default_context() if self.account.use_ssl else None,
                timeout=self.timeout,
            )
        except OSError as e:
            raise SessionConnectError(self.account.address, str(e)) from e

        # tz-aware INTERNALDATE values
        client.normalise_times = False
        self._pending = client

        try:
            self._check_not_aborted(client)
            client.login(self.account.address, self.account.credential)
            client.select_folder(self.account.mailbox, readonly=True)
        except LoginError as e:
            with contextlib.suppress(Exception):
                client.shutdown()
            raise SessionConnectError(self.account.address, f"authentication failed: {e}") from e
        except SessionClosedError:
            raise
        except Exception as e:
            with contextlib.suppress(Exception):
                client.shutdown()
            if self._aborted:
                raise SessionClosedError(f"Session for {self.account.address} was aborted") from e
            raise SessionConnectError(self.account.address, str(e)) from e
        finally:
            self._pending = None

        self._check_not_aborted(client)
        self._client = client
        logger.info("Connected to IMAP server %s as %s", self.account.host, self.account.address)

    def _check_not_aborted(self, client: IMAPClient) -> None:
        """Drop a connection that finished opening after ``abort``."""
        if not self._aborted:
            return
        with contextlib.suppress(Exception):
            client.shutdown()
        raise SessionClosedError(f"Session for {self.account.address} was aborted")

    def _ensure_connected(self) -> IMAPClient:
        if self._aborted or self._client is None:
            raise SessionClosedError(f"Session for {self.account.address} is not connected")
        return self._client

    @contextlib.contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold the mailbox so only one protocol operation runs at a time."""
        with self._lock:
            yield

    def status(self) -> MailboxStatus:
        """Re-select the mailbox and read its counters and UIDVALIDITY."""
        client = self._ensure_connected()
        selected = client.select_folder(self.account.mailbox, readonly=True)

        uid_next = selected.get(b"UIDNEXT")
        if uid_next is None:
            status = client.folder_status(self.account.mailbox, [b"UIDNEXT"])
            uid_next = status.get(b"UIDNEXT", 0)

        return MailboxStatus(
            count=int(selected.get(b"EXISTS", 0)),
            uid_next=int(uid_next),
            epoch=int(selected[b"UIDVALIDITY"]),
        )

    def search_uid_range(self, from_uid: int) -> list[int]:
        """UIDs in ``from_uid:*``; the server may include the last UID even if lower."""
        client = self._ensure_connected()
        return sorted(int(u) for u in client.search(["UID", f"{from_uid}:*"]))

    def search_since(self, since: date) -> list[int]:
        """UIDs of messages received on or after ``since``."""
        client = self._ensure_connected()
        return sorted(int(u) for u in client.search(["SINCE", since]))

    def search_recent(self, count: int) -> list[int]:
        """UIDs of the last ``count`` messages by sequence position."""
        client = self._ensure_connected()
        total = int(client.select_folder(self.account.mailbox, readonly=True).get(b"EXISTS", 0))
        if total == 0 or count <= 0:
            return []
        start = max(1, total - count + 1)
        return sorted(int(u) for u in client.search([f"{start}:*"]))

    def fetch_sources(self, uids: Sequence[int]) -> Iterator[FetchedMessage]:
        """
        Fetch full message sources without setting \\Seen.

        Yields messages in UID order; UIDs the server no longer has are
        skipped.
        """
        client = self._ensure_connected()
        ordered = sorted(uids)

        for offset in range(0, len(ordered), FETCH_BATCH_SIZE):
            batch = ordered[offset : offset + FETCH_BATCH_SIZE]
            response = client.fetch(batch, FETCH_ATTRIBUTES)

            for uid in batch:
                data = response.get(uid)
                if not data or b"BODY[]" not in data:
                    logger.debug("UID %d missing from fetch response", uid)
                    continue

                internal_date = data.get(b"INTERNALDATE")
                if isinstance(internal_date, datetime) and internal_date.tzinfo is None:
                    internal_date = internal_date.replace(tzinfo=UTC)

                yield FetchedMessage(
                    uid=uid,
                    raw=data[b"BODY[]"],
                    flags=_decode_flags(data.get(b"FLAGS", ())),
                    internal_date=internal_date if isinstance(internal_date, datetime) else None,
                )

    def on_new_message(self, callback: NewMessageCallback) -> None:
        """Register a callback fired when the server announces new mail."""
        self._callbacks.append(callback)

    def idle_start(self) -> None:
        """Enter IDLE so the server pushes mailbox changes."""
        if self._idling:
            return
        client = self._ensure_connected()
        client.idle()
        self._idling = True

    def idle_poll(self, timeout: float) -> None:
        """Wait up to ``timeout`` seconds for IDLE responses and dispatch them."""
        client = self._ensure_connected()
        if not self._idling:
            raise SessionClosedError("idle_poll called outside IDLE")

        responses = client.idle_check(timeout=timeout)
        self._dispatch(responses)

    def idle_done(self) -> None:
        """Leave IDLE, dispatching anything the server sent meanwhile."""
        if not self._idling:
            return
        client = self._ensure_connected()
        self._idling = False
        _, responses = client.idle_done()
        self._dispatch(responses)

    def _dispatch(self, responses: Sequence[Any]) -> None:
        if not any(
            isinstance(r, tuple) and len(r) >= 2 and r[1] in (b"EXISTS", b"RECENT")
            for r in responses
        ):
            return
        logger.debug("New mail notification for %s", self.account.address)
        for callback in self._callbacks:
            callback()

    def abort(self) -> None:
        """Close the socket from any thread, breaking blocking I/O."""
        self._aborted = True
        for client in (self._client, self._pending):
            if client is not None:
                with contextlib.suppress(Exception):
                    client.shutdown()

    def logout(self) -> None:
        """Log out and close the connection."""
        client = self._client
        idling = self._idling
        self._client = None
        self._idling = False
        if client is None:
            return
        if self._aborted:
            with contextlib.suppress(Exception):
                client.shutdown()
            return
        with contextlib.suppress(Exception):
            if idling:
                client.idle_done()
            client.logout()
        logger.debug("Logged out of %s", self.account.address)
