"""Pytest configuration and shared fixtures."""

import contextlib
import threading
import time
from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, date, datetime, timedelta
from email.message import EmailMessage
from email.utils import format_datetime

import pytest

from onebox_common.config import SyncSettings
from onebox_mail.exceptions import SessionClosedError, SessionConnectError
from onebox_mail.models import Account, FetchedMessage, MailboxStatus

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def build_raw(
    subject: str,
    sent_at: datetime | None,
    html: str | None = "<p>Hello</p>",
    text: str | None = None,
    sender: str = "Alice <alice@example.com>",
    message_id: str | None = None,
) -> bytes:
    """Build an RFC822 message source."""
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = "me@example.com"
    msg["Subject"] = subject
    if sent_at is not None:
        msg["Date"] = format_datetime(sent_at)
    if message_id:
        msg["Message-ID"] = message_id
    if text is not None:
        msg.set_content(text)
    if html is not None:
        if text is not None:
            msg.add_alternative(html, subtype="html")
        else:
            msg.set_content(html, subtype="html")
    return msg.as_bytes()


class FakeSession:
    """In-process MailboxSession over a FakeMailbox."""

    def __init__(self, mailbox: "FakeMailbox", account: Account) -> None:
        self.mailbox = mailbox
        self.account = account
        self.connected = False
        self.aborted = False
        self.idling = False
        self.idle_starts = 0
        self.idle_dones = 0
        self.exclusive_entries = 0
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._wake = threading.Event()
        self._pushed = False

    def _check(self) -> None:
        if self.aborted or not self.connected:
            raise SessionClosedError("not connected")

    def connect(self) -> None:
        with self.mailbox.lock:
            if self.mailbox.connect_errors > 0:
                self.mailbox.connect_errors -= 1
                raise SessionConnectError(self.account.address, "connection refused")
            self.connected = True
            self.mailbox.open_sessions += 1
            self.mailbox.max_open = max(self.mailbox.max_open, self.mailbox.open_sessions)

    def status(self) -> MailboxStatus:
        self._check()
        uids = self.mailbox.uids()
        return MailboxStatus(
            count=len(uids),
            uid_next=self.mailbox.next_uid,
            epoch=self.mailbox.epoch,
        )

    def search_uid_range(self, from_uid: int) -> list[int]:
        self._check()
        self.mailbox.calls.append(("uid_range", from_uid))
        uids = self.mailbox.uids()
        matched = [u for u in uids if u >= from_uid]
        # IMAP "n:*" always includes the highest UID
        if not matched and uids:
            matched = [uids[-1]]
        return matched

    def search_since(self, since: date) -> list[int]:
        self._check()
        self.mailbox.calls.append(("since", since))
        return [u for u in self.mailbox.uids() if self.mailbox.dates[u].date() >= since]

    def search_recent(self, count: int) -> list[int]:
        self._check()
        self.mailbox.calls.append(("recent", count))
        return self.mailbox.uids()[-count:]

    def fetch_sources(self, uids: Sequence[int]) -> Iterator[FetchedMessage]:
        self._check()
        self.mailbox.fetched.append(sorted(uids))
        if self.mailbox.block_fetch:
            self.mailbox.fetch_started.set()
            self._wake.wait(10)
            raise SessionClosedError("aborted during fetch")
        for uid in sorted(uids):
            if uid in self.mailbox.messages:
                yield self.mailbox.messages[uid]

    def on_new_message(self, callback: Callable[[], None]) -> None:
        self._callbacks.append(callback)

    def idle_start(self) -> None:
        self._check()
        self.idling = True
        self.idle_starts += 1

    def idle_poll(self, timeout: float) -> None:
        self._check()
        with self.mailbox.lock:
            if self.mailbox.fail_idle_polls > 0:
                self.mailbox.fail_idle_polls -= 1
                raise ConnectionResetError("connection reset by peer")
        self._wake.wait(timeout)
        self._wake.clear()
        self._check()
        if self._pushed:
            self._pushed = False
            for callback in self._callbacks:
                callback()

    def idle_done(self) -> None:
        if self.idling:
            self.idling = False
            self.idle_dones += 1

    def push(self) -> None:
        self._pushed = True
        self._wake.set()

    @contextlib.contextmanager
    def exclusive(self) -> Iterator[None]:
        with self._lock:
            self.exclusive_entries += 1
            yield

    def abort(self) -> None:
        self.aborted = True
        self._wake.set()

    def logout(self) -> None:
        with self.mailbox.lock:
            if self.connected:
                self.connected = False
                self.mailbox.open_sessions -= 1


class FakeMailbox:
    """Server-side mailbox state shared by FakeSessions."""

    def __init__(self, epoch: int = 1) -> None:
        self.epoch = epoch
        self.messages: dict[int, FetchedMessage] = {}
        self.dates: dict[int, datetime] = {}
        self.next_uid = 1
        self.lock = threading.Lock()
        self.calls: list[tuple[str, object]] = []
        self.fetched: list[list[int]] = []
        self.sessions: list[FakeSession] = []
        self.open_sessions = 0
        self.max_open = 0
        self.connect_errors = 0
        self.fail_idle_polls = 0
        self.block_fetch = False
        self.fetch_started = threading.Event()

    def uids(self) -> list[int]:
        return sorted(self.messages)

    def add(
        self,
        subject: str,
        sent_at: datetime | None = NOW,
        flags: tuple[str, ...] = (),
        internal_date: datetime | None = None,
        **kwargs: object,
    ) -> int:
        raw = build_raw(subject, sent_at, **kwargs)  # type: ignore[arg-type]
        with self.lock:
            uid = self.next_uid
            self.dates[uid] = sent_at or internal_date or NOW
            self.messages[uid] = FetchedMessage(
                uid=uid, raw=raw, flags=flags, internal_date=internal_date
            )
            self.next_uid += 1
        return uid

    def add_many(self, count: int, sent_at: datetime = NOW, prefix: str = "Message") -> list[int]:
        return [
            self.add(f"{prefix} {i}", sent_at=sent_at - timedelta(minutes=count - i))
            for i in range(count)
        ]

    def session(self, account: Account) -> FakeSession:
        session = FakeSession(self, account)
        self.sessions.append(session)
        return session

    def notify_new_mail(self) -> None:
        for session in self.sessions:
            if session.connected and not session.aborted:
                session.push()


@pytest.fixture
def account() -> Account:
    """Provide a test account."""
    return Account(
        id="acct-1",
        address="me@example.com",
        credential="app-password",  # pragma: allowlist secret
    )


@pytest.fixture
def mailbox() -> FakeMailbox:
    """Provide an empty fake mailbox."""
    return FakeMailbox()


@pytest.fixture
def fast_settings() -> SyncSettings:
    """Sync settings with timings short enough for thread tests."""
    return SyncSettings(
        debounce_seconds=0.02,
        idle_poll_seconds=0.01,
        idle_renewal_seconds=60,
        reconnect_delay_seconds=0.01,
        connect_retry_delay_seconds=0.02,
        retry_jitter_seconds=0,
        shutdown_timeout_seconds=2,
    )


@pytest.fixture
def wait_until() -> Callable[..., bool]:
    """Poll a predicate until it holds or the timeout expires."""

    def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.005)
        return predicate()

    return _wait


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    """Clock pinned to NOW."""
    return lambda: NOW


@pytest.fixture
def build_message() -> Callable[..., bytes]:
    """Provide the RFC822 message builder."""
    return build_raw
