"""Data model shared by the sync engine, supervisor and sinks."""

import hashlib
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Literal

DEFAULT_LABEL = "Unclassified"

SyncMode = Literal["initial", "fallback", "incremental"]


@dataclass(frozen=True)
class Account:
    """Mailbox account registered for sync."""

    id: str
    address: str
    credential: str = field(repr=False)
    host: str = "imap.gmail.com"
    port: int = 993
    mailbox: str = "INBOX"
    use_ssl: bool = True


@dataclass(frozen=True)
class MailboxCursor:
    """Per-account sync position.

    ``last_seen_uid`` is only meaningful together with ``mailbox_epoch``
    (the mailbox UIDVALIDITY); within one epoch it never decreases.
    """

    account_id: str
    last_seen_uid: int = 0
    mailbox_epoch: int | None = None

    @property
    def is_initial(self) -> bool:
        """True when no message has been synced in the current epoch."""
        return self.last_seen_uid == 0

    def observe_epoch(self, epoch: int) -> "MailboxCursor":
        """
        Reconcile the cursor with the epoch reported by the server.

        A changed epoch invalidates every known UID, so the position is
        reset to 0 and the next fetch falls back to the initial policy.
        """
        if self.mailbox_epoch is not None and self.mailbox_epoch != epoch:
            return replace(self, last_seen_uid=0, mailbox_epoch=epoch)
        return replace(self, mailbox_epoch=epoch)

    def advanced_to(self, uid: int) -> "MailboxCursor":
        """Return a cursor moved forward to ``uid`` (never backwards)."""
        return replace(self, last_seen_uid=max(self.last_seen_uid, uid))

    def to_json(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {"last_uid": self.last_seen_uid, "uidvalidity": self.mailbox_epoch}

    @classmethod
    def from_json(cls, account_id: str, data: dict[str, Any]) -> "MailboxCursor":
        """Create from JSON dict."""
        return cls(
            account_id=account_id,
            last_seen_uid=int(data.get("last_uid", 0)),
            mailbox_epoch=data.get("uidvalidity"),
        )


@dataclass(frozen=True)
class MailboxStatus:
    """Mailbox counters read at the start of a pass."""

    count: int
    uid_next: int
    epoch: int


@dataclass(frozen=True)
class FetchedMessage:
    """Raw message source as returned by the server."""

    uid: int
    raw: bytes
    flags: tuple[str, ...] = ()
    internal_date: datetime | None = None

    @property
    def seen(self) -> bool:
        return "\\Seen" in self.flags


def compute_record_id(subject: str, date: datetime, address: str) -> str:
    """
    Deterministic index id for a message.

    Built from subject, date and mailbox address only, so re-fetching the
    same logical message (even under a new UID) overwrites the same record.
    Two distinct messages with identical subject and date in one mailbox
    share an id.
    """
    key = f"{subject}{date.isoformat()}{address}"
    return hashlib.md5(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class EmailRecord:
    """Indexed representation of one message."""

    id: str
    from_: str
    subject: str
    date: datetime
    body_html: str
    body_text: str
    label: str
    account_id: str
    mail_user: str
    uid: int
    seen: bool
    message_id: str | None = None

    def with_label(self, label: str) -> "EmailRecord":
        return replace(self, label=label)

    def to_document(self) -> dict[str, Any]:
        """Convert to the index document body."""
        document: dict[str, Any] = {
            "from": self.from_,
            "subject": self.subject,
            "date": self.date.isoformat(),
            "body_html": self.body_html,
            "body_text": self.body_text,
            "label": self.label,
            "account_id": self.account_id,
            "imap_user": self.mail_user,
            "uid": self.uid,
            "seen": self.seen,
        }
        if self.message_id:
            document["messageId"] = self.message_id
        return document


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of writing one record to the index."""

    record_id: str
    ok: bool
    error: str | None = None


@dataclass
class SyncResult:
    """Result of a sync pass for a single account."""

    account_id: str
    cursor: MailboxCursor
    status: MailboxStatus | None = None
    mode: SyncMode | None = None
    uids_selected: int = 0
    messages_fetched: int = 0
    records_indexed: int = 0
    parse_errors: list[str] = field(default_factory=list)
    index_errors: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None
