"""Onebox mailbox sync: IMAP IDLE driven, idempotent indexing."""

from onebox_mail.account_registry import AccountRegistry
from onebox_mail.classify import ClassifierHandle, NotReadyClassifier, ReadyClassifier
from onebox_mail.connectors import ImapSession, MailboxSession
from onebox_mail.cursor_store import CursorStore, InMemoryCursorStore, PostgresCursorStore
from onebox_mail.engine import SyncEngine
from onebox_mail.index_writer import ElasticsearchIndexWriter, IndexWriter, InMemoryIndexWriter
from onebox_mail.manager import SyncManager
from onebox_mail.models import (
    Account,
    EmailRecord,
    MailboxCursor,
    SyncResult,
    compute_record_id,
)
from onebox_mail.retry import RetryPolicy
from onebox_mail.supervisor import ConnectionSupervisor, SupervisorState

__all__ = [
    "Account",
    "AccountRegistry",
    "ClassifierHandle",
    "ConnectionSupervisor",
    "CursorStore",
    "ElasticsearchIndexWriter",
    "EmailRecord",
    "ImapSession",
    "IndexWriter",
    "InMemoryCursorStore",
    "InMemoryIndexWriter",
    "MailboxCursor",
    "MailboxSession",
    "NotReadyClassifier",
    "PostgresCursorStore",
    "ReadyClassifier",
    "RetryPolicy",
    "SupervisorState",
    "SyncEngine",
    "SyncManager",
    "SyncResult",
    "compute_record_id",
]
