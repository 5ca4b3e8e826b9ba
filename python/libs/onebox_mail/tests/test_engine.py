"""Tests for the single-pass sync engine."""

from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from onebox_common.config import SyncSettings
from onebox_mail.engine import SyncEngine
from onebox_mail.index_writer import InMemoryIndexWriter
from onebox_mail.models import Account, EmailRecord, MailboxCursor, UpsertOutcome


class FailingIds:
    """IndexWriter that rejects records whose subject matches."""

    def __init__(self, failing_subjects: set[str]) -> None:
        self.failing_subjects = failing_subjects
        self.calls: list[list[str]] = []

    def bulk_upsert(self, records: Sequence[EmailRecord]) -> list[UpsertOutcome]:
        self.calls.append([r.id for r in records])
        return [
            UpsertOutcome(record_id=r.id, ok=False, error="mapper_parsing_exception")
            if r.subject in self.failing_subjects
            else UpsertOutcome(record_id=r.id, ok=True)
            for r in records
        ]


@pytest.fixture
def writer() -> InMemoryIndexWriter:
    """Provide an in-memory index writer."""
    return InMemoryIndexWriter()


@pytest.fixture
def engine(writer: InMemoryIndexWriter, fixed_clock: Callable[[], datetime]) -> SyncEngine:
    """Provide an engine with default settings and a fixed clock."""
    return SyncEngine(index_writer=writer, clock=fixed_clock)


def _connected(mailbox, account: Account):
    session = mailbox.session(account)
    session.connect()
    return session


class TestIncrementalSync:
    """Tests for passes with an existing cursor."""

    def test_fetches_only_uids_above_cursor(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test lastSeenUid=10 with UIDs 11..13 present indexes exactly those three."""
        mailbox.add_many(13)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=10, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert result.ok
        assert result.mode == "incremental"
        assert mailbox.fetched == [[11, 12, 13]]
        assert len(writer.calls) == 1
        assert len(writer.calls[0]) == 3
        assert result.cursor.last_seen_uid == 13
        assert result.records_indexed == 3

    def test_no_new_mail_is_a_noop(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test a pass with nothing new writes nothing and keeps the cursor."""
        mailbox.add_many(13)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=13, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert result.cursor == cursor
        assert result.uids_selected == 0
        assert writer.calls == []
        assert mailbox.fetched == []

    def test_cursor_is_monotonic_across_passes(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test each pass advances to the highest UID fetched and never back."""
        mailbox.add_many(3)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id)

        cursor = engine.perform_sync(account, session, cursor)
        assert cursor.last_seen_uid == 3

        mailbox.add("Later one")
        mailbox.add("Later two")
        cursor = engine.perform_sync(account, session, cursor)
        assert cursor.last_seen_uid == 5

        cursor = engine.perform_sync(account, session, cursor)
        assert cursor.last_seen_uid == 5
        assert len(writer.documents) == 5

    def test_refetch_overwrites_same_documents(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test re-running a pass from an old cursor upserts by the same ids."""
        mailbox.add_many(4)
        session = _connected(mailbox, account)
        start = MailboxCursor(account_id=account.id)

        engine.perform_sync(account, session, start)
        engine.perform_sync(account, session, start)

        assert len(writer.calls) == 2
        assert writer.calls[0] == writer.calls[1]
        assert len(writer.documents) == 4

    def test_runs_under_exclusive_session(
        self, engine: SyncEngine, mailbox, account: Account
    ) -> None:
        """Test the whole pass holds the session's exclusive section."""
        session = _connected(mailbox, account)

        engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert session.exclusive_entries == 1


class TestEpochReset:
    """Tests for UIDVALIDITY changes."""

    def test_changed_epoch_triggers_initial_sync(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test a new epoch discards the old position and re-runs the initial policy."""
        mailbox.epoch = 2
        mailbox.add_many(3)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=500, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert result.mode == "initial"
        assert not any(kind == "uid_range" for kind, _ in mailbox.calls)
        assert result.cursor.mailbox_epoch == 2
        assert result.cursor.last_seen_uid == 3
        assert len(writer.documents) == 3

    def test_new_epoch_recorded_even_without_mail(
        self, engine: SyncEngine, mailbox, account: Account
    ) -> None:
        """Test the cursor adopts the new epoch on an empty mailbox."""
        mailbox.epoch = 9
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=50, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert result.cursor == MailboxCursor(account_id=account.id, mailbox_epoch=9)


class TestInitialSync:
    """Tests for the bounded first pass."""

    def test_window_capped_to_newest(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test at most the newest 100 messages of the window are fetched."""
        mailbox.add_many(150)
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.mode == "initial"
        assert mailbox.fetched == [list(range(51, 151))]
        assert result.cursor.last_seen_uid == 150
        assert len(writer.documents) == 100

    def test_window_uses_configured_days(
        self,
        writer: InMemoryIndexWriter,
        fixed_clock: Callable[[], datetime],
        mailbox,
        account: Account,
    ) -> None:
        """Test only messages inside the date window are selected."""
        now = fixed_clock()
        mailbox.add("Old", sent_at=now - timedelta(days=40))
        mailbox.add("Recent", sent_at=now - timedelta(days=2))
        engine = SyncEngine(
            index_writer=writer,
            settings=SyncSettings(initial_window_days=7),
            clock=fixed_clock,
        )
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert ("since", (now - timedelta(days=7)).date()) in mailbox.calls
        assert mailbox.fetched == [[2]]
        assert result.cursor.last_seen_uid == 2

    def test_fallback_to_most_recent(
        self,
        engine: SyncEngine,
        fixed_clock: Callable[[], datetime],
        mailbox,
        account: Account,
    ) -> None:
        """Test an empty window falls back to the most recent 50 messages."""
        mailbox.add_many(70, sent_at=fixed_clock() - timedelta(days=90))
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.mode == "fallback"
        assert ("recent", 50) in mailbox.calls
        assert mailbox.fetched == [list(range(21, 71))]
        assert result.cursor.last_seen_uid == 70

    def test_fallback_never_exceeds_cap(
        self,
        writer: InMemoryIndexWriter,
        fixed_clock: Callable[[], datetime],
        mailbox,
        account: Account,
    ) -> None:
        """Test the fallback count is bounded by the initial maximum."""
        mailbox.add_many(30, sent_at=fixed_clock() - timedelta(days=90))
        engine = SyncEngine(
            index_writer=writer,
            settings=SyncSettings(initial_max_messages=10),
            clock=fixed_clock,
        )
        session = _connected(mailbox, account)

        engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert mailbox.fetched == [list(range(21, 31))]

    def test_empty_mailbox_skips_fallback(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test an empty mailbox fetches nothing and records the epoch."""
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.mode == "fallback"
        assert not any(kind == "recent" for kind, _ in mailbox.calls)
        assert writer.calls == []
        assert result.cursor.mailbox_epoch == 1
        assert result.cursor.is_initial


class TestRecordBuilding:
    """Tests for per-message record construction."""

    def test_record_fields(
        self,
        engine: SyncEngine,
        writer: InMemoryIndexWriter,
        fixed_clock: Callable[[], datetime],
        mailbox,
        account: Account,
    ) -> None:
        """Test the indexed document carries sanitized body, label and flags."""
        from onebox_mail.models import compute_record_id
        mailbox.add(
            "Hello",
            html='<p onclick="x()">Hi <script>bad()</script>there</p>',
            flags=("\\Seen",),
            message_id="<abc@example.com>",
        )
        session = _connected(mailbox, account)

        engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        record_id = compute_record_id("Hello", fixed_clock(), account.address)
        doc = writer.documents[record_id]
        assert doc["body_html"].strip() == "<p>Hi there</p>"
        assert doc["body_text"] == "Hi there"
        assert doc["label"] == "Unclassified"
        assert doc["seen"] is True
        assert doc["uid"] == 1
        assert doc["imap_user"] == account.address
        assert doc["messageId"] == "<abc@example.com>"

    def test_message_id_falls_back_to_uid_and_address(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test messages without Message-ID get a synthetic one."""
        mailbox.add("No id")
        session = _connected(mailbox, account)

        engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        (doc,) = writer.documents.values()
        assert doc["messageId"] == f"1@{account.address}"

    def test_parse_failure_is_skipped_but_passed(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test an unparseable message is skipped and the cursor moves past it."""
        mailbox.add("Good one")
        mailbox.add("No date", sent_at=None)
        mailbox.add("Good two")
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.ok
        assert result.messages_fetched == 3
        assert result.records_indexed == 2
        assert len(result.parse_errors) == 1
        assert "UID 2" in result.parse_errors[0]
        assert result.cursor.last_seen_uid == 3

    def test_ready_classifier_labels_records(
        self, writer: InMemoryIndexWriter, fixed_clock: Callable[[], datetime], mailbox, account
    ) -> None:
        """Test a ready classifier sets the label."""
        from onebox_mail.classify import ReadyClassifier

        engine = SyncEngine(
            index_writer=writer,
            classifier=ReadyClassifier(classify=lambda r: "Interested"),
            clock=fixed_clock,
        )
        mailbox.add("Hello")
        session = _connected(mailbox, account)

        engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        (doc,) = writer.documents.values()
        assert doc["label"] == "Interested"

    def test_classifier_failure_uses_default_label(
        self, writer: InMemoryIndexWriter, fixed_clock: Callable[[], datetime], mailbox, account
    ) -> None:
        """Test a failing classifier never fails the pass."""
        from onebox_mail.classify import ReadyClassifier

        classify = MagicMock(side_effect=RuntimeError("model crashed"))
        engine = SyncEngine(
            index_writer=writer,
            classifier=ReadyClassifier(classify=classify),
            clock=fixed_clock,
        )
        mailbox.add("Hello")
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.ok
        (doc,) = writer.documents.values()
        assert doc["label"] == "Unclassified"

    def test_update_classifier_applies_to_next_pass(
        self, engine: SyncEngine, writer: InMemoryIndexWriter, mailbox, account: Account
    ) -> None:
        """Test swapping the handle affects subsequent records only."""
        from onebox_mail.classify import ReadyClassifier

        mailbox.add("First")
        session = _connected(mailbox, account)
        cursor = engine.perform_sync(account, session, MailboxCursor(account_id=account.id))

        engine.update_classifier(ReadyClassifier(classify=lambda r: "Spam"))
        mailbox.add("Second")
        engine.perform_sync(account, session, cursor)

        labels = {doc["subject"]: doc["label"] for doc in writer.documents.values()}
        assert labels == {"First": "Unclassified", "Second": "Spam"}


class TestIndexFailures:
    """Tests for partial and total index failures."""

    def test_partial_failure_advances_by_default(
        self, fixed_clock: Callable[[], datetime], mailbox, account: Account
    ) -> None:
        """Test failed records are reported and the cursor still covers the batch."""
        writer = FailingIds({"Message 1"})
        engine = SyncEngine(index_writer=writer, clock=fixed_clock)
        mailbox.add_many(3)
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.ok
        assert len(result.index_errors) == 1
        assert result.records_indexed == 2
        assert result.cursor.last_seen_uid == 3

    def test_partial_failure_strict_mode_stops_before_failure(
        self, fixed_clock: Callable[[], datetime], mailbox, account: Account
    ) -> None:
        """Test strict mode keeps the cursor below the first unconfirmed UID."""
        writer = FailingIds({"Message 2"})
        engine = SyncEngine(
            index_writer=writer,
            settings=SyncSettings(advance_on_partial_failure=False),
            clock=fixed_clock,
        )
        mailbox.add_many(4)
        session = _connected(mailbox, account)

        result = engine.run_pass(account, session, MailboxCursor(account_id=account.id))

        assert result.cursor.last_seen_uid == 2

    def test_strict_mode_first_record_failure_keeps_cursor(
        self, fixed_clock: Callable[[], datetime], mailbox, account: Account
    ) -> None:
        """Test strict mode with the first record failing does not advance."""
        writer = FailingIds({"Message 0"})
        engine = SyncEngine(
            index_writer=writer,
            settings=SyncSettings(advance_on_partial_failure=False),
            clock=fixed_clock,
        )
        mailbox.add_many(3)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=0, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert result.cursor.last_seen_uid == 0

    def test_writer_exception_keeps_pre_pass_cursor(
        self, fixed_clock: Callable[[], datetime], mailbox, account: Account
    ) -> None:
        """Test a sink outage leaves the cursor untouched and does not raise."""
        writer = MagicMock()
        writer.bulk_upsert.side_effect = ConnectionError("cluster unavailable")
        engine = SyncEngine(index_writer=writer, clock=fixed_clock)
        mailbox.add_many(13)
        session = _connected(mailbox, account)
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=10, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert not result.ok
        assert "cluster unavailable" in (result.error or "")
        assert result.cursor == cursor
        assert engine.perform_sync(account, session, cursor) == cursor

    def test_session_failure_keeps_pre_pass_cursor(
        self, engine: SyncEngine, mailbox, account: Account
    ) -> None:
        """Test a dropped session mid-pass returns the old cursor."""
        session = _connected(mailbox, account)
        session.abort()
        cursor = MailboxCursor(account_id=account.id, last_seen_uid=4, mailbox_epoch=1)

        result = engine.run_pass(account, session, cursor)

        assert not result.ok
        assert result.cursor == cursor
