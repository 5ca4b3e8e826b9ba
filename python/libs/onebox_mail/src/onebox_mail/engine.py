"""Single sync pass for one account over an open mailbox session."""

import logging
from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta

from onebox_common.config import SyncSettings

from onebox_mail.classify import ClassifierHandle, NotReadyClassifier, classify_record
from onebox_mail.connectors.imap_session import MailboxSession
from onebox_mail.exceptions import MessageParseError
from onebox_mail.index_writer import IndexWriter
from onebox_mail.models import (
    Account,
    EmailRecord,
    FetchedMessage,
    MailboxCursor,
    MailboxStatus,
    SyncMode,
    SyncResult,
    UpsertOutcome,
    compute_record_id,
)
from onebox_mail.parsing import parse_message
from onebox_mail.sanitize import html_to_text, sanitize

logger = logging.getLogger(__name__)

Sanitizer = Callable[[str], str]


class SyncEngine:
    """Turns new mailbox messages into index records and advances the cursor."""

    def __init__(
        self,
        index_writer: IndexWriter,
        settings: SyncSettings | None = None,
        classifier: ClassifierHandle | None = None,
        sanitizer: Sanitizer = sanitize,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.index_writer = index_writer
        self.settings = settings or SyncSettings()
        self.sanitizer = sanitizer
        self._classifier: ClassifierHandle = classifier or NotReadyClassifier()
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def classifier(self) -> ClassifierHandle:
        return self._classifier

    def update_classifier(self, handle: ClassifierHandle) -> None:
        """Swap the classifier used by subsequent passes."""
        self._classifier = handle
        logger.info("Classifier updated: %s", type(handle).__name__)

    def perform_sync(
        self,
        account: Account,
        session: MailboxSession,
        cursor: MailboxCursor,
    ) -> MailboxCursor:
        """Run one pass and return the cursor to persist."""
        return self.run_pass(account, session, cursor).cursor

    def run_pass(
        self,
        account: Account,
        session: MailboxSession,
        cursor: MailboxCursor,
    ) -> SyncResult:
        """
        Run one synchronization pass.

        Steps:
        1. Hold the mailbox exclusively for the whole pass
        2. Read status and reconcile the cursor epoch (UIDVALIDITY)
        3. Select UIDs: incremental past the cursor, or a bounded initial window
        4. Fetch, parse, sanitize, classify and build records
        5. Bulk-upsert the records
        6. Advance the cursor to the highest UID fetched

        Never raises. On failure the result carries the pre-pass cursor.
        """
        result = SyncResult(account_id=account.id, cursor=cursor)

        try:
            with session.exclusive():
                self._run(account, session, cursor, result)
        except Exception as e:
            result.cursor = cursor
            result.error = str(e)
            logger.exception("Sync pass failed for %s", account.address)

        return result

    def _run(
        self,
        account: Account,
        session: MailboxSession,
        cursor: MailboxCursor,
        result: SyncResult,
    ) -> None:
        status = session.status()
        result.status = status

        working = cursor.observe_epoch(status.epoch)
        if working.last_seen_uid != cursor.last_seen_uid:
            logger.warning(
                "UIDVALIDITY changed for %s (%s -> %d), performing full sync",
                account.address,
                cursor.mailbox_epoch,
                status.epoch,
            )

        mode, uids = self._select_uids(session, working, status)
        result.mode = mode
        result.uids_selected = len(uids)

        if not uids:
            logger.info("No new emails to sync for %s", account.address)
            result.cursor = working
            return

        logger.info("Syncing %d emails for %s (%s)", len(uids), account.address, mode)

        records, fetched_uids = self._collect(account, session, uids, result)
        result.messages_fetched = len(fetched_uids)

        outcomes: list[UpsertOutcome] = []
        if records:
            outcomes = self.index_writer.bulk_upsert(records)
            for outcome in outcomes:
                if not outcome.ok:
                    result.index_errors.append(f"{outcome.record_id}: {outcome.error}")
                    logger.error(
                        "Failed to index record %s for %s: %s",
                        outcome.record_id,
                        account.address,
                        outcome.error,
                    )
            result.records_indexed = sum(1 for o in outcomes if o.ok)

        result.cursor = working.advanced_to(
            self._advance_target(working, fetched_uids, records, outcomes)
        )

        logger.info(
            "Sync complete for %s: %d fetched, %d indexed, %d parse errors, "
            "%d index errors, last_uid=%d",
            account.address,
            result.messages_fetched,
            result.records_indexed,
            len(result.parse_errors),
            len(result.index_errors),
            result.cursor.last_seen_uid,
        )

    def _select_uids(
        self,
        session: MailboxSession,
        cursor: MailboxCursor,
        status: MailboxStatus,
    ) -> tuple[SyncMode, list[int]]:
        if not cursor.is_initial:
            # "n:*" always matches the highest UID, even when it is below n
            uids = session.search_uid_range(cursor.last_seen_uid + 1)
            return "incremental", sorted(u for u in uids if u > cursor.last_seen_uid)

        cap = self.settings.initial_max_messages
        since = (self._clock() - timedelta(days=self.settings.initial_window_days)).date()
        uids = sorted(session.search_since(since))
        if uids:
            return "initial", uids[-cap:]

        if status.count == 0:
            return "fallback", []

        fallback = min(self.settings.initial_fallback_count, cap)
        logger.info(
            "No emails in the last %d days, fetching the most recent %d",
            self.settings.initial_window_days,
            fallback,
        )
        return "fallback", sorted(session.search_recent(fallback))[-fallback:]

    def _collect(
        self,
        account: Account,
        session: MailboxSession,
        uids: Sequence[int],
        result: SyncResult,
    ) -> tuple[list[EmailRecord], list[int]]:
        records: list[EmailRecord] = []
        fetched_uids: list[int] = []

        for message in session.fetch_sources(uids):
            fetched_uids.append(message.uid)
            try:
                records.append(self.build_record(account, message))
            except MessageParseError as e:
                result.parse_errors.append(str(e))
                logger.warning("Skipping message for %s: %s", account.address, e)

        return records, fetched_uids

    def build_record(self, account: Account, message: FetchedMessage) -> EmailRecord:
        """
        Build an index record from a fetched message.

        Raises:
            MessageParseError: If the message cannot be parsed
        """
        parsed = parse_message(message)
        body_html = self.sanitizer(parsed.html)
        body_text = html_to_text(body_html)

        record = EmailRecord(
            id=compute_record_id(parsed.subject, parsed.date, account.address),
            from_=parsed.from_,
            subject=parsed.subject,
            date=parsed.date,
            body_html=body_html,
            body_text=body_text,
            label=self.settings.default_label,
            account_id=account.id,
            mail_user=account.address,
            uid=message.uid,
            seen=message.seen,
            message_id=parsed.message_id or f"{message.uid}@{account.address}",
        )
        label = classify_record(self._classifier, record, default=self.settings.default_label)
        return record.with_label(label)

    def _advance_target(
        self,
        cursor: MailboxCursor,
        fetched_uids: Sequence[int],
        records: Sequence[EmailRecord],
        outcomes: Sequence[UpsertOutcome],
    ) -> int:
        """Highest UID the cursor may move to after this pass."""
        if not fetched_uids:
            return cursor.last_seen_uid

        highest = max(fetched_uids)
        failed_ids = {o.record_id for o in outcomes if not o.ok}
        if self.settings.advance_on_partial_failure or not failed_ids:
            return highest

        # Stop just below the first UID whose record was not confirmed written
        first_failed = min(r.uid for r in records if r.id in failed_ids)
        confirmed = [u for u in fetched_uids if u < first_failed]
        return max(confirmed, default=cursor.last_seen_uid)
