"""Per-account connection lifecycle: connect, sync, IDLE, reconnect."""

import contextlib
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from tenacity import RetryCallState, Retrying

from onebox_common.config import SyncSettings
from onebox_common.logging import SYNC_THREAD_PREFIX, get_account_logger

from onebox_mail.connectors.imap_session import MailboxSession
from onebox_mail.cursor_store import CursorStore
from onebox_mail.engine import SyncEngine
from onebox_mail.exceptions import SessionConnectError
from onebox_mail.models import Account, SyncResult
from onebox_mail.retry import RetryPolicy

SessionFactory = Callable[[Account], MailboxSession]


class SupervisorState(str, Enum):
    """Connection lifecycle states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SYNCING = "syncing"
    IDLING = "idling"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class ConnectionHandle:
    """The live session of an account and its next IDLE renewal deadline."""

    account_id: str
    session: MailboxSession
    renew_at: float | None = None


class ConnectionSupervisor:
    """
    Owns one account's live session.

    A single worker thread connects, runs an initial pass, then idles on the
    mailbox. Push notifications and ``request_sync`` calls land on a
    one-slot signal queue, so a burst of signals collapses into one pending
    request; the worker runs one pass once a request has been pending for
    the debounce window. Session errors close the session and schedule one
    new attempt through the retry policy, until ``stop`` is called.
    """

    def __init__(
        self,
        account: Account,
        engine: SyncEngine,
        session_factory: SessionFactory,
        cursor_store: CursorStore,
        settings: SyncSettings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.account = account
        self.engine = engine
        self.session_factory = session_factory
        self.cursor_store = cursor_store
        self.settings = settings or SyncSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.log = get_account_logger(__name__, account.id, account.mailbox)

        self._signals: queue.Queue[str] = queue.Queue(maxsize=1)
        self._stopping = threading.Event()
        self._lock = threading.Lock()
        self._handle: ConnectionHandle | None = None
        self._thread: threading.Thread | None = None
        self._state = SupervisorState.DISCONNECTED

        self.connect_attempts = 0
        self.passes = 0
        self.renewals = 0
        self.last_result: SyncResult | None = None

    @property
    def state(self) -> SupervisorState:
        with self._lock:
            return self._state

    @property
    def handle(self) -> ConnectionHandle | None:
        with self._lock:
            return self._handle

    def _set_state(self, state: SupervisorState) -> None:
        with self._lock:
            if self._state is SupervisorState.STOPPED:
                return
            self._state = state
        self.log.debug("Supervisor %s -> %s", self.account.address, state.value)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # =========================================================================
    # Public controls
    # =========================================================================

    def start(self) -> None:
        """Start the worker thread. A supervisor can only be started once."""
        if self._thread is not None:
            raise RuntimeError(f"Supervisor for {self.account.id} already started")

        self.log.info("Starting IMAP sync for %s", self.account.address)
        self._thread = threading.Thread(
            target=self._run,
            name=f"{SYNC_THREAD_PREFIX}{self.account.id}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> bool:
        """
        Stop the supervisor.

        Cancels pending waits and the IDLE renewal, lets the worker log out,
        and aborts the socket if the worker is still busy after a short
        grace period.

        Returns:
            True if the worker exited within ``timeout``
        """
        self._stopping.set()
        thread = self._thread

        if thread is None or thread is threading.current_thread():
            self._finish()
            return True

        grace = self.settings.idle_poll_seconds * 2
        if timeout is not None:
            grace = min(grace, timeout)
        thread.join(grace)

        if thread.is_alive():
            handle = self.handle
            if handle is not None:
                self.log.info("Aborting in-flight work for %s", self.account.address)
                handle.session.abort()
            thread.join(None if timeout is None else max(0.0, timeout - grace))

        if thread.is_alive():
            self.log.warning("Sync worker for %s did not stop in time", self.account.address)
            return False

        self.log.info("Stopped sync for account %s", self.account.id)
        return True

    def request_sync(self, reason: str = "refresh") -> bool:
        """
        Ask the worker for a sync pass.

        Returns:
            False if a request was already pending (the two are coalesced)
        """
        try:
            self._signals.put_nowait(reason)
        except queue.Full:
            self.log.debug("Sync request (%s) coalesced for %s", reason, self.account.address)
            return False
        return True

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self) -> None:
        retrying = Retrying(
            stop=self.retry_policy.stop(self._stopping),
            wait=self.retry_policy.wait,
            sleep=self._sleep,
            before_sleep=self._before_reconnect,
            reraise=True,
        )
        try:
            retrying(self._session_lifecycle)
        except Exception as e:
            if not self._stopping.is_set():
                self.log.error(
                    "Giving up on %s after %d attempts: %s",
                    self.account.address,
                    self.connect_attempts,
                    e,
                )
        finally:
            self._finish()

    def _finish(self) -> None:
        with self._lock:
            self._state = SupervisorState.STOPPED
            if self._handle is not None:
                self._handle.renew_at = None

    def _sleep(self, seconds: float) -> None:
        self._stopping.wait(seconds)

    def _before_reconnect(self, retry_state: RetryCallState) -> None:
        self._set_state(SupervisorState.RECONNECTING)
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if isinstance(error, SessionConnectError):
            self.log.error("Failed to start sync for %s: %s", self.account.address, error.reason)
        else:
            self.log.error("IMAP error for %s: %s", self.account.address, error)
        self.log.info(
            "Reconnecting %s in %.1fs (attempt %d)",
            self.account.address,
            delay,
            retry_state.attempt_number + 1,
        )

    def _session_lifecycle(self) -> None:
        """One connect -> sync -> idle cycle; raises when the session is lost."""
        if self._stopping.is_set():
            return

        self.connect_attempts += 1
        self._set_state(SupervisorState.CONNECTING)
        session = self._open_session()
        if session is None:
            return

        try:
            self._set_state(SupervisorState.CONNECTED)
            self.log.info("IMAP connected: %s", self.account.address)
            result = self._sync(session)
            self._listen(session, result)
        except Exception:
            if self._stopping.is_set():
                self.log.debug("Session for %s ended during stop", self.account.address)
                return
            raise
        finally:
            self._close_session(session)

    def _open_session(self) -> MailboxSession | None:
        session = self.session_factory(self.account)
        session.on_new_message(lambda: self.request_sync("push"))

        with self._lock:
            self._handle = ConnectionHandle(account_id=self.account.id, session=session)

        if self._stopping.is_set():
            self._close_session(session)
            return None

        try:
            session.connect()
        except Exception as e:
            self._close_session(session)
            if isinstance(e, SessionConnectError):
                raise
            raise SessionConnectError(self.account.address, str(e)) from e

        # stop() may have run while the handshake was still in flight
        if self._stopping.is_set():
            self.log.info("Dropping session for %s opened during stop", self.account.address)
            self._close_session(session)
            return None

        return session

    def _close_session(self, session: MailboxSession) -> None:
        with self._lock:
            if self._handle is not None and self._handle.session is session:
                self._handle = None
        with contextlib.suppress(Exception):
            session.logout()

    def _sync(self, session: MailboxSession) -> SyncResult:
        self._set_state(SupervisorState.SYNCING)
        cursor = self.cursor_store.load(self.account.id)

        result = self.engine.run_pass(self.account, session, cursor)
        self.last_result = result
        self.passes += 1

        if result.cursor != cursor:
            try:
                self.cursor_store.save(result.cursor)
            except Exception:
                # Next pass re-fetches from the old position; upserts are idempotent
                self.log.exception("Failed to persist cursor for %s", self.account.address)

        return result

    def _set_renew_at(self, renew_at: float | None) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.renew_at = renew_at

    def _drain_signals(self) -> list[str]:
        reasons: list[str] = []
        while True:
            try:
                reasons.append(self._signals.get_nowait())
            except queue.Empty:
                return reasons

    def _catch_up(self, session: MailboxSession, result: SyncResult) -> None:
        """Queue another pass if mail arrived after the last pass read the mailbox."""
        if result.status is None:
            return
        with session.exclusive():
            status = session.status()
        # New mail announced outside IDLE is not repeated once IDLE starts
        if status.epoch != result.status.epoch or status.uid_next > result.status.uid_next:
            self.log.info("New mail arrived during sync for %s", self.account.address)
            self.request_sync("catch-up")

    def _enter_idle(self, session: MailboxSession) -> float:
        self._set_state(SupervisorState.IDLING)
        session.idle_start()
        renew_at = time.monotonic() + self.settings.idle_renewal_seconds
        self._set_renew_at(renew_at)
        return renew_at

    def _listen(self, session: MailboxSession, result: SyncResult) -> None:
        """IDLE until stopped, running a pass for each coalesced sync request."""
        self.log.info("Starting IDLE monitoring for %s", self.account.address)
        self._catch_up(session, result)
        renew_at = self._enter_idle(session)
        pending_since: float | None = None

        while not self._stopping.is_set():
            now = time.monotonic()
            deadline = renew_at
            if pending_since is not None:
                deadline = min(deadline, pending_since + self.settings.debounce_seconds)
            session.idle_poll(max(0.0, min(self.settings.idle_poll_seconds, deadline - now)))

            now = time.monotonic()
            if pending_since is None and not self._signals.empty():
                pending_since = now

            if pending_since is not None and now - pending_since >= self.settings.debounce_seconds:
                session.idle_done()
                reasons = self._drain_signals()
                pending_since = None
                if self._stopping.is_set():
                    return
                reason = ", ".join(sorted(set(reasons))) or "signal"
                self.log.info(
                    "New email notification for %s (%s)",
                    self.account.address,
                    reason,
                    extra={"sync_reason": reason},
                )
                result = self._sync(session)
                self._catch_up(session, result)
                renew_at = self._enter_idle(session)
            elif now >= renew_at:
                self._renew_idle(session)
                renew_at = time.monotonic() + self.settings.idle_renewal_seconds
                self._set_renew_at(renew_at)
                # Catch anything that arrived while the registration was cycling
                self.request_sync("renewal")

    def _renew_idle(self, session: MailboxSession) -> None:
        """Cycle the IDLE registration before the server's timeout."""
        with session.exclusive():
            session.idle_done()
            session.idle_start()
        self.renewals += 1
        self.log.info("IDLE renewed for %s", self.account.address)
