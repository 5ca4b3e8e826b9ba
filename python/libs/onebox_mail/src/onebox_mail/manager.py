"""Registry of active per-account sync supervisors."""

import logging
import threading
import time
from types import TracebackType

from onebox_common.config import SyncSettings

from onebox_mail.connectors.imap_session import ImapSession
from onebox_mail.cursor_store import CursorStore, InMemoryCursorStore
from onebox_mail.engine import SyncEngine
from onebox_mail.models import Account
from onebox_mail.retry import RetryPolicy
from onebox_mail.supervisor import ConnectionSupervisor, SessionFactory, SupervisorState

logger = logging.getLogger(__name__)


class SyncManager:
    """
    Start/stop surface for mailbox sync across accounts.

    Construct one instance at process startup and call ``stop_all`` (or use
    it as a context manager) before exit so no remote session is leaked.
    """

    def __init__(
        self,
        engine: SyncEngine,
        session_factory: SessionFactory = ImapSession,
        cursor_store: CursorStore | None = None,
        settings: SyncSettings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.engine = engine
        self.session_factory = session_factory
        self.cursor_store = cursor_store or InMemoryCursorStore()
        self.settings = settings or engine.settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._supervisors: dict[str, ConnectionSupervisor] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "SyncManager":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.stop_all()

    def start(self, account: Account) -> bool:
        """
        Start syncing an account, replacing any running sync for it.

        Returns immediately; connection and sync errors are logged by the
        supervisor.

        Returns:
            True if an existing sync was replaced
        """
        replaced = self.stop(account.id)

        supervisor = ConnectionSupervisor(
            account=account,
            engine=self.engine,
            session_factory=self.session_factory,
            cursor_store=self.cursor_store,
            settings=self.settings,
            retry_policy=self.retry_policy,
        )
        with self._lock:
            previous = self._supervisors.get(account.id)
            self._supervisors[account.id] = supervisor

        # Lost a race with a concurrent start for the same account
        if previous is not None:
            previous.stop(self.settings.shutdown_timeout_seconds)
            replaced = True

        supervisor.start()
        return replaced

    def stop(self, account_id: str) -> bool:
        """
        Stop syncing an account and remove it from the registry.

        Returns:
            True if the account was active
        """
        with self._lock:
            supervisor = self._supervisors.pop(account_id, None)
        if supervisor is None:
            return False

        supervisor.stop(self.settings.shutdown_timeout_seconds)
        return True

    def stop_all(self, timeout: float | None = None) -> None:
        """Stop every account, bounded overall by ``timeout`` seconds."""
        timeout = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        with self._lock:
            supervisors = list(self._supervisors.values())
            self._supervisors.clear()

        if not supervisors:
            return

        logger.info("Stopping %d mail sync supervisors", len(supervisors))
        deadline = time.monotonic() + timeout

        # Signal everyone first so sessions wind down in parallel
        stoppers = [
            threading.Thread(target=s.stop, args=(timeout,), name=f"stop-{s.account.id}")
            for s in supervisors
        ]
        for stopper in stoppers:
            stopper.start()
        for stopper in stoppers:
            stopper.join(max(0.0, deadline - time.monotonic()))

        lingering = [s.account.id for s in supervisors if s.is_alive()]
        if lingering:
            logger.warning("Supervisors still running after shutdown timeout: %s", lingering)

    def refresh(self, account_id: str) -> bool:
        """
        Request an immediate sync pass for an active account.

        Returns:
            False if the account is not active
        """
        with self._lock:
            supervisor = self._supervisors.get(account_id)
        if supervisor is None:
            return False
        supervisor.request_sync("refresh")
        return True

    def resync(self, account: Account) -> None:
        """Restart an account from scratch, discarding its cursor."""
        self.stop(account.id)
        self.cursor_store.delete(account.id)
        logger.info("Cursor reset for %s, starting full resync", account.address)
        self.start(account)

    def is_active(self, account_id: str) -> bool:
        with self._lock:
            return account_id in self._supervisors

    def active_accounts(self) -> list[str]:
        with self._lock:
            return sorted(self._supervisors)

    def state(self, account_id: str) -> SupervisorState | None:
        with self._lock:
            supervisor = self._supervisors.get(account_id)
        return supervisor.state if supervisor else None

    def supervisor(self, account_id: str) -> ConnectionSupervisor | None:
        with self._lock:
            return self._supervisors.get(account_id)
