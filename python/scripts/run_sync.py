#!/usr/bin/env python3
"""
Run IMAP IDLE sync for every enabled account until interrupted.

Usage:
    python -m scripts.run_sync
"""

import os
import signal
import sys
import threading
from pathlib import Path
from types import FrameType

# Load .env manually
env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())


def main() -> int:
    """Start a SyncManager for all enabled accounts and block until SIGINT/SIGTERM."""
    from onebox_common import configure_logging, get_config, get_logger
    from onebox_mail import (
        AccountRegistry,
        ElasticsearchIndexWriter,
        InMemoryCursorStore,
        PostgresCursorStore,
        SyncEngine,
        SyncManager,
    )

    config = get_config()
    configure_logging(config.log_level)
    logger = get_logger("onebox.run_sync")

    cursor_store = (
        PostgresCursorStore(config.postgres, scope=config.sync.mailbox)
        if config.sync.cursor_store == "postgres"
        else InMemoryCursorStore()
    )
    engine = SyncEngine(
        index_writer=ElasticsearchIndexWriter(config.elasticsearch),
        settings=config.sync,
    )

    accounts = AccountRegistry(config.postgres).list_enabled_accounts()
    if not accounts:
        logger.warning("No enabled mail accounts found")
        return 1

    shutdown = threading.Event()

    def _handle_signal(signum: int, frame: FrameType | None) -> None:
        logger.info("Shutting down gracefully (signal %d)", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    with SyncManager(engine, cursor_store=cursor_store, settings=config.sync) as manager:
        for account in accounts:
            manager.start(account)
        logger.info("Mail sync running for %d accounts", len(accounts))

        while not shutdown.is_set():
            shutdown.wait(1.0)

    return 0


if __name__ == "__main__":
    sys.exit(main())
