#!/usr/bin/env python3
"""
Check an IMAP account end to end without writing to the index.

Connects, reads mailbox status, waits briefly in IDLE and builds index
records for the newest messages so sanitization and ids can be inspected.

Usage:
    python -m scripts.check_imap_connection
"""

import os
import sys
from pathlib import Path

# Load .env manually
env_file = Path(__file__).parent.parent / ".env"
if env_file.exists():
    for line in env_file.read_text().splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            key, _, value = line.partition("=")
            os.environ.setdefault(key.strip(), value.strip())


def get_env(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def main() -> int:
    """Connect one account from the environment and preview its newest records."""
    from onebox_mail import Account, ImapSession, InMemoryIndexWriter, SyncEngine
    from onebox_mail.exceptions import MailSyncError

    host = get_env("IMAP_HOST", "imap.gmail.com")
    port = int(get_env("IMAP_PORT", "993"))
    username = get_env("IMAP_USERNAME")
    password = get_env("IMAP_PASSWORD")
    mailbox = get_env("IMAP_MAILBOX", "INBOX")
    preview = int(get_env("IMAP_PREVIEW_COUNT", "3"))

    if not username or not password:
        print("ERROR: IMAP_USERNAME and IMAP_PASSWORD must be set in .env")
        print("\nCurrent values:")
        print(f"  IMAP_HOST={host}")
        print(f"  IMAP_USERNAME={username or '(not set)'}")
        print(f"  IMAP_PASSWORD={'***' if password else '(not set)'}")
        return 1

    account = Account(
        id="connection-check",
        address=username,
        credential=password,
        host=host,
        port=port,
        mailbox=mailbox,
    )
    engine = SyncEngine(index_writer=InMemoryIndexWriter())
    session = ImapSession(account)

    print("\n" + "=" * 60)
    print("Checking IMAP Connection")
    print("=" * 60)
    print(f"Host: {host}:{port}")
    print(f"User: {username}")
    print(f"Mailbox: {mailbox}")

    try:
        print("\n[1] Connecting...")
        session.connect()
        print("    ✓ Logged in and mailbox selected")

        print("\n[2] Reading mailbox status...")
        status = session.status()
        print(f"    Messages: {status.count}")
        print(f"    UIDNEXT: {status.uid_next}")
        print(f"    UIDVALIDITY: {status.epoch}")

        print(f"\n[3] Building records for the newest {preview} messages...")
        uids = session.search_recent(preview)
        for message in session.fetch_sources(uids):
            try:
                record = engine.build_record(account, message)
            except MailSyncError as e:
                print(f"    ✗ UID {message.uid}: {e}")
                continue
            print(f"    UID {record.uid}: {record.subject[:60]!r}")
            print(f"      id={record.id} date={record.date.isoformat()} seen={record.seen}")
            print(f"      text={record.body_text[:80]!r}")

        print("\n[4] Entering IDLE for 5 seconds...")
        session.on_new_message(lambda: print("    New mail notification received"))
        session.idle_start()
        session.idle_poll(5.0)
        session.idle_done()
        print("    ✓ IDLE supported")

    except Exception as e:
        print(f"\n✗ Check failed: {e}")
        return 1
    finally:
        session.logout()

    print("\n" + "=" * 60)
    print("All checks passed! IMAP connection is working.")
    print("=" * 60)
    return 0


if __name__ == "__main__":
    sys.exit(main())
