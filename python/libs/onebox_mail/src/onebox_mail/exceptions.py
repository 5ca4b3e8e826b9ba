"""Exception types for mailbox synchronization."""


class MailSyncError(Exception):
    """Base exception for mail sync failures."""


class SessionConnectError(MailSyncError):
    """Connecting or authenticating to the remote mailbox failed."""

    def __init__(self, address: str, reason: str) -> None:
        self.address = address
        self.reason = reason
        super().__init__(f"Failed to connect {address}: {reason}")


class SessionClosedError(MailSyncError):
    """An operation was attempted on a session that is closed or aborted."""


class MessageParseError(MailSyncError):
    """A fetched message could not be parsed into a record."""

    def __init__(self, uid: int, reason: str) -> None:
        self.uid = uid
        super().__init__(f"Failed to parse message UID {uid}: {reason}")
