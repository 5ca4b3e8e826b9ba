"""Mail provider connectors."""

from onebox_mail.connectors.imap_session import ImapSession, MailboxSession

__all__ = ["ImapSession", "MailboxSession"]
