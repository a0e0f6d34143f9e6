"""
Mailbox configuration services and validation
"""

from .service import MailboxNotFoundError, MailboxService, mailbox_from_row, mailbox_to_row
from .validator import ListenerMailSender, MailboxValidator, MailSender

__all__ = [
    "ListenerMailSender",
    "MailboxNotFoundError",
    "MailboxService",
    "MailboxValidator",
    "MailSender",
    "mailbox_from_row",
    "mailbox_to_row",
]
