"""
Mailbox validation
Credential checks through the listener service and an optional test message send
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

import httpx
import structlog

from ..config import ListenerSettings
from ..models.sync_models import Mailbox, MailboxCredentials, ValidationResult

logger = structlog.get_logger(__name__)

TEST_MESSAGE_SUBJECT = "Mailbox connection test"


class MailSender(Protocol):
    async def send(self, message: Dict[str, Any], attachments: List[Dict[str, Any]],
                   credentials: MailboxCredentials) -> bool: ...


class ListenerMailSender:
    """Sends mail through the listener service's send endpoint"""

    def __init__(self, settings: Optional[ListenerSettings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or ListenerSettings()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._client_lock = asyncio.Lock()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            async with self._client_lock:
                if self._client is None:
                    self._client = httpx.AsyncClient(
                        base_url=self.settings.service_url,
                        timeout=httpx.Timeout(self.settings.timeout_seconds, connect=10.0),
                        verify=self.settings.verify_ssl,
                        transport=self._transport,
                    )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, message: Dict[str, Any], attachments: List[Dict[str, Any]],
                   credentials: MailboxCredentials) -> bool:
        client = await self._get_client()
        payload = {
            "credentials": credentials.to_dict(),
            "message": message,
            "attachments": attachments,
        }
        response = await client.post("/api/mail/send", json=payload)
        if response.status_code != 200:
            logger.warning("Mail send rejected", status_code=response.status_code, detail=response.text)
            return False
        return True


class MailboxValidator:
    """Checks a mailbox configuration before it is saved or resubscribed"""

    def __init__(self, listener_manager, mail_sender: Optional[MailSender] = None):
        self.listener_manager = listener_manager
        self.mail_sender = mail_sender

    async def validate_synchronization(self, mailbox: Mailbox) -> ValidationResult:
        if not mailbox.credentials.is_complete():
            return ValidationResult(False, "Mailbox credentials are incomplete")
        try:
            return await self.listener_manager.validate(mailbox)
        except Exception as e:
            logger.warning("Mailbox validation failed", mailbox_id=mailbox.id, error=str(e))
            return ValidationResult(False, str(e))

    async def validate_email_send(self, mailbox: Mailbox) -> ValidationResult:
        """Send a test message from the mailbox to itself"""
        if self.mail_sender is None:
            return ValidationResult(False, "Mail sending is not configured")
        message = {
            "from": mailbox.sender_email_address,
            "to": [mailbox.sender_email_address],
            "subject": TEST_MESSAGE_SUBJECT,
            "body": "This message confirms that the mailbox can send email.",
        }
        try:
            sent = await self.mail_sender.send(message, [], mailbox.credentials)
        except Exception as e:
            logger.warning("Test message send failed", mailbox_id=mailbox.id, error=str(e))
            return ValidationResult(False, str(e))
        if not sent:
            return ValidationResult(False, "Test message was not accepted")
        return ValidationResult(True, "Test message sent")
