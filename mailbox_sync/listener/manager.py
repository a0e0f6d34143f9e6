"""
Listener subscription manager
Creates, recreates, closes and inspects push subscriptions held by the external listener service
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

import httpx
import structlog

from ..config import LEGACY_EMAIL_INTEGRATION, FeatureFlags, ListenerSettings
from ..models.sync_models import Mailbox, RemoteFolder, SubscriptionState, ValidationResult
from ..providers.backend import folder_from_payload
from ..utils.error_handler import ErrorCategory, classify_error, unwrap_root_cause

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INVALID_SETTINGS_CODE = "InvalidSynchronizationSettings"


class ListenerActions:
    """Listener service endpoints"""
    CREATE = "create"
    RECREATE = "recreate"
    CLOSE = "close"
    UPDATE = "update"
    VALIDATE = "validate"
    EXISTS = "exists"
    SUBSCRIPTIONS_STATE = "subscriptionsState"
    FOLDERS = "folders"

    @staticmethod
    def path(action: str) -> str:
        return f"/api/listeners/{action}"


class ListenerActionError(Exception):
    """Listener call failed; carries the classified root cause"""

    def __init__(self, error_class: str, message: str, category: ErrorCategory,
                 mailbox_id: Optional[str] = None):
        self.error_class = error_class
        self.message = message
        self.category = category
        self.mailbox_id = mailbox_id
        super().__init__(f"{error_class}: {message}")


class ListenerSubscriptionManager:
    """
    Client for the listener service

    Certificate verification and timeout are configured on this manager's own
    httpx client. Every subscription call goes through _try_listener_action so
    failures end up on the mailbox error state with their root cause.
    """

    def __init__(self, mailbox_service, settings: Optional[ListenerSettings] = None,
                 feature_flags: Optional[FeatureFlags] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.mailbox_service = mailbox_service
        self.settings = settings or ListenerSettings()
        self.feature_flags = feature_flags or FeatureFlags()
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
                        headers={"Content-Type": "application/json; charset=utf-8"},
                    )
                    logger.info("Listener HTTP client created", service_url=self.settings.service_url,
                                verify_ssl=self.settings.verify_ssl)
        return self._client

    async def close_client(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _is_legacy(self, user_id: Optional[str] = None) -> bool:
        return self.feature_flags.is_enabled(LEGACY_EMAIL_INTEGRATION, user_id)

    def _connection_params(self, mailbox: Mailbox) -> Dict[str, Any]:
        params = mailbox.credentials.to_dict()
        params.update({
            "mailboxId": mailbox.id,
            "senderEmailAddress": mailbox.sender_email_address,
            "userId": mailbox.owner_id,
            "timeZone": mailbox.owner_time_zone,
            "syncAllFolders": mailbox.sync_all_folders,
            "folders": list(mailbox.folder_ids),
            "callbackUrl": self.settings.callback_url,
        })
        return params

    async def _execute(self, action: str, payload: Any) -> Any:
        client = await self._get_client()
        response = await client.post(ListenerActions.path(action), json=payload)
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def _try_listener_action(self, mailbox: Mailbox, operation: str,
                                   action: Callable[[], Awaitable[T]]) -> T:
        """
        Run a listener call, recording any failure on the mailbox

        Raises:
            ListenerActionError: With the root cause class name, message and category
        """
        try:
            return await action()
        except Exception as e:
            root = unwrap_root_cause(e)
            error_context = classify_error(e, {"operation": operation, "mailbox_id": mailbox.id})
            error_class = root.__class__.__name__
            logger.error("Listener action failed",
                         operation=operation,
                         mailbox_id=mailbox.id,
                         sender=mailbox.sender_email_address,
                         error_class=error_class,
                         error=str(root),
                         category=error_context.category)
            try:
                await self.mailbox_service.record_error(mailbox.id, error_class, str(root))
            except Exception as record_failure:
                logger.error("Failed to record listener error", mailbox_id=mailbox.id,
                             error=str(record_failure))
            raise ListenerActionError(error_class, str(root), error_context.category, mailbox.id) from e

    async def check_synchronization_settings(self, mailbox: Mailbox) -> bool:
        """Close a stale subscription and flag the mailbox when its settings are unusable"""
        if mailbox.check_synchronization_settings():
            return True

        message = f"Mailbox {mailbox.sender_email_address} synchronization settings are not valid"
        logger.warning(message, mailbox_id=mailbox.id)
        try:
            await self._execute(ListenerActions.CLOSE, [self._connection_params(mailbox)])
        except Exception as e:
            logger.warning("Failed to close stale subscription", mailbox_id=mailbox.id, error=str(e))
        await self.mailbox_service.record_error(mailbox.id, INVALID_SETTINGS_CODE, message)
        return False

    async def create(self, mailbox_id: str) -> bool:
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        if self._is_legacy(mailbox.owner_id):
            return False
        if not await self.check_synchronization_settings(mailbox):
            return False
        params = [self._connection_params(mailbox)]
        await self._try_listener_action(mailbox, "create",
                                        lambda: self._execute(ListenerActions.CREATE, params))
        logger.info("Listener subscription created", mailbox_id=mailbox_id)
        return True

    async def recreate(self, mailbox_id: str) -> bool:
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        if self._is_legacy(mailbox.owner_id):
            return False
        if not await self.check_synchronization_settings(mailbox):
            return False
        params = [self._connection_params(mailbox)]
        await self._try_listener_action(mailbox, "recreate",
                                        lambda: self._execute(ListenerActions.RECREATE, params))
        logger.info("Listener subscription recreated", mailbox_id=mailbox_id)
        return True

    async def close(self, mailbox_id: str) -> bool:
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        if self._is_legacy(mailbox.owner_id):
            return False
        params = [self._connection_params(mailbox)]
        await self._try_listener_action(mailbox, "close",
                                        lambda: self._execute(ListenerActions.CLOSE, params))
        logger.info("Listener subscription closed", mailbox_id=mailbox_id)
        return True

    async def update(self, mailbox_id: str) -> bool:
        """Push changed credentials or folder scope to an existing subscription"""
        mailbox = await self.mailbox_service.get_mailbox(mailbox_id)
        if self._is_legacy(mailbox.owner_id):
            return False
        params = [self._connection_params(mailbox)]
        await self._try_listener_action(mailbox, "update",
                                        lambda: self._execute(ListenerActions.UPDATE, params))
        return True

    async def validate(self, mailbox: Mailbox) -> ValidationResult:
        if self._is_legacy(mailbox.owner_id):
            return ValidationResult(False, f"Feature {LEGACY_EMAIL_INTEGRATION} enabled")
        params = mailbox.credentials.to_dict()
        params["senderEmailAddress"] = mailbox.sender_email_address
        raw = await self._try_listener_action(mailbox, "validate",
                                              lambda: self._execute(ListenerActions.VALIDATE, params))
        raw = raw or {}
        return ValidationResult(
            is_valid=bool(raw.get("isValid", raw.get("IsValid", False))),
            message=raw.get("message", raw.get("Message", "")) or "",
            data=raw,
        )

    async def is_service_available(self) -> bool:
        """True only on an HTTP 200 from the exists endpoint"""
        if self._is_legacy():
            return False
        try:
            client = await self._get_client()
            response = await client.get(ListenerActions.path(ListenerActions.EXISTS))
            return response.status_code == 200
        except Exception as e:
            logger.warning("Listener service unavailable", error=str(e))
            return False

    async def get_health(self, mailbox_ids: Iterable[str]) -> Dict[str, SubscriptionState]:
        """
        Subscription state per mailbox

        UNKNOWN means the listener could not be asked; it is not a reason to
        recreate a subscription.
        """
        ids = list(mailbox_ids)
        if self._is_legacy():
            return {mailbox_id: SubscriptionState.UNKNOWN for mailbox_id in ids}
        try:
            raw = await self._execute(ListenerActions.SUBSCRIPTIONS_STATE, ids) or {}
        except Exception as e:
            logger.warning("Subscription health unavailable", error=str(e), mailbox_count=len(ids))
            return {mailbox_id: SubscriptionState.UNKNOWN for mailbox_id in ids}

        states = {}
        for mailbox_id in ids:
            entry = raw.get(mailbox_id)
            state = entry.get("State", entry.get("state")) if isinstance(entry, dict) else None
            if isinstance(state, str) and state.lower() == "exists":
                states[mailbox_id] = SubscriptionState.EXISTS
            else:
                states[mailbox_id] = SubscriptionState.MISSING
        return states

    async def get_mailbox_folders(self, mailbox: Mailbox, folder_class: str = "") -> List[RemoteFolder]:
        if self._is_legacy(mailbox.owner_id):
            return []
        params = self._connection_params(mailbox)
        params["folderClassName"] = folder_class
        raw = await self._try_listener_action(mailbox, "get_mailbox_folders",
                                              lambda: self._execute(ListenerActions.FOLDERS, params))
        return [folder_from_payload(item) for item in (raw or [])]
