"""
Synchronization logger
Structured log plus a live status line to the user's client session
"""

from typing import Any, Optional

import structlog

from .channel import ClientChannel

logger = structlog.get_logger(__name__)

DEFAULT_SENDER = "MailboxSynchronization"


class SynchronizationLogger:
    """
    Logger bound to a user

    Info, warning and error lines are also pushed to the user's client
    channel when one is configured. A failing push is logged and dropped.
    """

    def __init__(self, user_id: str, channel: Optional[ClientChannel] = None,
                 sender: str = DEFAULT_SENDER, **context: Any):
        self.user_id = user_id
        self.channel = channel
        self.sender = sender
        self._log = logger.bind(user_id=user_id, **context)

    def bind(self, **context: Any) -> "SynchronizationLogger":
        bound = SynchronizationLogger(self.user_id, self.channel, self.sender)
        bound._log = self._log.bind(**context)
        return bound

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log.debug(message, **kwargs)

    async def info(self, message: str, **kwargs: Any) -> None:
        self._log.info(message, **kwargs)
        await self._post(message, "info")

    async def warning(self, message: str, **kwargs: Any) -> None:
        self._log.warning(message, **kwargs)
        await self._post(message, "warning")

    async def error(self, message: str, error: Optional[BaseException] = None, **kwargs: Any) -> None:
        if error is not None:
            kwargs["error"] = str(error)
            kwargs["error_type"] = error.__class__.__name__
            message = f"{message}: {error}"
        self._log.error(message, **kwargs)
        await self._post(message, "error")

    async def _post(self, message: str, level: str) -> None:
        if self.channel is None:
            return
        try:
            await self.channel.post_message(self.user_id, self.sender, message, level)
        except Exception as e:
            self._log.warning("Failed to post status message", error=str(e))
