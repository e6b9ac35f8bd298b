"""Custom filters for the VedaVault bot."""
import logging
from datetime import datetime
from typing import Any, Union

from aiogram.enums import ChatType
from aiogram.filters import BaseFilter
from aiogram.types import CallbackQuery, Message

import identity

logger = logging.getLogger(__name__)

PROVIDER = "telegram"


def log_blocked(user_id: int, action: str, detail: str = "") -> None:
    """Log an attempt by an unregistered user. No secrets."""
    logger.warning(
        "Unregistered access blocked: user_id=%s action=%s detail=%s ts=%s",
        user_id, action, (detail or "")[:80], datetime.now().isoformat(),
    )


def _is_private_chat(event: Union[Message, CallbackQuery]) -> bool:
    """Check if event is from a private chat."""
    if isinstance(event, Message):
        return getattr(event.chat, "type", None) == ChatType.PRIVATE
    if isinstance(event, CallbackQuery) and event.message:
        return getattr(event.message.chat, "type", None) == ChatType.PRIVATE
    return False


class PrivateChat(BaseFilter):
    """Messages and callbacks from private chats only."""

    async def __call__(self, event: Union[Message, CallbackQuery], **kwargs: Any) -> bool:
        return _is_private_chat(event)


class Registered(BaseFilter):
    """Registered users only. Injects actor_id (the vault identity id) into the handler."""

    async def __call__(self, event: Union[Message, CallbackQuery], **kwargs: Any) -> Union[bool, dict[str, Any]]:
        user_id = event.from_user.id if event.from_user else None
        if user_id is None:
            return False
        actor_id = identity.find_identity(PROVIDER, str(user_id))
        if actor_id is None:
            action = "callback" if isinstance(event, CallbackQuery) else "message"
            detail = getattr(event, "data", None) or getattr(event, "text", None) or ""
            log_blocked(user_id, action, str(detail))
            if isinstance(event, CallbackQuery):
                await event.answer("Please register first: /start", show_alert=True)
            else:
                await event.answer("Please register first: /start")
            return False
        return {"actor_id": actor_id}
