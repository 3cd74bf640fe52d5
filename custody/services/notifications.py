from __future__ import annotations

import asyncio
import logging
from typing import Optional

import httpx
from aiogram import Bot
from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup

from custody.config import settings
from custody.errors import DeliveryError
from custody.gateway.client import get_client

logger = logging.getLogger(__name__)

_bot_singleton: Optional[Bot] = None
_bot_lock = asyncio.Lock()


def otp_message(code: str, cheque_no: str, ttl_minutes: int) -> str:
    return f"Your OTP for cheque {cheque_no} handover is: {code}. Valid for {ttl_minutes} minutes."


async def deliver_otp(channel: str, to_contact: str, code: str, *, cheque_no: str, ttl_minutes: int) -> None:
    """Send the OTP out-of-band. Raises DeliveryError when it cannot be handed off."""
    message = otp_message(code, cheque_no, ttl_minutes)
    client = get_client()
    if client is None:
        if settings.is_production:
            raise DeliveryError("NOTIFY_GATEWAY_URL is not configured")
        # Development convenience: no gateway, print the message instead
        logger.info("[%s] to %s: %s", channel, to_contact, message)
        return
    try:
        await client.send(channel, to_contact, message, subject="Cheque handover OTP")
    except httpx.HTTPError as e:
        raise DeliveryError(f"failed to deliver OTP via {channel}") from e
    finally:
        await client.aclose()
    logger.info("otp delivered", extra={"extra": {"channel": channel}})


async def _get_bot() -> Optional[Bot]:
    global _bot_singleton
    if _bot_singleton is not None:
        return _bot_singleton
    async with _bot_lock:
        if _bot_singleton is not None:
            return _bot_singleton
        token = settings.telegram_bot_token.strip()
        if not token:
            logger.warning("notify: TELEGRAM_BOT_TOKEN missing; approver notifications disabled")
            return None
        _bot_singleton = Bot(token=token)
        return _bot_singleton


def override_keyboard(override_id: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [
            InlineKeyboardButton(text="Approve ✅", callback_data=f"ovr:approve:{override_id}"),
            InlineKeyboardButton(text="Reject ❌", callback_data=f"ovr:reject:{override_id}"),
        ]
    ])


async def notify_approvers(text: str, *, override_id: Optional[int] = None) -> bool:
    """Post to APPROVER_CHAT_ID if configured. Returns True if sent, False otherwise."""
    raw = settings.approver_chat_id.strip()
    if not raw:
        return False
    try:
        chat_id = int(raw)
    except ValueError:
        logger.warning("notify_approvers: invalid APPROVER_CHAT_ID: %s", raw)
        return False
    bot = await _get_bot()
    if bot is None:
        return False
    markup = override_keyboard(override_id) if override_id is not None else None
    try:
        await bot.send_message(chat_id=chat_id, text=text, reply_markup=markup)
        return True
    except Exception as e:
        logger.warning("notify_approvers failed", extra={"extra": {"err": str(e)}})
        return False


async def aclose_bot() -> None:
    global _bot_singleton
    if _bot_singleton is not None:
        try:
            await _bot_singleton.session.close()
        finally:
            _bot_singleton = None
