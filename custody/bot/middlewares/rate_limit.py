from __future__ import annotations

import time
from collections import defaultdict, deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from aiogram import BaseMiddleware
from aiogram.types import CallbackQuery, Message, TelegramObject

from custody.config import settings


class RateLimitMiddleware(BaseMiddleware):
    """Per-user sliding window limiter for bot messages and button presses.

    Mapped approvers (TELEGRAM_APPROVERS) are exempt.
    """

    def __init__(self, max_per_minute: int = 20, notify_text: str | None = None) -> None:
        self.max = max_per_minute
        self.window = 60.0
        self.history: Dict[int, Deque[float]] = defaultdict(deque)
        self.notify_text = notify_text or "Too many requests, please try again in a minute."

    def _allow(self, uid: int) -> bool:
        now = time.monotonic()
        q = self.history[uid]
        while q and (now - q[0]) > self.window:
            q.popleft()
        if len(q) >= self.max:
            return False
        q.append(now)
        return True

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        uid: Optional[int] = None
        if isinstance(event, (Message, CallbackQuery)) and event.from_user:
            uid = event.from_user.id
        if uid is None or uid in settings.telegram_approvers:
            return await handler(event, data)
        if self._allow(uid):
            return await handler(event, data)
        try:
            if isinstance(event, CallbackQuery):
                await event.answer(self.notify_text, show_alert=False)
            else:
                await event.answer(self.notify_text)
        except Exception:
            pass
        return None
