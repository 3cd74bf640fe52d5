from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject

from custody.utils.correlation import clear_correlation_id, set_correlation_id


class CorrelationMiddleware(BaseMiddleware):
    """Tags every approver update with a fresh correlation id."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, Dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: Dict[str, Any],
    ) -> Any:
        data["correlation_id"] = set_correlation_id()
        try:
            return await handler(event, data)
        finally:
            clear_correlation_id()
