import asyncio
import contextlib
import logging

from dotenv import find_dotenv, load_dotenv

# Settings read the environment at import time, so .env must land first
load_dotenv(find_dotenv(usecwd=True))

from aiogram import Bot, Dispatcher  # noqa: E402

from custody.bot.handlers import approvals as approvals_handlers  # noqa: E402
from custody.bot.middlewares.correlation import CorrelationMiddleware  # noqa: E402
from custody.bot.middlewares.rate_limit import RateLimitMiddleware  # noqa: E402
from custody.config import settings  # noqa: E402
from custody.db.session import dispose  # noqa: E402
from custody.logging_config import setup_logging  # noqa: E402
from custody.services.notifications import aclose_bot  # noqa: E402
from custody.services.scheduler import run_scheduler  # noqa: E402


def build_dispatcher() -> Dispatcher:
    dp = Dispatcher()

    # Correlation id middleware for observability
    corr = CorrelationMiddleware()
    dp.message.middleware(corr)
    dp.callback_query.middleware(corr)

    rate_limiter = RateLimitMiddleware(max_per_minute=settings.rate_limit_user_msg_per_min)
    dp.message.middleware(rate_limiter)
    dp.callback_query.middleware(rate_limiter)

    dp.include_router(approvals_handlers.router)
    return dp


async def main() -> None:
    setup_logging()

    if settings.is_production and settings.otp_secret == "change-me-in-production":
        logging.error("OTP_SECRET is not set. Refusing to start in production.")
        raise SystemExit(1)

    scheduler_task = asyncio.create_task(run_scheduler())
    try:
        token = settings.telegram_bot_token
        if not token:
            logging.warning("TELEGRAM_BOT_TOKEN not set; running background jobs only")
            await scheduler_task
            return

        bot = Bot(token=token)
        dp = build_dispatcher()
        logging.info("Starting approver bot polling ...")
        await bot.delete_webhook(drop_pending_updates=True)
        try:
            await dp.start_polling(bot)
        finally:
            await bot.session.close()
    finally:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task
        await aclose_bot()
        await dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        pass
