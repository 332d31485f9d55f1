import asyncio
import logging
import os
from datetime import timedelta

from telegram import Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

import db
from router import COMMANDS, Router
from sessions import SessionStore
from transport import TelegramTransport, from_update
from worker import NotificationScheduler, notify_tz

logging.basicConfig(level=logging.INFO)
LOGGER = logging.getLogger(__name__)

DB_PATH = os.getenv("DB_PATH") or os.getenv("DATABASE_URL", "")
SESSION_MAX_AGE = timedelta(hours=float(os.getenv("SESSION_MAX_AGE_HOURS", "24")))
SESSION_SWEEP_INTERVAL = timedelta(minutes=float(os.getenv("SESSION_SWEEP_MINUTES", "60")))


async def dispatch_update(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    event = from_update(update)
    if event is None:
        return
    router: Router = context.application.bot_data["router"]
    await router.dispatch(event)


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    LOGGER.error("update failed: %s", update, exc_info=context.error)


async def post_init(app: Application) -> None:
    sessions: SessionStore = app.bot_data["sessions"]
    app.bot_data["sweeper"] = asyncio.create_task(
        sessions.run_sweeper(SESSION_SWEEP_INTERVAL, SESSION_MAX_AGE),
        name="session-sweeper",
    )
    scheduler: NotificationScheduler = app.bot_data["scheduler"]
    scheduler.start()


async def post_shutdown(app: Application) -> None:
    sweeper = app.bot_data.get("sweeper")
    if sweeper is not None:
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)
    scheduler = app.bot_data.get("scheduler")
    if scheduler is not None:
        await scheduler.stop()


def build_app(token: str, db_path: str = DB_PATH, background: bool = True) -> Application:
    """Build the PTB application.

    With ``background`` the session sweeper and the daily reminders run inside the bot
    process. Webhook deployments pass False and trigger reminders through the cron route.
    """
    builder = Application.builder().token(token).concurrent_updates(True)
    if background:
        builder = builder.post_init(post_init).post_shutdown(post_shutdown)
    app = builder.build()

    sessions = SessionStore()
    transport = TelegramTransport(app.bot)
    app.bot_data["sessions"] = sessions
    scheduler = NotificationScheduler(transport, db_path, tz=notify_tz())
    app.bot_data["scheduler"] = scheduler
    app.bot_data["router"] = Router(sessions, transport, db_path, today=scheduler.today)

    app.add_handler(CommandHandler(list(COMMANDS), dispatch_update))
    app.add_handler(MessageHandler(filters.COMMAND, dispatch_update))
    app.add_handler(CallbackQueryHandler(dispatch_update))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, dispatch_update))
    app.add_error_handler(error_handler)
    return app


def main() -> None:
    token = os.getenv("BOT_TOKEN")
    if not token:
        raise RuntimeError("BOT_TOKEN is required")
    if not DB_PATH:
        raise RuntimeError("DATABASE_URL or DB_PATH is required")

    db.init_db(DB_PATH)
    app = build_app(token)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
