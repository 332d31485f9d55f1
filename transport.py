import logging
from dataclasses import dataclass

from telegram import Bot, Update
from telegram.constants import ParseMode
from telegram.error import TelegramError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Command:
    name: str
    chat_id: int
    user_id: int
    username: str | None = None


@dataclass(frozen=True)
class CallbackQuery:
    id: str
    data: str
    chat_id: int
    user_id: int
    username: str | None = None


@dataclass(frozen=True)
class Message:
    text: str
    chat_id: int
    user_id: int
    username: str | None = None


@dataclass(frozen=True)
class Delivery:
    ok: bool
    error: str | None = None


def command_name(text: str) -> str | None:
    if not text or not text.startswith("/"):
        return None
    head = text.split(maxsplit=1)[0][1:]
    return head.split("@", 1)[0].lower() or None


def from_update(update: Update) -> Command | CallbackQuery | Message | None:
    user = update.effective_user
    chat = update.effective_chat
    if user is None:
        return None

    query = update.callback_query
    if query is not None:
        chat_id = chat.id if chat is not None else user.id
        return CallbackQuery(id=query.id, data=query.data or "", chat_id=chat_id, user_id=user.id, username=user.username)

    message = update.effective_message
    if message is None or message.text is None or chat is None:
        return None
    name = command_name(message.text)
    if name is not None:
        return Command(name=name, chat_id=chat.id, user_id=user.id, username=user.username)
    return Message(text=message.text, chat_id=chat.id, user_id=user.id, username=user.username)


class TelegramTransport:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_message(self, chat_id: int, text: str, *, reply_markup=None) -> Delivery:
        try:
            await self.bot.send_message(
                chat_id=chat_id,
                text=text,
                reply_markup=reply_markup,
                parse_mode=ParseMode.HTML,
            )
        except TelegramError as e:
            LOGGER.warning("send_message to %s failed: %s", chat_id, e)
            return Delivery(ok=False, error=str(e))
        return Delivery(ok=True)

    async def answer_callback(self, query_id: str, text: str | None = None, show_alert: bool = False) -> Delivery:
        try:
            await self.bot.answer_callback_query(callback_query_id=query_id, text=text, show_alert=show_alert)
        except TelegramError as e:
            LOGGER.warning("answer_callback_query %s failed: %s", query_id, e)
            return Delivery(ok=False, error=str(e))
        return Delivery(ok=True)
