from datetime import date

import pytest

import db
from router import Router
from sessions import SessionStore
from transport import CallbackQuery, Command, Delivery, Message

TODAY = date(2026, 10, 18)


class FakeTransport:
    def __init__(self):
        self.sent: list[tuple[int, str, object]] = []
        self.acks: list[tuple[str, str | None, bool]] = []
        self.fail_for: set[int] = set()

    async def send_message(self, chat_id, text, *, reply_markup=None):
        if chat_id in self.fail_for:
            return Delivery(ok=False, error="Forbidden: bot was blocked by the user")
        self.sent.append((chat_id, text, reply_markup))
        return Delivery(ok=True)

    async def answer_callback(self, query_id, text=None, show_alert=False):
        self.acks.append((query_id, text, show_alert))
        return Delivery(ok=True)

    def texts_for(self, chat_id: int) -> list[str]:
        return [text for cid, text, _ in self.sent if cid == chat_id]

    def last(self, chat_id: int):
        return [(text, markup) for cid, text, markup in self.sent if cid == chat_id][-1]


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "bot.sqlite3")
    db.init_db(path)
    return path


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def router(sessions, transport, db_path):
    return Router(sessions, transport, db_path, today=lambda: TODAY)


def register(db_path: str, user_id: int, name: str, surname: str = "", role: str = "Developer") -> None:
    db.upsert_user(db_path, user_id, name=name, surname=surname, role=role, contact=f"@{name.lower()}")


def make_project(db_path: str, admin_id: int, name: str, description: str = "") -> int:
    project_id = db.create_project(db_path, name, description, admin_id)
    db.add_member(db_path, admin_id, project_id)
    return project_id


def text(user_id: int, value: str) -> Message:
    return Message(text=value, chat_id=user_id, user_id=user_id, username=f"user{user_id}")


def command(user_id: int, name: str) -> Command:
    return Command(name=name, chat_id=user_id, user_id=user_id, username=f"user{user_id}")


def callback(user_id: int, data: str, query_id: str = "q1") -> CallbackQuery:
    return CallbackQuery(id=query_id, data=data, chat_id=user_id, user_id=user_id, username=f"user{user_id}")
