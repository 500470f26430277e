"""Shared fixtures: settings, a SQLite-backed store and fake collaborators."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

import asyncio
import itertools
from collections.abc import Callable, Generator
from datetime import date
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from zenbot import models
from zenbot.config import Settings
from zenbot.db import Base
from zenbot.domain.entities import LedgerResult, SyncResult, TokenValidation
from zenbot.store import BackingStore

TODAY = date(2026, 10, 19)
USER_TELEGRAM_ID = 100
ADMIN_TELEGRAM_ID = 1


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path, monkeypatch) -> Settings:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'zenbot.db'}",
        openai_api_key="sk-test",
        zenmoney_api_base_url="https://zenmoney.test",
        zenmoney_default_instrument=10548,
    )


@pytest.fixture
def session_factory(settings: Settings) -> Generator[Callable[[], Session], None, None]:
    engine = create_engine(settings.database_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(session_factory, settings) -> BackingStore:
    return BackingStore(session_factory=session_factory, settings=settings)


def add_user(session_factory, telegram_id: int, **fields) -> int:
    with session_factory() as db:
        user = models.UserModel(
            telegram_id=str(telegram_id),
            username=fields.pop("username", None),
            first_name=fields.pop("first_name", "Тест"),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db.add(user)
        db.commit()
        return user.id


def add_catalogue(session_factory, user_id: int) -> None:
    tags = [
        ("p-transport", "Транспорт", None),
        ("t-taxi", "Такси", "p-transport"),
        ("p-food", "Еда", None),
        ("t-food", "Продукты", "p-food"),
        ("t-cafe", "Кафе", "p-food"),
    ]
    accounts = [
        ("acc-card", "Карта", 2),
        ("acc-cash", "Бумажник", None),
        ("acc-shared", "Общая карта", 2),
    ]
    with session_factory() as db:
        for zm_id, title, parent_id in tags:
            db.add(models.TagModel(user_id=user_id, zm_id=zm_id, title=title, parent_id=parent_id))
        for zm_id, title, instrument_id in accounts:
            db.add(
                models.AccountModel(
                    user_id=user_id,
                    zm_id=zm_id,
                    title=title,
                    type="ccard",
                    instrument_id=instrument_id,
                )
            )
        db.commit()


@pytest.fixture
def user_id(session_factory) -> int:
    """An active user with a ZenMoney token and synced tags and accounts."""
    user_id = add_user(session_factory, USER_TELEGRAM_ID, username="tester", zenmoney_token="zm-token")
    add_catalogue(session_factory, user_id)
    return user_id


class FakeBot:
    """Records the calls the coordinator makes on ``telegram.Bot``."""

    def __init__(self) -> None:
        self.sent: list[SimpleNamespace] = []
        self.edited: list[SimpleNamespace] = []
        self.deleted: list[tuple[int, int]] = []
        self.answered: list[str] = []
        self._ids = itertools.count(500)

    async def send_message(self, chat_id, text, **kwargs):
        message = SimpleNamespace(chat_id=chat_id, message_id=next(self._ids), text=text, **kwargs)
        self.sent.append(message)
        return message

    async def edit_message_text(self, text, chat_id=None, message_id=None, **kwargs):
        self.edited.append(SimpleNamespace(text=text, chat_id=chat_id, message_id=message_id, **kwargs))

    async def delete_message(self, chat_id, message_id):
        self.deleted.append((chat_id, message_id))

    async def answer_callback_query(self, callback_query_id, **kwargs):
        self.answered.append(callback_query_id)


class FakeChatClient:
    """Stands in for ``openai.OpenAI`` in chat-completion calls."""

    def __init__(self, answer: str | None = None, error: Exception | None = None) -> None:
        self.answer = answer
        self.error = error
        self.calls: list[dict] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=self.answer))])


class FakeLedger:
    def __init__(
        self,
        result: LedgerResult | None = None,
        validation: TokenValidation | None = None,
    ) -> None:
        self.result = result or LedgerResult(success=True, response={"serverTimestamp": 1})
        self.validation = validation or TokenValidation(valid=True)
        self.commits: list = []
        self.validated: list[str] = []

    async def commit(self, fields, user):
        self.commits.append((fields, user))
        await asyncio.sleep(0)
        return self.result

    async def validate_token(self, token):
        self.validated.append(token)
        return self.validation

    async def sync_tags(self, user):
        return SyncResult(success=True, count=5)

    async def sync_accounts(self, user):
        return SyncResult(success=True, count=3)


class FakeTranscriber:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.received: list[bytes] = []

    async def transcribe(self, audio: bytes) -> str:
        self.received.append(audio)
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def bot() -> FakeBot:
    return FakeBot()
