"""Async facade over the CRUD layer used by the bot handlers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from . import crud
from .config import Settings, get_settings
from .domain.entities import (
    AccountChoice,
    AuthResult,
    BotUser,
    CategoryCandidate,
    LedgerAccount,
    LLMConfig,
)
from .models import TagModel, UserModel
from .schemas import ZenMoneyAccount, ZenMoneyTag

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _bot_user(user: UserModel) -> BotUser:
    return BotUser(
        id=user.id,
        telegram_id=user.telegram_id,
        username=user.username,
        first_name=user.first_name,
        zenmoney_token=user.zenmoney_token,
        is_admin=user.is_admin,
    )


def _candidate(tag: TagModel, parent_title: str | None) -> CategoryCandidate:
    return CategoryCandidate(
        id=tag.zm_id,
        title=tag.title,
        parent_id=tag.parent_id,
        parent_title=parent_title,
        description=tag.description,
    )


def _blank_to_none(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


class BackingStore:
    """Runs blocking SQLAlchemy work in worker threads.

    Every call opens its own session and converts ORM rows into domain
    objects before the session closes.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | None = None,
        settings: Settings | None = None,
    ) -> None:
        if session_factory is None:
            from .db import SessionLocal

            session_factory = SessionLocal
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        def runner() -> T:
            with self._session_factory() as db:
                return func(db, *args)

        return await asyncio.to_thread(runner)

    async def authorize(self, telegram_id: int | str, username: str | None = None) -> AuthResult:
        def _authorize(db: Session) -> AuthResult:
            user = crud.get_active_user(db, str(telegram_id))
            if user is None:
                return AuthResult(authorized=False)
            user = crud.touch_user(db, user, username)
            return AuthResult(authorized=True, user=_bot_user(user))

        result = await self._run(_authorize)
        if not result.authorized:
            logger.info("Unauthorised Telegram user %s (%s)", telegram_id, username)
        return result

    async def activate_user(
        self,
        telegram_id: int | str,
        username: str | None = None,
        first_name: str | None = None,
    ) -> BotUser:
        def _activate(db: Session) -> BotUser:
            return _bot_user(crud.activate_user(db, str(telegram_id), username, first_name))

        user = await self._run(_activate)
        logger.info("Activated Telegram user %s", telegram_id)
        return user

    async def update_user_token(self, user_id: int, token: str) -> BotUser | None:
        def _update(db: Session) -> BotUser | None:
            user = crud.update_user_token(db, user_id, token)
            return _bot_user(user) if user else None

        return await self._run(_update)

    async def set_setting(self, name: str, value: str | None) -> None:
        await self._run(crud.set_setting, name, value)

    async def set_user_setting(self, user_id: int, name: str, value: str | None) -> None:
        await self._run(crud.set_user_setting, user_id, name, value)

    async def get_account_name(self, user_id: int, choice: AccountChoice) -> str | None:
        """Configured account title for ``choice``: user setting first, then global."""
        def _lookup(db: Session) -> str | None:
            name = _blank_to_none(crud.get_user_setting(db, user_id, choice.setting_name))
            if name is None:
                name = _blank_to_none(crud.get_setting(db, choice.setting_name))
            return name

        return await self._run(_lookup)

    async def list_leaf_categories(self, user_id: int) -> list[CategoryCandidate]:
        def _list(db: Session) -> list[CategoryCandidate]:
            return [
                _candidate(tag, parent_title)
                for tag, parent_title in crud.list_tags_with_parents(db, user_id)
                if tag.parent_id is not None
            ]

        return await self._run(_list)

    async def resolve_category_by_id(self, user_id: int, tag_id: str) -> CategoryCandidate | None:
        def _resolve(db: Session) -> CategoryCandidate | None:
            for tag, parent_title in crud.list_tags_with_parents(db, user_id):
                if tag.zm_id == tag_id:
                    return _candidate(tag, parent_title)
            return None

        return await self._run(_resolve)

    async def find_tag_id(self, user_id: int, title: str) -> str | None:
        def _find(db: Session) -> str | None:
            tag = crud.get_tag_by_title(db, user_id, title)
            return tag.zm_id if tag else None

        return await self._run(_find)

    async def find_account(self, user_id: int, title: str) -> LedgerAccount | None:
        def _find(db: Session) -> LedgerAccount | None:
            account = crud.get_account_by_title(db, user_id, title)
            if account is None:
                return None
            return LedgerAccount(id=account.zm_id, title=account.title, instrument_id=account.instrument_id)

        return await self._run(_find)

    async def setup_status(self, user_id: int) -> tuple[bool, bool]:
        """Whether the user has synced tags and accounts."""
        def _status(db: Session) -> tuple[bool, bool]:
            return crud.count_tags(db, user_id) > 0, crud.count_accounts(db, user_id) > 0

        return await self._run(_status)

    async def replace_tags(self, user_id: int, tags: Iterable[ZenMoneyTag]) -> int:
        return await self._run(crud.replace_tags, user_id, list(tags))

    async def replace_accounts(self, user_id: int, accounts: Iterable[ZenMoneyAccount]) -> int:
        return await self._run(crud.replace_accounts, user_id, list(accounts))

    async def get_llm_config(self) -> LLMConfig:
        """Active ``ai_settings`` row, or the environment defaults when none is active."""
        def _config(db: Session) -> LLMConfig | None:
            row = crud.get_active_ai_settings(db)
            if row is None:
                return None
            return LLMConfig(
                provider=(row.provider or "openai").lower(),
                model=row.model,
                api_key=row.api_key,
                max_tokens=row.max_tokens or self._settings.ai_max_tokens,
                temperature=row.temperature if row.temperature is not None else self._settings.ai_temperature,
                timeout=row.timeout or self._settings.ai_timeout,
            )

        config = await self._run(_config)
        if config is not None:
            return config
        return LLMConfig(
            provider=self._settings.ai_provider,
            model=self._settings.ai_model,
            api_key=self._settings.openai_api_key,
            max_tokens=self._settings.ai_max_tokens,
            temperature=self._settings.ai_temperature,
            timeout=self._settings.ai_timeout,
        )
