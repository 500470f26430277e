"""ZenMoney API client and ledger commit."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from datetime import date
from typing import Any

import httpx
from pydantic import ValidationError

from .config import Settings, get_settings
from .domain.entities import BotUser, LedgerAccount, LedgerResult, ProposalFields, SyncResult, TokenValidation
from .domain.exceptions import LedgerError
from .schemas import ZenMoneyAccount, ZenMoneyTag, ZenMoneyTransaction, ZenMoneyUser
from .store import BackingStore

logger = logging.getLogger(__name__)

USER_AGENT = "ZenMoneyTelegramBot/1.0"
DIFF_PATH = "/v8/diff"


def _entities(diff: dict[str, Any], key: str) -> list[dict[str, Any]]:
    raw = diff.get(key) or []
    if isinstance(raw, dict):
        items = []
        for entity_id, payload in raw.items():
            if isinstance(payload, dict):
                items.append({"id": entity_id, **payload})
        return items
    return [item for item in raw if isinstance(item, dict)]


def parse_tags(diff: dict[str, Any]) -> list[ZenMoneyTag]:
    tags = []
    for item in _entities(diff, "tag"):
        try:
            tags.append(ZenMoneyTag.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed ZenMoney tag %s: %s", item.get("id"), exc)
    return tags


def parse_accounts(diff: dict[str, Any]) -> list[ZenMoneyAccount]:
    accounts = []
    for item in _entities(diff, "account"):
        try:
            accounts.append(ZenMoneyAccount.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed ZenMoney account %s: %s", item.get("id"), exc)
    return accounts


def current_user_id(diff: dict[str, Any]) -> int | None:
    for item in _entities(diff, "user"):
        try:
            return ZenMoneyUser.model_validate(item).id
        except ValidationError:
            continue
    return None


def build_transaction(
    fields: ProposalFields,
    account: LedgerAccount,
    tag_id: str | None,
    zm_user_id: int,
    default_instrument: int,
    on_date: date | None = None,
    timestamp: int | None = None,
) -> ZenMoneyTransaction:
    """Expense from ``account``: outcome is the amount, income stays zero."""
    instrument = account.instrument_id or default_instrument
    now = timestamp if timestamp is not None else int(time.time())
    return ZenMoneyTransaction(
        id=str(uuid.uuid4()),
        user=zm_user_id,
        date=on_date or date.today(),
        income=0,
        outcome=float(fields.amount),
        incomeAccount=account.id,
        outcomeAccount=account.id,
        incomeInstrument=instrument,
        outcomeInstrument=instrument,
        tag=[tag_id] if tag_id else None,
        comment=fields.comment,
        created=now,
        changed=now,
    )


class ZenMoneyClient:
    def __init__(
        self,
        token: str,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token = token
        self._settings = settings or get_settings()
        self._transport = transport

    def _http(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._settings.zenmoney_api_base_url,
            headers={
                "Authorization": f"Bearer {self._token}",
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
            },
            timeout=timeout,
            transport=self._transport,
        )

    async def _post_diff(self, extra: dict[str, Any] | None = None, timeout: float | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"currentClientTimestamp": int(time.time()), "serverTimestamp": 0}
        if extra:
            body.update(extra)
        async with self._http(timeout or self._settings.zenmoney_timeout) as client:
            response = await client.post(DIFF_PATH, json=body)
            response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as exc:
            raise LedgerError(f"ZenMoney вернул некорректный ответ: {response.text[:200]}") from exc
        if not isinstance(payload, dict):
            raise LedgerError("ZenMoney вернул некорректный ответ")
        return payload

    async def fetch_diff(self) -> dict[str, Any]:
        try:
            return await self._post_diff()
        except httpx.HTTPStatusError as exc:
            raise LedgerError(
                f"ZenMoney вернул {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ошибка подключения к ZenMoney API: {exc}") from exc

    async def push_transactions(self, transactions: list[dict[str, Any]]) -> dict[str, Any]:
        try:
            return await self._post_diff({"transaction": transactions})
        except httpx.HTTPStatusError as exc:
            raise LedgerError(
                f"ZenMoney вернул {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise LedgerError(f"Ошибка подключения к ZenMoney API: {exc}") from exc

    async def validate_token(self) -> TokenValidation:
        try:
            await self._post_diff(timeout=self._settings.zenmoney_validation_timeout)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 401:
                return TokenValidation(valid=False, error="Неверный токен")
            if status == 403:
                return TokenValidation(valid=False, error="Токен заблокирован")
            return TokenValidation(valid=False, error="Ошибка подключения к ZenMoney API")
        except httpx.TimeoutException:
            return TokenValidation(valid=False, error="Таймаут подключения")
        except httpx.HTTPError as exc:
            logger.warning("ZenMoney token validation failed: %s", exc)
            return TokenValidation(valid=False, error="Ошибка подключения к ZenMoney API")
        except LedgerError as exc:
            logger.warning("ZenMoney token validation got an unreadable response: %s", exc)
            return TokenValidation(valid=False, error="Ошибка подключения к ZenMoney API")
        return TokenValidation(valid=True)


class ZenMoneyLedger:
    """Commits proposals and syncs reference data for one bot user at a time."""

    def __init__(
        self,
        store: BackingStore,
        settings: Settings | None = None,
        client_factory: Callable[[str], ZenMoneyClient] | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._client_factory = client_factory or (lambda token: ZenMoneyClient(token, self._settings))

    def _token_for(self, user: BotUser) -> str | None:
        return user.zenmoney_token or self._settings.zenmoney_token

    async def validate_token(self, token: str) -> TokenValidation:
        return await self._client_factory(token).validate_token()

    async def commit(self, fields: ProposalFields, user: BotUser) -> LedgerResult:
        token = self._token_for(user)
        if not token:
            return LedgerResult(success=False, error="Не задан токен ZenMoney")
        if fields.amount <= 0:
            return LedgerResult(success=False, error="Сумма должна быть больше нуля")

        account = await self._store.find_account(user.id, fields.account_name)
        if account is None:
            return LedgerResult(
                success=False,
                error=f"Счет «{fields.account_name}» не найден. Обновите счета командой /accounts_upd",
            )
        tag_id = await self._store.find_tag_id(user.id, fields.tag_title)
        if tag_id is None:
            logger.info("Tag %r is not synced for user %s, committing without tag", fields.tag_title, user.id)

        client = self._client_factory(token)
        try:
            diff = await client.fetch_diff()
            zm_user_id = current_user_id(diff)
            if zm_user_id is None:
                raise LedgerError("ZenMoney не вернул идентификатор пользователя")
            transaction = build_transaction(
                fields,
                account,
                tag_id,
                zm_user_id,
                self._settings.zenmoney_default_instrument,
            )
            response = await client.push_transactions([transaction.to_payload()])
        except (LedgerError, ValidationError) as exc:
            logger.error("ZenMoney commit failed for user %s: %s", user.id, exc)
            return LedgerResult(success=False, error=str(exc))

        logger.info("Committed transaction %s for user %s", transaction.id, user.id)
        return LedgerResult(success=True, response=response)

    async def sync_tags(self, user: BotUser) -> SyncResult:
        token = self._token_for(user)
        if not token:
            return SyncResult(success=False, error="Не задан токен ZenMoney")
        try:
            diff = await self._client_factory(token).fetch_diff()
        except LedgerError as exc:
            logger.error("Tag sync failed for user %s: %s", user.id, exc)
            return SyncResult(success=False, error=str(exc))
        count = await self._store.replace_tags(user.id, parse_tags(diff))
        return SyncResult(success=True, count=count)

    async def sync_accounts(self, user: BotUser) -> SyncResult:
        token = self._token_for(user)
        if not token:
            return SyncResult(success=False, error="Не задан токен ZenMoney")
        try:
            diff = await self._client_factory(token).fetch_diff()
        except LedgerError as exc:
            logger.error("Account sync failed for user %s: %s", user.id, exc)
            return SyncResult(success=False, error=str(exc))
        count = await self._store.replace_accounts(user.id, parse_accounts(diff))
        return SyncResult(success=True, count=count)
