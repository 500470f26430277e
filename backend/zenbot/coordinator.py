"""Control flow for inbound messages and button presses.

The coordinator is independent of how updates arrive: the Telegram handlers
translate PTB updates into :class:`IncomingMessage` / :class:`IncomingCallback`
and the coordinator talks back through a ``telegram.Bot``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import weakref
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, ReplyParameters
from telegram.constants import ParseMode
from telegram.error import BadRequest, TelegramError
from telegram.helpers import escape_markdown

from .domain.callbacks import CallbackAction, CallbackIntent, decode_callback, encode_callback
from .domain.entities import AccountChoice, BotUser, CategoryCandidate
from .domain.exceptions import ProposalParseError, TranscriptionError, VoiceFailure
from .domain.proposal import (
    build_keyboard,
    create_proposal,
    parse_proposal,
    render_applied,
    render_cancelled,
    render_commit_failed,
    render_parse_failed,
    resolve_account_name,
    update_account,
    update_tag,
)
from .proposal_cache import ProposalCache, proposal_key
from .store import BackingStore
from .suggestions import CategorySuggester
from .transcription import Transcriber
from .zenmoney import ZenMoneyLedger

logger = logging.getLogger(__name__)

UNAUTHORIZED_TEMPLATE = (
    "Ваш логин: {username}\n"
    "Ваш Telegram ID: {telegram_id}\n\n"
    "Перешлите это сообщение администратору, чтобы он добавил вас в группу тестирования"
)
TOKEN_REQUEST_TEXT = (
    "🔑 Для работы с ботом необходим токен ZenMoney API.\n\n"
    "Отправьте ваш токен ZenMoney для настройки бота.\n\n"
    "💡 *Как получить токен:*\n"
    "1. Войдите в ZenMoney\n"
    "2. Перейдите в Настройки → API\n"
    "3. Создайте новый токен\n"
    "4. Скопируйте и отправьте его боту"
)
INVALID_TOKEN_TEMPLATE = (
    "❌ Токен недействителен или не работает.\n\n{error}\n\n"
    "Проверьте правильность токена и попробуйте еще раз."
)
WELCOME_TEMPLATE = (
    "Добро пожаловать в ZenMoney Bot, {name}!\n\n"
    "💰 *Основной функционал:*\n"
    "Отправьте сообщение или голосовое сообщение с описанием траты, и бот покажет "
    "структуру транзакции с подобранной категорией. Запись можно применить, отменить "
    "или скорректировать кнопками.\n\n"
    "📋 *Доступные команды:*\n"
    "/start - приветствие\n"
    "/help - эта справка\n"
    "/tags\\_upd - обновить статьи из ZenMoney\n"
    "/accounts\\_upd - обновить счета из ZenMoney\n\n"
    "💡 *Пример:* Такси 350 картой"
)
PROCESSING_VOICE_TEXT = "🎤 Обрабатываю голосовое сообщение..."
EMPTY_TRANSCRIPT_TEXT = "❌ Не удалось распознать речь в голосовом сообщении. Попробуйте еще раз."
VOICE_FAILURE_MESSAGES = {
    VoiceFailure.TIMEOUT: (
        "⏱️ Время обработки голосового сообщения истекло. "
        "Попробуйте отправить более короткое сообщение."
    ),
    VoiceFailure.CREDENTIAL: "🔑 Ошибка API ключа OpenAI. Обратитесь к администратору.",
    VoiceFailure.FILE_ACCESS: "📁 Ошибка при скачивании голосового файла. Попробуйте еще раз.",
    VoiceFailure.GENERIC: "❌ Ошибка при обработке голосового сообщения.",
}
GENERIC_ERROR_TEXT = "❌ Произошла ошибка при обработке сообщения. Попробуйте еще раз."
NOT_ADMIN_TEXT = "⛔ Команда доступна только администраторам."
ADMIN_USAGE_TEXT = "Использование: /admin_add_user <telegram_id> [username]"


@dataclass(slots=True)
class IncomingMessage:
    chat_id: int
    message_id: int
    sender_id: int
    username: str | None = None
    first_name: str | None = None
    text: str | None = None
    load_audio: Callable[[], Awaitable[bytes]] | None = None
    args: list[str] = field(default_factory=list)

    @property
    def has_voice(self) -> bool:
        return self.load_audio is not None


@dataclass(slots=True)
class IncomingCallback:
    callback_id: str
    chat_id: int
    message_id: int
    sender_id: int
    username: str | None = None
    data: str | None = None
    message_text: str | None = None


def _last_resort(handler: Callable[..., Awaitable[None]]) -> Callable[..., Awaitable[None]]:
    @functools.wraps(handler)
    async def wrapper(self: InteractionCoordinator, incoming: Any, *args: Any) -> None:
        try:
            await handler(self, incoming, *args)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error in %s", handler.__name__)
            reply_to = incoming.message_id if isinstance(incoming, IncomingMessage) else None
            await self._send_quietly(incoming.chat_id, GENERIC_ERROR_TEXT, reply_to)

    return wrapper


def _setup_keyboard(has_tags: bool, has_accounts: bool) -> InlineKeyboardMarkup:
    rows = []
    if not has_tags:
        rows.append(
            [
                InlineKeyboardButton(
                    "📋 Загрузить статьи",
                    callback_data=encode_callback(CallbackIntent(CallbackAction.SYNC_TAGS)),
                )
            ]
        )
    if not has_accounts:
        rows.append(
            [
                InlineKeyboardButton(
                    "💳 Загрузить счета",
                    callback_data=encode_callback(CallbackIntent(CallbackAction.SYNC_ACCOUNTS)),
                )
            ]
        )
    rows.append(
        [
            InlineKeyboardButton(
                "➡️ Перейти дальше",
                callback_data=encode_callback(CallbackIntent(CallbackAction.SKIP_SETUP)),
            )
        ]
    )
    return InlineKeyboardMarkup(rows)


def _setup_text(has_tags: bool, has_accounts: bool) -> str:
    lines = ["✅ Токен сохранен!", "", "Для завершения настройки выполните следующие действия:", ""]
    lines.append("✅ Статьи уже загружены" if has_tags else "📋 Загрузить статьи - синхронизация категорий")
    lines.append("✅ Счета уже загружены" if has_accounts else "💳 Загрузить счета - синхронизация счетов")
    lines.extend(["", "➡️ Перейти дальше - пропустить настройку"])
    return "\n".join(lines)


class InteractionCoordinator:
    """Turns messages into proposals and applies button presses to them.

    Button presses against one proposal message are serialised with a
    per-message lock, and a proposal that reached Applied or Cancelled is
    marked closed in the cache so later presses are ignored.
    """

    def __init__(
        self,
        bot: Bot,
        store: BackingStore,
        suggester: CategorySuggester,
        ledger: ZenMoneyLedger,
        transcriber: Transcriber,
        cache: ProposalCache | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._bot = bot
        self._store = store
        self._suggester = suggester
        self._ledger = ledger
        self._transcriber = transcriber
        self._cache = cache if cache is not None else ProposalCache()
        self._today = today
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def cache(self) -> ProposalCache:
        return self._cache

    @_last_resort
    async def handle_start(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return
        if not user.zenmoney_token:
            await self._send(message.chat_id, TOKEN_REQUEST_TEXT, message.message_id, parse_mode=ParseMode.MARKDOWN)
            return
        has_tags, has_accounts = await self._store.setup_status(user.id)
        if not has_tags or not has_accounts:
            await self._send(
                message.chat_id,
                _setup_text(has_tags, has_accounts),
                message.message_id,
                reply_markup=_setup_keyboard(has_tags, has_accounts),
            )
            return
        await self._send_welcome(message.chat_id, message.message_id, user)

    @_last_resort
    async def handle_help(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return
        await self._send_welcome(message.chat_id, message.message_id, user)

    @_last_resort
    async def handle_sync_tags(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return
        await self._sync_tags(message.chat_id, message.message_id, user)

    @_last_resort
    async def handle_sync_accounts(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return
        await self._sync_accounts(message.chat_id, message.message_id, user)

    @_last_resort
    async def handle_admin_add_user(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return
        if not user.is_admin:
            await self._send(message.chat_id, NOT_ADMIN_TEXT, message.message_id)
            return
        if not message.args or not message.args[0].isdigit():
            await self._send(message.chat_id, ADMIN_USAGE_TEXT, message.message_id)
            return
        username = message.args[1].lstrip("@") if len(message.args) > 1 else None
        added = await self._store.activate_user(message.args[0], username)
        await self._send(
            message.chat_id,
            f"✅ Пользователь {added.telegram_id} активирован",
            message.message_id,
        )

    @_last_resort
    async def handle_message(self, message: IncomingMessage) -> None:
        user = await self._authorize(message.chat_id, message.message_id, message.sender_id, message.username)
        if user is None:
            return

        if not user.zenmoney_token:
            if message.text and message.text.strip():
                await self._accept_token(message, user, message.text.strip())
            else:
                await self._send(
                    message.chat_id, TOKEN_REQUEST_TEXT, message.message_id, parse_mode=ParseMode.MARKDOWN
                )
            return

        text = message.text
        if message.has_voice:
            text = await self._transcribe_voice(message)
        if not text or not text.strip():
            return
        await self._propose(message, user, text)

    async def _accept_token(self, message: IncomingMessage, user: BotUser, token: str) -> None:
        validation = await self._ledger.validate_token(token)
        if not validation.valid:
            logger.info("Rejected ZenMoney token for user %s: %s", user.id, validation.error)
            await self._send(
                message.chat_id,
                INVALID_TOKEN_TEMPLATE.format(error=validation.error or "Неизвестная ошибка"),
                message.message_id,
            )
            return
        await self._store.update_user_token(user.id, token)
        has_tags, has_accounts = await self._store.setup_status(user.id)
        await self._send(
            message.chat_id,
            _setup_text(has_tags, has_accounts),
            message.message_id,
            reply_markup=_setup_keyboard(has_tags, has_accounts),
        )

    async def _transcribe_voice(self, message: IncomingMessage) -> str | None:
        processing = await self._send(message.chat_id, PROCESSING_VOICE_TEXT, message.message_id)
        try:
            audio = await message.load_audio()
            text = await self._transcriber.transcribe(audio)
        except TranscriptionError as exc:
            logger.error("Voice message %s failed: %s", message.message_id, exc)
            await self._delete_quietly(message.chat_id, processing.message_id)
            await self._send(message.chat_id, VOICE_FAILURE_MESSAGES[exc.kind], message.message_id)
            return None

        await self._delete_quietly(message.chat_id, processing.message_id)
        if not text:
            await self._send(message.chat_id, EMPTY_TRANSCRIPT_TEXT, message.message_id)
            return None
        await self._send(
            message.chat_id,
            f'🎤 *Распознанный текст:*\n"{escape_markdown(text)}"',
            message.message_id,
            parse_mode=ParseMode.MARKDOWN,
        )
        return text

    async def _propose(self, message: IncomingMessage, user: BotUser, text: str) -> None:
        candidates = await self._store.list_leaf_categories(user.id)
        config = await self._store.get_llm_config()
        suggestion = await self._suggester.suggest(text, candidates, config)
        if not suggestion.success:
            logger.warning("Category suggestion unavailable for user %s: %s", user.id, suggestion.error)

        account_names = {choice: await self._store.get_account_name(user.id, choice) for choice in AccountChoice}
        rendered = create_proposal(text, suggestion, account_names, today=self._today())
        sent = await self._send(
            message.chat_id,
            rendered.message_text,
            message.message_id,
            reply_markup=build_keyboard(rendered.ai_tags),
        )
        self._cache.set(
            proposal_key(message.chat_id, sent.message_id), rendered.ai_tags, rendered.message_text
        )
        logger.info(
            "Proposal %s for user %s: tag=%s amount=%s",
            sent.message_id,
            user.id,
            rendered.proposal.tag.title,
            rendered.proposal.formatted_amount,
        )

    @_last_resort
    async def handle_callback(self, callback: IncomingCallback) -> None:
        await self._answer_quietly(callback.callback_id)
        intent = decode_callback(callback.data)
        if intent is None:
            logger.warning("Ignoring unknown callback payload %r", callback.data)
            return

        user = await self._authorize(callback.chat_id, None, callback.sender_id, callback.username)
        if user is None:
            return

        if intent.action == CallbackAction.SYNC_TAGS:
            await self._sync_tags(callback.chat_id, None, user)
            return
        if intent.action == CallbackAction.SYNC_ACCOUNTS:
            await self._sync_accounts(callback.chat_id, None, user)
            return
        if intent.action == CallbackAction.SKIP_SETUP:
            await self._send_welcome(callback.chat_id, None, user)
            return

        key = proposal_key(callback.chat_id, callback.message_id)
        async with self._lock_for(key):
            if self._cache.is_closed(key):
                logger.info("Proposal %s already closed, ignoring %s", key, intent.action.value)
                return
            await self._dispatch_proposal_action(intent, callback, user, key)

    async def _dispatch_proposal_action(
        self,
        intent: CallbackIntent,
        callback: IncomingCallback,
        user: BotUser,
        key: str,
    ) -> None:
        # Earlier presses may have edited the message after this one was sent.
        text = self._cache.get_text(key) or callback.message_text or ""
        if intent.action == CallbackAction.SELECT_TAG:
            await self._select_tag(callback, user, key, text, intent.tag_id or "")
        elif intent.action == CallbackAction.SELECT_ACCOUNT:
            await self._select_account(callback, user, key, text, intent.account or AccountChoice.CASH)
        elif intent.action == CallbackAction.APPLY:
            await self._apply(callback, user, key, text)
        elif intent.action == CallbackAction.CANCEL:
            await self._cancel(callback, key, text)
        elif intent.action == CallbackAction.EDIT:
            self._cache.close(key)
            await self._delete_quietly(callback.chat_id, callback.message_id)

    async def _ranked_tags(self, user: BotUser, key: str) -> list[CategoryCandidate]:
        tags = self._cache.get(key)
        if tags:
            return tags
        return await self._store.list_leaf_categories(user.id)

    async def _select_tag(
        self,
        callback: IncomingCallback,
        user: BotUser,
        key: str,
        text: str,
        tag_id: str,
    ) -> None:
        ranked = await self._ranked_tags(user, key)
        tag = next((candidate for candidate in ranked if candidate.id == tag_id), None)
        if tag is None:
            tag = await self._store.resolve_category_by_id(user.id, tag_id)
        if tag is None:
            logger.warning("Tag %s not found for user %s", tag_id, user.id)
            return
        await self._revise(callback, key, text, update_tag(text, tag.title), build_keyboard(ranked))

    async def _select_account(
        self,
        callback: IncomingCallback,
        user: BotUser,
        key: str,
        text: str,
        choice: AccountChoice,
    ) -> None:
        configured = await self._store.get_account_name(user.id, choice)
        account_name = resolve_account_name(choice, {choice: configured})
        ranked = await self._ranked_tags(user, key)
        await self._revise(callback, key, text, update_account(text, account_name), build_keyboard(ranked))

    async def _revise(
        self,
        callback: IncomingCallback,
        key: str,
        current: str,
        new_text: str,
        reply_markup: InlineKeyboardMarkup,
    ) -> None:
        if new_text == current:
            return
        await self._edit(callback, new_text, reply_markup=reply_markup)
        self._cache.set_text(key, new_text)

    async def _apply(self, callback: IncomingCallback, user: BotUser, key: str, text: str) -> None:
        try:
            fields = parse_proposal(text)
        except ProposalParseError as exc:
            logger.warning("Cannot apply proposal %s: %s", key, exc)
            await self._send(callback.chat_id, render_parse_failed(exc), callback.message_id)
            return

        self._cache.close(key)
        result = await self._ledger.commit(fields, user)
        if result.success:
            await self._edit(callback, render_applied(fields))
        else:
            await self._edit(callback, render_commit_failed(result.error))

    async def _cancel(self, callback: IncomingCallback, key: str, text: str) -> None:
        try:
            cancelled = render_cancelled(text)
        except ProposalParseError as exc:
            logger.warning("Cannot cancel proposal %s: %s", key, exc)
            await self._send(callback.chat_id, render_parse_failed(exc), callback.message_id)
            return
        self._cache.close(key)
        await self._edit(callback, cancelled, parse_mode=ParseMode.MARKDOWN_V2)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _authorize(
        self,
        chat_id: int,
        reply_to: int | None,
        sender_id: int,
        username: str | None,
    ) -> BotUser | None:
        result = await self._store.authorize(sender_id, username)
        if result.authorized and result.user is not None:
            return result.user
        await self._send(
            chat_id,
            UNAUTHORIZED_TEMPLATE.format(username=username or "не указан", telegram_id=sender_id),
            reply_to,
        )
        return None

    async def _sync_tags(self, chat_id: int, reply_to: int | None, user: BotUser) -> None:
        result = await self._ledger.sync_tags(user)
        if result.success:
            await self._send(chat_id, f"✅ Статьи обновлены: {result.count}", reply_to)
        else:
            await self._send(chat_id, f"❌ Не удалось загрузить статьи\n\n{result.error}", reply_to)

    async def _sync_accounts(self, chat_id: int, reply_to: int | None, user: BotUser) -> None:
        result = await self._ledger.sync_accounts(user)
        if result.success:
            await self._send(chat_id, f"✅ Счета обновлены: {result.count}", reply_to)
        else:
            await self._send(chat_id, f"❌ Не удалось загрузить счета\n\n{result.error}", reply_to)

    async def _send_welcome(self, chat_id: int, reply_to: int | None, user: BotUser) -> None:
        await self._send(
            chat_id,
            WELCOME_TEMPLATE.format(name=escape_markdown(user.display_name)),
            reply_to,
            parse_mode=ParseMode.MARKDOWN,
        )

    async def _send(
        self,
        chat_id: int,
        text: str,
        reply_to: int | None = None,
        reply_markup: InlineKeyboardMarkup | None = None,
        parse_mode: str | None = None,
    ):
        return await self._bot.send_message(
            chat_id=chat_id,
            text=text,
            reply_markup=reply_markup,
            parse_mode=parse_mode,
            reply_parameters=ReplyParameters(message_id=reply_to) if reply_to else None,
        )

    async def _send_quietly(self, chat_id: int, text: str, reply_to: int | None = None) -> None:
        try:
            await self._send(chat_id, text, reply_to)
        except TelegramError as exc:
            logger.error("Failed to deliver message to chat %s: %s", chat_id, exc)

    async def _edit(
        self,
        callback: IncomingCallback,
        text: str,
        reply_markup: InlineKeyboardMarkup | None = None,
        parse_mode: str | None = None,
    ) -> None:
        try:
            await self._bot.edit_message_text(
                text=text,
                chat_id=callback.chat_id,
                message_id=callback.message_id,
                reply_markup=reply_markup,
                parse_mode=parse_mode,
            )
        except BadRequest as exc:
            if "not modified" in str(exc).lower():
                logger.debug("Message %s unchanged", callback.message_id)
                return
            raise

    async def _delete_quietly(self, chat_id: int, message_id: int) -> None:
        try:
            await self._bot.delete_message(chat_id=chat_id, message_id=message_id)
        except TelegramError as exc:
            logger.warning("Failed to delete message %s in chat %s: %s", message_id, chat_id, exc)

    async def _answer_quietly(self, callback_id: str) -> None:
        try:
            await self._bot.answer_callback_query(callback_query_id=callback_id)
        except TelegramError as exc:
            logger.warning("Failed to answer callback %s: %s", callback_id, exc)
