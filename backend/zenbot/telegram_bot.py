"""Telegram transport for the ZenMoney bot."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from telegram import Bot, Update
from telegram.error import TelegramError, TimedOut
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .config import Settings, get_settings
from .coordinator import IncomingCallback, IncomingMessage, InteractionCoordinator
from .domain.exceptions import TranscriptionError, VoiceFailure
from .proposal_cache import ProposalCache
from .store import BackingStore
from .suggestions import CategorySuggester
from .transcription import Transcriber
from .zenmoney import ZenMoneyLedger

logger = logging.getLogger(__name__)

COORDINATOR_KEY = "coordinator"


def build_coordinator(bot: Bot, settings: Settings) -> InteractionCoordinator:
    store = BackingStore(settings=settings)
    return InteractionCoordinator(
        bot=bot,
        store=store,
        suggester=CategorySuggester(),
        ledger=ZenMoneyLedger(store, settings),
        transcriber=Transcriber(settings),
        cache=ProposalCache(
            max_entries=settings.proposal_cache_size,
            ttl_seconds=settings.proposal_cache_ttl_seconds,
        ),
    )


def _coordinator(context: ContextTypes.DEFAULT_TYPE) -> InteractionCoordinator:
    return context.application.bot_data[COORDINATOR_KEY]


def _audio_loader(bot: Bot, file_id: str) -> Callable[[], Awaitable[bytes]]:
    async def load() -> bytes:
        try:
            telegram_file = await bot.get_file(file_id)
            return bytes(await telegram_file.download_as_bytearray())
        except TimedOut as exc:
            raise TranscriptionError(f"Voice file download timed out: {exc}", VoiceFailure.TIMEOUT) from exc
        except TelegramError as exc:
            raise TranscriptionError(f"Voice file download failed: {exc}", VoiceFailure.FILE_ACCESS) from exc

    return load


def _incoming_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> IncomingMessage | None:
    message = update.effective_message
    user = update.effective_user
    if message is None or user is None:
        return None
    voice = message.voice or message.audio
    return IncomingMessage(
        chat_id=message.chat_id,
        message_id=message.message_id,
        sender_id=user.id,
        username=user.username,
        first_name=user.first_name,
        text=message.text,
        load_audio=_audio_loader(context.bot, voice.file_id) if voice else None,
        args=list(context.args or []),
    )


async def start_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_start(incoming)


async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_help(incoming)


async def tags_update_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_sync_tags(incoming)


async def accounts_update_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_sync_accounts(incoming)


async def admin_add_user_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_admin_add_user(incoming)


async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    incoming = _incoming_message(update, context)
    if incoming:
        await _coordinator(context).handle_message(incoming)


async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    query = update.callback_query
    if query is None or query.message is None:
        return
    message = query.message
    await _coordinator(context).handle_callback(
        IncomingCallback(
            callback_id=query.id,
            chat_id=message.chat.id,
            message_id=message.message_id,
            sender_id=query.from_user.id,
            username=query.from_user.username,
            data=query.data,
            message_text=getattr(message, "text", None),
        )
    )


def build_application(settings: Settings | None = None) -> Application:
    settings = settings or get_settings()
    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is missing from configuration.")

    # Proposal edits are serialised per message by the coordinator.
    application = ApplicationBuilder().token(settings.telegram_bot_token).concurrent_updates(True).build()
    application.bot_data[COORDINATOR_KEY] = build_coordinator(application.bot, settings)

    application.add_handler(CommandHandler("start", start_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("tags_upd", tags_update_command))
    application.add_handler(CommandHandler("accounts_upd", accounts_update_command))
    application.add_handler(CommandHandler("admin_add_user", admin_add_user_command))
    application.add_handler(CallbackQueryHandler(handle_callback))
    application.add_handler(MessageHandler(filters.VOICE | filters.AUDIO, handle_message))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, handle_message))
    return application


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    if not settings.telegram_bot_token:
        raise SystemExit("Please set TELEGRAM_BOT_TOKEN in the environment to run the bot.")

    from .db import Base, engine

    Base.metadata.create_all(bind=engine)
    application = build_application(settings)
    logger.info("Starting Telegram bot in polling mode...")
    application.run_polling(drop_pending_updates=True)


if __name__ == "__main__":
    main()
