import logging

from fastapi import FastAPI, Header, HTTPException, Request, status
from telegram import Update

from . import models  # noqa: F401
from .config import get_settings
from .db import Base, engine
from .telegram_bot import build_application

logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="ZenMoney Telegram Bot", version="1.0.0")


@app.on_event("startup")
async def on_startup() -> None:
    """Ensure database tables exist and start the Telegram application."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    Base.metadata.create_all(bind=engine)

    if not settings.telegram_bot_token:
        logger.warning("Telegram bot token is not configured; webhook updates will be rejected.")
        return

    application = build_application(settings)
    await application.initialize()
    await application.start()
    if settings.webhook_url:
        await application.bot.set_webhook(
            url=settings.webhook_url,
            secret_token=settings.webhook_secret,
            allowed_updates=Update.ALL_TYPES,
        )
        logger.info("Webhook registered at %s", settings.webhook_url)
    app.state.telegram_app = application


@app.on_event("shutdown")
async def on_shutdown() -> None:
    application = getattr(app.state, "telegram_app", None)
    if application is None:
        return
    await application.stop()
    await application.shutdown()


@app.get("/")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict[str, bool]:
    if settings.webhook_secret and x_telegram_bot_api_secret_token != settings.webhook_secret:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid secret token")

    application = getattr(app.state, "telegram_app", None)
    if application is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Bot is not configured")

    update = Update.de_json(await request.json(), application.bot)
    await application.process_update(update)
    return {"ok": True}
