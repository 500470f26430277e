"""Speech-to-text for voice messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from openai import (
    APITimeoutError,
    AuthenticationError,
    OpenAI,
    OpenAIError,
    PermissionDeniedError,
)

from .config import Settings, get_settings
from .domain.exceptions import TranscriptionError, VoiceFailure

logger = logging.getLogger(__name__)

TRANSCRIPTION_PROMPT = (
    "Транзакция расход доход сумма магазин продукты. Числа всегда пиши цифрами с пробелами: "
    "сто тысяч = 100 000, два миллиона = 2 000 000, тысяча сто = 1 100, пятьсот = 500, "
    "тысяча = 1 000, двадцать тысяч = 20 000"
)


def classify_voice_error(exc: BaseException) -> VoiceFailure:
    if isinstance(exc, TranscriptionError):
        return exc.kind
    if isinstance(exc, (APITimeoutError, TimeoutError, asyncio.TimeoutError)):
        return VoiceFailure.TIMEOUT
    if isinstance(exc, (AuthenticationError, PermissionDeniedError)):
        return VoiceFailure.CREDENTIAL
    message = str(exc).lower()
    if "timeout" in message or "timed out" in message:
        return VoiceFailure.TIMEOUT
    if "api key" in message:
        return VoiceFailure.CREDENTIAL
    if "file" in message:
        return VoiceFailure.FILE_ACCESS
    return VoiceFailure.GENERIC


class Transcriber:
    def __init__(
        self,
        settings: Settings | None = None,
        client_factory: Callable[[str], OpenAI] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client_factory = client_factory or (
            lambda api_key: OpenAI(api_key=api_key, timeout=self._settings.ai_timeout)
        )

    async def transcribe(self, audio: bytes, filename: str = "voice.ogg") -> str:
        """Return the recognised text, stripped; an empty string means silence."""
        if not self._settings.openai_api_key:
            raise TranscriptionError("OpenAI API key is not configured", VoiceFailure.CREDENTIAL)
        try:
            text = await asyncio.to_thread(self._transcribe_sync, bytes(audio), filename)
        except OpenAIError as exc:
            kind = classify_voice_error(exc)
            logger.error("Transcription failed (%s): %s", kind.value, exc)
            raise TranscriptionError(str(exc), kind) from exc
        return text.strip()

    def _transcribe_sync(self, audio: bytes, filename: str) -> str:
        client = self._client_factory(self._settings.openai_api_key)
        response = client.audio.transcriptions.create(
            file=(filename, audio),
            model=self._settings.transcription_model,
            language=self._settings.transcription_language,
            prompt=TRANSCRIPTION_PROMPT,
        )
        return response.text or ""
