"""LLM-backed category suggestions for expense messages."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Sequence

from openai import OpenAI, OpenAIError

from .domain.entities import CategoryCandidate, LLMConfig, SuggestionResult

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 5
SUGGESTION_CONFIDENCE = 0.8
NONE_SENTINEL = "Неопределено"

PROVIDER_BASE_URLS = {
    "openai": None,
    "perplexity": "https://api.perplexity.ai",
}

SYSTEM_PROMPT = (
    "Ты финансовый помощник. Анализируй сообщения пользователей и определяй "
    "наиболее подходящую категорию расхода/дохода."
)

_TOKEN_RE = re.compile(r"\w+")
_STRIP_CHARS = " \t\r\n\"'«»“”.;:!-*"


def default_client_factory(config: LLMConfig) -> OpenAI:
    return OpenAI(
        api_key=config.api_key,
        base_url=PROVIDER_BASE_URLS.get(config.provider),
        timeout=config.timeout,
    )


def build_prompt(message: str, candidates: Sequence[CategoryCandidate]) -> str:
    lines = []
    for candidate in candidates:
        line = f"- {candidate.title}"
        if candidate.parent_title:
            line += f" (подкатегория: {candidate.parent_title})"
        if candidate.description:
            line += f" - {candidate.description}"
        lines.append(line)
    tags_list = "\n".join(lines)
    return (
        "Проанализируй сообщение пользователя и определи наиболее подходящие теги "
        "(категории расхода/дохода) из предоставленного списка.\n\n"
        f'Сообщение пользователя: "{message}"\n\n'
        f"Доступные теги:\n{tags_list}\n\n"
        "Инструкции:\n"
        "1. Выбери один или несколько подходящих тегов, начиная с наиболее подходящего\n"
        "2. Если тегов несколько, перечисли их через запятую\n"
        "3. Используй только названия из списка, не придумывай новые теги\n"
        f'4. Если подходящий тег не найден, верни "{NONE_SENTINEL}"\n'
        "5. Не добавляй дополнительных объяснений\n\n"
        "Ответ:"
    )


def _tokens(text: str) -> list[str]:
    return [token for token in _TOKEN_RE.findall(text.lower()) if len(token) >= 3]


def match_category(piece: str, candidates: Sequence[CategoryCandidate]) -> CategoryCandidate | None:
    """Resolve one answer fragment against the known categories.

    Tries an exact case-insensitive title match, then containment in either
    direction, then overlap of words of three or more letters.
    """
    needle = piece.strip(_STRIP_CHARS).lower()
    if not needle:
        return None

    for candidate in candidates:
        if candidate.title.lower() == needle:
            return candidate

    for candidate in candidates:
        title = candidate.title.lower()
        if title and (title in needle or needle in title):
            return candidate

    needle_tokens = _tokens(needle)
    if not needle_tokens:
        return None
    for candidate in candidates:
        for title_token in _tokens(candidate.title):
            if any(title_token in token or token in title_token for token in needle_tokens):
                return candidate
    return None


def parse_response(raw: str | None, candidates: Sequence[CategoryCandidate]) -> SuggestionResult:
    text = (raw or "").strip()
    if not text or NONE_SENTINEL.lower() in text.lower():
        return SuggestionResult(success=True, tags=[], confidence=0.0, raw_response=raw)

    ranked: list[CategoryCandidate] = []
    seen: set[str] = set()
    for piece in re.split(r"[,\n]", text):
        match = match_category(piece, candidates)
        if match is None or match.id in seen:
            continue
        seen.add(match.id)
        ranked.append(match)

    ranked = ranked[:MAX_SUGGESTIONS]
    return SuggestionResult(
        success=True,
        tags=ranked,
        confidence=SUGGESTION_CONFIDENCE if ranked else 0.0,
        raw_response=raw,
    )


class CategorySuggester:
    """Ranks leaf categories for a message with a chat-completion model."""

    def __init__(self, client_factory: Callable[[LLMConfig], OpenAI] = default_client_factory) -> None:
        self._client_factory = client_factory

    async def suggest(
        self,
        message: str,
        candidates: Sequence[CategoryCandidate],
        config: LLMConfig | None,
    ) -> SuggestionResult:
        leaves = [candidate for candidate in candidates if candidate.is_leaf]
        if not leaves:
            return SuggestionResult(success=False, error="Нет доступных категорий")
        if config is None:
            return SuggestionResult(success=False, error="Нет активных настроек ИИ")
        if not config.api_key:
            return SuggestionResult(success=False, error="Не задан API ключ ИИ")
        if config.provider not in PROVIDER_BASE_URLS:
            return SuggestionResult(success=False, error=f"Неподдерживаемый провайдер ИИ: {config.provider}")

        prompt = build_prompt(message, leaves)
        try:
            raw = await asyncio.to_thread(self._complete, config, prompt)
        except OpenAIError as exc:
            logger.warning("Category suggestion via %s failed: %s", config.provider, exc)
            return SuggestionResult(success=False, error=str(exc))

        result = parse_response(raw, leaves)
        logger.info("LLM answered %r, resolved %d categories", raw, len(result.tags))
        return result

    def _complete(self, config: LLMConfig, prompt: str) -> str:
        client = self._client_factory(config)
        response = client.chat.completions.create(
            model=config.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""
