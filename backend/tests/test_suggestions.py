import httpx
import openai
import pytest

from conftest import FakeChatClient
from zenbot.domain.entities import CategoryCandidate, LLMConfig
from zenbot.suggestions import (
    CategorySuggester,
    NONE_SENTINEL,
    SYSTEM_PROMPT,
    build_prompt,
    default_client_factory,
    match_category,
    parse_response,
)

TAXI = CategoryCandidate(id="t-taxi", title="Такси", parent_id="p-transport", parent_title="Транспорт")
PUBLIC = CategoryCandidate(
    id="t-public",
    title="Общественный транспорт",
    parent_id="p-transport",
    parent_title="Транспорт",
    description="метро, автобус",
)
CAFE = CategoryCandidate(id="t-cafe", title="Кафе и рестораны", parent_id="p-food", parent_title="Еда")
FOOD = CategoryCandidate(id="t-food", title="Продукты", parent_id="p-food", parent_title="Еда")
GROUP = CategoryCandidate(id="p-food", title="Еда")

CANDIDATES = [TAXI, PUBLIC, CAFE, FOOD]
CONFIG = LLMConfig(provider="openai", model="gpt-4o-mini", api_key="sk-test")


def test_build_prompt_lists_candidates_with_parents():
    prompt = build_prompt("Такси до дома 350", CANDIDATES)

    assert '"Такси до дома 350"' in prompt
    assert "- Такси (подкатегория: Транспорт)" in prompt
    assert "- Общественный транспорт (подкатегория: Транспорт) - метро, автобус" in prompt
    assert NONE_SENTINEL in prompt


def test_match_category_exact_match_ignores_case():
    assert match_category("такси", CANDIDATES) is TAXI


def test_match_category_containment_either_direction():
    assert match_category("Такси (подкатегория: Транспорт)", CANDIDATES) is TAXI
    assert match_category("рестораны", CANDIDATES) is CAFE


def test_match_category_keyword_overlap():
    assert match_category("транспорт городской", CANDIDATES) is PUBLIC


def test_match_category_unknown_piece():
    assert match_category("Зарплата", CANDIDATES) is None
    assert match_category("  ", CANDIDATES) is None


def test_parse_response_keeps_order_and_drops_unknown():
    result = parse_response("Такси, Выдумка, «Продукты».", CANDIDATES)

    assert result.success
    assert result.tags == [TAXI, FOOD]
    assert result.confidence == 0.8


def test_parse_response_sentinel_means_no_tags():
    result = parse_response(NONE_SENTINEL, CANDIDATES)

    assert result.success
    assert result.tags == []
    assert result.confidence == 0.0


def test_parse_response_truncates_to_five():
    candidates = [
        CategoryCandidate(id=f"t-{index}", title=f"Категория{index}", parent_id="p")
        for index in range(7)
    ]
    raw = ", ".join(candidate.title for candidate in candidates)

    result = parse_response(raw, candidates)

    assert [tag.id for tag in result.tags] == ["t-0", "t-1", "t-2", "t-3", "t-4"]


@pytest.mark.parametrize(
    "raw",
    ["Такси, Такси", "что-то совсем другое", "Кафе\nметро", "", "Продукты, Такси, Кафе и рестораны, Еда"],
)
def test_parse_response_never_invents_categories(raw):
    result = parse_response(raw, CANDIDATES)

    known = {candidate.id for candidate in CANDIDATES}
    assert all(tag.id in known for tag in result.tags)
    assert len({tag.id for tag in result.tags}) == len(result.tags)


@pytest.mark.anyio
async def test_suggest_calls_model_with_leaf_candidates_only():
    client = FakeChatClient(answer="Такси, Общественный транспорт")
    suggester = CategorySuggester(client_factory=lambda config: client)

    result = await suggester.suggest("Такси 350", [GROUP, *CANDIDATES], CONFIG)

    assert result.success
    assert result.tags == [TAXI, PUBLIC]
    call = client.calls[0]
    assert call["model"] == "gpt-4o-mini"
    assert call["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert "- Еда\n" not in call["messages"][1]["content"]


@pytest.mark.anyio
async def test_suggest_without_leaf_candidates_fails():
    suggester = CategorySuggester(client_factory=lambda config: FakeChatClient(answer="Такси"))

    result = await suggester.suggest("Такси 350", [GROUP], CONFIG)

    assert not result.success
    assert result.tags == []


@pytest.mark.anyio
async def test_suggest_without_api_key_fails():
    suggester = CategorySuggester(client_factory=lambda config: FakeChatClient(answer="Такси"))

    result = await suggester.suggest(
        "Такси 350", CANDIDATES, LLMConfig(provider="openai", model="gpt-4o-mini", api_key=None)
    )

    assert not result.success
    assert result.error


@pytest.mark.anyio
async def test_suggest_rejects_unknown_provider():
    suggester = CategorySuggester(client_factory=lambda config: FakeChatClient(answer="Такси"))

    result = await suggester.suggest(
        "Такси 350", CANDIDATES, LLMConfig(provider="claude", model="x", api_key="key")
    )

    assert not result.success
    assert "claude" in result.error


@pytest.mark.anyio
async def test_suggest_reports_api_errors():
    error = openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    suggester = CategorySuggester(client_factory=lambda config: FakeChatClient(error=error))

    result = await suggester.suggest("Такси 350", CANDIDATES, CONFIG)

    assert not result.success
    assert result.tags == []
    assert result.error


def test_default_client_factory_routes_perplexity():
    client = default_client_factory(
        LLMConfig(provider="perplexity", model="sonar", api_key="pplx-test", timeout=5)
    )

    assert str(client.base_url).startswith("https://api.perplexity.ai")
