import json
from decimal import Decimal

import httpx
import pytest

from conftest import USER_TELEGRAM_ID, add_user
from zenbot.domain.entities import BotUser, LedgerAccount, ProposalFields
from zenbot.domain.exceptions import LedgerError
from zenbot.zenmoney import (
    USER_AGENT,
    ZenMoneyClient,
    ZenMoneyLedger,
    build_transaction,
    current_user_id,
    parse_accounts,
    parse_tags,
)

TAXI_FIELDS = ProposalFields(
    tag_title="Такси",
    account_name="Карта",
    amount=Decimal("100000"),
    formatted_amount="100 000",
    comment="Такси 100000 картой",
)


class Recorder:
    """Serves queued responses and keeps the requests it received."""

    def __init__(self, *responses) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


def _client(settings, recorder: Recorder, token: str = "zm-token") -> ZenMoneyClient:
    return ZenMoneyClient(token, settings, transport=httpx.MockTransport(recorder))


def _ledger(store, settings, recorder: Recorder) -> ZenMoneyLedger:
    return ZenMoneyLedger(store, settings, client_factory=lambda token: _client(settings, recorder, token))


async def _user(store) -> BotUser:
    return (await store.authorize(USER_TELEGRAM_ID)).user


def test_parse_tags_accepts_list_and_mapping():
    as_list = parse_tags({"tag": [{"id": "t1", "title": "Такси", "parent": "p1"}, {"title": "без id"}]})
    as_mapping = parse_tags({"tag": {"t1": {"title": "Такси", "parent": "p1"}}})

    assert [(tag.id, tag.title, tag.parent) for tag in as_list] == [("t1", "Такси", "p1")]
    assert [(tag.id, tag.title, tag.parent) for tag in as_mapping] == [("t1", "Такси", "p1")]
    assert parse_tags({}) == []


def test_parse_accounts_and_current_user():
    diff = {
        "account": [{"id": "a1", "title": "Карта", "type": "ccard", "instrument": 2, "balance": 10.5}],
        "user": [{"id": 42, "login": "someone"}],
    }

    accounts = parse_accounts(diff)

    assert accounts[0].id == "a1"
    assert accounts[0].instrument == 2
    assert current_user_id(diff) == 42
    assert current_user_id({"user": []}) is None


def test_build_transaction_is_an_expense():
    account = LedgerAccount(id="acc-card", title="Карта", instrument_id=None)

    payload = build_transaction(TAXI_FIELDS, account, "t-taxi", 42, 10548, timestamp=1700000000).to_payload()

    assert payload["user"] == 42
    assert payload["outcome"] == 100000.0
    assert payload["income"] == 0
    assert payload["incomeAccount"] == payload["outcomeAccount"] == "acc-card"
    assert payload["incomeInstrument"] == payload["outcomeInstrument"] == 10548
    assert payload["tag"] == ["t-taxi"]
    assert payload["comment"] == "Такси 100000 картой"
    assert payload["created"] == payload["changed"] == 1700000000


@pytest.mark.anyio
async def test_validate_token_accepts_ok_response(settings):
    recorder = Recorder(httpx.Response(200, json={"serverTimestamp": 1}))

    result = await _client(settings, recorder, token="secret").validate_token()

    assert result.valid
    request = recorder.requests[0]
    assert str(request.url) == "https://zenmoney.test/v8/diff"
    assert request.headers["Authorization"] == "Bearer secret"
    assert request.headers["User-Agent"] == USER_AGENT
    body = recorder.bodies()[0]
    assert body["serverTimestamp"] == 0
    assert isinstance(body["currentClientTimestamp"], int)


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("response", "error"),
    [
        (httpx.Response(401, text="Unauthorized"), "Неверный токен"),
        (httpx.Response(403, text="Forbidden"), "Токен заблокирован"),
        (httpx.Response(500, text="boom"), "Ошибка подключения к ZenMoney API"),
        (httpx.ReadTimeout("timed out"), "Таймаут подключения"),
        (httpx.ConnectError("refused"), "Ошибка подключения к ZenMoney API"),
    ],
)
async def test_validate_token_maps_failures(settings, response, error):
    result = await _client(settings, Recorder(response)).validate_token()

    assert not result.valid
    assert result.error == error


@pytest.mark.anyio
async def test_fetch_diff_raises_ledger_error(settings):
    with pytest.raises(LedgerError):
        await _client(settings, Recorder(httpx.Response(502, text="bad gateway"))).fetch_diff()


@pytest.mark.anyio
async def test_commit_pushes_one_expense(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(200, json={"user": [{"id": 42}], "serverTimestamp": 5}),
        httpx.Response(200, json={"serverTimestamp": 6}),
    )

    result = await _ledger(store, settings, recorder).commit(TAXI_FIELDS, await _user(store))

    assert result.success
    assert result.response == {"serverTimestamp": 6}
    pushed = recorder.bodies()[1]["transaction"]
    assert len(pushed) == 1
    transaction = pushed[0]
    assert transaction["user"] == 42
    assert transaction["outcome"] == 100000.0
    assert transaction["outcomeAccount"] == "acc-card"
    assert transaction["outcomeInstrument"] == 2
    assert transaction["tag"] == ["t-taxi"]
    assert transaction["comment"] == "Такси 100000 картой"


@pytest.mark.anyio
async def test_commit_matches_account_case_insensitively(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(200, json={"user": {"42": {"login": "someone"}}}),
        httpx.Response(200, json={}),
    )
    fields = ProposalFields("кафе", "общая КАРТА", Decimal("450"), "450", "кофе 450")

    result = await _ledger(store, settings, recorder).commit(fields, await _user(store))

    assert result.success
    transaction = recorder.bodies()[1]["transaction"][0]
    assert transaction["outcomeAccount"] == "acc-shared"
    assert transaction["tag"] == ["t-cafe"]


@pytest.mark.anyio
async def test_commit_without_synced_tag_sends_no_tag(store, settings, user_id):
    recorder = Recorder(httpx.Response(200, json={"user": [{"id": 42}]}), httpx.Response(200, json={}))
    fields = ProposalFields("Продукты и быт", "Карта", Decimal("80"), "80", "хлеб 80")

    result = await _ledger(store, settings, recorder).commit(fields, await _user(store))

    assert result.success
    assert recorder.bodies()[1]["transaction"][0]["tag"] is None


@pytest.mark.anyio
async def test_commit_unknown_account_makes_no_request(store, settings, user_id):
    recorder = Recorder()
    fields = ProposalFields("Такси", "Сейф", Decimal("100"), "100", "такси 100")

    result = await _ledger(store, settings, recorder).commit(fields, await _user(store))

    assert not result.success
    assert "Сейф" in result.error
    assert "/accounts_upd" in result.error
    assert recorder.requests == []


@pytest.mark.anyio
async def test_commit_rejects_zero_amount(store, settings, user_id):
    recorder = Recorder()
    fields = ProposalFields("Такси", "Карта", Decimal("0"), "0", "такси")

    result = await _ledger(store, settings, recorder).commit(fields, await _user(store))

    assert not result.success
    assert recorder.requests == []


@pytest.mark.anyio
async def test_commit_reports_push_failure(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(200, json={"user": [{"id": 42}]}),
        httpx.Response(500, text="internal error"),
    )

    result = await _ledger(store, settings, recorder).commit(TAXI_FIELDS, await _user(store))

    assert not result.success
    assert "500" in result.error


@pytest.mark.anyio
async def test_commit_without_token_fails(store, settings, session_factory):
    add_user(session_factory, 777)
    user = (await store.authorize(777)).user
    recorder = Recorder()

    result = await _ledger(store, settings, recorder).commit(TAXI_FIELDS, user)

    assert not result.success
    assert recorder.requests == []


@pytest.mark.anyio
async def test_sync_tags_replaces_catalogue(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(
            200,
            json={
                "tag": [
                    {"id": "p-home", "title": "Дом"},
                    {"id": "t-rent", "title": "Аренда", "parent": "p-home"},
                    {"id": "t-repair", "title": "Ремонт", "parent": "p-home"},
                ]
            },
        )
    )

    result = await _ledger(store, settings, recorder).sync_tags(await _user(store))

    assert result.success
    assert result.count == 3
    leaves = await store.list_leaf_categories(user_id)
    assert [(leaf.id, leaf.parent_title) for leaf in leaves] == [("t-rent", "Дом"), ("t-repair", "Дом")]


@pytest.mark.anyio
async def test_sync_accounts_replaces_accounts(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(200, json={"account": [{"id": "acc-new", "title": "Новая карта", "instrument": 3}]})
    )

    result = await _ledger(store, settings, recorder).sync_accounts(await _user(store))

    assert result.success
    assert result.count == 1
    assert await store.find_account(user_id, "Карта") is None
    assert await store.find_account(user_id, "новая карта") == LedgerAccount("acc-new", "Новая карта", 3)


@pytest.mark.anyio
async def test_sync_failure_keeps_existing_catalogue(store, settings, user_id):
    recorder = Recorder(httpx.Response(401, text="Unauthorized"))

    result = await _ledger(store, settings, recorder).sync_tags(await _user(store))

    assert not result.success
    assert len(await store.list_leaf_categories(user_id)) == 3


@pytest.mark.anyio
async def test_validate_token_rejects_unreadable_body(settings):
    recorder = Recorder(httpx.Response(200, text="<html>maintenance</html>"))

    result = await _client(settings, recorder).validate_token()

    assert not result.valid
    assert result.error == "Ошибка подключения к ZenMoney API"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(200, text="<html>maintenance</html>"), httpx.Response(200, json=["not", "a", "diff"])],
)
async def test_fetch_diff_rejects_unreadable_body(settings, response):
    with pytest.raises(LedgerError):
        await _client(settings, Recorder(response)).fetch_diff()


@pytest.mark.anyio
async def test_commit_reports_unreadable_diff(store, settings, user_id):
    recorder = Recorder(httpx.Response(200, text="<html>maintenance</html>"))

    result = await _ledger(store, settings, recorder).commit(TAXI_FIELDS, await _user(store))

    assert not result.success
    assert "maintenance" in result.error
    assert len(recorder.requests) == 1


@pytest.mark.anyio
async def test_commit_reports_unreadable_push_response(store, settings, user_id):
    recorder = Recorder(
        httpx.Response(200, json={"user": [{"id": 42}]}),
        httpx.Response(200, text="oops"),
    )

    result = await _ledger(store, settings, recorder).commit(TAXI_FIELDS, await _user(store))

    assert not result.success
    assert "oops" in result.error


@pytest.mark.anyio
async def test_commit_reports_oversized_comment(store, settings, user_id):
    recorder = Recorder(httpx.Response(200, json={"user": [{"id": 42}]}))
    fields = ProposalFields("Такси", "Карта", Decimal("100"), "100", "x" * 5000)

    result = await _ledger(store, settings, recorder).commit(fields, await _user(store))

    assert not result.success
    assert len(recorder.requests) == 1
