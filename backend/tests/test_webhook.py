import pytest
from fastapi.testclient import TestClient
from telegram import Bot

from zenbot import main


class FakeApplication:
    def __init__(self) -> None:
        self.bot = Bot(token="123456:TEST")
        self.updates = []

    async def process_update(self, update) -> None:
        self.updates.append(update)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(main.settings, "webhook_secret", "s3cret")
    monkeypatch.delattr(main.app.state, "telegram_app", raising=False)
    return TestClient(main.app)


def test_health_check(client):
    assert client.get("/").json() == {"status": "ok"}


def test_webhook_rejects_wrong_secret(client):
    response = client.post("/webhook", json={"update_id": 1}, headers={"X-Telegram-Bot-Api-Secret-Token": "nope"})

    assert response.status_code == 403


def test_webhook_without_bot_is_unavailable(client):
    response = client.post("/webhook", json={"update_id": 1}, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})

    assert response.status_code == 503


def test_webhook_forwards_update(client, monkeypatch):
    application = FakeApplication()
    monkeypatch.setattr(main.app.state, "telegram_app", application, raising=False)

    response = client.post("/webhook", json={"update_id": 7}, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert [update.update_id for update in application.updates] == [7]
