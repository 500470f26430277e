from types import SimpleNamespace

import httpx
import openai
import pytest

from zenbot.domain.exceptions import TranscriptionError, VoiceFailure
from zenbot.transcription import TRANSCRIPTION_PROMPT, Transcriber, classify_voice_error

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")


class FakeAudioClient:
    def __init__(self, text: str = "", error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.calls: list[dict] = []
        self.audio = SimpleNamespace(transcriptions=SimpleNamespace(create=self._create))

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(text=self.text)


@pytest.mark.anyio
async def test_transcribe_sends_ogg_with_numeral_prompt(settings):
    client = FakeAudioClient(text="  Такси 100 000 картой \n")
    keys: list[str] = []

    def factory(api_key: str) -> FakeAudioClient:
        keys.append(api_key)
        return client

    text = await Transcriber(settings, client_factory=factory).transcribe(b"OggS")

    assert text == "Такси 100 000 картой"
    assert keys == ["sk-test"]
    call = client.calls[0]
    assert call["file"] == ("voice.ogg", b"OggS")
    assert call["model"] == "whisper-1"
    assert call["language"] == "ru"
    assert call["prompt"] == TRANSCRIPTION_PROMPT


@pytest.mark.anyio
async def test_transcribe_without_key_is_a_credential_failure(settings):
    settings.openai_api_key = None
    client = FakeAudioClient(text="ignored")

    with pytest.raises(TranscriptionError) as excinfo:
        await Transcriber(settings, client_factory=lambda key: client).transcribe(b"OggS")

    assert excinfo.value.kind == VoiceFailure.CREDENTIAL
    assert client.calls == []


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (openai.APITimeoutError(request=REQUEST), VoiceFailure.TIMEOUT),
        (
            openai.AuthenticationError("bad key", response=httpx.Response(401, request=REQUEST), body=None),
            VoiceFailure.CREDENTIAL,
        ),
        (openai.APIConnectionError(request=REQUEST), VoiceFailure.GENERIC),
    ],
)
async def test_transcribe_classifies_api_errors(settings, error, kind):
    transcriber = Transcriber(settings, client_factory=lambda key: FakeAudioClient(error=error))

    with pytest.raises(TranscriptionError) as excinfo:
        await transcriber.transcribe(b"OggS")

    assert excinfo.value.kind == kind


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (TimeoutError(), VoiceFailure.TIMEOUT),
        (RuntimeError("Request timed out"), VoiceFailure.TIMEOUT),
        (RuntimeError("Incorrect API key provided"), VoiceFailure.CREDENTIAL),
        (RuntimeError("file not found"), VoiceFailure.FILE_ACCESS),
        (RuntimeError("boom"), VoiceFailure.GENERIC),
        (TranscriptionError("x", VoiceFailure.FILE_ACCESS), VoiceFailure.FILE_ACCESS),
    ],
)
def test_classify_voice_error(error, kind):
    assert classify_voice_error(error) == kind
