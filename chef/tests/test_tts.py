"""Tests for the speech output channel and its voice selection."""
from types import SimpleNamespace

import pytest

from audio.tts import CloudTextToSpeech, PiperSpeechOutput, length_scale_for, speed_for, split_sentences
from core.config import VoiceSettings


class FakeSynth:
    def __init__(self, audio: bytes):
        self.audio = audio
        self.voice = "en_US-lessac-medium"
        self.length_scale = 1.0
        self.volume = 1.0
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        return self.audio


class FakeCloud(CloudTextToSpeech):
    def __init__(self, audio: bytes, api_key: str = "sk-test"):
        super().__init__(lambda: api_key)
        self.audio = audio
        self.texts: list[str] = []

    async def synthesize(self, text: str) -> bytes:
        self.texts.append(text)
        return self.audio


class FakePlayer:
    def __init__(self):
        self.played: list[bytes] = []

    async def play(self, wav_bytes: bytes) -> None:
        self.played.append(wav_bytes)

    async def stop(self) -> None:
        pass


class FakeSpeechAPI:
    def __init__(self):
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return SimpleNamespace(content=b"RIFF-cloud")


class TestHelpers:
    def test_split_sentences(self):
        assert split_sentences("Chop the onions. Then stir!  Done?") == ["Chop the onions.", "Then stir!", "Done?"]
        assert split_sentences("   ") == []

    def test_rate_mapping(self):
        assert length_scale_for(0.5) == 1.0
        assert length_scale_for(1.0) == 0.5
        assert speed_for(0.0) == 0.5
        assert speed_for(1.0) == 2.0


class TestPiperSpeechOutput:
    @pytest.mark.asyncio
    async def test_speaks_sentence_by_sentence_with_piper(self):
        piper, player = FakeSynth(b"piper"), FakePlayer()
        output = PiperSpeechOutput(piper, player=player, premium=FakeCloud(b"cloud"))
        output.configure(VoiceSettings())

        await output.speak("Step 1 of 3: Chop the onions. Keep them small.")
        assert piper.texts == ["Step 1 of 3: Chop the onions.", "Keep them small."]
        assert player.played == [b"piper", b"piper"]

    @pytest.mark.asyncio
    async def test_premium_voice_uses_cloud(self):
        piper, player, cloud = FakeSynth(b"piper"), FakePlayer(), FakeCloud(b"cloud")
        output = PiperSpeechOutput(piper, player=player, premium=cloud)
        output.configure(VoiceSettings(is_premium=True, voice_id="nova", speech_rate=1.0))

        await output.speak("Simmer for 10 minutes.")
        assert cloud.voice == "nova"
        assert cloud.speed == 2.0
        assert player.played == [b"cloud"]
        assert piper.texts == []

    @pytest.mark.asyncio
    async def test_premium_defaults_voice(self):
        cloud = FakeCloud(b"cloud")
        output = PiperSpeechOutput(FakeSynth(b"piper"), player=FakePlayer(), premium=cloud)
        output.configure(VoiceSettings(is_premium=True))
        assert cloud.voice == CloudTextToSpeech.DEFAULT_VOICE

    @pytest.mark.asyncio
    async def test_premium_failure_falls_back_to_piper(self):
        piper, player = FakeSynth(b"piper"), FakePlayer()
        output = PiperSpeechOutput(piper, player=player, premium=FakeCloud(b""))
        output.configure(VoiceSettings(is_premium=True, voice_id="nova"))

        await output.speak("Blend and serve hot.")
        assert player.played == [b"piper"]

    @pytest.mark.asyncio
    async def test_premium_without_key_uses_piper(self):
        piper, player, cloud = FakeSynth(b"piper"), FakePlayer(), FakeCloud(b"cloud", api_key="")
        output = PiperSpeechOutput(piper, player=player, premium=cloud)
        output.configure(VoiceSettings(is_premium=True))

        await output.speak("Blend and serve hot.")
        assert cloud.texts == []
        assert player.played == [b"piper"]

    @pytest.mark.asyncio
    async def test_premium_without_cloud_voice(self):
        piper, player = FakeSynth(b"piper"), FakePlayer()
        output = PiperSpeechOutput(piper, player=player)
        output.configure(VoiceSettings(is_premium=True, voice_id="nova"))

        assert not output.use_premium
        await output.speak("Blend and serve hot.")
        assert player.played == [b"piper"]

    def test_switching_back_to_standard_voice(self):
        output = PiperSpeechOutput(FakeSynth(b"piper"), player=FakePlayer(), premium=FakeCloud(b"cloud"))
        output.configure(VoiceSettings(is_premium=True))
        output.configure(VoiceSettings(is_premium=False, voice_name="en_GB-alba-medium"))
        assert not output.use_premium
        assert output.tts.voice == "en_GB-alba-medium"


class TestCloudTextToSpeech:
    @pytest.mark.asyncio
    async def test_no_key_returns_empty_audio(self):
        cloud = CloudTextToSpeech(lambda: "")
        assert await cloud.synthesize("Hello") == b""
        assert cloud._client is None

    @pytest.mark.asyncio
    async def test_request_carries_voice_and_speed(self):
        api = FakeSpeechAPI()
        cloud = CloudTextToSpeech(lambda: "sk-test")
        cloud._client = SimpleNamespace(audio=SimpleNamespace(speech=api))
        cloud._client_key = "sk-test"
        cloud.voice, cloud.speed = "nova", 1.5

        assert await cloud.synthesize("Stir well.") == b"RIFF-cloud"
        request = api.requests[0]
        assert request["voice"] == "nova"
        assert request["speed"] == 1.5
        assert request["input"] == "Stir well."
        assert request["response_format"] == "wav"

    @pytest.mark.asyncio
    async def test_api_error_returns_empty_audio(self):
        class FailingAPI:
            async def create(self, **kwargs):
                raise RuntimeError("quota exceeded")

        cloud = CloudTextToSpeech(lambda: "sk-test")
        cloud._client = SimpleNamespace(audio=SimpleNamespace(speech=FailingAPI()))
        cloud._client_key = "sk-test"
        assert await cloud.synthesize("Stir well.") == b""
