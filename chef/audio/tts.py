import asyncio
import io
import re
import wave
from pathlib import Path
from typing import Callable, Optional

import numpy as np
from loguru import logger

from audio.audio_player import AudioPlayer
from core.config import VoiceSettings
from voice.channels import SpeechOutputChannel

SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


def split_sentences(text: str) -> list[str]:
    return [s.strip() for s in SENTENCE_SPLIT.split(text) if s.strip()]


def length_scale_for(speech_rate: float) -> float:
    """Map a 0.0 - 1.0 speech rate to Piper's length scale.

    0.5 is the voice's natural pace (1.0); 1.0 speaks twice as fast and
    0.0 twice as slow.
    """
    return 2 ** ((0.5 - speech_rate) * 2)


class TextToSpeech:
    """Piper TTS synthesis to WAV bytes."""

    def __init__(self, model_dir: Path, voice: str = "en_US-lessac-medium"):
        self.model_dir = model_dir
        self.voice = voice
        self.length_scale = 1.0
        self.volume = 1.0
        self._piper = None
        self._loaded_voice: Optional[str] = None

    def load(self) -> None:
        """Load the Piper voice model. Blocking; run it in an executor."""
        if self._piper is not None and self._loaded_voice == self.voice:
            return
        from piper import PiperVoice

        model_path = self.model_dir / f"{self.voice}.onnx"
        if not model_path.exists():
            raise FileNotFoundError(f"Piper voice model not found at {model_path}")
        self._piper = PiperVoice.load(str(model_path), config_path=str(model_path) + ".json")
        self._loaded_voice = self.voice
        logger.info("Piper TTS loaded: {}", self.voice)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._synthesize_sync, text)

    def _synthesize_sync(self, text: str) -> bytes:
        from piper import SynthesisConfig

        self.load()
        syn_config = SynthesisConfig(length_scale=self.length_scale, volume=self.volume)

        # Each chunk carries float32 audio normalized to [-1, 1]
        all_audio = [
            (chunk.audio_float_array * 32767).astype(np.int16)
            for chunk in self._piper.synthesize(text, syn_config=syn_config)
        ]
        if not all_audio:
            logger.warning("TTS produced no audio for: '{}'", text[:50])
            return b""

        wav_buffer = io.BytesIO()
        with wave.open(wav_buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(self._piper.config.sample_rate)
            wav.writeframes(np.concatenate(all_audio).tobytes())

        logger.debug("TTS: synthesized {} bytes for '{}'", wav_buffer.tell(), text[:50])
        return wav_buffer.getvalue()


def speed_for(speech_rate: float) -> float:
    """Map a 0.0 - 1.0 speech rate to the cloud voice's speed (0.5x - 2x)."""
    return 1 / length_scale_for(speech_rate)


class CloudTextToSpeech:
    """OpenAI text-to-speech for the premium voices.

    The API key is read through ``key_source`` on every call so that keys
    entered through the settings API take effect without a restart. Any
    failure yields empty audio and the caller falls back to Piper.
    """

    DEFAULT_VOICE = "alloy"

    def __init__(self, key_source: Callable[[], str], model: str = "tts-1"):
        self.key_source = key_source
        self.model = model
        self.voice = self.DEFAULT_VOICE
        self.speed = 1.0
        self._client = None
        self._client_key: Optional[str] = None

    @property
    def available(self) -> bool:
        return bool(self.key_source())

    def _ensure_client(self, api_key: str):
        if self._client is None or self._client_key != api_key:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=api_key)
            self._client_key = api_key
        return self._client

    async def synthesize(self, text: str) -> bytes:
        api_key = self.key_source()
        if not api_key or not text or not text.strip():
            return b""

        try:
            client = self._ensure_client(api_key)
            response = await client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=text,
                response_format="wav",
                speed=self.speed,
            )
            audio = response.content
            logger.debug("Cloud TTS: {} bytes for '{}'", len(audio), text[:50])
            return audio
        except Exception as e:
            logger.error("Cloud TTS error: {}. Falling back to Piper.", e)
            return b""


class PiperSpeechOutput(SpeechOutputChannel):
    """Speaks through Piper and paplay, one sentence at a time.

    The next sentence is synthesized while the current one plays. ``stop()``
    kills playback and drops the sentences still queued. With ``is_premium``
    set and a cloud voice available, sentences are synthesized by the cloud
    voice ``voice_id`` instead, falling back to Piper sentence by sentence.
    """

    def __init__(
        self,
        tts: TextToSpeech,
        player: Optional[AudioPlayer] = None,
        premium: Optional[CloudTextToSpeech] = None,
    ):
        self.tts = tts
        self.player = player or AudioPlayer()
        self.premium = premium
        self.use_premium = False
        self._generation = 0

    def configure(self, settings: VoiceSettings) -> None:
        self.tts.voice = settings.voice_name
        self.tts.length_scale = length_scale_for(settings.speech_rate)
        self.tts.volume = settings.volume
        if settings.pitch != 1.0:
            logger.debug("Piper voices have a fixed pitch; ignoring pitch={}", settings.pitch)

        self.use_premium = settings.is_premium and self.premium is not None
        if settings.is_premium and self.premium is None:
            logger.warning("Premium voice requested but no cloud voice is configured; using Piper")
        if self.use_premium:
            self.premium.voice = settings.voice_id or CloudTextToSpeech.DEFAULT_VOICE
            self.premium.speed = speed_for(settings.speech_rate)
            logger.info("Premium voice: {}", self.premium.voice)

    async def _synthesize(self, sentence: str) -> bytes:
        if self.use_premium and self.premium.available:
            audio = await self.premium.synthesize(sentence)
            if audio:
                return audio
        return await self.tts.synthesize(sentence)

    async def speak(self, text: str) -> None:
        generation = self._generation
        sentences = split_sentences(text)
        if not sentences:
            return

        next_audio = asyncio.ensure_future(self._synthesize(sentences[0]))
        try:
            for i in range(len(sentences)):
                audio = await next_audio
                if generation != self._generation:
                    return
                if i + 1 < len(sentences):
                    next_audio = asyncio.ensure_future(self._synthesize(sentences[i + 1]))
                await self.player.play(audio)
                if generation != self._generation:
                    return
        finally:
            if not next_audio.done():
                next_audio.cancel()

    async def stop(self) -> None:
        self._generation += 1
        await self.player.stop()
