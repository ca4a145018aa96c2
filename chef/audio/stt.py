import asyncio
import io
import wave
from pathlib import Path
from typing import AsyncIterator, Optional

import numpy as np
from loguru import logger

from audio.audio_capture import SAMPLE_RATE, AudioCapture, rms_level
from audio.vad import SegmentEvent, SpeechSegmenter
from voice.channels import SpeechEvent, SpeechInputChannel

# Phrases Whisper produces from silence or kitchen noise
_HALLUCINATIONS = {
    "thank you", "thanks", "thanks for watching",
    "thank you for watching", "thanks for listening",
    "thank you for listening", "you", "the end", "subscribe",
    "like and subscribe", "see you next time", "oh",
}

# Report the input level every Nth chunk (~10 updates a second)
_LEVEL_EVERY = 3


def is_whisper_hallucination(transcript: str) -> bool:
    t = transcript.strip().lower().rstrip(".!")
    return t in _HALLUCINATIONS or t.startswith("[") or t.startswith("(")


class SpeechToText:
    """Local speech-to-text using Whisper.cpp (via pywhispercpp)."""

    def __init__(self, model_dir: Path, model_name: str = "base.en", language: str = "en",
                 n_threads: int = 4):
        self.model_dir = model_dir
        self.model_name = model_name
        self.language = language
        self.n_threads = n_threads
        self._model = None

    def load(self) -> None:
        """Load the Whisper model. Blocking; run it in an executor."""
        if self._model is not None:
            return
        from pywhispercpp.model import Model

        model_path = self.model_dir / f"ggml-{self.model_name}.bin"
        if model_path.exists():
            self._model = Model(str(model_path), n_threads=self.n_threads)
        else:
            logger.info("Whisper model not found at {}. Downloading.", model_path)
            self._model = Model(self.model_name, models_dir=str(self.model_dir), n_threads=self.n_threads)
        logger.info("Whisper STT loaded: {}", self.model_name)

    async def transcribe(self, audio: np.ndarray) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._transcribe_sync, audio)

    def _transcribe_sync(self, audio: np.ndarray) -> str:
        if self._model is None:
            return ""

        # Whisper expects float32 audio normalized to [-1, 1]
        audio_float = audio.astype(np.float32) / 32768.0 if audio.dtype == np.int16 else audio.astype(np.float32)
        segments = self._model.transcribe(audio_float, language=self.language)
        text = " ".join(seg.text.strip() for seg in segments).strip()
        logger.debug("STT result: '{}'", text)
        return text


class CloudSpeechToText:
    """Cloud STT using the OpenAI Whisper API.

    Faster than local Whisper but sends audio off-device. Returns an empty
    string on failure so the caller can fall back to local STT.
    """

    def __init__(self, api_key: str, language: str = "en"):
        self.api_key = api_key
        self.language = language
        self._client = None

    def update_api_key(self, api_key: str):
        if api_key != self.api_key:
            self.api_key = api_key
            self._client = None

    @staticmethod
    def audio_to_wav_bytes(audio: np.ndarray) -> bytes:
        if audio.dtype != np.int16:
            audio = (audio * 32768.0).astype(np.int16)

        buf = io.BytesIO()
        with wave.open(buf, "wb") as wf:
            wf.setnchannels(1)
            wf.setsampwidth(2)
            wf.setframerate(SAMPLE_RATE)
            wf.writeframes(audio.tobytes())
        return buf.getvalue()

    async def transcribe(self, audio: np.ndarray) -> str:
        if not self.api_key:
            return ""
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self.api_key)

        try:
            audio_file = io.BytesIO(self.audio_to_wav_bytes(audio))
            audio_file.name = "audio.wav"
            response = await self._client.audio.transcriptions.create(
                model="whisper-1", file=audio_file, language=self.language,
            )
            text = response.text.strip()
            logger.debug("Cloud STT result: '{}'", text)
            return text
        except Exception as e:
            logger.error("Cloud STT error: {}. Falling back to local.", e)
            return ""


class WhisperSpeechInput(SpeechInputChannel):
    """Microphone + Silero-VAD + Whisper as a speech input channel.

    Each VAD-delimited segment is transcribed and reported as one final
    result. Speech onset is reported as an empty partial so the listening
    loop knows the user is still talking.
    """

    def __init__(
        self,
        stt: SpeechToText,
        capture: Optional[AudioCapture] = None,
        segmenter: Optional[SpeechSegmenter] = None,
        cloud: Optional[CloudSpeechToText] = None,
    ):
        self.stt = stt
        self.capture = capture or AudioCapture()
        self.segmenter = segmenter or SpeechSegmenter()
        self.cloud = cloud
        self._stop = asyncio.Event()

    async def initialize(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self.capture.open)
            await loop.run_in_executor(None, self.segmenter.load)
            await loop.run_in_executor(None, self.stt.load)
            return True
        except Exception as e:
            logger.error("Speech input unavailable: {}", e)
            return False

    async def listen(self) -> AsyncIterator[SpeechEvent]:
        self._stop.clear()
        self.segmenter.reset()
        loop = asyncio.get_running_loop()
        chunks = self.capture.stream()
        count = 0
        try:
            async for chunk in chunks:
                if self._stop.is_set():
                    break

                count += 1
                if count % _LEVEL_EVERY == 0:
                    yield SpeechEvent.sound_level(rms_level(chunk))

                event, segment = await loop.run_in_executor(None, self.segmenter.feed, chunk)
                if event == SegmentEvent.SPEECH_START:
                    yield SpeechEvent.partial("")
                elif event == SegmentEvent.SPEECH_END and segment is not None:
                    text = await self._transcribe(segment)
                    if text and not is_whisper_hallucination(text):
                        yield SpeechEvent.final(text)
                    elif text:
                        logger.info("Whisper hallucination filtered: '{}'", text)
        except OSError as e:
            # Device unplugged or stream overflow
            yield SpeechEvent.failure(f"audio input error: {e}")
        finally:
            await chunks.aclose()
        yield SpeechEvent.done()

    async def _transcribe(self, audio: np.ndarray) -> str:
        if self.cloud is not None:
            text = await self.cloud.transcribe(audio)
            if text:
                return text
        return await self.stt.transcribe(audio)

    async def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        self.capture.close()
