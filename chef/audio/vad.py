from enum import Enum
from typing import Optional

import numpy as np
from loguru import logger

from audio.audio_capture import SAMPLE_RATE

# Silero-VAD requires exactly this many samples per call at 16kHz
VAD_WINDOW = 512


class SegmentEvent(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"


class SpeechSegmenter:
    """Splits a live audio stream into spoken segments using Silero-VAD.

    Feed it 16kHz int16 chunks; it reports when speech starts and hands
    back the whole segment once ``silence_duration`` of non-speech follows
    it. Segments longer than ``max_duration`` are cut.
    """

    def __init__(
        self,
        sample_rate: int = SAMPLE_RATE,
        silence_duration: float = 0.4,
        max_duration: float = 15.0,
        speech_threshold: float = 0.5,
    ):
        self.sample_rate = sample_rate
        self.silence_duration = silence_duration
        self.max_duration = max_duration
        self.speech_threshold = speech_threshold
        self._model = None
        self.reset()

    def load(self) -> None:
        """Load Silero-VAD. Blocking; run it in an executor."""
        if self._model is not None:
            return

        import torch
        model, _ = torch.hub.load(
            repo_or_dir="snakers4/silero-vad",
            model="silero_vad",
            trust_repo=True,
        )
        self._model = model
        logger.info("Silero-VAD loaded.")

    def reset(self) -> None:
        self._buffer = np.array([], dtype=np.int16)
        self._frames: list[np.ndarray] = []
        self._in_speech = False
        self._silence = 0.0
        self._speech_time = 0.0
        if self._model is not None:
            self._model.reset_states()

    def is_speech(self, window: np.ndarray) -> bool:
        """Check one 512-sample int16 window for speech."""
        import torch

        audio_float = window.astype(np.float32) / 32768.0
        confidence = self._model(torch.from_numpy(audio_float), self.sample_rate).item()
        return confidence > self.speech_threshold

    def feed(self, chunk: np.ndarray) -> tuple[Optional[SegmentEvent], Optional[np.ndarray]]:
        """Process one chunk. Blocking (runs the model); use an executor.

        Returns:
            (event, segment): event is SPEECH_START when speech begins and
            SPEECH_END when a segment is complete, in which case segment
            holds its audio.
        """
        self.load()
        event = None
        self._buffer = np.concatenate([self._buffer, chunk])

        while len(self._buffer) >= VAD_WINDOW:
            window = self._buffer[:VAD_WINDOW]
            self._buffer = self._buffer[VAD_WINDOW:]
            step = VAD_WINDOW / self.sample_rate

            if self.is_speech(window):
                if not self._in_speech:
                    self._in_speech = True
                    event = SegmentEvent.SPEECH_START
                self._silence = 0.0
            elif self._in_speech:
                self._silence += step

            if self._in_speech:
                self._frames.append(window)
                self._speech_time += step
                if self._silence >= self.silence_duration or self._speech_time >= self.max_duration:
                    segment = np.concatenate(self._frames)
                    logger.debug("Speech segment: {:.1f}s", len(segment) / self.sample_rate)
                    self._frames = []
                    self._in_speech = False
                    self._silence = 0.0
                    self._speech_time = 0.0
                    return SegmentEvent.SPEECH_END, segment

        return event, None
