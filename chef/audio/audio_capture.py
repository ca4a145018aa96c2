import asyncio
from typing import AsyncIterator

import numpy as np
from loguru import logger

# Target sample rate for Whisper and Silero-VAD
SAMPLE_RATE = 16000
CHANNELS = 1
CHUNK_SIZE = 512  # 32ms at 16kHz, exactly one Silero-VAD window
FORMAT_DTYPE = np.int16


def rms_level(chunk: np.ndarray, full_scale: float = 8000.0) -> float:
    """Normalized 0.0 - 1.0 loudness of an int16 chunk, for level meters."""
    if chunk.size == 0:
        return 0.0
    rms = float(np.sqrt(np.mean(chunk.astype(np.float32) ** 2)))
    return min(rms / full_scale, 1.0)


class AudioCapture:
    """Microphone input as a stream of 16kHz int16 chunks.

    Tries 16kHz first (PipeWire does high-quality resampling), falls back
    to native 44100Hz/48000Hz with linear resampling. The stream is paused
    between listening sessions so stale audio never piles up in the buffer
    while the assistant is talking.
    """

    def __init__(self, sample_rate: int = SAMPLE_RATE, chunk_size: int = CHUNK_SIZE):
        self.sample_rate = sample_rate
        self.chunk_size = chunk_size
        self._stream = None
        self._pa = None
        self._capture_rate = sample_rate
        self._capture_chunk = chunk_size

    def open(self) -> None:
        """Open the PyAudio input stream. Raises RuntimeError if no rate works."""
        if self._stream is not None:
            return

        import pyaudio
        self._pa = pyaudio.PyAudio()

        for rate in [self.sample_rate, 44100, 48000]:
            try:
                capture_chunk = (
                    self.chunk_size if rate == self.sample_rate
                    else int(self.chunk_size * rate / self.sample_rate)
                )
                self._stream = self._pa.open(
                    format=pyaudio.paInt16,
                    channels=CHANNELS,
                    rate=rate,
                    input=True,
                    frames_per_buffer=capture_chunk,
                    start=False,
                )
                self._capture_rate = rate
                self._capture_chunk = capture_chunk
                logger.info("Microphone opened: capture={}Hz, output={}Hz", rate, self.sample_rate)
                return
            except Exception as e:
                logger.debug("Sample rate {}Hz not supported: {}", rate, e)

        self._pa.terminate()
        self._pa = None
        raise RuntimeError("Could not open audio input stream at any supported rate")

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def pause(self) -> None:
        if self._stream is not None and self._stream.is_active():
            self._stream.stop_stream()

    def resume(self) -> None:
        if self._stream is not None and not self._stream.is_active():
            self._stream.start_stream()

    def _resample(self, chunk: np.ndarray) -> np.ndarray:
        if self._capture_rate == self.sample_rate:
            return chunk

        ratio = self.sample_rate / self._capture_rate
        indices = np.clip(np.arange(self.chunk_size) / ratio, 0, len(chunk) - 1)
        idx_floor = indices.astype(np.int32)
        idx_ceil = np.minimum(idx_floor + 1, len(chunk) - 1)
        frac = indices - idx_floor
        resampled = chunk[idx_floor] * (1 - frac) + chunk[idx_ceil] * frac
        return resampled.astype(FORMAT_DTYPE)

    async def stream(self) -> AsyncIterator[np.ndarray]:
        """Yield 16kHz chunks until the consumer stops iterating."""
        self.open()
        self.resume()
        loop = asyncio.get_running_loop()
        try:
            while True:
                raw = await loop.run_in_executor(None, self._stream.read, self._capture_chunk, False)
                yield self._resample(np.frombuffer(raw, dtype=FORMAT_DTYPE))
        finally:
            self.pause()

    def close(self):
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pa is not None:
            self._pa.terminate()
            self._pa = None
