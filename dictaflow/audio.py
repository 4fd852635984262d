"""
Audio buffer, PCM helpers, capture backends and playback.

Audio inside dictaflow is raw 16-bit little-endian mono PCM. The
capture backend appends it to an AudioBuffer, the streaming engine and
the stop handler copy it out, and the transcription client wraps it in
a WAV container right before sending.
"""

import io
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

import numpy as np
import soundfile as sf


# Constants
DEFAULT_SAMPLE_RATE = 16000
DEFAULT_BLOCKSIZE = 1024
BYTES_PER_SAMPLE = 2  # int16
MIN_AUDIO_BYTES = 16000  # ~0.5s at 16kHz mono int16


class AudioBuffer:
    """
    Append-only PCM accumulator plus a cursor.

    Written by the capture backend, read (copied, never mutated) by the
    streaming engine and the stop handler. Readers copy out under the
    lock and do all I/O after releasing it.

    The cursor remembers how many bytes the last transcription request
    covered, so a tick can tell whether anything new arrived.
    """

    def __init__(self, sample_rate: int = DEFAULT_SAMPLE_RATE):
        self.sample_rate = sample_rate
        self._data = bytearray()
        self._cursor = 0
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Called from the capture thread for every block."""
        if not data:
            return
        with self._lock:
            self._data.extend(data)

    def snapshot(self) -> bytes:
        """Copy of everything recorded so far."""
        with self._lock:
            return bytes(self._data)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @property
    def cursor(self) -> int:
        with self._lock:
            return self._cursor

    def advance_cursor(self, position: int) -> None:
        """Move the cursor forward. It never moves back."""
        with self._lock:
            self._cursor = max(self._cursor, min(position, len(self._data)))

    def duration_seconds(self) -> float:
        with self._lock:
            return len(self._data) / (self.sample_rate * BYTES_PER_SAMPLE)

    def clear(self) -> None:
        with self._lock:
            self._data = bytearray()
            self._cursor = 0


def pcm_to_array(pcm: bytes) -> np.ndarray:
    """Interpret raw bytes as int16 samples. A trailing odd byte is dropped."""
    usable = len(pcm) - (len(pcm) % BYTES_PER_SAMPLE)
    return np.frombuffer(pcm[:usable], dtype="<i2")


def rms(pcm: bytes) -> float:
    """Root-mean-square level on the int16 scale (0..32767)."""
    samples = pcm_to_array(pcm)
    if len(samples) == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples.astype(np.float64) ** 2)))


def recent_window(pcm: bytes, sample_rate: int, seconds: float) -> bytes:
    """The last `seconds` of audio, sample aligned."""
    window_bytes = int(seconds * sample_rate) * BYTES_PER_SAMPLE
    usable = len(pcm) - (len(pcm) % BYTES_PER_SAMPLE)
    if window_bytes <= 0 or window_bytes >= usable:
        return pcm[:usable]
    return pcm[usable - window_bytes:usable]


def pcm_to_wav_bytes(pcm: bytes, sample_rate: int = DEFAULT_SAMPLE_RATE) -> bytes:
    """Wrap raw PCM in a WAV container (mono, 16-bit)."""
    samples = pcm_to_array(pcm)
    buffer = io.BytesIO()
    sf.write(buffer, samples, sample_rate, format="WAV", subtype="PCM_16")
    buffer.seek(0)
    return buffer.getvalue()


def pcm_to_float(pcm: bytes) -> np.ndarray:
    """int16 PCM to float32 in [-1, 1), the format local models expect."""
    return pcm_to_array(pcm).astype(np.float32) / 32768.0


def resample_pcm(pcm: bytes, from_rate: int, to_rate: int) -> bytes:
    """Linear resampling of int16 PCM, for services with a fixed input rate."""
    samples = pcm_to_array(pcm)
    if from_rate == to_rate or len(samples) == 0:
        return samples.tobytes()

    count = int(round(len(samples) * to_rate / from_rate))
    positions = np.arange(count) * (from_rate / to_rate)
    resampled = np.interp(positions, np.arange(len(samples)), samples.astype(np.float32))
    return np.clip(np.round(resampled), -32768, 32767).astype("<i2").tobytes()


class CaptureBackend(ABC):
    """
    Capability interface for microphone capture.

    The core never branches on platform: the application root picks a
    concrete backend and hands it to the providers.
    """

    @abstractmethod
    def start(self, on_data: Callable[[bytes], None]) -> None:
        """Begin capturing. on_data receives raw int16 mono PCM blocks."""

    @abstractmethod
    def stop(self) -> None:
        """
        Stop capturing.

        Must not return until the last block has been delivered to
        on_data, so a reader that runs afterwards sees all the audio.
        """


class SoundDeviceCapture(CaptureBackend):
    """
    Microphone capture via a sounddevice raw input stream.

    Usage:
        capture = SoundDeviceCapture(sample_rate=16000, device="MacBook Pro Microphone")
        capture.start(buffer.append)
        ...
        capture.stop()
    """

    def __init__(
        self,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
        device: str = "",
        blocksize: int = DEFAULT_BLOCKSIZE,
    ):
        self.sample_rate = sample_rate
        self.device = device
        self.blocksize = blocksize
        self._stream = None
        self._on_data: Optional[Callable[[bytes], None]] = None
        self._lock = threading.Lock()

    def start(self, on_data: Callable[[bytes], None]) -> None:
        import sounddevice as sd

        with self._lock:
            if self._stream is not None:
                return

            device_index = self._find_device(self.device) if self.device else None
            if self.device and device_index is None:
                print(f"[Capture] Mic not found: {self.device}, using default input")

            self._on_data = on_data
            stream = sd.RawInputStream(
                device=device_index,
                samplerate=self.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=self.blocksize,
                callback=self._audio_callback,
            )
            stream.start()
            self._stream = stream

    def stop(self) -> None:
        # Collect stream under lock, stop outside it to avoid
        # deadlocking with the audio callback
        with self._lock:
            stream = self._stream
            self._stream = None

        if stream is None:
            return

        try:
            stream.stop()
            stream.close()
        except Exception as e:
            print(f"[Capture] Error closing stream: {e}")
        finally:
            self._on_data = None

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            print(f"[Capture] Audio callback status: {status}")

        callback = self._on_data
        if callback is not None:
            callback(bytes(indata))

    def _find_device(self, mic_name: str) -> Optional[int]:
        """Find device index by name (fuzzy matching)."""
        import sounddevice as sd

        devices = sd.query_devices()
        mic_lower = mic_name.lower()

        # Exact match first
        for i, d in enumerate(devices):
            if d["max_input_channels"] > 0 and d["name"].lower() == mic_lower:
                return i

        # Substring match
        for i, d in enumerate(devices):
            if d["max_input_channels"] > 0 and mic_lower in d["name"].lower():
                return i

        return None


def play_samples(
    samples: np.ndarray,
    sample_rate: int,
    volume: float = 1.0,
    stop_event: Optional[threading.Event] = None,
) -> bool:
    """
    Play audio through the default output device and block until done.

    Returns:
        False if stop_event fired before playback finished
    """
    import sounddevice as sd

    raw = np.asarray(samples)
    if np.issubdtype(raw.dtype, np.integer):
        data = raw.astype(np.float32) / 32768.0
    else:
        data = raw.astype(np.float32)
    data = data * float(np.clip(volume, 0.0, 1.0))

    sd.play(data, sample_rate)
    stream = sd.get_stream()
    while stream.active:
        if stop_event is not None and stop_event.wait(0.05):
            sd.stop()
            return False
        if stop_event is None:
            sd.wait()
            break
    return True
