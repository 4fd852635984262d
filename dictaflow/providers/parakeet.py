"""
Parakeet MLX provider for local transcription.

Uses Apple Silicon optimizations via MLX framework. The model runs in
process, so there is no server and no streaming.
"""

import gc
import importlib.util
import platform
import threading
import time

from . import RecognitionProvider
from ..audio import pcm_to_float
from ..errors import TranscriptionError, UnavailableError
from ..streaming import TranscribeFn
from ..types import ConfigSnapshot, SpeechProvider, TranscriptionResponse


PARAKEET_MODEL = "mlx-community/parakeet-tdt-0.6b-v3"
CACHE_CLEAR_INTERVAL = 10  # Clear MLX cache every N transcriptions


def is_apple_silicon() -> bool:
    return platform.system() == "Darwin" and platform.machine() == "arm64"


class ParakeetProvider(RecognitionProvider):
    """
    Local transcription using Parakeet MLX model.

    The model is loaded once on initialize() and kept in memory.
    Thread-safe via lock (MLX models aren't thread-safe).
    """

    key = SpeechProvider.PARAKEET

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.model = None
        self.preprocessor_config = None
        self._model_lock = threading.Lock()
        self._transcription_count = 0

    @property
    def is_available(self) -> bool:
        return is_apple_silicon() and importlib.util.find_spec("parakeet_mlx") is not None

    def _load(self, config: ConfigSnapshot) -> None:
        """Load Parakeet model weights."""
        with self._model_lock:
            if self.model is not None:
                return

            try:
                import mlx.core as mx
                import numpy as np
                from parakeet_mlx import from_pretrained
                from parakeet_mlx.audio import get_logmel

                print(f"[{self.name}] Loading model...")
                model = from_pretrained(PARAKEET_MODEL)

                # Warmup inference to ensure model is fully loaded
                dummy_audio = mx.array(np.zeros(1600, dtype=np.float32))  # 0.1s at 16kHz
                mel = get_logmel(dummy_audio, model.preprocessor_config)
                _ = model.generate(mel)

            except Exception as e:
                raise UnavailableError(f"Failed to load Parakeet model: {e}") from e

            self.model = model
            self.preprocessor_config = model.preprocessor_config

    def _unload(self) -> None:
        """Unload model weights."""
        with self._model_lock:
            self.model = None
            self.preprocessor_config = None
        gc.collect()

    def _build_transcriber(self, config: ConfigSnapshot) -> TranscribeFn:
        return self._transcribe

    def _transcribe(self, audio: bytes, language: str, response_format: str) -> TranscriptionResponse:
        # Parakeet v3 detects the language itself
        start = time.time()

        with self._model_lock:
            if self.model is None:
                raise TranscriptionError("Parakeet model is not loaded")

            try:
                import mlx.core as mx
                from parakeet_mlx.audio import get_logmel

                audio_mx = mx.array(pcm_to_float(audio))
                mel = get_logmel(audio_mx, self.preprocessor_config)
                alignments = self.model.generate(mel)
                text = "".join(seg.text for seg in alignments)

                # Clean up to prevent memory accumulation
                del audio_mx
                del mel
                del alignments

                # Clear memory cache periodically (not every call - expensive)
                self._transcription_count += 1
                if self._transcription_count >= CACHE_CLEAR_INTERVAL:
                    self._transcription_count = 0
                    if hasattr(mx, "clear_cache"):
                        mx.clear_cache()

            except Exception as e:
                raise TranscriptionError(f"Parakeet transcription failed: {e}") from e

        latency_ms = int((time.time() - start) * 1000)
        print(f"[{self.name}] Transcribed in {latency_ms}ms")
        return TranscriptionResponse(text=text.strip())
