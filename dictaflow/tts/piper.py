"""
Piper text-to-speech: a local executable that turns text on stdin into
raw 16-bit mono PCM on stdout.
"""

import subprocess
import sys
from pathlib import Path
from typing import Tuple

import numpy as np

from . import SynthesisProvider
from ..errors import SynthesisError, UnavailableError
from ..types import ConfigSnapshot, TtsProvider


PIPER_TIMEOUT = 60.0  # seconds per utterance
LOW_QUALITY_SAMPLE_RATE = 16000
DEFAULT_SAMPLE_RATE = 22050


def voice_sample_rate(voice_path: Path) -> int:
    """Piper "-low" voices produce 16 kHz, medium and high produce 22.05 kHz."""
    return LOW_QUALITY_SAMPLE_RATE if "-low" in voice_path.name else DEFAULT_SAMPLE_RATE


class PiperProvider(SynthesisProvider):
    """
    Offline speech through the piper executable.

    Rate maps to piper's --length_scale (a longer scale is slower speech).
    """

    key = TtsProvider.PIPER
    rate_range = (0.5, 2.0)

    @property
    def executable(self) -> Path:
        name = "piper.exe" if sys.platform == "win32" else "piper"
        return Path(self._config.piper_dir).expanduser() / name

    @property
    def voice_path(self) -> Path:
        path = Path(self._config.piper_voice).expanduser()
        if not path.is_absolute():
            path = Path(self._config.piper_dir).expanduser() / path
        return path

    @property
    def is_available(self) -> bool:
        return bool(self._config.piper_dir) and self.executable.exists()

    def voice_for(self, config: ConfigSnapshot) -> str:
        return Path(config.piper_voice).stem

    def build_args(self, voice_path: Path):
        args = [str(self.executable), "--model", str(voice_path), "--output-raw"]
        if self._rate != 1.0:
            args += ["--length_scale", f"{1.0 / self._rate:.3f}"]
        return args

    def _synthesize(self, text: str) -> Tuple[np.ndarray, int]:
        voice_path = self.voice_path
        if not voice_path.exists():
            raise UnavailableError(f"Voice file not found: {voice_path}")

        try:
            result = subprocess.run(
                self.build_args(voice_path),
                input=text.encode("utf-8"),
                capture_output=True,
                cwd=str(self.executable.parent),
                timeout=PIPER_TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise SynthesisError(f"Piper timed out after {PIPER_TIMEOUT:.0f}s") from e
        except OSError as e:
            raise UnavailableError(f"Failed to run piper: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise SynthesisError(f"Piper failed ({result.returncode}): {stderr[:200]}")

        raw = result.stdout
        if not raw:
            print(f"[{self.name}] Piper produced no audio output")
        usable = len(raw) - (len(raw) % 2)
        samples = np.frombuffer(raw[:usable], dtype="<i2")
        return samples, voice_sample_rate(voice_path)
