"""
Transcription client for whisper-style HTTP endpoints.

Works against the local whisper.cpp server (`POST /inference`) and the
OpenAI-compatible cloud endpoint (`POST /v1/audio/transcriptions`).
Stateless apart from its settings: one call, one request.
"""

import json
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import requests

from .audio import DEFAULT_SAMPLE_RATE, pcm_to_wav_bytes
from .errors import TranscriptionError, TransportError
from .types import TranscribedWord, TranscriptionResponse

if TYPE_CHECKING:
    from .server import InferenceServerSupervisor


DEFAULT_TIMEOUT = 120.0  # generous, but finite
DEFAULT_LANGUAGE = "en"


def normalize_language(language: str, default: str = DEFAULT_LANGUAGE) -> str:
    """
    Turn a UI language ("en-US", "auto", "") into an ISO code the endpoint accepts.

    "auto" and empty map to the default rather than being sent as-is.
    """
    if not language or language.strip().lower() == "auto":
        return default
    return language.strip().replace("_", "-").split("-")[0].lower()


def parse_transcription(body: str) -> TranscriptionResponse:
    """
    Parse a transcription response body.

    Accepts {"text": ...}, {"segments": [{"text": ...}]} and the verbose
    forms carrying words either at the top level or per segment. Anything
    that isn't JSON of that shape is treated as plain text.
    """
    try:
        data = json.loads(body)
    except ValueError as e:
        if body.strip():
            print(f"[Client] Response is not JSON ({e}), using raw text")
        return TranscriptionResponse(text=body.strip())

    if not isinstance(data, dict):
        print("[Client] Unexpected response shape, using raw text")
        return TranscriptionResponse(text=body.strip())

    segments = data.get("segments") or []
    if not isinstance(segments, list):
        segments = []

    if isinstance(data.get("text"), str):
        text = data["text"].strip()
    else:
        texts = [
            seg["text"].strip()
            for seg in segments
            if isinstance(seg, dict) and isinstance(seg.get("text"), str) and seg["text"].strip()
        ]
        text = " ".join(texts)

    words = _parse_words(data.get("words"))
    if not words:
        for seg in segments:
            if isinstance(seg, dict):
                words.extend(_parse_words(seg.get("words")))

    return TranscriptionResponse(text=text, words=words)


def _parse_words(raw: Any) -> List[TranscribedWord]:
    words: List[TranscribedWord] = []
    if not isinstance(raw, list):
        return words

    for item in raw:
        if not isinstance(item, dict):
            continue
        text = item.get("word", item.get("text"))
        start = item.get("start")
        end = item.get("end")
        if not isinstance(text, str) or start is None or end is None:
            continue
        try:
            words.append(TranscribedWord(text=text, start_time=float(start), end_time=float(end)))
        except (TypeError, ValueError):
            continue
    return words


class TranscriptionClient:
    """
    Multipart request/response wrapper around one transcription endpoint.

    On a network-level failure the supervisor (if any) is told the server
    can no longer be assumed alive, and TransportError is raised. The same
    request is never retried here; the next call re-verifies the server.

    Usage:
        client = TranscriptionClient("http://127.0.0.1:8178/inference")
        response = client.transcribe(pcm_bytes, "en-US")
        print(response.text)
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = DEFAULT_TIMEOUT,
        supervisor: Optional["InferenceServerSupervisor"] = None,
        word_granularity_field: bool = False,
        sample_rate: int = DEFAULT_SAMPLE_RATE,
    ):
        self.url = url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.supervisor = supervisor
        self.word_granularity_field = word_granularity_field
        self.sample_rate = sample_rate

    def transcribe(
        self,
        audio: bytes,
        language: str,
        response_format: str = "json",
    ) -> TranscriptionResponse:
        """
        Transcribe raw PCM audio.

        Args:
            audio: 16-bit mono PCM at the client's sample rate
            language: UI language, normalized before sending
            response_format: "json" or "verbose_json"

        Returns:
            TranscriptionResponse (words only filled for verbose_json)
        """
        wav = pcm_to_wav_bytes(audio, self.sample_rate)
        files = {"file": ("audio.wav", wav, "audio/wav")}
        data = self._build_fields(language, response_format)

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        start = time.time()
        try:
            response = requests.post(
                self.url,
                files=files,
                data=data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            if self.supervisor is not None:
                self.supervisor.invalidate()
            raise TransportError(f"Request to {self.url} failed: {e}") from e

        if not response.ok:
            raise TranscriptionError(
                f"{self.url} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        latency_ms = int((time.time() - start) * 1000)
        print(f"[Client] Response in {latency_ms}ms ({len(audio)} bytes of audio)")
        return parse_transcription(response.text)

    def _build_fields(self, language: str, response_format: str) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "language": normalize_language(language),
            "response_format": response_format,
        }
        if self.model:
            data["model"] = self.model
        if response_format == "verbose_json" and self.word_granularity_field:
            data["timestamp_granularities[]"] = "word"
        return data
