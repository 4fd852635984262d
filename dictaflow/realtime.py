"""
OpenAI Realtime transcription over a websocket.

The session runs with server-side voice activity detection: the service
decides where an utterance ends and answers with one completed
transcript per utterance. Audio goes out as base64 pcm16 at 24 kHz in
100 ms pushes.
"""

import base64
import json
import threading
from typing import Any, Callable, Dict, List, Optional

from websockets.exceptions import ConnectionClosed, InvalidStatus, WebSocketException
from websockets.sync.client import connect

from .audio import BYTES_PER_SAMPLE, resample_pcm
from .errors import TranscriptionError, TransportError


REALTIME_URL = "wss://api.openai.com/v1/realtime"
REALTIME_SAMPLE_RATE = 24000
PUSH_BYTES = REALTIME_SAMPLE_RATE * BYTES_PER_SAMPLE // 10  # 100 ms
CONNECT_TIMEOUT = 10.0
FINAL_TRANSCRIPT_TIMEOUT = 3.0  # seconds to wait for transcripts after commit
CLOSE_TIMEOUT = 2.0

TURN_DETECTION = {
    "type": "server_vad",
    "threshold": 0.5,
    "prefix_padding_ms": 300,
    "silence_duration_ms": 500,
    # Transcription only, no model replies
    "create_response": False,
}

# Committing after VAD already took everything is not a failure
COMMIT_EMPTY = "input_audio_buffer_commit_empty"


class RealtimeTranscriber:
    """
    One websocket session against the Realtime API.

    Usage:
        realtime = RealtimeTranscriber(api_key, on_transcript=print)
        realtime.open("en")
        realtime.send_audio(pcm, 16000)
        text = realtime.finish()
        realtime.close()

    Callbacks run on the receiver thread. on_transcript gets the full
    text transcribed so far, on_error a message from the service.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-realtime-preview",
        transcription_model: str = "whisper-1",
        url: str = REALTIME_URL,
        on_transcript: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[str], None]] = None,
        tag: str = "Realtime",
    ):
        self.api_key = api_key
        self.model = model
        self.transcription_model = transcription_model
        self.url = url
        self.on_transcript = on_transcript
        self.on_error = on_error
        self.tag = tag

        self._ws = None
        self._receiver: Optional[threading.Thread] = None
        self._send_lock = threading.Lock()
        self._pending = bytearray()

        self._segments: List[str] = []
        self._cond = threading.Condition()
        self._outstanding = 0
        self._committing = False
        self._commit_settled = False
        self._closing = False
        self._closed = threading.Event()

    @property
    def text(self) -> str:
        with self._cond:
            return "".join(self._segments).strip()

    def open(self, language: str) -> None:
        """
        Connect and configure the session.

        Raises:
            TranscriptionError: the handshake was rejected (bad key, bad model)
            TransportError: the service could not be reached
        """
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "OpenAI-Beta": "realtime=v1",
        }
        try:
            self._ws = connect(
                f"{self.url}?model={self.model}",
                additional_headers=headers,
                open_timeout=CONNECT_TIMEOUT,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            raise TranscriptionError(
                f"Realtime handshake rejected with {status}", status_code=status
            ) from e
        except (OSError, WebSocketException) as e:
            raise TransportError(f"Realtime connection failed: {e}") from e

        try:
            self._send_event({
                "type": "session.update",
                "session": {
                    "modalities": ["text"],
                    "input_audio_format": "pcm16",
                    "input_audio_transcription": {
                        "model": self.transcription_model,
                        "language": language,
                    },
                    "turn_detection": TURN_DETECTION,
                },
            })
        except TransportError:
            self._ws.close()
            raise

        self._receiver = threading.Thread(
            target=self._receive_loop, name=f"{self.tag}-receive", daemon=True
        )
        self._receiver.start()
        print(f"[{self.tag}] Connected ({self.model}, {language})")

    def send_audio(self, pcm: bytes, sample_rate: int) -> None:
        """Queue captured audio; full 100 ms chunks go out immediately."""
        if self._closed.is_set():
            return
        data = resample_pcm(pcm, sample_rate, REALTIME_SAMPLE_RATE)
        with self._send_lock:
            self._pending.extend(data)
            while len(self._pending) >= PUSH_BYTES:
                chunk = bytes(self._pending[:PUSH_BYTES])
                del self._pending[:PUSH_BYTES]
                self._append(chunk)

    def finish(self, timeout: float = FINAL_TRANSCRIPT_TIMEOUT) -> str:
        """Flush, commit the tail and wait for outstanding transcripts."""
        if self._closed.is_set():
            return self.text

        with self._send_lock:
            if self._pending:
                self._append(bytes(self._pending))
                self._pending.clear()
            with self._cond:
                self._committing = True
            self._send_event({"type": "input_audio_buffer.commit"})

        with self._cond:
            settled = self._cond.wait_for(
                lambda: self._closed.is_set()
                or (self._commit_settled and self._outstanding == 0),
                timeout,
            )
        if not settled:
            print(f"[{self.tag}] Timed out waiting for the final transcript")
        return self.text

    def close(self) -> None:
        """Close the socket and join the receiver. Safe to call twice."""
        self._closing = True
        if self._ws is not None:
            self._ws.close()
        if self._receiver is not None and self._receiver is not threading.current_thread():
            self._receiver.join(CLOSE_TIMEOUT)
        self._closed.set()

    def _append(self, chunk: bytes) -> None:
        self._send_event({
            "type": "input_audio_buffer.append",
            "audio": base64.b64encode(chunk).decode("ascii"),
        })

    def _send_event(self, event: Dict[str, Any]) -> None:
        try:
            self._ws.send(json.dumps(event))
        except ConnectionClosed as e:
            raise TransportError(f"Realtime connection closed: {e}") from e

    def _receive_loop(self) -> None:
        try:
            for message in self._ws:
                try:
                    event = json.loads(message)
                except ValueError:
                    print(f"[{self.tag}] Ignoring malformed event: {message[:100]!r}")
                    continue
                self._handle_event(event)
        except ConnectionClosed as e:
            if not self._closing:
                self._report(f"Realtime connection lost: {e}")
        finally:
            self._closed.set()
            with self._cond:
                self._cond.notify_all()

    def _handle_event(self, event: Dict[str, Any]) -> None:
        kind = event.get("type", "")

        if kind == "input_audio_buffer.committed":
            with self._cond:
                self._outstanding += 1
                if self._committing:
                    self._commit_settled = True

        elif kind == "conversation.item.input_audio_transcription.completed":
            transcript = event.get("transcript") or ""
            with self._cond:
                self._segments.append(transcript.strip() + " ")
            if transcript.strip() and self.on_transcript:
                self.on_transcript(self.text)
            # Only now may finish() return
            with self._cond:
                self._outstanding = max(self._outstanding - 1, 0)
                self._cond.notify_all()

        elif kind == "conversation.item.input_audio_transcription.failed":
            with self._cond:
                self._outstanding = max(self._outstanding - 1, 0)
                self._cond.notify_all()
            error = event.get("error") or {}
            self._report(f"Transcription failed: {error.get('message', 'unknown error')}")

        elif kind == "error":
            error = event.get("error") or {}
            if error.get("code") == COMMIT_EMPTY:
                with self._cond:
                    self._commit_settled = True
                    self._cond.notify_all()
                return
            self._report(error.get("message", "unknown error"))

        elif kind in ("session.created", "session.updated"):
            print(f"[{self.tag}] {kind}")

    def _report(self, message: str) -> None:
        print(f"[{self.tag}] {message}")
        if self.on_error:
            self.on_error(message)
