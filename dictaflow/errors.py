"""
Error taxonomy shared by providers, the server supervisor and the client.

Parse failures and orphan-PID ambiguity are not exceptions: the parser
falls back to raw text and the supervisor discards the foreign record.
Both are logged where they happen.
"""


class DictationError(Exception):
    """Base class for every error raised by dictaflow."""


class UnavailableError(DictationError):
    """A required executable, model file or credential is missing."""


class ServerTimeoutError(DictationError, TimeoutError):
    """The inference server did not become healthy in time."""


class TransportError(DictationError):
    """A request failed at the network layer."""


class TranscriptionError(DictationError):
    """The endpoint or engine answered, but not with a transcription."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code


class SynthesisError(DictationError):
    """Text-to-speech failed to produce audio."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
