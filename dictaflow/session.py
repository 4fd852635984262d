"""
Recognition session: one recording for one provider.

Created when recording starts, mutated by the streaming engine and by
the stop handler, dropped when recording stops.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional
from uuid import UUID, uuid4

from .audio import AudioBuffer
from .merger import WordTimestampMerger
from .types import TranscribedWord


@dataclass
class RecognitionSession:
    """
    State of one active recording.

    The audio buffer is owned exclusively by this session. The word
    merger only gets used when the provider asks for word timestamps.
    """
    language: str
    buffer: AudioBuffer
    id: UUID = field(default_factory=uuid4)
    session_start_time: float = field(default_factory=time.time)
    merger: WordTimestampMerger = field(default_factory=WordTimestampMerger)

    # Runtime state
    last_partial: str = ""
    partial_count: int = 0
    stopped: threading.Event = field(default_factory=threading.Event)
    _partial_lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def confirmed_words(self) -> List[TranscribedWord]:
        return self.merger.confirmed_words

    @property
    def last_confirmed_timestamp(self) -> float:
        return self.merger.last_confirmed_timestamp

    def elapsed(self) -> float:
        return time.time() - self.session_start_time

    def update_partial(self, text: str) -> Optional[str]:
        """
        Record a partial result.

        Returns:
            The text if it is new and non-empty, else None
        """
        text = text.strip()
        with self._partial_lock:
            if not text or text == self.last_partial:
                return None
            self.last_partial = text
            self.partial_count += 1
            return text
