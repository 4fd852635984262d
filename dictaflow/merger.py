"""
Word timestamp merging for progressive transcription.

The streaming engine re-transcribes the whole buffer on every tick, so
each response repeats the words already confirmed. The merger keeps one
deduplicated, time-ordered transcript across those responses.
"""

import threading
from typing import Iterable, List

from .types import TranscribedWord


OVERLAP_TOLERANCE = 0.3  # seconds subtracted from the cutoff
DUPLICATE_WINDOW = 0.5   # same word within this many seconds is a duplicate


def _normalize(text: str) -> str:
    return text.strip().casefold()


class WordTimestampMerger:
    """
    Combines per-request word lists into one transcript.

    merge() is idempotent: merging a window that was already merged
    adds nothing, because each of its words is either before the cutoff
    or matches a confirmed word.

    Usage:
        merger = WordTimestampMerger()
        merger.merge(response.words, window_start_time=0.0)
        text = merger.text()
    """

    def __init__(
        self,
        overlap_tolerance: float = OVERLAP_TOLERANCE,
        duplicate_window: float = DUPLICATE_WINDOW,
    ):
        self.overlap_tolerance = overlap_tolerance
        self.duplicate_window = duplicate_window
        self._confirmed: List[TranscribedWord] = []
        self._last_confirmed_timestamp = 0.0
        self._lock = threading.Lock()

    @property
    def confirmed_words(self) -> List[TranscribedWord]:
        with self._lock:
            return list(self._confirmed)

    @property
    def last_confirmed_timestamp(self) -> float:
        with self._lock:
            return self._last_confirmed_timestamp

    def merge(
        self,
        new_words: Iterable[TranscribedWord],
        window_start_time: float = 0.0,
    ) -> List[TranscribedWord]:
        """
        Merge words from one response.

        Args:
            new_words: Words with times relative to the submitted audio
            window_start_time: Offset of the submitted audio from recording start

        Returns:
            The words that were actually added
        """
        added: List[TranscribedWord] = []

        with self._lock:
            cutoff = self._last_confirmed_timestamp - self.overlap_tolerance

            for word in new_words:
                if not word.text.strip():
                    continue

                absolute = TranscribedWord(
                    text=word.text.strip(),
                    start_time=word.start_time + window_start_time,
                    end_time=word.end_time + window_start_time,
                )
                if absolute.start_time < cutoff:
                    continue
                if self._is_duplicate(absolute):
                    continue

                self._confirmed.append(absolute)
                added.append(absolute)
                self._last_confirmed_timestamp = max(
                    self._last_confirmed_timestamp, absolute.end_time
                )

            # Out-of-order arrivals
            self._confirmed.sort(key=lambda w: w.start_time)

        return added

    def text(self) -> str:
        """Confirmed words joined into a transcript."""
        with self._lock:
            return " ".join(w.text for w in self._confirmed)

    def reset(self) -> None:
        with self._lock:
            self._confirmed = []
            self._last_confirmed_timestamp = 0.0

    def _is_duplicate(self, word: TranscribedWord) -> bool:
        # Must be called with lock held
        key = _normalize(word.text)
        return any(
            _normalize(w.text) == key
            and abs(w.start_time - word.start_time) < self.duplicate_window
            for w in self._confirmed
        )
