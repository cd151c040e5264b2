"""
Transcript Aggregator.

One append-only, speaker-tagged conversation log per session. The same
utterance can surface twice (control channel event and a textual confirmation
call); identical text from the same speaker inside a short window is admitted
once.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from logging_setup import get_logger, Component


DEFAULT_WINDOW_SECONDS = 2.0


class Speaker(str, Enum):
    USER = "user"
    REMOTE = "remote"


@dataclass(frozen=True)
class TranscriptEntry:
    text: str
    speaker: Speaker
    timestamp: float

    def to_dict(self):
        return {"text": self.text, "speaker": self.speaker.value, "timestamp": self.timestamp}


class TranscriptAggregator:
    """
    Deduplicating transcript log.

    Dedup is text + speaker + time window, not semantic: "Bonjour" twice within
    the window is one entry, "Bonjour." and "Bonjour" are two.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        clock: Callable[[], float] = time.time,
        on_admit: Optional[Callable[[TranscriptEntry], None]] = None,
        session_id: Optional[str] = None,
    ):
        self.window_seconds = window_seconds
        self._clock = clock
        self._on_admit = on_admit
        self._entries: List[TranscriptEntry] = []
        # Unclamped arrival time per entry, for the duplicate window
        self._arrivals: List[float] = []
        self.logger = get_logger(Component.TRANSCRIPT, session_id=session_id)

    @property
    def entries(self) -> List[TranscriptEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def is_duplicate(self, text: str, speaker: Speaker, arrival_time: float) -> bool:
        # Newest first: matches are almost always recent
        for entry, arrived in zip(reversed(self._entries), reversed(self._arrivals)):
            if entry.text == text and entry.speaker == speaker:
                if abs(arrival_time - arrived) < self.window_seconds:
                    return True
        return False

    def admit(
        self,
        text: Optional[str],
        speaker: Speaker,
        arrival_time: Optional[float] = None,
    ) -> Optional[TranscriptEntry]:
        """Append an utterance unless it is empty or a duplicate. Returns the new entry or None."""
        text = (text or "").strip()
        if not text:
            return None

        speaker = Speaker(speaker)
        arrival = self._clock() if arrival_time is None else arrival_time

        if self.is_duplicate(text, speaker, arrival):
            self.logger.debug("Duplicate utterance discarded", speaker=speaker.value, text_length=len(text))
            return None

        timestamp = arrival
        if self._entries and timestamp < self._entries[-1].timestamp:
            timestamp = self._entries[-1].timestamp

        entry = TranscriptEntry(text=text, speaker=speaker, timestamp=timestamp)
        self._entries.append(entry)
        self._arrivals.append(arrival)
        self.logger.debug_pii("Transcript entry admitted", speaker=speaker.value, text=text)

        if self._on_admit is not None:
            self._on_admit(entry)
        return entry

    def history(self) -> List[dict]:
        """Entries as chat history ({role, content}) for the text chat endpoint."""
        return [
            {"role": "user" if e.speaker == Speaker.USER else "assistant", "content": e.text}
            for e in self._entries
        ]
