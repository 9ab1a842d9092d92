"""
Context Window - short-term memory of what was said and done.

Tracks a sliding window of:
- speech (what the user said)
- actions (what we executed, at which confidence and tier)
- feedback, confirmations and corrections

Used by the learning loop to reason about corrections, and to give the
Tier 3 classifier a line of recent context.
"""

import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Deque, Dict, List, Optional


ENTRY_TYPES = ("speech", "action", "feedback", "confirmation", "correction")


@dataclass
class ContextEntry:
    """A single event in the window."""
    type: str
    timestamp: float = field(default_factory=time.time)
    text: Optional[str] = None
    action: Optional[str] = None
    confidence: Optional[float] = None
    tier: Optional[int] = None
    feedback_type: Optional[str] = None     # positive | negative
    original_phrase: Optional[str] = None
    intended: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


class ContextWindow:
    """Bounded history of recent activity."""

    def __init__(self, window_size: int = 10, clock=time.time):
        self.window_size = window_size
        self._clock = clock
        self._history: Deque[ContextEntry] = deque(maxlen=window_size)

    def add(self, entry_type: str, **values) -> ContextEntry:
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Unknown context entry type: {entry_type}")
        entry = ContextEntry(type=entry_type, timestamp=self._clock(), **values)
        self._history.append(entry)
        return entry

    def add_speech(self, text: str) -> None:
        self.add("speech", text=text)

    def add_action(self, action: str, confidence: float, tier: Optional[int] = None) -> None:
        self.add("action", action=action, confidence=confidence, tier=tier)

    def add_feedback(self, feedback_type: str, action: Optional[str] = None) -> None:
        self.add("feedback", feedback_type=feedback_type, action=action)

    def add_confirmation(self, action: str, confirmed: bool) -> None:
        self.add("confirmation", action=action, feedback_type="positive" if confirmed else "negative")

    def add_correction(self, original_phrase: str, wrong_action: str, intended: str) -> None:
        self.add("correction", original_phrase=original_phrase, action=wrong_action, intended=intended)

    def get_recent(self, seconds: float = 5) -> List[ContextEntry]:
        """Entries from the last N seconds."""
        cutoff = self._clock() - seconds
        return [e for e in self._history if e.timestamp > cutoff]

    def _last_of(self, entry_type: str) -> Optional[ContextEntry]:
        for entry in reversed(self._history):
            if entry.type == entry_type:
                return entry
        return None

    def get_last_action(self) -> Optional[ContextEntry]:
        return self._last_of("action")

    def get_last_speech(self) -> Optional[ContextEntry]:
        return self._last_of("speech")

    def has_recent_action(self, seconds: float = 5) -> bool:
        return any(e.type == "action" for e in self.get_recent(seconds))

    def has_recent_negative_feedback(self, seconds: float = 3) -> bool:
        return any(
            e.type in ("feedback", "confirmation") and e.feedback_type == "negative"
            for e in self.get_recent(seconds)
        )

    def get_speech_before_last_action(self) -> Optional[str]:
        """The phrase that most likely triggered the last action."""
        found_action = False
        for entry in reversed(self._history):
            if entry.type == "action":
                found_action = True
                continue
            if found_action and entry.type == "speech":
                return entry.text
        return None

    def clear(self) -> None:
        self._history.clear()

    def get_all(self) -> List[ContextEntry]:
        return list(self._history)

    def __len__(self) -> int:
        return len(self._history)

    def get_stats(self) -> Dict[str, Any]:
        actions = [e for e in self._history if e.type == "action"]
        corrections = [e for e in self._history if e.type == "correction"]
        negative = [e for e in self._history if e.feedback_type == "negative"]
        return {
            "total_entries": len(self._history),
            "actions": len(actions),
            "corrections": len(corrections),
            "negative_feedback": len(negative),
            "error_rate": round(len(corrections) / len(actions), 2) if actions else 0.0,
        }

    def format_for_prompt(self, n: int = 3) -> str:
        """Short summary of recent actions for the classifier prompt."""
        actions = [e for e in self._history if e.type == "action"][-n:]
        if not actions:
            return ""
        return "Recent actions: " + ", ".join(e.action for e in actions)
