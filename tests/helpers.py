"""
Shared test helpers for the Parley test suite.
"""

from typing import List, Optional, Tuple

from parley.learning import Effects
from parley.resolver import Classification, Classifier


class FakeTimer:
    """Stands in for threading.Timer; fires only when a test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    @property
    def live(self) -> bool:
        return self.started and not self.cancelled

    def fire(self):
        """Run the callback as the timer thread would (a cancelled timer may still fire late)."""
        self.function()


class FakeTimerFactory:
    """Callable passed as timer_factory; remembers every timer it made."""

    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> List[FakeTimer]:
        return [t for t in self.timers if t.live]

    def fire_all(self):
        """Fire every timer that is still live."""
        for timer in self.live:
            timer.fire()


class RecordingEffects(Effects):
    """Records what the loop asked the host to do."""

    def __init__(self):
        self.spoken: List[str] = []
        self.executed: List[Tuple[str, Optional[str]]] = []

    def speak(self, text):
        self.spoken.append(text)

    def execute(self, action, target=None):
        self.executed.append((action, target))


class FakeClassifier(Classifier):
    """Returns a fixed Classification (or raises) and counts calls."""

    def __init__(self, action="enter", confidence=0.95, target=None, error=None):
        self.result = Classification(action=action, confidence=confidence, target=target)
        self.error = error
        self.calls = []

    async def classify(self, utterance, context=None):
        self.calls.append((utterance, context))
        if self.error is not None:
            raise self.error
        return self.result
