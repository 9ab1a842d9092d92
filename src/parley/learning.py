"""
Learning Loop - learn from how the user reacts to what we did.

After every action the loop watches for a reaction:
  - silence for a few seconds      -> small confidence boost
  - "undo" / "oops" right away     -> confidence drop
  - "no, I meant X"                -> bigger drop, learn the phrase for X
  - "yes" / "no" to a confirmation -> confirm or reject the mapping

States:
    IDLE -> OBSERVING -> IDLE
    IDLE -> AWAITING_CONFIRMATION -> IDLE | AWAITING_CORRECTION
    OBSERVING -> AWAITING_CORRECTION -> IDLE

Timers run on their own threads. Every entry point and timer callback
takes the loop lock, and a timer only acts if it is still the live timer
for its kind.

Usage:
    loop = LearningLoop(dictionary, effects=my_effects)
    loop.observe_action("save this", "save_file", 0.82, tier=1)
    outcome = loop.handle_speech("no, I meant close tab")
"""

import abc
import re
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from loguru import logger

from .config import ParleyConfig
from .context import ContextWindow
from .dictionary import CommandDictionary, CommandEntry, clamp
from .resolver import CORE_ACTIONS, NON_ACTIONS
from .variations import normalize_phrase


class LearningState(Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    AWAITING_CORRECTION = "awaiting_correction"


@dataclass
class PendingConfirmation:
    """A suggestion we asked the user about."""
    phrase: str
    suggested_action: str
    confidence: float
    timestamp: float
    target: Optional[str] = None
    description: str = ""


@dataclass
class CorrectionContext:
    """The action currently under observation (or being corrected)."""
    phrase: str
    action: str
    confidence: float
    tier: Optional[int]
    timestamp: float


@dataclass
class FeedbackOutcome:
    """What handle_speech() made of an utterance."""
    handled: bool = False
    is_correction: bool = False
    intended_phrase: Optional[str] = None


class Effects(abc.ABC):
    """Side effects the loop may request. Implemented by the host."""

    @abc.abstractmethod
    def speak(self, text: str) -> None:
        ...

    @abc.abstractmethod
    def execute(self, action: str, target: Optional[str] = None) -> None:
        ...


class NullEffects(Effects):
    """Does nothing. Used when no host is attached."""

    def speak(self, text: str) -> None:
        pass

    def execute(self, action: str, target: Optional[str] = None) -> None:
        pass


# === Phrase grammars ===
# Matched against lower-cased text with trailing punctuation removed.
# Each pattern is (regex, index of the group holding the intended phrase).

CORRECTION_PATTERNS = [
    (re.compile(r"^no[,.]?\s+(?:i\s+)?(?:meant|mean|wanted|want)\s+(.+)$"), 1),
    (re.compile(r"^(?:that'?s\s+)?wrong[,.]?\s+(?:i\s+)?(?:meant|mean|wanted|want)\s+(.+)$"), 1),
    (re.compile(r"^not\s+that[,.]?\s+(.+)$"), 1),
    (re.compile(r"^i\s+said\s+(.+)$"), 1),
    (re.compile(r"^(?:actually|instead)[,.]?\s+(.+)$"), 1),
    (re.compile(r"^(?:no|nope|nah|wrong|that'?s\s+wrong|not\s+that)$"), None),
]

UNDO_PATTERNS = [
    re.compile(r"^(?:computer[,]?\s+)?(?:undo|retract)(?:\s+that)?$"),
    re.compile(r"^oops$"),
]

AFFIRMATIVE_WORDS = frozenset({
    "yes", "yeah", "yep", "yup", "correct", "right", "affirmative",
    "confirm", "that's right", "thats right", "exactly", "sure",
})

NEGATIVE_WORDS = frozenset({
    "no", "nope", "nah", "wrong", "that's wrong", "thats wrong", "not that",
})

_WHITESPACE = re.compile(r"\s+")
_TRAILING = re.compile(r"[\s.!?,]+$")

# Which state owns which timer
_TIMER_STATES = {
    "observation": LearningState.OBSERVING,
    "confirmation": LearningState.AWAITING_CONFIRMATION,
    "correction": LearningState.AWAITING_CORRECTION,
}


def _clean(text: str) -> str:
    """Lowercase and tidy whitespace, keeping apostrophes and commas."""
    text = _WHITESPACE.sub(" ", (text or "").lower()).strip()
    return _TRAILING.sub("", text)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


class LearningLoop:
    """
    Feedback state machine on top of a CommandDictionary.

    All dictionary changes go through the dictionary's API; the loop never
    edits an entry in place.
    """

    def __init__(
        self,
        dictionary: CommandDictionary,
        effects: Optional[Effects] = None,
        config: Optional[ParleyConfig] = None,
        context: Optional[ContextWindow] = None,
        on_state_change: Optional[Callable[[LearningState, LearningState], None]] = None,
        timer_factory=threading.Timer,
        clock=time.time,
    ):
        self.dictionary = dictionary
        self.effects = effects or NullEffects()
        self.config = config or ParleyConfig()
        self.context = context or ContextWindow()
        self.on_state_change = on_state_change
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._state = LearningState.IDLE
        self._timers: Dict[str, object] = {}
        self.pending_confirmation: Optional[PendingConfirmation] = None
        self.correction_context: Optional[CorrectionContext] = None

    @property
    def state(self) -> LearningState:
        return self._state

    # === State & timers ===

    def _set_state(self, new_state: LearningState) -> None:
        old_state = self._state
        self._state = new_state

        for kind, owner in _TIMER_STATES.items():
            if owner is not new_state:
                self._cancel_timer(kind)
        if new_state is not LearningState.AWAITING_CONFIRMATION:
            self.pending_confirmation = None
        if new_state not in (LearningState.OBSERVING, LearningState.AWAITING_CORRECTION):
            self.correction_context = None

        logger.debug(f"[learning] {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            try:
                self.on_state_change(new_state, old_state)
            except Exception:
                logger.exception("[learning] on_state_change callback failed")

    def _start_timer(self, kind: str, delay: float, callback: Callable[[], None]) -> None:
        self._cancel_timer(kind)
        holder = {}

        def fire():
            with self._lock:
                if self._timers.get(kind) is not holder["timer"]:
                    return
                del self._timers[kind]
                try:
                    callback()
                except Exception:
                    logger.exception(f"[learning] {kind} timer failed")

        timer = self._timer_factory(delay, fire)
        holder["timer"] = timer
        timer.daemon = True
        self._timers[kind] = timer
        timer.start()

    def _cancel_timer(self, kind: str) -> None:
        timer = self._timers.pop(kind, None)
        if timer is not None:
            timer.cancel()

    def active_timers(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._timers))

    # === Effects ===

    def _speak(self, text: str) -> None:
        try:
            self.effects.speak(text)
        except Exception:
            logger.exception(f"[learning] speak failed: {text!r}")

    def _execute(self, action: str, target: Optional[str]) -> None:
        try:
            self.effects.execute(action, target)
        except Exception:
            logger.exception(f"[learning] execute failed: {action}")

    # === Confidence bookkeeping ===

    def _credit(self, observed: CorrectionContext) -> None:
        """No objection within the window: implicit positive."""
        entry = self.dictionary.find_entry(observed.phrase, observed.action)
        self.context.add_feedback("positive", observed.action)
        if entry is None:
            return
        new = self.dictionary.adjust_confidence(entry, self.config.adjustments.implicit_positive)
        self.dictionary.record_use(entry)
        logger.info(f"[learning] Implicit positive: '{observed.phrase}' -> {observed.action} ({new:.2f})")

    def _penalize(self, phrase: str, action: str, delta: float) -> Optional[float]:
        """Apply negative feedback. A non-default entry under the floor is forgotten."""
        entry = self.dictionary.find_entry(phrase, action)
        if entry is None:
            return None
        new = self.dictionary.adjust_confidence(entry, delta)
        logger.info(f"[learning] Penalized '{phrase}' -> {action} by {delta:+.2f} ({new:.2f})")
        if entry.source != "default" and new < self.config.policy.remove_learned_floor:
            self._remove(entry)
        return new

    def _remove(self, entry: CommandEntry) -> None:
        if self.dictionary.forget_entry(entry):
            logger.info(f"[learning] Removed low-confidence mapping for {entry.action}")

    # === Observation ===

    def observe_action(
        self,
        phrase: str,
        action: str,
        confidence: float,
        tier: Optional[int],
        target: Optional[str] = None,
    ) -> None:
        """
        Start watching for a reaction to an action that was just executed.

        Args:
            phrase: What the user said
            action: What we did
            confidence: Confidence we did it with
            tier: Resolver tier that produced it (1, 2 or 3)
            target: Optional action target (e.g. an app name)
        """
        with self._lock:
            if self._state is LearningState.OBSERVING and self.correction_context is not None:
                self._cancel_timer("observation")
                self._credit(self.correction_context)

            self.context.add_speech(phrase)
            self.context.add_action(action, confidence, tier)

            if (
                tier == 3
                and action not in NON_ACTIONS
                and confidence >= self.config.policy.auto_learn_threshold
            ):
                self.dictionary.learn(phrase, action, source="learned", confidence=confidence)

            self._set_state(LearningState.OBSERVING)
            self.correction_context = CorrectionContext(
                phrase=normalize_phrase(phrase),
                action=action,
                confidence=clamp(confidence),
                tier=tier,
                timestamp=self._clock(),
            )
            self._start_timer(
                "observation",
                self.config.timing.implicit_feedback_seconds,
                self._on_observation_elapsed,
            )

    def _on_observation_elapsed(self) -> None:
        if self._state is not LearningState.OBSERVING or self.correction_context is None:
            return
        self._credit(self.correction_context)
        self._set_state(LearningState.IDLE)

    # === Speech ===

    def handle_speech(self, text: str) -> FeedbackOutcome:
        """
        Check an utterance for feedback on the current state.

        Returns:
            FeedbackOutcome; handled=False means process it normally
        """
        cleaned = _clean(text)
        if not cleaned:
            return FeedbackOutcome()

        with self._lock:
            if self._state is LearningState.AWAITING_CONFIRMATION:
                return self._handle_confirmation_reply(cleaned)

            if self._state is LearningState.AWAITING_CORRECTION:
                return self._resolve_correction(cleaned)

            if self._state is LearningState.OBSERVING:
                if self.is_undo(cleaned):
                    self._handle_undo()
                    return FeedbackOutcome(handled=True, is_correction=True)
                is_correction, intended = self.parse_correction(cleaned)
                if is_correction:
                    return self._begin_correction(intended)

            return FeedbackOutcome()

    def _handle_undo(self) -> None:
        observed = self.correction_context
        self._cancel_timer("observation")
        if observed is not None:
            self.context.add_feedback("negative", observed.action)
            self._penalize(observed.phrase, observed.action, self.config.adjustments.immediate_undo)
        self._set_state(LearningState.IDLE)

    def _begin_correction(self, intended: Optional[str]) -> FeedbackOutcome:
        observed = self.correction_context
        if observed is None:
            self._set_state(LearningState.IDLE)
            return FeedbackOutcome()

        delta = self.config.adjustments.correction_wrong
        self._cancel_timer("observation")
        self.context.add_feedback("negative", observed.action)
        self._penalize(observed.phrase, observed.action, delta)

        self._enter_correction(replace(observed, confidence=clamp(observed.confidence + delta)))
        if intended:
            return self._resolve_correction(intended)

        self._speak("What did you mean?")
        return FeedbackOutcome(handled=True, is_correction=True)

    def _enter_correction(self, wrong: CorrectionContext) -> None:
        self._set_state(LearningState.AWAITING_CORRECTION)
        self.correction_context = replace(wrong, timestamp=self._clock())
        self._start_timer(
            "correction",
            self.config.timing.correction_timeout_seconds,
            self._on_correction_timeout,
        )

    def _resolve_correction(self, text: str) -> FeedbackOutcome:
        """The user told us what they meant. Learn it if we can."""
        wrong = self.correction_context
        if wrong is None:
            self._set_state(LearningState.IDLE)
            return FeedbackOutcome()

        intended = normalize_phrase(text)
        action = self._derive_action(intended, exclude=wrong.action)
        self.context.add_correction(wrong.phrase, wrong.action, intended)

        if action is not None:
            self.dictionary.learn(
                wrong.phrase,
                action,
                source="confirmed",
                confidence=self.config.adjustments.correction_right,
            )
            logger.info(f"[learning] Correction: '{wrong.phrase}' -> {action} (was {wrong.action})")
            self._speak(f"Got it. '{wrong.phrase}' means {self.dictionary.description_for(action)}.")
        else:
            logger.info(f"[learning] Correction noted without a mapping: '{intended}'")
            self._speak("Okay.")

        self._set_state(LearningState.IDLE)
        return FeedbackOutcome(handled=True, is_correction=True, intended_phrase=intended)

    def _derive_action(self, intended: str, exclude: str) -> Optional[str]:
        """Action the intended phrase stands for, other than the wrong one."""
        if not intended:
            return None

        match = self.dictionary.peek(intended)
        if match is not None and match.action != exclude:
            return match.action

        label = intended.replace(" ", "_")
        known = set(self.dictionary.actions()) | set(CORE_ACTIONS)
        if label in known and label not in NON_ACTIONS and label != exclude:
            return label
        return None

    def _on_correction_timeout(self) -> None:
        if self._state is LearningState.AWAITING_CORRECTION:
            logger.debug("[learning] Correction timed out")
            self._set_state(LearningState.IDLE)

    # === Confirmation ===

    def ask_for_confirmation(
        self,
        phrase: str,
        suggested_action: str,
        confidence: float,
        description: Optional[str] = None,
        target: Optional[str] = None,
    ) -> None:
        """Ask "Did you mean ...?" and wait for a yes or no."""
        with self._lock:
            description = description or self.dictionary.description_for(suggested_action)
            self._set_state(LearningState.AWAITING_CONFIRMATION)
            self.pending_confirmation = PendingConfirmation(
                phrase=normalize_phrase(phrase),
                suggested_action=suggested_action,
                confidence=clamp(confidence),
                timestamp=self._clock(),
                target=target,
                description=description,
            )
            self._start_timer(
                "confirmation",
                self.config.timing.confirmation_timeout_seconds,
                self._on_confirmation_timeout,
            )
            self._speak(f"Did you mean {description}?")

    def _handle_confirmation_reply(self, text: str) -> FeedbackOutcome:
        pending = self.pending_confirmation
        if pending is None:
            self._set_state(LearningState.IDLE)
            return FeedbackOutcome()

        self._cancel_timer("confirmation")
        action = pending.suggested_action

        if self.is_affirmative(text):
            self.context.add_confirmation(action, True)
            self._execute(action, pending.target)
            self.dictionary.learn(pending.phrase, action, source="confirmed", confidence=pending.confidence)
            entry = self.dictionary.find_entry(pending.phrase, action)
            if entry is not None:
                self.dictionary.adjust_confidence(entry, self.config.adjustments.explicit_positive)
                self.dictionary.record_use(entry)
            logger.info(f"[learning] Confirmed: '{pending.phrase}' -> {action}")
            self._speak("Got it.")
            self._set_state(LearningState.IDLE)
            return FeedbackOutcome(handled=True)

        wrong = CorrectionContext(
            phrase=pending.phrase,
            action=action,
            confidence=pending.confidence,
            tier=None,
            timestamp=pending.timestamp,
        )

        if self.is_negative(text):
            delta = self.config.adjustments.explicit_negative
            self.context.add_confirmation(action, False)
            self._penalize(pending.phrase, action, delta)
            self._enter_correction(replace(wrong, confidence=clamp(pending.confidence + delta)))
            logger.info(f"[learning] Rejected: '{pending.phrase}' -> {action}")
            self._speak("What did you mean?")
            return FeedbackOutcome(handled=True, is_correction=True)

        # Neither yes nor no: take it as what they meant
        self.context.add_confirmation(action, False)
        self._enter_correction(wrong)
        return self._resolve_correction(text)

    def _on_confirmation_timeout(self) -> None:
        if self._state is LearningState.AWAITING_CONFIRMATION:
            logger.debug("[learning] Confirmation timed out")
            self._set_state(LearningState.IDLE)

    # === Policy & grammar ===

    def should_execute_immediately(self, confidence: float) -> bool:
        return confidence >= self.config.policy.execute_threshold

    def should_ask_confirmation(self, confidence: float) -> bool:
        policy = self.config.policy
        return policy.confirm_threshold <= confidence < policy.execute_threshold

    def is_affirmative(self, text: str) -> bool:
        return _clean(text) in AFFIRMATIVE_WORDS

    def is_negative(self, text: str) -> bool:
        return _clean(text) in NEGATIVE_WORDS

    def is_undo(self, text: str) -> bool:
        cleaned = _clean(text)
        return any(pattern.match(cleaned) for pattern in UNDO_PATTERNS)

    def looks_like_correction(self, text: str) -> bool:
        return self.parse_correction(text)[0]

    def parse_correction(self, text: str) -> Tuple[bool, Optional[str]]:
        """
        Match the correction grammar.

        Returns:
            (is_correction, intended phrase or None)
        """
        cleaned = _clean(text)
        for pattern, group in CORRECTION_PATTERNS:
            match = pattern.match(cleaned)
            if not match:
                continue
            if group is None:
                return True, None
            intended = normalize_phrase(match.group(group))
            return True, intended or None
        return False, None

    # === Maintenance ===

    def cleanup_unused(self, now: Optional[datetime] = None) -> int:
        """
        Decay learned mappings nobody has used lately.

        Only ``learned`` entries are touched. One that falls under the
        removal floor is forgotten.

        Returns:
            Number of entries removed
        """
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.config.timing.stale_after_days)
        removed = 0

        with self._lock:
            for entry in self.dictionary.entries(source="learned"):
                last = _parse_timestamp(entry.last_used or entry.created_at)
                if last is not None and last >= cutoff:
                    continue
                new = self.dictionary.adjust_confidence(entry, self.config.adjustments.unused_decay)
                if new < self.config.policy.remove_learned_floor and self.dictionary.forget_entry(entry):
                    removed += 1

            if removed:
                self.dictionary.build_indexes()
            self.dictionary.mark_cleanup()

        logger.info(f"[learning] Cleanup removed {removed} unused mappings")
        return removed

    def reset(self) -> None:
        """Cancel every timer and drop all transient state."""
        with self._lock:
            for kind in list(self._timers):
                self._cancel_timer(kind)
            self._set_state(LearningState.IDLE)
