"""
Training Mode - teach a new phrase by talking it through.

A short conversation that ends in one or more confirmed dictionary phrases:

    user: computer learn
    parley: Training mode. What should I learn?
    user: when I say "yeet", close the tab
    parley: Got it. "yeet" will close the tab. Want to add other ways to say this?
    user: also "yeet it"
    parley: Added. Anything else?
    user: done
    parley: "yeet" or "yeet it" will close the tab. Say "confirm" to save or "cancel" to discard.
    user: confirm
    parley: Learned!

States:
    IDLE -> LISTENING -> COLLECTING_VARIATIONS -> CONFIRMING -> SAVING -> IDLE

"cancel" or "never mind" discards at any point; "stop" or "exit" asks to
save whatever was collected. Silence times out: a session with something
to save moves to CONFIRMING, anything else is discarded.
"""

import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from .config import ParleyConfig
from .dictionary import CommandDictionary
from .learning import Effects, NullEffects
from .resolver import CORE_ACTIONS, NON_ACTIONS
from .variations import normalize_phrase


class TrainingState(Enum):
    IDLE = "idle"
    LISTENING = "listening"
    COLLECTING_VARIATIONS = "collecting_variations"
    CONFIRMING = "confirming"
    SAVING = "saving"


@dataclass
class TrainingSession:
    """What has been collected so far."""
    id: str
    started_at: str
    phrases: List[str] = field(default_factory=list)
    action: Optional[str] = None
    description: str = ""
    history: List[Dict[str, str]] = field(default_factory=list)

    def add_history(self, role: str, content: str) -> None:
        self.history.append({
            "role": role,
            "content": content,
            "timestamp": datetime.now().isoformat(timespec="seconds"),
        })

    @property
    def complete(self) -> bool:
        return bool(self.phrases) and self.action is not None


# === Phrase grammars ===

TRAINING_REQUEST = re.compile(
    r"^(?:computer[,]?\s+)?(?:learn|teach|training mode|start training)"
    r"(?:\s+(?:this|something|a command|a phrase))?$"
)

_QUOTED = re.compile(r"[\"“']([^\"”']+)[\"”']")
_WHEN_I_SAY = re.compile(r"^when\s+i\s+say\s+(.+?),\s*(.+)$", re.IGNORECASE)
_AFTER_COMMA = re.compile(r",\s*(.+)$")
_DESCRIPTION_LEAD = re.compile(r"^(?:(?:it\s+)?(?:should|will|means)\s+|do\s+|then\s+|please\s+)", re.IGNORECASE)
_ALSO = re.compile(r"^also\s+", re.IGNORECASE)

CANCEL_WORDS = frozenset({"cancel", "nevermind", "never mind"})
STOP_WORDS = frozenset({"exit", "stop"})
DONE_WORDS = frozenset({"no", "nope", "done", "that's it", "thats it", "that's all", "thats all"})
SAVE_WORDS = frozenset({"yes", "yeah", "yep", "confirm", "affirmative", "save"})
DISCARD_WORDS = frozenset({"no", "nope"})

CLARIFY_REQUEST = (
    "I need you to say: 'When I say [phrase], do [action]'. "
    "For example: 'When I say ship it, press enter'."
)
CLARIFY_CONFIRM = 'Say "confirm" to save or "cancel" to discard.'

_WHITESPACE = re.compile(r"\s+")
_TRAILING = re.compile(r"[\s.!?,]+$")


def _clean(text: str) -> str:
    text = _WHITESPACE.sub(" ", (text or "").lower()).strip()
    return _TRAILING.sub("", text)


def is_training_request(text: str) -> bool:
    """True for "computer learn" and friends."""
    return bool(TRAINING_REQUEST.match(_clean(text)))


def parse_training_request(text: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Pull the trigger phrase and the action description out of a request.

    Accepts a quoted phrase anywhere ("When I say 'yeet', close the tab")
    or the unquoted "when I say PHRASE, ACTION" form.

    Returns:
        (phrase, description); either may be None
    """
    text = (text or "").strip()
    quoted = _QUOTED.search(text)
    if quoted:
        phrase = quoted.group(1)
        rest = text[quoted.end():]
        after = _AFTER_COMMA.search(rest) or _AFTER_COMMA.search(text)
        description = after.group(1) if after else None
    else:
        spoken = _WHEN_I_SAY.match(text)
        if not spoken:
            return None, None
        phrase, description = spoken.group(1), spoken.group(2)

    phrase = normalize_phrase(phrase) or None
    if description:
        description = _TRAILING.sub("", _DESCRIPTION_LEAD.sub("", description.strip())) or None
    return phrase, description


class TrainingMode:
    """
    Conversational training session on top of a CommandDictionary.

    Timers and effects are injected the same way as for LearningLoop.
    """

    def __init__(
        self,
        dictionary: CommandDictionary,
        effects: Optional[Effects] = None,
        config: Optional[ParleyConfig] = None,
        on_state_change: Optional[Callable[[TrainingState, TrainingState], None]] = None,
        timer_factory=threading.Timer,
        clock=time.time,
    ):
        self.dictionary = dictionary
        self.effects = effects or NullEffects()
        self.config = config or ParleyConfig()
        self.on_state_change = on_state_change
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._state = TrainingState.IDLE
        self._timers: Dict[str, object] = {}
        self.session: Optional[TrainingSession] = None

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is not TrainingState.IDLE

    def _set_state(self, new_state: TrainingState) -> None:
        old_state = self._state
        self._state = new_state
        logger.debug(f"[training] {old_state.value} -> {new_state.value}")
        if self.on_state_change is not None:
            try:
                self.on_state_change(new_state, old_state)
            except Exception:
                logger.exception("[training] on_state_change callback failed")

    def _say(self, text: str) -> None:
        if self.session is not None:
            self.session.add_history("parley", text)
        try:
            self.effects.speak(text)
        except Exception:
            logger.exception(f"[training] speak failed: {text!r}")

    # === Timers ===

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
                    logger.exception(f"[training] {kind} timer failed")

        timer = self._timer_factory(delay, fire)
        holder["timer"] = timer
        timer.daemon = True
        self._timers[kind] = timer
        timer.start()

    def _cancel_timer(self, kind: str) -> None:
        timer = self._timers.pop(kind, None)
        if timer is not None:
            timer.cancel()

    def _clear_timers(self) -> None:
        for kind in list(self._timers):
            self._cancel_timer(kind)

    def _start_timeout(self, duration: float) -> None:
        self._clear_timers()
        warning = self.config.timing.training_warning_seconds
        if duration > warning:
            self._start_timer("warning", duration - warning, self._on_warning)
        self._start_timer("timeout", duration, self._on_timeout)

    def _on_warning(self) -> None:
        if self.is_active:
            self._say("Still there?")

    def _on_timeout(self) -> None:
        if not self.is_active:
            return
        logger.info(f"[training] Timed out in {self._state.value}")
        if self._state is not TrainingState.CONFIRMING and self.session is not None and self.session.complete:
            self._confirm()
        else:
            self._discard()

    # === Session ===

    def enter(self) -> bool:
        """Start a session. False if one is already running."""
        with self._lock:
            if self.is_active:
                logger.debug("[training] Already in training mode")
                return False

            now = self._clock()
            self.session = TrainingSession(
                id=f"train_{int(now * 1000)}",
                started_at=datetime.fromtimestamp(now).isoformat(timespec="seconds"),
            )
            self._set_state(TrainingState.LISTENING)
            self._say("Training mode. What should I learn?")
            self._start_timeout(self.config.timing.training_listening_seconds)
            return True

    def exit(self, save: bool = False) -> bool:
        """Leave training mode, saving the session or throwing it away."""
        with self._lock:
            if not self.is_active:
                return False
            if save and self.session is not None and self.session.complete:
                self._save()
            else:
                self._discard()
            return True

    def reset(self) -> None:
        """Drop the session silently and cancel every timer."""
        with self._lock:
            self._clear_timers()
            self.session = None
            if self.is_active:
                self._set_state(TrainingState.IDLE)

    def _discard(self) -> None:
        self._clear_timers()
        logger.info("[training] Session discarded")
        self._say("Cancelled.")
        self.session = None
        self._set_state(TrainingState.IDLE)

    def _save(self) -> None:
        self._clear_timers()
        session = self.session
        self._set_state(TrainingState.SAVING)

        saved = 0
        for phrase in session.phrases:
            if self.dictionary.learn(phrase, session.action, source="confirmed"):
                saved += 1
        logger.info(f"[training] Saved {saved} phrase(s) for {session.action}")

        self._say("Learned!")
        self._say("Training off.")
        self.session = None
        self._set_state(TrainingState.IDLE)

    # === Speech ===

    def handle_speech(self, text: str) -> bool:
        """
        Feed an utterance to the session.

        Returns:
            True if training mode consumed it
        """
        with self._lock:
            if not self.is_active or self.session is None:
                return False
            cleaned = _clean(text)
            if not cleaned:
                return True

            self._clear_timers()
            self.session.add_history("user", text)

            if cleaned in CANCEL_WORDS:
                self._discard()
            elif cleaned in STOP_WORDS:
                if self.session.complete and self._state is not TrainingState.CONFIRMING:
                    self._confirm()
                else:
                    self._discard()
            elif self._state is TrainingState.LISTENING:
                self._handle_request(text)
            elif self._state is TrainingState.COLLECTING_VARIATIONS:
                self._handle_variation(text, cleaned)
            elif self._state is TrainingState.CONFIRMING:
                self._handle_confirmation(cleaned)
            return True

    def _handle_request(self, text: str) -> None:
        phrase, description = parse_training_request(text)
        if phrase is None:
            self._say(CLARIFY_REQUEST)
            self._start_timeout(self.config.timing.training_listening_seconds)
            return

        action = self._derive_action(description)
        if action is None:
            what = f"how to {description}" if description else "what that should do"
            self._say(f"I don't know {what}. Try naming a command, like 'close the tab'.")
            self._start_timeout(self.config.timing.training_listening_seconds)
            return

        session = self.session
        session.phrases.append(phrase)
        session.action = action
        session.description = description or self.dictionary.description_for(action)

        self._set_state(TrainingState.COLLECTING_VARIATIONS)
        self._say(f'Got it. "{phrase}" will {session.description}. Want to add other ways to say this?')
        self._start_timeout(self.config.timing.training_collecting_seconds)

    def _derive_action(self, description: Optional[str]) -> Optional[str]:
        """Known action a description names, by dictionary phrase or by label."""
        if not description:
            return None
        intended = normalize_phrase(description)
        match = self.dictionary.peek(intended)
        if match is not None and match.action not in NON_ACTIONS:
            return match.action

        label = intended.replace(" ", "_")
        known = set(self.dictionary.actions()) | set(CORE_ACTIONS)
        if label in known and label not in NON_ACTIONS:
            return label
        return None

    def _handle_variation(self, text: str, cleaned: str) -> None:
        if cleaned in DONE_WORDS:
            self._confirm()
            return

        quoted = _QUOTED.search(text)
        phrase = normalize_phrase(quoted.group(1) if quoted else _ALSO.sub("", text.strip()))
        if phrase and phrase not in self.session.phrases:
            self.session.phrases.append(phrase)
            self._say("Added. Anything else?")
        else:
            self._say("Already have that. Anything else?")
        self._start_timeout(self.config.timing.training_collecting_seconds)

    def _confirm(self) -> None:
        session = self.session
        self._set_state(TrainingState.CONFIRMING)
        phrases = " or ".join(f'"{p}"' for p in session.phrases)
        self._say(f"{phrases} will {session.description}. {CLARIFY_CONFIRM}")
        self._start_timeout(self.config.timing.training_confirming_seconds)

    def _handle_confirmation(self, cleaned: str) -> None:
        if cleaned in SAVE_WORDS:
            self._save()
        elif cleaned in DISCARD_WORDS:
            self._discard()
        else:
            self._say(CLARIFY_CONFIRM)
            self._start_timeout(self.config.timing.training_confirming_seconds)
