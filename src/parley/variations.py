"""
Phonetic variations - expand a command phrase into the ways a speech
recognizer tends to mishear it.

Covers three kinds of error:
- similar sounding words and fragments ("power" -> "hour", "th" -> "f")
- whole-word confusions learned from real transcripts
- word boundaries ("power mode" -> "powermode", "power-mode")

Pure functions, no state, never raises.
"""

import re
from typing import Dict, List


# Recognizer confusions. Keys are matched as whole words first, then as
# fragments inside a word (first occurrence only).
SUBSTITUTIONS: Dict[str, List[str]] = {
    # Vowel sounds
    "a": ["ah", "uh", "ar"],
    "e": ["eh", "ee", "er"],
    "i": ["ee", "eye", "ih"],
    "o": ["oh", "aw", "or"],
    "u": ["oo", "uh", "you"],

    # Consonant sounds
    "b": ["p"],
    "d": ["t"],
    "g": ["k", "c"],
    "v": ["f"],
    "z": ["s"],
    "th": ["t", "d", "f"],
    "sh": ["ch", "s"],
    "ch": ["sh", "tch"],

    # Whole-word confusions
    "power": ["powered", "par", "pour", "tower", "powder", "hour", "flower"],
    "hour": ["power"],
    "claude": ["cloud", "clod", "claw", "clawed"],
    "ableton": ["able ton", "able to", "able turn", "abelton", "ableten", "able ten"],
    "music": ["musical", "muse ik"],
    "general": ["genral"],
}

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_phrase(phrase: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    if not phrase:
        return ""
    result = _PUNCTUATION.sub("", phrase.lower())
    return _WHITESPACE.sub(" ", result).strip()


def generate_variations(phrase: str) -> List[str]:
    """
    Generate plausible misheard variants of a phrase.

    Args:
        phrase: The canonical phrase (e.g. "power mode")

    Returns:
        Variants in discovery order, the original phrase first.
    """
    original = _WHITESPACE.sub(" ", (phrase or "").lower()).strip()
    variations = {original: None}  # dict keeps insertion order
    words = original.split(" ") if original else []

    for i, word in enumerate(words):
        # Whole-word substitution
        for sub in SUBSTITUTIONS.get(word, []):
            new_words = list(words)
            new_words[i] = sub
            variations.setdefault(" ".join(new_words), None)

        # Fragment substitution ("ableton" contains "ton"-like sounds, etc.)
        for key, subs in SUBSTITUTIONS.items():
            if key not in word:
                continue
            for sub in subs:
                new_word = word.replace(key, sub, 1)
                if new_word != word:
                    new_words = list(words)
                    new_words[i] = new_word
                    variations.setdefault(" ".join(new_words), None)

    # Word boundary errors on two-word phrases
    if len(words) == 2:
        variations.setdefault("".join(words), None)
        variations.setdefault("-".join(words), None)

    return list(variations)


def create_command_variations(phrase: str, action: str, prefix: str = "") -> Dict[str, str]:
    """
    Map every variation of a phrase to the same action.

    Args:
        phrase: The original phrase
        action: Action id the variants resolve to
        prefix: Optional wake prefix (e.g. "computer")

    Returns:
        Dict of variant -> action
    """
    commands = {}
    for variation in generate_variations(phrase):
        key = f"{prefix} {variation}" if prefix else variation
        commands[key] = action
    return commands
