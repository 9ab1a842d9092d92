"""
Intent Resolver - turn an utterance into a single best action.

Three tiers, in strict preference order:
  1. Exact dictionary match       (instant, free)
  2. Fuzzy / phonetic match       (instant, free)
  3. External AI classification   (slow, costs money, can fail)

Tier 3 only runs when tiers 1/2 found nothing AND the utterance passes
the cheap looks_like_command() gate. Its answers are cached briefly, and
identical utterances arriving mid-call share the call in flight.

The resolver never raises on a Tier 3 failure; it returns None and the
caller treats the utterance as dictation.
"""

import abc
import asyncio
import json
import math
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, Optional, Tuple

from claude_agent_sdk import (
    query,
    ClaudeAgentOptions,
    AssistantMessage,
    TextBlock,
)
from loguru import logger

from .config import ParleyConfig
from .dictionary import CommandDictionary, clamp
from .errors import ClassificationError
from .variations import normalize_phrase


# Actions the execution layer understands, with the hints the classifier sees.
CORE_ACTIONS: Dict[str, str] = {
    "enter": 'Submit/send/confirm ("send it", "go ahead", "submit", "done")',
    "newline": 'Insert a line break ("new line", "next line")',
    "escape": 'Press escape ("cancel that", "escape")',
    "undo": 'Undo last action ("take that back", "oops", "undo that")',
    "clear_all": 'Clear everything ("start over", "clear it", "delete all")',
    "copy": 'Copy selection ("copy that", "grab this")',
    "paste": 'Paste clipboard ("paste it", "put it here")',
    "cut": 'Cut selection ("cut that", "move this")',
    "select_all": 'Select all text ("select everything", "highlight all")',
    "save_file": 'Save the current file ("save this", "save it")',
    "scroll_up": 'Scroll up ("go up", "scroll up a bit")',
    "scroll_down": 'Scroll down ("go down", "scroll down a bit")',
    "page_up": 'Previous page ("previous page", "page up")',
    "page_down": 'Next page ("next page", "page down")',
    "focus_app": 'Switch to an app ("open chrome", "go to terminal"); put the app name in "target"',
    "new_tab": 'New tab ("new tab", "open tab")',
    "close_tab": 'Close current tab ("close this", "close tab")',
    "volume_up": "Raise volume",
    "volume_down": "Lower volume",
    "mute": "Mute audio",
    "stop_listening": 'Stop voice input ("stop", "quiet", "shut up")',
    "start_listening": 'Resume voice input ("listen", "wake up")',
    "mode_general": "Switch to general mode",
    "mode_claude": "Switch to claude mode",
    "mode_music": "Switch to music mode",
    "tts_on": "Turn text-to-speech on",
    "tts_off": "Turn text-to-speech off",
    "smart_mode_on": "Turn smart mode on",
    "smart_mode_off": "Turn smart mode off",
    "none": "User is dictating text, not giving a command",
    "unknown": "Can't determine intent",
}

NON_ACTIONS = ("none", "unknown")


def _build_system_prompt(actions: Dict[str, str]) -> str:
    lines = [
        "You are a voice command interpreter for a speech-to-text app. Decide what "
        "action the user wants based on their natural speech.",
        "",
        "IMPORTANT: Be concise. Return ONLY valid JSON, no explanation.",
        "",
        "Available actions:",
    ]
    lines.extend(f"- {name}: {hint}" for name, hint in actions.items())
    lines.extend([
        "",
        "Response format:",
        '{"action": "action_name", "confidence": 0.0-1.0, "target": "optional target"}',
        "",
        "Examples:",
        'User: "send it" -> {"action": "enter", "confidence": 0.95}',
        'User: "go to safari" -> {"action": "focus_app", "confidence": 0.9, "target": "safari"}',
        'User: "I need to write an email" -> {"action": "none", "confidence": 0.85}',
        'User: "blargblarg" -> {"action": "unknown", "confidence": 0.1}',
    ])
    return "\n".join(lines)


SYSTEM_PROMPT = _build_system_prompt(CORE_ACTIONS)

# Cheap "is this imperative?" gate. Any pattern matching is enough.
COMMAND_PATTERNS = [
    re.compile(
        r"^(go|open|switch|focus|close|new|stop|start|send|submit|undo|redo|clear|copy|"
        r"paste|cut|select|scroll|mute|unmute|volume|save|delete|press|hit|show|hide|"
        r"next|previous|page|zoom|play|pause|skip|launch|quit|exit|cancel|escape|read)\b"
    ),
    re.compile(r"^(do|make|set|turn|toggle|enable|disable|put|take|bring|move)\b"),
    re.compile(r"\b(please|now|it|this|that)$"),
    re.compile(r"^(okay|ok|hey|hi|yo|computer)\s"),
]

_JSON_OBJECT = re.compile(r"\{[^{}]*\}", re.S)


@dataclass
class Classification:
    """What the external classifier said."""
    action: str
    confidence: float
    target: Optional[str] = None


@dataclass
class ResolutionResult:
    """Best guess for one utterance. Transient, never persisted."""
    action: str
    confidence: float
    tier: int                              # 1 exact, 2 fuzzy, 3 external
    target: Optional[str] = None
    latency_ms: float = 0.0
    matched_phrase: Optional[str] = None
    cached: bool = False

    @property
    def is_command(self) -> bool:
        return self.action not in NON_ACTIONS


def parse_classification(text: str, known_actions: Optional[Iterable[str]] = None) -> Classification:
    """
    Parse a classifier reply into a Classification.

    Accepts a bare JSON object or one embedded in chatter. Labels outside
    ``known_actions`` become 'unknown'.

    Raises:
        ClassificationError: reply has no usable JSON object
    """
    if not text or not text.strip():
        raise ClassificationError("empty reply")

    try:
        data = json.loads(text)
    except ValueError:
        match = _JSON_OBJECT.search(text)
        if not match:
            raise ClassificationError(f"no JSON object in reply: {text[:80]!r}")
        try:
            data = json.loads(match.group(0))
        except ValueError as e:
            raise ClassificationError(f"malformed JSON in reply: {e}") from e

    if not isinstance(data, dict):
        raise ClassificationError("reply is not a JSON object")

    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        raise ClassificationError("reply has no action")
    action = action.strip().lower()
    if known_actions is not None and action not in set(known_actions):
        logger.debug(f"[resolver] Unrecognized action label '{action}', treating as unknown")
        action = "unknown"

    raw_confidence = data.get("confidence", 0.5)
    try:
        confidence = float(raw_confidence)
    except (TypeError, ValueError) as e:
        raise ClassificationError(f"bad confidence: {raw_confidence!r}") from e
    if math.isnan(confidence):
        raise ClassificationError("confidence is NaN")

    target = data.get("target")
    if target is not None:
        target = str(target).strip() or None

    return Classification(action=action, confidence=clamp(confidence), target=target)


class Classifier(abc.ABC):
    """Tier 3 capability: (utterance, context) -> Classification."""

    @abc.abstractmethod
    async def classify(self, utterance: str, context: Optional[Dict[str, Any]] = None) -> Classification:
        ...


class ClaudeClassifier(Classifier):
    """Classifies utterances with a one-turn, tool-less Claude Agent SDK query."""

    def __init__(
        self,
        model: str = "haiku",
        timeout: float = 8.0,
        known_actions: Optional[Iterable[str]] = None,
    ):
        self.model = model
        self.timeout = timeout
        self.known_actions = tuple(known_actions) if known_actions else tuple(CORE_ACTIONS)

    def build_message(self, utterance: str, context: Optional[Dict[str, Any]] = None) -> str:
        context = context or {}
        hints = []
        if context.get("app_name"):
            hints.append(f"Context: User is in {context['app_name']}.")
        if context.get("recent"):
            hints.append(context["recent"])
        hints.append(f'User said: "{utterance}"')
        return " ".join(hints)

    async def _collect(self, prompt: str) -> str:
        options = ClaudeAgentOptions(
            system_prompt=SYSTEM_PROMPT,
            model=self.model,
            allowed_tools=[],
            max_turns=1,
        )
        parts = []
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        parts.append(block.text)
        return "".join(parts)

    async def classify(self, utterance: str, context: Optional[Dict[str, Any]] = None) -> Classification:
        prompt = self.build_message(utterance, context)
        try:
            text = await asyncio.wait_for(self._collect(prompt), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ClassificationError(f"timed out after {self.timeout}s") from e
        except Exception as e:
            raise ClassificationError(f"transport failure: {e}") from e
        return parse_classification(text, self.known_actions)


class IntentResolver:
    """
    Resolves utterances tier by tier, avoiding external calls when it can.

    Confidence policy (execute / confirm / dictate) is the caller's job;
    see pipeline.decide().
    """

    def __init__(
        self,
        dictionary: CommandDictionary,
        classifier: Optional[Classifier] = None,
        config: Optional[ParleyConfig] = None,
        clock=time.monotonic,
    ):
        self.dictionary = dictionary
        self.classifier = classifier
        self.config = config or ParleyConfig()
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, ResolutionResult]]" = OrderedDict()
        self._inflight: Dict[str, "asyncio.Future"] = {}
        self.stats = {
            "calls": 0,
            "cache_hits": 0,
            "errors": 0,
            "skipped": 0,
            "total_latency_ms": 0.0,
        }

    def looks_like_command(self, text: str) -> bool:
        """Heuristic gate run before any external call. No I/O."""
        lower = normalize_phrase(text)
        if not lower:
            return False
        if len(lower.split()) > self.config.matching.max_command_words:
            return False
        return any(pattern.search(lower) for pattern in COMMAND_PATTERNS)

    def resolve_with_dictionary(
        self,
        text: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResolutionResult]:
        """Tier 1 exact, then Tier 2 fuzzy. Never calls out."""
        start = self._clock()
        match = self.dictionary.lookup(text)
        if match is None:
            return None
        return ResolutionResult(
            action=match.action,
            confidence=match.confidence,
            tier=match.tier,
            latency_ms=(self._clock() - start) * 1000,
            matched_phrase=match.matched_phrase,
        )

    async def resolve(
        self,
        text: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResolutionResult]:
        """
        Resolve an utterance to its best action.

        Args:
            text: Transcribed utterance
            context: Optional hints, e.g. {"app_name": "Safari"}

        Returns:
            ResolutionResult, or None when the utterance should be dictation
        """
        normalized = normalize_phrase(text)
        if not normalized:
            return None

        result = self.resolve_with_dictionary(normalized, context)
        if result is not None:
            return result

        if self.classifier is None or not self.config.resolver.enabled:
            return None
        if not self.looks_like_command(normalized):
            self.stats["skipped"] += 1
            return None

        return await self._resolve_external(normalized, context)

    async def _resolve_external(
        self,
        normalized: str,
        context: Optional[Dict[str, Any]],
    ) -> Optional[ResolutionResult]:
        key = self._cache_key(normalized, context)

        cached = self._cache_get(key)
        if cached is not None:
            self.stats["cache_hits"] += 1
            logger.debug(f"[resolver] Cache hit: '{normalized}' -> {cached.action}")
            return cached

        pending = self._inflight.get(key)
        if pending is not None:
            self.stats["cache_hits"] += 1
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._call_classifier(normalized, context, key))
        self._inflight[key] = task
        try:
            return await asyncio.shield(task)
        finally:
            if self._inflight.get(key) is task:
                del self._inflight[key]

    async def _call_classifier(
        self,
        normalized: str,
        context: Optional[Dict[str, Any]],
        key: str,
    ) -> Optional[ResolutionResult]:
        start = self._clock()
        self.stats["calls"] += 1
        try:
            classification = await self.classifier.classify(normalized, context)
        except Exception as e:
            self.stats["errors"] += 1
            logger.warning(f"[resolver] Tier 3 failed for '{normalized}': {e}")
            return None

        latency_ms = (self._clock() - start) * 1000
        self.stats["total_latency_ms"] += latency_ms
        self.dictionary.record_tier3_hit()

        result = ResolutionResult(
            action=classification.action,
            confidence=clamp(classification.confidence),
            tier=3,
            target=classification.target,
            latency_ms=latency_ms,
        )
        self._cache_put(key, result)
        logger.debug(
            f"[resolver] Tier 3: '{normalized}' -> {result.action} "
            f"({result.confidence:.2f}, {latency_ms:.0f}ms)"
        )
        return result

    # === Cache ===

    def _cache_key(self, normalized: str, context: Optional[Dict[str, Any]]) -> str:
        app = (context or {}).get("app_name") or ""
        return f"{normalized}|{app.lower()}"

    def _cache_get(self, key: str) -> Optional[ResolutionResult]:
        item = self._cache.get(key)
        if item is None:
            return None
        stored_at, result = item
        if self._clock() - stored_at > self.config.resolver.cache_ttl_seconds:
            del self._cache[key]
            return None
        self._cache.move_to_end(key)
        return replace(result, latency_ms=0.0, cached=True)

    def _cache_put(self, key: str, result: ResolutionResult) -> None:
        self._cache[key] = (self._clock(), result)
        self._cache.move_to_end(key)
        while len(self._cache) > self.config.resolver.cache_max_size:
            self._cache.popitem(last=False)

    def clear_cache(self) -> None:
        self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        calls = self.stats["calls"]
        lookups = calls + self.stats["cache_hits"]
        return {
            **self.stats,
            "cache_size": len(self._cache),
            "avg_latency_ms": round(self.stats["total_latency_ms"] / calls) if calls else 0,
            "cache_hit_rate": round(self.stats["cache_hits"] / lookups * 100) if lookups else 0,
        }
