"""
Personal Command Dictionary - the phrase -> action store Parley learns into.

Single source of truth for every command mapping:
  1. Tier 1 - exact phrase lookup, O(1) hash
  2. Tier 2 - fuzzy lookup with RapidFuzz (handles recognizer slop)
  3. Learning - phrases added, re-mapped and forgotten as the user corrects us

Persisted as one JSON document, written atomically. Fields this version
does not know about are carried through untouched.
"""

import contextlib
import json
import os
import shutil
import tempfile
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from loguru import logger
from rapidfuzz import fuzz, process

from .config import CONFIG_DIR
from .errors import StoreError
from .variations import generate_variations, normalize_phrase


STORE_VERSION = "1.0.0"
DEFAULT_STORE_PATH = CONFIG_DIR / "personal_commands.json"
SEED_PATH = Path(__file__).parent / "data" / "default_commands.yaml"

SOURCES = ("default", "learned", "confirmed")
INITIAL_CONFIDENCE = {
    "default": 1.0,
    "confirmed": 0.9,
    "learned": 0.8,
}

_DOC_FIELDS = ("version", "created_at", "updated_at", "commands", "stats")
_DEFAULT_STATS = {
    "tier1_hits": 0,
    "tier2_hits": 0,
    "tier3_hits": 0,
    "last_cleanup": None,
}


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp a confidence into [low, high]."""
    return max(low, min(high, float(value)))


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass
class CommandEntry:
    """One action and every phrase that triggers it, with provenance."""
    id: str
    action: str
    phrases: List[str] = field(default_factory=list)
    confidence: float = 0.8
    source: str = "learned"           # default | learned | confirmed
    use_count: int = 0
    last_used: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)  # unknown fields from disk

    _KNOWN = ("id", "action", "phrases", "confidence", "source", "use_count",
              "last_used", "created_at", "updated_at", "description")

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "action": self.action,
            "phrases": list(self.phrases),
            "confidence": self.confidence,
            "source": self.source,
            "use_count": self.use_count,
            "last_used": self.last_used,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        })
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandEntry":
        """Build an entry from disk, coercing bad values back into range."""
        if not isinstance(data, dict):
            raise StoreError(f"Command entry must be an object, got {type(data).__name__}")
        action = data.get("action")
        phrases = data.get("phrases")
        if not isinstance(action, str) or not action:
            raise StoreError("Command entry is missing 'action'")
        if not isinstance(phrases, list):
            raise StoreError(f"Command '{action}' has no phrase list")

        source = data.get("source", "learned")
        if source not in SOURCES:
            logger.warning(f"[dictionary] Unknown source '{source}' on '{action}', treating as learned")
            source = "learned"

        try:
            confidence = clamp(data.get("confidence", INITIAL_CONFIDENCE[source]))
        except (TypeError, ValueError):
            confidence = INITIAL_CONFIDENCE[source]

        use_count = data.get("use_count", 0)
        if not isinstance(use_count, int) or use_count < 0:
            use_count = 0

        return cls(
            id=str(data.get("id") or f"cmd_{uuid.uuid4().hex[:8]}"),
            action=action,
            phrases=[p for p in (normalize_phrase(str(p)) for p in phrases) if p],
            confidence=confidence,
            source=source,
            use_count=use_count,
            last_used=data.get("last_used"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            description=data.get("description") or "",
            extra={k: v for k, v in data.items() if k not in cls._KNOWN},
        )


@dataclass
class DictionaryMatch:
    """A Tier 1 or Tier 2 hit."""
    entry: CommandEntry
    tier: int                 # 1 = exact, 2 = fuzzy
    similarity: float         # 1.0 for exact
    matched_phrase: str

    @property
    def action(self) -> str:
        return self.entry.action

    @property
    def confidence(self) -> float:
        return clamp(self.similarity * self.entry.confidence)


def load_seed(path: Optional[Path] = None) -> List[Dict[str, Any]]:
    """Load the bundled default vocabulary (list of {action, phrases, description})."""
    path = Path(path) if path else SEED_PATH
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data.get("commands", [])


class CommandDictionary:
    """
    Manages the personal command vocabulary.

    All reads and writes go through this class; callers never mutate a
    CommandEntry directly. Every structural change rebuilds the indexes
    before returning, so the next lookup always sees committed state.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        fuzzy_threshold: float = 0.70,
        autosave: bool = True,
    ):
        self.path = Path(path) if path else DEFAULT_STORE_PATH
        self.fuzzy_threshold = fuzzy_threshold
        self.autosave = autosave

        self._lock = threading.RLock()
        self._entries: List[CommandEntry] = []
        self._extra: Dict[str, Any] = {}
        self._created_at: Optional[str] = None
        self.stats: Dict[str, Any] = dict(_DEFAULT_STATS)

        self._phrase_index: Dict[str, CommandEntry] = {}
        self._fuzzy_choices: List[str] = []

    # === Persistence ===

    def load(self) -> None:
        """
        Load the store from disk.

        Never raises: a missing store gives an empty dictionary, a corrupt
        one is copied aside to ``<name>.corrupt`` and replaced by an empty one.
        """
        with self._lock:
            try:
                doc = self._read_store()
            except StoreError as e:
                logger.warning(f"[dictionary] Store unreadable, starting empty: {e}")
                self._quarantine()
                doc = None

            if doc is None:
                self._reset_empty()
            else:
                self._apply_document(doc)

            self.build_indexes()
            logger.info(
                f"[dictionary] Loaded {len(self._entries)} commands, "
                f"{len(self._phrase_index)} phrases"
            )

    def _read_store(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StoreError(str(e)) from e

        if not isinstance(doc, dict) or not isinstance(doc.get("commands", []), list):
            raise StoreError("top level must be an object with a 'commands' list")
        if not isinstance(doc.get("stats", {}), dict):
            raise StoreError("'stats' must be an object")
        return doc

    def _quarantine(self) -> None:
        """Keep a copy of a corrupt store so the user can recover it by hand."""
        if not self.path.exists():
            return
        backup = self.path.with_name(self.path.name + ".corrupt")
        try:
            shutil.copy2(self.path, backup)
            logger.warning(f"[dictionary] Corrupt store copied to {backup}")
        except OSError as e:
            logger.error(f"[dictionary] Could not back up corrupt store: {e}")

    def _reset_empty(self) -> None:
        self._entries = []
        self._extra = {}
        self._created_at = _now()
        self.stats = dict(_DEFAULT_STATS)

    def _apply_document(self, doc: Dict[str, Any]) -> None:
        self._extra = {k: v for k, v in doc.items() if k not in _DOC_FIELDS}
        self._created_at = doc.get("created_at") or _now()
        self.stats = dict(_DEFAULT_STATS)
        self.stats.update(doc.get("stats", {}))

        entries = []
        seen = set()
        for raw in doc.get("commands", []):
            try:
                entry = CommandEntry.from_dict(raw)
            except StoreError as e:
                logger.warning(f"[dictionary] Skipping malformed entry: {e}")
                continue

            unique = []
            for phrase in entry.phrases:
                if phrase in seen:
                    logger.warning(f"[dictionary] Dropping duplicate phrase '{phrase}' from '{entry.action}'")
                    continue
                seen.add(phrase)
                unique.append(phrase)
            entry.phrases = unique

            if entry.phrases or entry.source == "default":
                entries.append(entry)
        self._entries = entries

    def to_document(self) -> Dict[str, Any]:
        """The full persisted document, unknown fields included."""
        with self._lock:
            doc = dict(self._extra)
            doc.update({
                "version": STORE_VERSION,
                "created_at": self._created_at or _now(),
                "updated_at": _now(),
                "commands": [entry.to_dict() for entry in self._entries],
                "stats": dict(self.stats),
            })
            return doc

    def save(self) -> bool:
        """
        Write the store atomically (temp file in the same directory, then
        os.replace). A crash mid-write leaves the previous file intact.

        Returns:
            True if written, False if the write failed (logged, not raised)
        """
        with self._lock:
            doc = self.to_document()
            tmp_path = None
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(doc, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.path)
                return True
            except OSError as e:
                logger.error(f"[dictionary] Save failed, keeping previous store: {e}")
                if tmp_path:
                    with contextlib.suppress(OSError):
                        os.unlink(tmp_path)
                return False

    def _commit(self) -> None:
        """Reindex after a structural change, then persist."""
        self.build_indexes()
        if self.autosave:
            self.save()

    # === Indexes ===

    def build_indexes(self) -> None:
        """Rebuild the exact-match hash and the fuzzy phrase list."""
        with self._lock:
            index: Dict[str, CommandEntry] = {}
            for entry in self._entries:
                for phrase in entry.phrases:
                    owner = index.get(phrase)
                    if owner is not None and owner is not entry:
                        logger.warning(
                            f"[dictionary] Phrase '{phrase}' claimed by both "
                            f"'{owner.action}' and '{entry.action}', keeping first"
                        )
                        continue
                    index[phrase] = entry
            self._phrase_index = index
            self._fuzzy_choices = list(index)

    # === Lookup ===

    def lookup(self, phrase: str) -> Optional[DictionaryMatch]:
        """
        Tier 1 exact lookup, then Tier 2 fuzzy lookup.

        Args:
            phrase: Spoken phrase (case and punctuation are ignored)

        Returns:
            DictionaryMatch with the tier that hit, or None
        """
        normalized = normalize_phrase(phrase)
        if not normalized:
            return None

        with self._lock:
            match = self._match(normalized)
            if match is not None:
                key = "tier1_hits" if match.tier == 1 else "tier2_hits"
                self.stats[key] = self.stats.get(key, 0) + 1
            return match

    def _match(self, normalized: str) -> Optional[DictionaryMatch]:
        entry = self._phrase_index.get(normalized)
        if entry is not None:
            return DictionaryMatch(entry=entry, tier=1, similarity=1.0, matched_phrase=normalized)
        return self._match_fuzzy(normalized)

    def _match_fuzzy(self, normalized: str) -> Optional[DictionaryMatch]:
        if not self._fuzzy_choices:
            return None

        # fuzz.ratio is normalized Indel similarity on a 0-100 scale
        cutoff = round(self.fuzzy_threshold * 100, 6)
        result = process.extractOne(
            normalized,
            self._fuzzy_choices,
            scorer=fuzz.ratio,
            score_cutoff=cutoff,
        )
        if result is None:
            return None

        phrase, score, _ = result
        return DictionaryMatch(
            entry=self._phrase_index[phrase],
            tier=2,
            similarity=score / 100.0,
            matched_phrase=phrase,
        )

    def peek(self, phrase: str) -> Optional[DictionaryMatch]:
        """Same as lookup() but does not count toward tier stats."""
        normalized = normalize_phrase(phrase)
        if not normalized:
            return None
        with self._lock:
            return self._match(normalized)

    def find_entry(self, phrase: str, action: str) -> Optional[CommandEntry]:
        """The entry for ``action`` that ``phrase`` resolves to, if any."""
        match = self.peek(phrase)
        if match is not None and match.entry.action == action:
            return match.entry
        return None

    def get_entry(self, phrase: str) -> Optional[CommandEntry]:
        """Exact owner of a phrase, or None."""
        with self._lock:
            return self._phrase_index.get(normalize_phrase(phrase))

    # === Mutation ===

    def learn(
        self,
        phrase: str,
        action: str,
        source: str = "learned",
        confidence: Optional[float] = None,
    ) -> bool:
        """
        Map a phrase to an action.

        If the phrase already belongs to a different action, the new mapping
        wins and the phrase is taken away from the old entry. Re-teaching a
        learned phrase as confirmed promotes it.

        Args:
            phrase: Phrase to learn
            action: Action it maps to
            source: 'learned', 'confirmed' or 'default'
            confidence: Initial confidence for a newly created entry

        Returns:
            True if the dictionary changed
        """
        if source not in SOURCES:
            raise ValueError(f"Unknown source: {source}")

        normalized = normalize_phrase(phrase)
        if not normalized or not action:
            return False

        with self._lock:
            owner = self._phrase_index.get(normalized)
            if owner is not None:
                if owner.action == action and not (owner.source == "learned" and source == "confirmed"):
                    logger.debug(f"[dictionary] Phrase already known: '{normalized}' -> {action}")
                    return False
                if owner.action != action:
                    logger.info(f"[dictionary] Remapping '{normalized}': {owner.action} -> {action}")
                self._detach_phrase(owner, normalized)

            now = _now()
            entry = self._find_by_action(action, source)
            if entry is None:
                initial = INITIAL_CONFIDENCE[source] if confidence is None else confidence
                entry = CommandEntry(
                    id=f"cmd_{uuid.uuid4().hex[:8]}",
                    action=action,
                    confidence=clamp(initial),
                    source=source,
                    created_at=now,
                    description=self.description_for(action),
                )
                self._entries.append(entry)

            entry.phrases.append(normalized)
            entry.updated_at = now
            self._commit()

        logger.info(f"[dictionary] Learned ({source}): '{normalized}' -> {action}")
        return True

    def forget(self, phrase: str, force: bool = False) -> bool:
        """
        Remove a phrase from whichever entry holds it.

        An entry left with no phrases is removed too, except a default
        entry, which stays unless ``force`` is set.

        Returns:
            True if the phrase was removed
        """
        normalized = normalize_phrase(phrase)
        with self._lock:
            owner = self._phrase_index.get(normalized)
            if owner is None:
                return False
            self._detach_phrase(owner, normalized, force=force)
            self._commit()

        logger.info(f"[dictionary] Forgot: '{normalized}'")
        return True

    def forget_entry(self, entry: CommandEntry, force: bool = False) -> bool:
        """Remove a whole entry. Default entries need ``force``."""
        with self._lock:
            if entry.source == "default" and not force:
                return False
            if not any(e is entry for e in self._entries):
                return False
            self._entries = [e for e in self._entries if e is not entry]
            self._commit()

        logger.info(f"[dictionary] Forgot entry '{entry.action}' ({entry.source}, {len(entry.phrases)} phrases)")
        return True

    def _detach_phrase(self, owner: CommandEntry, phrase: str, force: bool = False) -> None:
        owner.phrases = [p for p in owner.phrases if p != phrase]
        owner.updated_at = _now()
        if not owner.phrases and (owner.source != "default" or force):
            self._entries = [e for e in self._entries if e is not owner]
        self.build_indexes()

    def adjust_confidence(self, entry: CommandEntry, delta: float) -> float:
        """Nudge an entry's confidence, clamped to [0, 1]. Returns the new value."""
        with self._lock:
            entry.confidence = clamp(entry.confidence + delta)
            entry.updated_at = _now()
            if self.autosave:
                self.save()
            return entry.confidence

    def record_use(self, entry: CommandEntry) -> None:
        """Count an accepted resolution."""
        with self._lock:
            entry.use_count += 1
            entry.last_used = _now()
            if self.autosave:
                self.save()

    def record_tier3_hit(self) -> None:
        with self._lock:
            self.stats["tier3_hits"] = self.stats.get("tier3_hits", 0) + 1

    def mark_cleanup(self) -> None:
        with self._lock:
            self.stats["last_cleanup"] = _now()
            if self.autosave:
                self.save()

    def migrate_defaults(self, seed: Iterable[Dict[str, Any]]) -> int:
        """
        Seed the bundled vocabulary. Only runs on an empty dictionary.

        Canonical phrases are claimed first; a phonetic variant that
        collides with a phrase already claimed is skipped. One-word phrases
        are indexed as spoken, without variants.

        Returns:
            Number of entries added
        """
        with self._lock:
            if self._entries:
                return 0

            logger.info("[dictionary] Migrating default commands...")
            claimed = set()
            by_action: Dict[str, CommandEntry] = {}
            canonical: Dict[str, List[str]] = {}
            now = _now()

            for item in seed:
                action = item.get("action")
                if not action:
                    continue
                entry = by_action.get(action)
                if entry is None:
                    entry = CommandEntry(
                        id=f"cmd_default_{action}",
                        action=action,
                        confidence=INITIAL_CONFIDENCE["default"],
                        source="default",
                        created_at=now,
                        description=item.get("description", ""),
                    )
                    by_action[action] = entry
                    canonical[action] = []
                for phrase in item.get("phrases", []):
                    normalized = normalize_phrase(phrase)
                    if normalized and normalized not in claimed:
                        claimed.add(normalized)
                        entry.phrases.append(normalized)
                        canonical[action].append(normalized)

            for action, entry in by_action.items():
                for phrase in canonical[action]:
                    # A misheard single word is usually another ordinary word
                    if " " not in phrase:
                        continue
                    for variant in generate_variations(phrase):
                        normalized = normalize_phrase(variant)
                        if normalized and normalized not in claimed:
                            claimed.add(normalized)
                            entry.phrases.append(normalized)

            self._entries.extend(by_action.values())
            self._commit()

        logger.info(f"[dictionary] Migrated {len(by_action)} default commands, {len(claimed)} phrases")
        return len(by_action)

    # === Queries ===

    def _find_by_action(self, action: str, source: str) -> Optional[CommandEntry]:
        for entry in self._entries:
            if entry.action == action and entry.source == source:
                return entry
        return None

    def entries(self, source: Optional[str] = None) -> List[CommandEntry]:
        """Snapshot of entries, optionally filtered by source."""
        with self._lock:
            return [e for e in self._entries if source is None or e.source == source]

    def actions(self) -> List[str]:
        with self._lock:
            return sorted({e.action for e in self._entries})

    def description_for(self, action: str) -> str:
        """Human wording for an action ("save the current file")."""
        with self._lock:
            for entry in self._entries:
                if entry.action == action and entry.description:
                    return entry.description
        return action.replace("_", " ").lower()

    def is_empty(self) -> bool:
        return not self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, phrase: str) -> bool:
        return normalize_phrase(phrase) in self._phrase_index

    def get_stats(self) -> Dict[str, Any]:
        """Hit counters plus derived rates, for diagnostics."""
        with self._lock:
            stats = dict(self.stats)
            total = stats.get("tier1_hits", 0) + stats.get("tier2_hits", 0) + stats.get("tier3_hits", 0)
            stats["total_commands"] = len(self._entries)
            stats["total_phrases"] = len(self._phrase_index)
            stats["total_lookups"] = total
            for tier in (1, 2, 3):
                hits = stats.get(f"tier{tier}_hits", 0)
                stats[f"tier{tier}_rate"] = round(hits / total, 2) if total else 0.0
            return stats

    def validate(self) -> List[str]:
        """
        Check the dictionary invariants.

        Returns:
            List of problems (empty if consistent)
        """
        issues = []
        seen: Dict[str, str] = {}
        with self._lock:
            for entry in self._entries:
                if entry.source not in SOURCES:
                    issues.append(f"Entry '{entry.action}': unknown source '{entry.source}'")
                if not 0.0 <= entry.confidence <= 1.0:
                    issues.append(f"Entry '{entry.action}': confidence {entry.confidence} out of range")
                if not entry.phrases and entry.source != "default":
                    issues.append(f"Entry '{entry.action}': no phrases")
                for phrase in entry.phrases:
                    if phrase in seen:
                        issues.append(f"Duplicate phrase: '{phrase}' ({seen[phrase]}, {entry.action})")
                    else:
                        seen[phrase] = entry.action
                    if phrase not in self._phrase_index:
                        issues.append(f"Phrase '{phrase}' missing from index")
        return issues
