"""
Intent resolver tests - tier order, the command gate, Tier 3 caching and failures.

Async code is driven with asyncio.run() from sync tests.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from helpers import FakeClassifier
from parley.config import ParleyConfig
from parley.errors import ClassificationError
from parley.resolver import (
    CORE_ACTIONS,
    SYSTEM_PROMPT,
    ClaudeClassifier,
    Classification,
    Classifier,
    IntentResolver,
    ResolutionResult,
    parse_classification,
)


SEED = [
    {"action": "save_file", "description": "save the current file", "phrases": ["save file", "save this"]},
    {"action": "close_tab", "description": "close this tab", "phrases": ["close tab"]},
]


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.fixture
def seeded(dictionary):
    dictionary.migrate_defaults(SEED)
    return dictionary


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def resolver_factory(seeded, fake_clock):
    def _factory(classifier=None, config=None):
        return IntentResolver(seeded, classifier, config or ParleyConfig(), clock=fake_clock)
    return _factory


def run(coro):
    return asyncio.run(coro)


class TestParseClassification:
    """Test parsing classifier replies."""

    def test_bare_json(self):
        """Verify a plain JSON object parses."""
        c = parse_classification('{"action": "enter", "confidence": 0.9}', CORE_ACTIONS)
        assert c == Classification("enter", 0.9, None)

    def test_embedded_json(self):
        """Verify JSON surrounded by chatter is found."""
        c = parse_classification(
            'Sure! {"action": "focus_app", "confidence": 0.8, "target": " Safari "} hope that helps',
            CORE_ACTIONS,
        )
        assert c.action == "focus_app"
        assert c.target == "Safari"

    def test_unknown_label_becomes_unknown(self):
        """Verify labels outside the known set map to unknown."""
        c = parse_classification('{"action": "launch_rockets", "confidence": 0.99}', CORE_ACTIONS)
        assert c.action == "unknown"

    def test_confidence_clamped_and_defaulted(self):
        """Verify confidence is clamped and defaults to 0.5."""
        assert parse_classification('{"action": "enter", "confidence": 4}').confidence == 1.0
        assert parse_classification('{"action": "enter"}').confidence == 0.5

    def test_blank_target_is_none(self):
        """Verify an empty target normalizes to None."""
        assert parse_classification('{"action": "enter", "target": "  "}').target is None

    @pytest.mark.parametrize("reply", [
        "",
        "no json here",
        '{"confidence": 0.9}',
        '{"action": "enter", "confidence": "high"}',
        '{"action": "enter", "confidence": NaN}',
        "[1, 2]",
    ])
    def test_malformed_raises(self, reply):
        """Verify unusable replies raise ClassificationError."""
        with pytest.raises(ClassificationError):
            parse_classification(reply)


class TestLooksLikeCommand:
    """Test the cheap command gate."""

    @pytest.mark.parametrize("text", [
        "open chrome",
        "go to terminal",
        "Close it",
        "hey turn the volume up",
        "send that",
        "computer new window",
    ])
    def test_commands_pass(self, resolver_factory, text):
        """Verify imperative and deictic phrasings pass."""
        assert resolver_factory().looks_like_command(text) is True

    @pytest.mark.parametrize("text", [
        "",
        "the quarterly numbers look strong",
        "open the file and then read every single line carefully",
    ])
    def test_non_commands_blocked(self, resolver_factory, text):
        """Verify prose and long utterances are blocked."""
        assert resolver_factory().looks_like_command(text) is False


class TestTiers:
    """Test tier ordering."""

    def test_tier1_preempts_classifier(self, resolver_factory):
        """Verify an exact hit never reaches Tier 3."""
        classifier = FakeClassifier(action="close_tab")
        result = run(resolver_factory(classifier).resolve("Save this!"))
        assert result.action == "save_file"
        assert result.tier == 1
        assert result.confidence == 1.0
        assert result.matched_phrase == "save this"
        assert classifier.calls == []

    def test_tier2_confidence(self, resolver_factory):
        """Verify Tier 2 confidence is similarity x entry confidence."""
        result = resolver_factory().resolve_with_dictionary("save the file")
        assert result.tier == 2
        assert result.action == "save_file"
        assert 0.7 <= result.confidence < 1.0

    def test_tier3_when_dictionary_misses(self, resolver_factory, seeded):
        """Verify an unmatched command-like utterance goes to Tier 3."""
        classifier = FakeClassifier(action="focus_app", confidence=0.92, target="chrome")
        result = run(resolver_factory(classifier).resolve("open chrome please", {"app_name": "Finder"}))
        assert result.tier == 3
        assert result.action == "focus_app"
        assert result.target == "chrome"
        assert classifier.calls == [("open chrome please", {"app_name": "Finder"})]
        assert seeded.stats["tier3_hits"] == 1

    def test_gate_skips_prose(self, resolver_factory):
        """Verify prose is dictation without an external call."""
        classifier = FakeClassifier()
        resolver = resolver_factory(classifier)
        assert run(resolver.resolve("the quarterly numbers look strong")) is None
        assert classifier.calls == []
        assert resolver.stats["skipped"] == 1

    def test_no_classifier(self, resolver_factory):
        """Verify missing Tier 3 means dictation."""
        assert run(resolver_factory().resolve("open chrome")) is None

    def test_disabled_resolver(self, resolver_factory):
        """Verify resolver.enabled=False turns Tier 3 off."""
        config = ParleyConfig()
        config.resolver.enabled = False
        classifier = FakeClassifier()
        assert run(resolver_factory(classifier, config).resolve("open chrome")) is None
        assert classifier.calls == []

    def test_empty_utterance(self, resolver_factory):
        """Verify empty text resolves to nothing."""
        assert run(resolver_factory(FakeClassifier()).resolve("  ")) is None

    def test_none_label_is_not_a_command(self):
        """Verify none/unknown results are flagged as non-commands."""
        assert ResolutionResult("none", 0.9, 3).is_command is False
        assert ResolutionResult("unknown", 0.1, 3).is_command is False
        assert ResolutionResult("enter", 0.9, 3).is_command is True


class TestTier3Failures:
    """Test classifier failures degrade to dictation."""

    @pytest.mark.parametrize("error", [
        ClassificationError("timed out"),
        RuntimeError("socket closed"),
    ])
    def test_error_returns_none(self, resolver_factory, error):
        """Verify errors are counted and yield None."""
        resolver = resolver_factory(FakeClassifier(error=error))
        assert run(resolver.resolve("open chrome")) is None
        assert resolver.stats["errors"] == 1

    def test_errors_not_cached(self, resolver_factory):
        """Verify a failure is retried on the next utterance."""
        classifier = FakeClassifier(error=ClassificationError("boom"))
        resolver = resolver_factory(classifier)
        run(resolver.resolve("open chrome"))
        run(resolver.resolve("open chrome"))
        assert len(classifier.calls) == 2


class TestCache:
    """Test Tier 3 caching."""

    def test_cache_hit(self, resolver_factory):
        """Verify a repeat utterance is served from cache."""
        classifier = FakeClassifier(action="focus_app", confidence=0.9, target="chrome")
        resolver = resolver_factory(classifier)
        run(resolver.resolve("open chrome"))
        second = run(resolver.resolve("Open Chrome."))

        assert len(classifier.calls) == 1
        assert second.cached is True
        assert second.latency_ms == 0.0
        assert resolver.stats["cache_hits"] == 1

    def test_cache_keyed_by_app(self, resolver_factory):
        """Verify the foreground app is part of the cache key."""
        classifier = FakeClassifier()
        resolver = resolver_factory(classifier)
        run(resolver.resolve("open chrome", {"app_name": "Finder"}))
        run(resolver.resolve("open chrome", {"app_name": "Terminal"}))
        assert len(classifier.calls) == 2

    def test_cache_expires(self, resolver_factory, fake_clock):
        """Verify entries older than the TTL are refetched."""
        classifier = FakeClassifier()
        resolver = resolver_factory(classifier)
        run(resolver.resolve("open chrome"))
        fake_clock.now += 301
        run(resolver.resolve("open chrome"))
        assert len(classifier.calls) == 2

    def test_cache_evicts_oldest(self, resolver_factory):
        """Verify the cache never exceeds its size, oldest out first."""
        config = ParleyConfig()
        config.resolver.cache_max_size = 2
        classifier = FakeClassifier()
        resolver = resolver_factory(classifier, config)

        for text in ("open chrome", "open safari", "open mail"):
            run(resolver.resolve(text))
        assert resolver.get_stats()["cache_size"] == 2

        run(resolver.resolve("open chrome"))
        assert len(classifier.calls) == 4

    def test_inflight_shared(self, resolver_factory):
        """Verify identical utterances mid-call share one classifier call."""
        classifier = FakeClassifier()
        release = None

        async def slow_classify(utterance, context=None):
            classifier.calls.append((utterance, context))
            await release.wait()
            return Classification("focus_app", 0.9, "chrome")

        classifier.classify = slow_classify
        resolver = resolver_factory(classifier)

        async def scenario():
            nonlocal release
            release = asyncio.Event()
            first = asyncio.ensure_future(resolver.resolve("open chrome"))
            second = asyncio.ensure_future(resolver.resolve("open chrome"))
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            release.set()
            return await first, await second

        first, second = run(scenario())
        assert len(classifier.calls) == 1
        assert first.action == second.action == "focus_app"

    def test_clear_cache(self, resolver_factory):
        """Verify clear_cache() forces a new call."""
        classifier = FakeClassifier()
        resolver = resolver_factory(classifier)
        run(resolver.resolve("open chrome"))
        resolver.clear_cache()
        run(resolver.resolve("open chrome"))
        assert len(classifier.calls) == 2


class TestStats:
    """Test get_stats()."""

    def test_stats(self, resolver_factory, fake_clock):
        """Verify calls, hit rate and latency are reported."""
        classifier = FakeClassifier()

        async def timed_classify(utterance, context=None):
            fake_clock.now += 0.2
            return Classification("enter", 0.9)

        classifier.classify = timed_classify
        resolver = resolver_factory(classifier)
        run(resolver.resolve("send that"))
        run(resolver.resolve("send that"))

        stats = resolver.get_stats()
        assert stats["calls"] == 1
        assert stats["cache_hits"] == 1
        assert stats["cache_hit_rate"] == 50
        assert stats["avg_latency_ms"] == 200


class TestClaudeClassifier:
    """Test the Claude Agent SDK classifier with the SDK mocked out."""

    def test_classifier_is_abstract(self):
        """Verify a Classifier must implement classify()."""
        with pytest.raises(TypeError):
            Classifier()

    def test_system_prompt_lists_actions(self):
        """Verify every known action is in the system prompt."""
        for action in CORE_ACTIONS:
            assert f"- {action}:" in SYSTEM_PROMPT

    def test_build_message(self):
        """Verify app and recent context are included."""
        message = ClaudeClassifier().build_message(
            "close it", {"app_name": "Safari", "recent": "Recent actions: new_tab"}
        )
        assert "User is in Safari" in message
        assert "Recent actions: new_tab" in message
        assert message.endswith('User said: "close it"')

    def test_classify_parses_reply(self):
        """Verify the collected reply is parsed."""
        classifier = ClaudeClassifier()
        with patch.object(classifier, "_collect", AsyncMock(return_value='{"action": "close_tab", "confidence": 0.88}')):
            result = run(classifier.classify("close it"))
        assert result == Classification("close_tab", 0.88, None)

    def test_timeout_wrapped(self):
        """Verify a slow SDK call becomes a ClassificationError."""
        classifier = ClaudeClassifier(timeout=0.01)

        async def never(prompt):
            await asyncio.sleep(10)

        with patch.object(classifier, "_collect", never):
            with pytest.raises(ClassificationError, match="timed out"):
                run(classifier.classify("close it"))

    def test_transport_error_wrapped(self):
        """Verify SDK exceptions become ClassificationError."""
        classifier = ClaudeClassifier()
        with patch.object(classifier, "_collect", AsyncMock(side_effect=ConnectionError("down"))):
            with pytest.raises(ClassificationError, match="transport failure"):
                run(classifier.classify("close it"))

    def test_collect_reads_text_blocks(self):
        """Verify only assistant text blocks are collected."""
        from claude_agent_sdk import AssistantMessage, TextBlock

        async def fake_query(prompt, options):
            yield AssistantMessage(content=[TextBlock(text='{"action": '), TextBlock(text='"enter"}')], model="haiku")

        with patch("parley.resolver.query", fake_query):
            text = run(ClaudeClassifier()._collect("send it"))
        assert text == '{"action": "enter"}'
