"""
Shared test fixtures for the Parley test suite.
"""

import json
import sys
from pathlib import Path

import pytest


# === Path Setup ===

# Add tests directory to path (for helpers module)
TESTS_PATH = Path(__file__).parent
sys.path.insert(0, str(TESTS_PATH))

# Add src to path for imports
SRC_PATH = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(SRC_PATH))


from helpers import FakeClassifier, FakeTimerFactory, RecordingEffects  # noqa: E402

from parley.config import ParleyConfig  # noqa: E402
from parley.context import ContextWindow  # noqa: E402
from parley.dictionary import CommandDictionary, load_seed  # noqa: E402
from parley.learning import LearningLoop  # noqa: E402


# === Config Fixtures ===

@pytest.fixture
def config(tmp_path):
    """Default config with storage pointed at a temp dir."""
    config = ParleyConfig()
    config.storage.data_dir = str(tmp_path)
    return config


@pytest.fixture(autouse=True)
def isolate_config_env(monkeypatch, tmp_path):
    """Keep a developer's real config out of the tests."""
    monkeypatch.delenv("PARLEY_CONFIG", raising=False)
    monkeypatch.setattr("parley.config.DEFAULT_CONFIG_PATH", tmp_path / "no-such-config.yaml")
    monkeypatch.setattr("parley.config.PROJECT_CONFIG_PATH", tmp_path / "no-such-parley.yaml")
    monkeypatch.setattr("parley.config._config", None)


# === Dictionary Fixtures ===

@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "personal_commands.json"


@pytest.fixture
def dictionary(store_path):
    """Empty dictionary backed by a temp file."""
    dictionary = CommandDictionary(store_path)
    dictionary.load()
    return dictionary


@pytest.fixture
def seeded_dictionary(store_path):
    """Dictionary with the bundled default vocabulary."""
    dictionary = CommandDictionary(store_path)
    dictionary.load()
    dictionary.migrate_defaults(load_seed())
    return dictionary


@pytest.fixture
def write_store(store_path):
    """Factory: write a raw store document to disk."""
    def _factory(document):
        text = document if isinstance(document, str) else json.dumps(document)
        store_path.write_text(text, encoding="utf-8")
        return store_path
    return _factory


# === Learning Loop Fixtures ===

@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def effects():
    return RecordingEffects()


@pytest.fixture
def clock():
    """Settable clock: clock.now is returned by clock()."""
    class _Clock:
        now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return _Clock()


@pytest.fixture
def loop_factory(timers, effects, clock):
    """Factory: LearningLoop over a given dictionary with fake timers."""
    def _factory(dictionary, config=None, **kwargs):
        return LearningLoop(
            dictionary,
            effects=effects,
            config=config or ParleyConfig(),
            context=ContextWindow(clock=clock),
            timer_factory=timers,
            clock=clock,
            **kwargs,
        )
    return _factory


@pytest.fixture
def classifier():
    return FakeClassifier()


# === I/O Fixtures ===

@pytest.fixture
def mock_input_factory(monkeypatch):
    """Factory to mock input() with predetermined responses."""
    def _factory(responses):
        """
        Args:
            responses: List of strings to return for successive input() calls
        """
        response_iter = iter(responses)
        monkeypatch.setattr('builtins.input', lambda _: next(response_iter))
    return _factory


# === Test Markers ===

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: end-to-end tests across several modules (deselect with '-m \"not integration\"')")
