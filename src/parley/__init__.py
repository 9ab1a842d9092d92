"""
Parley: voice commands that learn from you

Decides whether a spoken utterance is dictation or one of your commands,
and learns new phrasings from how you react.
"""

__version__ = "0.1.0"

from .config import ParleyConfig
from .dictionary import CommandDictionary, CommandEntry
from .learning import Effects, LearningLoop, LearningState, NullEffects
from .pipeline import CommandPipeline, Disposition, build_pipeline
from .resolver import ClaudeClassifier, IntentResolver, ResolutionResult
from .training import TrainingMode, TrainingState
from .variations import generate_variations, normalize_phrase

__all__ = [
    "ParleyConfig",
    "CommandDictionary",
    "CommandEntry",
    "Effects",
    "LearningLoop",
    "LearningState",
    "NullEffects",
    "CommandPipeline",
    "Disposition",
    "build_pipeline",
    "ClaudeClassifier",
    "IntentResolver",
    "ResolutionResult",
    "TrainingMode",
    "TrainingState",
    "generate_variations",
    "normalize_phrase",
]
