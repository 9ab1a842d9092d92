"""
Command Pipeline - one utterance in, one decision out.

Order of operations for every utterance:
  0. An active training session takes everything
  1. Feedback on the previous action? (undo, correction, yes/no)
  2. "computer learn" starts a training session
  3. Resolve: exact -> fuzzy -> AI
  4. Confidence policy: execute, ask, or treat as dictation

Usage:
    pipeline = build_pipeline(effects=my_effects)
    outcome = await pipeline.handle("save this", {"app_name": "Code"})
    if outcome.disposition is Disposition.DICTATE:
        type_text(outcome.text)
"""

import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from .config import ParleyConfig
from .dictionary import CommandDictionary, load_seed
from .learning import Effects, FeedbackOutcome, LearningLoop, NullEffects
from .resolver import ClaudeClassifier, Classifier, IntentResolver, ResolutionResult
from .training import TrainingMode, is_training_request


class Disposition(Enum):
    EXECUTE = "execute"
    CONFIRM = "confirm"
    DICTATE = "dictate"
    FEEDBACK = "feedback"
    TRAINING = "training"


def decide(result: Optional[ResolutionResult], config: Optional[ParleyConfig] = None) -> Disposition:
    """Caller-side confidence policy for a resolution."""
    policy = (config or ParleyConfig()).policy
    if result is None or not result.is_command:
        return Disposition.DICTATE
    if result.confidence >= policy.execute_threshold:
        return Disposition.EXECUTE
    if result.confidence >= policy.confirm_threshold:
        return Disposition.CONFIRM
    return Disposition.DICTATE


@dataclass
class PipelineOutcome:
    disposition: Disposition
    text: str
    result: Optional[ResolutionResult] = None
    feedback: Optional[FeedbackOutcome] = None


class CommandPipeline:
    """Glue between the resolver, the learning loop and the host's effects."""

    def __init__(
        self,
        resolver: IntentResolver,
        loop: LearningLoop,
        effects: Optional[Effects] = None,
        config: Optional[ParleyConfig] = None,
        training: Optional[TrainingMode] = None,
    ):
        self.resolver = resolver
        self.loop = loop
        self.effects = effects or loop.effects
        self.config = config or loop.config
        self.training = training

    @property
    def dictionary(self) -> CommandDictionary:
        return self.resolver.dictionary

    async def handle(self, utterance: str, context: Optional[Dict[str, Any]] = None) -> PipelineOutcome:
        """
        Process one utterance.

        Returns:
            PipelineOutcome; for DICTATE the host should type ``text``
        """
        if self.training is not None and self.training.handle_speech(utterance):
            return PipelineOutcome(Disposition.TRAINING, utterance)

        feedback = self.loop.handle_speech(utterance)
        if feedback.handled:
            return PipelineOutcome(Disposition.FEEDBACK, utterance, feedback=feedback)

        if self.training is not None and is_training_request(utterance):
            self.training.enter()
            return PipelineOutcome(Disposition.TRAINING, utterance)

        context = dict(context or {})
        recent = self.loop.context.format_for_prompt()
        if recent:
            context.setdefault("recent", recent)

        result = await self.resolver.resolve(utterance, context)
        disposition = decide(result, self.config)

        if disposition is Disposition.EXECUTE:
            logger.info(f"[pipeline] '{utterance}' -> {result.action} (tier {result.tier}, {result.confidence:.2f})")
            try:
                self.effects.execute(result.action, result.target)
            except Exception:
                logger.exception(f"[pipeline] Execute failed: {result.action}")
                return PipelineOutcome(disposition, utterance, result)
            self.loop.observe_action(utterance, result.action, result.confidence, result.tier, result.target)

        elif disposition is Disposition.CONFIRM:
            logger.info(f"[pipeline] '{utterance}' -> {result.action}? ({result.confidence:.2f})")
            self.loop.ask_for_confirmation(
                utterance,
                result.action,
                result.confidence,
                target=result.target,
            )

        else:
            logger.debug(f"[pipeline] Dictation: '{utterance}'")

        return PipelineOutcome(disposition, utterance, result)

    def close(self) -> None:
        """Stop timers and flush the store."""
        if self.training is not None:
            self.training.reset()
        self.loop.reset()
        self.dictionary.save()


def build_pipeline(
    config: Optional[ParleyConfig] = None,
    effects: Optional[Effects] = None,
    classifier: Optional[Classifier] = None,
    timer_factory=threading.Timer,
) -> CommandPipeline:
    """
    Wire up a ready-to-use pipeline.

    Loads the store (seeding the default vocabulary on first run) and uses
    ClaudeClassifier for Tier 3 unless a classifier is given or the
    resolver is disabled.
    """
    config = config or ParleyConfig()
    effects = effects or NullEffects()

    dictionary = CommandDictionary(
        config.storage.store_path,
        fuzzy_threshold=config.matching.fuzzy_threshold,
    )
    dictionary.load()
    if dictionary.is_empty():
        dictionary.migrate_defaults(load_seed(config.storage.seed_file))

    if classifier is None and config.resolver.enabled:
        classifier = ClaudeClassifier(
            model=config.resolver.model,
            timeout=config.resolver.timeout_seconds,
        )

    resolver = IntentResolver(dictionary, classifier, config)
    loop = LearningLoop(dictionary, effects, config, timer_factory=timer_factory)
    training = TrainingMode(dictionary, effects, config, timer_factory=timer_factory)
    return CommandPipeline(resolver, loop, effects, config, training)
