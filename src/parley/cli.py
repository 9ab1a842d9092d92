"""
Parley CLI - inspect and train your voice command dictionary.

Usage:
    parley test                     Type utterances instead of speaking
    parley list                     List every command and its phrases
    parley stats                    Tier hit rates and store size
    parley learn "ship it" enter    Teach a phrase
    parley forget "ship it"         Forget a phrase
    parley cleanup                  Decay learned phrases nobody uses
    parley validate                 Check the dictionary for problems
    parley variations "power mode"  Show how a phrase may be misheard
"""

import argparse
import asyncio
import json
import sys
from typing import Optional

from loguru import logger

from . import __version__
from .config import ParleyConfig, get_config
from .dictionary import CommandDictionary, load_seed
from .errors import ConfigError
from .learning import Effects, LearningLoop
from .pipeline import Disposition, build_pipeline
from .variations import generate_variations


class Colors:
    """ANSI color codes for terminal output."""
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    MAGENTA = "\033[35m"
    CYAN = "\033[36m"

    @classmethod
    def disable(cls):
        """Disable colors (for non-TTY output)."""
        for attr in dir(cls):
            if not attr.startswith('_') and attr.isupper():
                setattr(cls, attr, "")


if not sys.stdout.isatty():
    Colors.disable()


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Send logs to stderr, and optionally to a rotating file."""
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "WARNING")
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="14 days",
            enqueue=True,
            backtrace=True,
            diagnose=False,
            level="DEBUG" if verbose else "INFO",
        )


class ConsoleEffects(Effects):
    """Prints what a real host would say and do."""

    def speak(self, text: str) -> None:
        print(f"{Colors.MAGENTA}[says]{Colors.RESET} {text}")

    def execute(self, action: str, target: Optional[str] = None) -> None:
        suffix = f" {Colors.DIM}({target}){Colors.RESET}" if target else ""
        print(f"{Colors.GREEN}[does]{Colors.RESET} {Colors.BOLD}{action}{Colors.RESET}{suffix}")


def open_dictionary(config: ParleyConfig) -> CommandDictionary:
    """Load the store, seeding defaults on first use."""
    dictionary = CommandDictionary(
        config.storage.store_path,
        fuzzy_threshold=config.matching.fuzzy_threshold,
    )
    dictionary.load()
    if dictionary.is_empty():
        dictionary.migrate_defaults(load_seed(config.storage.seed_file))
    return dictionary


# === Commands ===

def cmd_test(args, config: ParleyConfig) -> int:
    """Interactive mode: type utterances, see what Parley would do."""
    if args.offline:
        config.resolver.enabled = False

    pipeline = build_pipeline(config, effects=ConsoleEffects())
    context = {"app_name": args.app} if args.app else None

    print(f"{Colors.BOLD}{'=' * 50}{Colors.RESET}")
    print(f"{Colors.GREEN}PARLEY TEST MODE{Colors.RESET}")
    print(f"{Colors.DIM}Type utterances. Commands: quit, state, help{Colors.RESET}")
    print(f"{Colors.BOLD}{'=' * 50}{Colors.RESET}")
    print(f"\n{Colors.CYAN}Loaded {len(pipeline.dictionary)} commands.{Colors.RESET}")

    try:
        while True:
            try:
                text = input(f"\n{Colors.GREEN}>{Colors.RESET} ").strip()
            except (EOFError, KeyboardInterrupt):
                print(f"\n{Colors.DIM}Exiting.{Colors.RESET}")
                break

            if not text:
                continue
            if text.lower() in ("quit", "exit", "q"):
                break
            if text.lower() == "state":
                print(f"  {Colors.CYAN}{pipeline.loop.state.value}{Colors.RESET}")
                if pipeline.training.is_active:
                    print(f"  {Colors.CYAN}training: {pipeline.training.state.value}{Colors.RESET}")
                continue
            if text.lower() == "help":
                print(f"\n{Colors.BOLD}Commands:{Colors.RESET}")
                print(f"  {Colors.CYAN}state{Colors.RESET}    - Show the learning state")
                print(f"  {Colors.CYAN}quit{Colors.RESET}     - Exit test mode")
                print(f"  {Colors.CYAN}computer learn{Colors.RESET} - Teach a new phrase")
                print(f"  {Colors.DIM}<phrase>{Colors.RESET} - Resolve an utterance")
                continue

            outcome = asyncio.run(pipeline.handle(text, context))
            result = outcome.result
            if outcome.disposition is Disposition.DICTATE:
                print(f"{Colors.YELLOW}[types]{Colors.RESET} {text}")
            elif outcome.disposition is Disposition.FEEDBACK:
                print(f"{Colors.DIM}(feedback taken){Colors.RESET}")
            elif outcome.disposition is Disposition.TRAINING:
                print(f"{Colors.DIM}(training){Colors.RESET}")
            if result is not None:
                print(
                    f"  {Colors.DIM}{result.action} tier {result.tier} "
                    f"conf {result.confidence:.2f} {result.latency_ms:.0f}ms"
                    f"{' cached' if result.cached else ''}{Colors.RESET}"
                )
    finally:
        pipeline.close()
    return 0


def cmd_list(args, config: ParleyConfig) -> int:
    """Display all commands."""
    dictionary = open_dictionary(config)
    entries = dictionary.entries(source=args.source)

    print("\n" + "=" * 50)
    print("PARLEY COMMANDS")
    print("=" * 50)

    for entry in sorted(entries, key=lambda e: (e.action, e.source)):
        print(
            f"\n  {Colors.BOLD}{entry.action}{Colors.RESET} "
            f"{Colors.DIM}[{entry.source}, {entry.confidence:.2f}, used {entry.use_count}x]{Colors.RESET}"
        )
        phrases = entry.phrases if args.all else entry.phrases[:5]
        for phrase in phrases:
            print(f"    \"{phrase}\"")
        hidden = len(entry.phrases) - len(phrases)
        if hidden > 0:
            print(f"    {Colors.DIM}... and {hidden} more{Colors.RESET}")
    return 0


def cmd_stats(args, config: ParleyConfig) -> int:
    """Show dictionary statistics."""
    stats = open_dictionary(config).get_stats()
    if args.json:
        print(json.dumps(stats, indent=2))
        return 0

    print(f"\n{Colors.BOLD}Dictionary{Colors.RESET}")
    print(f"  Commands:      {stats['total_commands']}")
    print(f"  Phrases:       {stats['total_phrases']}")
    print(f"  Lookups:       {stats['total_lookups']}")
    for tier in (1, 2, 3):
        hits = stats.get(f"tier{tier}_hits", 0)
        rate = stats.get(f"tier{tier}_rate", 0.0)
        print(f"  Tier {tier}:        {hits} ({rate:.0%})")
    print(f"  Last cleanup:  {stats.get('last_cleanup') or 'never'}")
    return 0


def cmd_learn(args, config: ParleyConfig) -> int:
    dictionary = open_dictionary(config)
    source = "confirmed" if args.confirmed else "learned"
    if dictionary.learn(args.phrase, args.action, source=source):
        print(f"{Colors.GREEN}Learned:{Colors.RESET} \"{args.phrase}\" → {args.action}")
        return 0
    print(f"{Colors.YELLOW}Nothing to learn:{Colors.RESET} \"{args.phrase}\" already maps to {args.action}")
    return 1


def cmd_forget(args, config: ParleyConfig) -> int:
    dictionary = open_dictionary(config)
    entry = dictionary.get_entry(args.phrase)
    if entry is None:
        print(f"{Colors.RED}Unknown phrase:{Colors.RESET} \"{args.phrase}\"")
        return 1

    dictionary.forget(args.phrase, force=args.force)
    print(f"{Colors.GREEN}Forgot:{Colors.RESET} \"{args.phrase}\" ({entry.action})")
    return 0


def cmd_cleanup(args, config: ParleyConfig) -> int:
    """Decay and remove learned phrases that went unused."""
    dictionary = open_dictionary(config)
    loop = LearningLoop(dictionary, config=config)
    removed = loop.cleanup_unused()
    print(f"{Colors.GREEN}Cleanup done.{Colors.RESET} Removed {removed} unused mapping(s).")
    return 0


def cmd_validate(args, config: ParleyConfig) -> int:
    """Validate the dictionary."""
    print("Validating dictionary...")
    dictionary = open_dictionary(config)
    issues = dictionary.validate()

    if issues:
        print(f"\n{Colors.RED}Found {len(issues)} issue(s):{Colors.RESET}\n")
        for issue in issues:
            print(f"  - {issue}")
        return 1

    print(f"\n{Colors.GREEN}✓ Dictionary valid{Colors.RESET}")
    print(f"  {len(dictionary)} commands")
    print(f"  {dictionary.get_stats()['total_phrases']} phrases")
    return 0


def cmd_variations(args, config: ParleyConfig) -> int:
    variations = generate_variations(args.phrase)
    print(f"\n{Colors.BOLD}{len(variations)} variations of \"{args.phrase}\":{Colors.RESET}")
    for variation in variations:
        print(f"  {variation}")
    return 0


COMMANDS = {
    "test": cmd_test,
    "list": cmd_list,
    "stats": cmd_stats,
    "learn": cmd_learn,
    "forget": cmd_forget,
    "cleanup": cmd_cleanup,
    "validate": cmd_validate,
    "variations": cmd_variations,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='parley',
        description='Voice command dictionary that learns from you'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', type=str, help='Path to a config YAML file')
    parser.add_argument('--verbose', '-v', action='store_true', help='Show debug logs')
    parser.add_argument('--log-file', type=str, help='Also write logs to this file')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    test_parser = subparsers.add_parser('test', help='Type utterances instead of speaking')
    test_parser.add_argument('--app', type=str, help='Pretend this app is in the foreground')
    test_parser.add_argument('--offline', action='store_true', help='Never call the AI classifier')

    list_parser = subparsers.add_parser('list', help='List commands')
    list_parser.add_argument('--source', choices=['default', 'learned', 'confirmed'], help='Only this source')
    list_parser.add_argument('--all', action='store_true', help='Show every phrase')

    stats_parser = subparsers.add_parser('stats', help='Show dictionary statistics')
    stats_parser.add_argument('--json', action='store_true', help='Output stats as JSON')

    learn_parser = subparsers.add_parser('learn', help='Teach a phrase')
    learn_parser.add_argument('phrase', help='Phrase to learn')
    learn_parser.add_argument('action', help='Action it triggers')
    learn_parser.add_argument('--confirmed', action='store_true', help='Store as confirmed')

    forget_parser = subparsers.add_parser('forget', help='Forget a phrase')
    forget_parser.add_argument('phrase', help='Phrase to forget')
    forget_parser.add_argument('--force', action='store_true', help='Allow removing a default command')

    subparsers.add_parser('cleanup', help='Decay unused learned phrases')
    subparsers.add_parser('validate', help='Check the dictionary')

    variations_parser = subparsers.add_parser('variations', help='Show phonetic variations')
    variations_parser.add_argument('phrase', help='Phrase to expand')

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging(args.verbose, args.log_file)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 0

    try:
        config = ParleyConfig.load(args.config) if args.config else get_config()
    except ConfigError as e:
        print(f"{Colors.RED}Config error:{Colors.RESET} {e}", file=sys.stderr)
        return 2

    return handler(args, config)


if __name__ == '__main__':
    sys.exit(main())
