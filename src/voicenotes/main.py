#!/usr/bin/env python3
"""
VoiceNotes - hands-free voice commands and dictation
Usage: voicenotes [--config config.yaml] [--hands-free] [--dictate]
"""

import argparse
import asyncio
import sys

from . import logging_setup
from .service import VoiceNotesService


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="voicenotes",
        description="Wake-phrase voice commands and dictation with a local Whisper model",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml")
    parser.add_argument("--settings", default=None, help="Path to the persisted settings file")
    parser.add_argument(
        "--hands-free",
        dest="hands_free",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Listen for the wake phrase continuously (persisted)",
    )
    parser.add_argument("--dictate", action="store_true", help="Start dictating right away")
    return parser


def main(argv=None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    try:
        service = VoiceNotesService(args.config, settings_path=args.settings)
    except (OSError, ValueError) as e:
        print(f"[ERROR] Could not start: {e}", file=sys.stderr)
        return 1

    try:
        asyncio.run(service.run(hands_free=args.hands_free, dictate=args.dictate))
    except KeyboardInterrupt:
        service.logger.info("Received interrupt signal")
    finally:
        logging_setup.shutdown_logging()
    return 0


if __name__ == "__main__":
    sys.exit(main())
