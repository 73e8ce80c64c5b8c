#!/usr/bin/env python3
"""
flowdeck CLI — Validate, load and watch workflow definitions.

Usage:
    python -m flowdeck.cli validate workflows/bug-fixes.json workflows/documentation.yaml
    python -m flowdeck.cli load [--dir workflows]
    python -m flowdeck.cli watch [--dir workflows]

Settings not given on the command line come from FLOWDECK_* environment
variables (see flowdeck.config).
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from flowdeck.config import RuntimeSettings, get_settings
from flowdeck.errors import ConfigurationError, format_error
from flowdeck.loader import DefinitionSource, DefinitionValidator, LoaderOrchestrator
from flowdeck.logging import setup_logging


def _settings_from_args(args: argparse.Namespace) -> RuntimeSettings:
    overrides = {}
    if getattr(args, "dir", None):
        overrides["workflows_dir"] = args.dir
    base = get_settings()
    return base.model_copy(update=overrides) if overrides else base


async def validate_files(paths: list[str]) -> int:
    """Load and validate each file; print one line per file. Returns the exit code."""
    source = DefinitionSource()
    validator = DefinitionValidator()
    failed = 0

    for raw_path in paths:
        path = Path(raw_path)
        try:
            definition = await source.load(path)
        except Exception as exc:
            failed += 1
            print(f"✗ {path}: {format_error(exc)}")
            continue

        result = validator.validate(definition)
        if result.valid:
            print(f"✓ {path}: {definition.id} ({len(definition.nodes)} nodes)")
        else:
            failed += 1
            print(f"✗ {path}:")
            for error in result.errors:
                print(f"    - {error}")

    return 1 if failed else 0


async def load_directory(settings: RuntimeSettings) -> int:
    orchestrator = LoaderOrchestrator(settings)
    try:
        result = await orchestrator.load_workflows()
    finally:
        await orchestrator.stop()
    print(json.dumps(result.model_dump(), indent=2))
    return 1 if result.errors else 0


async def watch_directory(settings: RuntimeSettings) -> int:
    settings = settings.model_copy(update={"watch_mode": True})
    orchestrator = LoaderOrchestrator(settings)
    result = await orchestrator.start()
    if result is not None:
        print(f"Loaded {len(result.loaded)} definition(s), {len(result.errors)} error(s). Watching {settings.workflows_dir}...")
    try:
        await asyncio.Event().wait()
    finally:
        await orchestrator.stop()
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="flowdeck", description="Workflow-definition runtime tools")
    parser.add_argument("--log-level", help="Override FLOWDECK_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    validate_parser = subparsers.add_parser("validate", help="Validate definition files")
    validate_parser.add_argument("paths", nargs="+", help="Definition files (.json, .py, .yaml, .yml)")

    load_parser = subparsers.add_parser("load", help="Run one discovery pass and print the result")
    load_parser.add_argument("--dir", help="Workflows directory (overrides FLOWDECK_WORKFLOWS_DIR)")

    watch_parser = subparsers.add_parser("watch", help="Load and hot-reload until interrupted")
    watch_parser.add_argument("--dir", help="Workflows directory (overrides FLOWDECK_WORKFLOWS_DIR)")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    settings = get_settings()
    setup_logging(args.log_level or settings.log_level, json_output=args.json_logs or settings.json_logs)

    try:
        if args.command == "validate":
            return asyncio.run(validate_files(args.paths))
        if args.command == "load":
            return asyncio.run(load_directory(_settings_from_args(args)))
        if args.command == "watch":
            return asyncio.run(watch_directory(_settings_from_args(args)))
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return 2
    except KeyboardInterrupt:
        return 130

    parser.print_help()
    return 2


if __name__ == "__main__":
    sys.exit(main())
