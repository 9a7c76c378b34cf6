"""CLI entry point for TextLens."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from textlens.core.config import Config, ConfigError, load_config, save_config
from textlens.core.database import ScanRecord
from textlens.core.drive import is_drive_link
from textlens.core.errors import ScanError
from textlens.core.estimator import format_file_size
from textlens.core.orchestrator import ScanState
from textlens.core.pipeline import ScanPipeline
from textlens.core.validator import read_file

SNIPPET_LENGTH = 50


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def format_history_item(record: ScanRecord) -> str:
    """Render one history entry as a few lines of text."""
    date = record.timestamp.astimezone().strftime('%Y-%m-%d') if record.timestamp else 'Just now'
    lines = [f"  {record.id}  {date}"]
    if record.file_meta:
        lines.append(f"    {record.file_meta.name} ({format_file_size(record.file_meta.size)})")
    snippet = record.text[:SNIPPET_LENGTH].replace('\n', ' ')
    lines.append(f"    {snippet}...")
    return "\n".join(lines)


def print_history(records: list[ScanRecord]) -> None:
    if not records:
        print("No matches found")
        return
    for record in records:
        print(format_history_item(record))
        print()


def print_notices(pipeline: ScanPipeline) -> None:
    for notice in pipeline.session.notices.active():
        marker = '!' if notice.level == 'error' else '✓'
        print(f"{marker} {notice.message}")


async def confirm(question: str) -> bool:
    answer = await asyncio.to_thread(input, f"{question} [y/N] ")
    return answer.strip().lower() in ('y', 'yes')


async def _scan(args: argparse.Namespace, config: Config) -> int:
    async with ScanPipeline(config) as pipeline:
        orchestrator = pipeline.orchestrator

        try:
            if is_drive_link(args.target):
                outcome = await orchestrator.ingest_drive_link(args.target)
            else:
                path = Path(args.target)
                if not path.is_file():
                    print(f"File not found: {path}")
                    return 1
                outcome = await orchestrator.ingest(read_file(path))
        except ScanError as e:
            print(f"Error: {e}")
            return 1

        if outcome.estimate:
            print(f"Estimated tokens: {outcome.estimate.tokens:,}")
            print(f"Image: {outcome.estimate.summary}")
        else:
            print(f"Image: {outcome.image.name} ({format_file_size(outcome.image.size)})")

        if orchestrator.state == ScanState.AWAITING_CONFIRMATION:
            question = f'You have already scanned "{outcome.image.name}".\nDo you want to continue?'
            orchestrator.resolve_duplicate(args.yes or await confirm(question))
            if orchestrator.state == ScanState.IDLE:
                print("Scan cancelled.")
                return 0

        print(f"Extracting text with {pipeline.session.selected_model}...")
        try:
            result = await orchestrator.extract()
        except ScanError as e:
            print(f"Error: {e}")
            return 1

        if result is None:
            return 1

        print()
        print(result.text)
        print()

        await orchestrator.drain()
        print_notices(pipeline)
        return 0


async def _history(args: argparse.Namespace, config: Config) -> int:
    async with ScanPipeline(config) as pipeline:
        print_history(pipeline.history.filter(args.query))

        if not args.follow:
            return 0

        def rerender(_snapshot: list[ScanRecord]) -> None:
            print("-" * 40)
            print_history(pipeline.history.filter(args.query))

        pipeline.history.add_listener(rerender)
        print("Following history. Press Ctrl+C to stop.")
        await asyncio.Event().wait()
    return 0


async def _show(args: argparse.Namespace, config: Config) -> int:
    async with ScanPipeline(config) as pipeline:
        try:
            result = pipeline.orchestrator.load_history_item(args.id)
        except KeyError:
            print(f"Scan not found in history: {args.id}")
            return 1

        if result.token_count:
            print(f"Tokens: {result.token_count:,} ({result.summary})")
        if result.image_url:
            print(f"Image: {result.image_url}")
        print()
        print(result.text)
        return 0


async def _delete(args: argparse.Namespace, config: Config) -> int:
    async with ScanPipeline(config) as pipeline:
        confirmed = args.yes or await confirm('Are you sure you want to delete this scan history?')
        deleted = await pipeline.orchestrator.delete_history_item(args.id, confirmed)
        print_notices(pipeline)
        return 0 if deleted or not confirmed else 1


async def _prompt(args: argparse.Namespace, config: Config) -> int:
    async with ScanPipeline(config) as pipeline:
        record = pipeline.history.get(args.id)
        if record is None:
            print(f"Scan not found in history: {args.id}")
            return 1

        try:
            idea = await pipeline.orchestrator.generate_prompt(record.text)
        except ScanError as e:
            print(f"Error: {e}")
            return 1

        print(idea.title)
        print(idea.description)
        print()
        print(idea.prompt)
        if idea.tags:
            print()
            print("Tags: " + ", ".join(idea.tags))
        return 0


async def _models(args: argparse.Namespace, config: Config) -> int:
    if not config.has_credential:
        print("GEMINI_API_KEY is not set; using default model")
    async with ScanPipeline(config) as pipeline:
        print(f"Selected model: {pipeline.session.selected_model}")
    return 0


def run_async(handler):
    """Adapt an async command handler to argparse's sync dispatch."""
    def command(args: argparse.Namespace) -> int:
        try:
            config = load_config()
        except ConfigError as e:
            print(f"Configuration error: {e}")
            return 1

        try:
            return asyncio.run(handler(args, config))
        except KeyboardInterrupt:
            print("\nShutting down...")
            return 0
    return command


def cmd_config(args: argparse.Namespace) -> int:
    """Manage configuration."""
    try:
        config = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}")
        return 1

    changed = False
    if args.db_path:
        config.db_path = Path(args.db_path).expanduser().resolve()
        changed = True
    if args.blob_dir:
        config.blob_dir = Path(args.blob_dir).expanduser().resolve()
        changed = True

    if changed:
        save_config(config)
        print("Configuration saved.")

    print("TextLens Configuration")
    print("=" * 40)
    print(f"Database path: {config.db_path}")
    print(f"Image directory: {config.blob_dir}")
    print(f"Sync interval: {config.sync_interval}s")
    print(f"AI model: {config.ai_model}")
    print(f"API key: {'set' if config.has_credential else 'not set'}")
    return 0


def main() -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog='textlens',
        description='TextLens: extract text from images and keep a searchable history'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # scan command
    scan_parser = subparsers.add_parser('scan', help='Extract text from an image file or Drive link')
    scan_parser.add_argument('target', help='Image path or Google Drive link')
    scan_parser.add_argument('-y', '--yes', action='store_true', help='Continue on duplicate scans')
    scan_parser.set_defaults(func=run_async(_scan))

    # history command
    history_parser = subparsers.add_parser('history', help='List or search past scans')
    history_parser.add_argument('query', nargs='?', default='', help='Search query')
    history_parser.add_argument('-f', '--follow', action='store_true', help='Keep listening for changes')
    history_parser.set_defaults(func=run_async(_history))

    # show command
    show_parser = subparsers.add_parser('show', help='Show a past scan')
    show_parser.add_argument('id', help='Scan ID')
    show_parser.set_defaults(func=run_async(_show))

    # delete command
    delete_parser = subparsers.add_parser('delete', help='Delete a past scan')
    delete_parser.add_argument('id', help='Scan ID')
    delete_parser.add_argument('-y', '--yes', action='store_true', help='Skip confirmation')
    delete_parser.set_defaults(func=run_async(_delete))

    # prompt command
    prompt_parser = subparsers.add_parser('prompt', help='Generate an image prompt from a past scan')
    prompt_parser.add_argument('id', help='Scan ID')
    prompt_parser.set_defaults(func=run_async(_prompt))

    # models command
    models_parser = subparsers.add_parser('models', help='Show the model used for extraction')
    models_parser.set_defaults(func=run_async(_models))

    # config command
    config_parser = subparsers.add_parser('config', help='Manage configuration')
    config_parser.add_argument('--db-path', help='Set the history database path')
    config_parser.add_argument('--blob-dir', help='Set the image storage directory')
    config_parser.set_defaults(func=cmd_config)

    args = parser.parse_args()

    setup_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
