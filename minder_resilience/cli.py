"""Command line front end for the offline queue and the upload pipeline.

Sub-commands:
    upload   Upload one or more files, with live progress.
    enqueue  Add a write request to the durable offline queue.
    queue    List (or clear) the queued requests.
    replay   Run one replay pass of the queue against the configured server.
"""
import argparse
import asyncio
import configparser
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .config_manager import (
    ConfigValidator, build_mutation_queue, build_store, build_transport,
    build_upload_options, build_upload_session, load_config, update_config,
)
from .core_logic.network_monitor import NetworkMonitor
from .core_logic.resilient_queue import ReplayEngine, transport_executor
from .core_logic.transfer_manager import ChunkedOptions, ResizeOptions, RetryOptions, UploadFile
from .system_manager import setup_logging
from .ui import BaseUIManager, SimpleUIManager, UIManagerV2
from .utils import MinderError, format_bytes

TEMPLATE_PATH = Path(__file__).resolve().parent / 'config.ini.template'


def _parse_resize(value: str) -> ResizeOptions:
    """Parses 'WxH', 'Wx' or 'xH' into a ResizeOptions."""
    width, sep, height = value.lower().partition('x')
    if not sep:
        raise argparse.ArgumentTypeError(f"Invalid size '{value}', expected WIDTHxHEIGHT")
    try:
        return ResizeOptions(width=int(width) if width else None, height=int(height) if height else None)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid size '{value}', expected WIDTHxHEIGHT")


def build_parser(default_config_path: Path) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='minder-resilience',
        description="Offline request queue and resilient file uploads.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('--config', default=str(default_config_path), help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging to file.')
    parser.add_argument('--simple', action='store_true', help='Use a simple, non-interactive UI. Recommended for `screen` or `tmux`.')
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")

    subparsers = parser.add_subparsers(dest='command')

    upload = subparsers.add_parser('upload', help='Upload files.')
    upload.add_argument('files', nargs='+', help='Files to upload.')
    upload.add_argument('--endpoint', help='Upload endpoint, overriding [UPLOAD] endpoint.')
    upload.add_argument('--chunked', action='store_true', default=None, help='Force the chunked protocol for large files.')
    upload.add_argument('--chunk-size', type=int, metavar='BYTES', help='Chunk size in bytes.')
    upload.add_argument('--retries', type=int, metavar='N', help='Whole-transfer retries after the first attempt.')
    upload.add_argument('--resize', type=_parse_resize, metavar='WxH', help='Resize images to fit this box.')
    upload.add_argument('--fit', choices=['cover', 'contain', 'fill'], default='contain', help='Fit mode for --resize.')
    upload.add_argument('--format', dest='image_format', choices=['jpeg', 'png', 'webp'], help='Re-encode images to this format.')
    upload.add_argument('--quality', type=int, metavar='1-100', help='Encoder quality for re-encoded images.')

    enqueue = subparsers.add_parser('enqueue', help='Queue a write request for later replay.')
    enqueue.add_argument('method', help='POST, PUT, PATCH or DELETE.')
    enqueue.add_argument('url', help='Target path, relative to [TRANSPORT] base_url.')
    enqueue.add_argument('--data', help='JSON request body.')

    queue = subparsers.add_parser('queue', help='List queued requests.')
    queue.add_argument('--clear', action='store_true', help='Remove every queued request.')

    subparsers.add_parser('replay', help='Replay queued requests once.')
    return parser


async def _run_uploads(args: argparse.Namespace, config: configparser.ConfigParser, ui: BaseUIManager) -> int:
    options = build_upload_options(config)
    if args.endpoint:
        options.endpoint = args.endpoint
    if args.chunked or args.chunk_size:
        options.chunked = ChunkedOptions(
            enabled=True if args.chunked else options.chunked.enabled,
            chunk_size=args.chunk_size or options.chunked.chunk_size,
        )
    if args.retries is not None:
        options.retry = RetryOptions(attempts=args.retries, delay=options.retry.delay)
    if args.resize:
        args.resize.fit = args.fit
        options.resize = args.resize
    options.image_format = args.image_format
    options.quality = args.quality

    files = [UploadFile.from_path(path) for path in args.files]
    async with build_transport(config) as transport:
        session = build_upload_session(config, transport)
        ui.attach(session)
        try:
            results = await session.upload_multiple(files, options, return_exceptions=True)
        finally:
            session.close()

    failures = [r for r in results if isinstance(r, BaseException)]
    for result in results:
        if not isinstance(result, BaseException):
            logging.debug(f"Upload {result.transfer_id} ({result.strategy}, {result.attempts} attempts): {result.data}")
    return 1 if failures else 0


async def _run_replay(config: configparser.ConfigParser, queue) -> int:
    async with build_transport(config) as transport:
        engine = ReplayEngine(queue, NetworkMonitor(online=True))
        timeout = config.getfloat('TRANSPORT', 'timeout', fallback=30.0)
        stats = await engine.drain_and_replay(transport_executor(transport, timeout=timeout))
    if stats.skipped:
        logging.info("Nothing to replay.")
        return 0
    logging.info(
        f"Replayed {stats.total} requests: {stats.succeeded} succeeded, "
        f"{stats.requeued} requeued, {stats.dropped} dropped."
    )
    return 0 if not stats.errors else 1


def _print_queue(queue, console: Console) -> None:
    if len(queue) == 0:
        console.print("[dim]The offline queue is empty.[/]")
        return
    table = Table(title=f"Offline queue ({len(queue)}/{queue.max_queue_size})")
    table.add_column("ID", style="dim")
    table.add_column("Method", style="bold")
    table.add_column("Target")
    table.add_column("Retries", justify="right")
    table.add_column("Last error", style="red")
    for op in queue.operations():
        table.add_row(op.id, op.method, op.target_url, f"{op.retry_count}/{op.max_retries}", op.last_error or "")
    console.print(table)


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the application.

    Returns:
        0 on successful execution, 1 on error.
    """
    parser = build_parser(Path.cwd() / 'config.ini')
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"minder-resilience {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    config_path = Path(args.config).resolve()
    setup_logging(config_path.parent / 'logs', args.debug)

    logger = logging.getLogger()
    log_level = logging.DEBUG if args.debug else logging.INFO
    rich_handler: Optional[logging.Handler] = None
    console = Console(stderr=True)

    if args.simple:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        logger.addHandler(stream_handler)
    else:
        rich_handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True, markup=True, console=console)
        rich_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(rich_handler)

    logging.info(f"Using configuration file: {config_path}")
    if args.check_config:
        logging.info("--- Running Configuration Check ---")
        config = load_config(str(config_path))
        if ConfigValidator(config).validate():
            logging.info("SUCCESS: Configuration file appears to be valid.")
            return 0
        logging.error("FAILURE: Configuration file has errors.")
        return 1

    if not args.command:
        parser.print_help()
        return 1

    update_config(str(config_path), str(TEMPLATE_PATH))
    config = load_config(str(config_path))
    if not ConfigValidator(config).validate():
        return 1

    try:
        if args.command == 'upload':
            total = sum(Path(p).stat().st_size for p in args.files)
            logging.info(f"Uploading {len(args.files)} files ({format_bytes(total)})")
            ui: BaseUIManager = SimpleUIManager() if args.simple else UIManagerV2(__version__, rich_handler, console)
            with ui:
                return asyncio.run(_run_uploads(args, config, ui))

        queue = build_mutation_queue(config, build_store(config, config_path.parent))
        if args.command == 'enqueue':
            payload = json.loads(args.data) if args.data else None
            operation = queue.enqueue(args.method, args.url, payload)
            if operation is None:
                logging.error(f"Request was not queued: {args.method.upper()} {args.url}")
                return 1
            logging.info(f"Queued {operation.method} {operation.target_url} as {operation.id}")
        elif args.command == 'queue':
            if args.clear:
                queue.clear()
                logging.info("Offline queue cleared.")
            else:
                _print_queue(queue, Console())
        elif args.command == 'replay':
            return asyncio.run(_run_replay(config, queue))
    except KeyboardInterrupt:
        logging.warning("Process interrupted by user. Shutting down.")
        return 1
    except (OSError, ValueError, MinderError) as e:
        logging.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
