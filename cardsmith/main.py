"""Command-line entry point for Cardsmith."""

import argparse
import asyncio
import io
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Optional

from cardsmith.config import ConfigLoader, ConfigLoadError, SystemConfig
from cardsmith.db.database import create_db_engine, create_session_factory, init_db
from cardsmith.services.conversion_service import CardConversionService
from cardsmith.services.character_cards.handlers.registry import HandlerRegistry, create_default_registry
from cardsmith.services.character_cards.models import FormatType


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None):
    """Configure logging."""
    # Force UTF-8 encoding for stdout/stderr on Windows
    if sys.platform == 'win32':
        sys.stdout = io.TextIOWrapper(sys.stdout.buffer, encoding='utf-8', errors='replace')
        sys.stderr = io.TextIOWrapper(sys.stderr.buffer, encoding='utf-8', errors='replace')

    handlers = [logging.StreamHandler(sys.stdout)]

    file_handler = None
    log_file = None

    # Add file handler if debug mode is enabled
    if debug:
        from datetime import datetime
        log_dir = Path(log_dir or "data/debug_logs")
        log_dir.mkdir(parents=True, exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        log_file = log_dir / f"cardsmith_{timestamp}.log"

        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        handlers.append(file_handler)

    # Set root logger to INFO to avoid verbose library logs
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )

    # Only set DEBUG for our own loggers, not third-party libraries
    logging.getLogger('cardsmith').setLevel(logging.DEBUG if debug else logging.INFO)

    # Silence noisy third-party loggers
    logging.getLogger('PIL').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    return file_handler, log_file


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cardsmith",
        description="Convert character cards between JSON, PNG, CHARX and Voxta packages",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to system.yaml")
    parser.add_argument("--debug", action="store_true", help="Verbose logging plus a debug log file")

    commands = parser.add_subparsers(dest="command", required=True)

    import_cmd = commands.add_parser("import", help="Import a card file into the library")
    import_cmd.add_argument("file", type=Path)

    export_cmd = commands.add_parser("export", help="Export a stored card")
    export_cmd.add_argument("card_id")
    export_cmd.add_argument(
        "--format",
        required=True,
        choices=[f.value for f in FormatType if f != FormatType.UNKNOWN],
    )
    export_cmd.add_argument("--output", type=Path, default=None, help="Output file or directory")

    detect_cmd = commands.add_parser("detect", help="Report the detected format of a file")
    detect_cmd.add_argument("file", type=Path)

    return parser


def load_config(config_path: Optional[Path]) -> SystemConfig:
    """Load system config, falling back to defaults when it cannot be read."""
    try:
        return ConfigLoader().load_system_config(config_path)
    except ConfigLoadError as e:
        # Use basic logging since logger isn't configured yet
        logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        logging.getLogger(__name__).warning(f"[STARTUP WARNING] Could not load system config: {e}, using defaults")
        return SystemConfig()


def run_import(service: CardConversionService, path: Path) -> int:
    data = path.read_bytes()
    mimetype, _ = mimetypes.guess_type(path.name)
    result = asyncio.run(service.import_file(data, path.name, mimetype))

    for warning in result.warnings:
        print(f"warning: {warning}")
    if not result.success:
        print(f"error: {result.error}", file=sys.stderr)
        return 1

    print(f"Imported {len(result.card_ids)} card(s) as {result.format.value}, {result.assets_imported} asset(s)")
    for card_id in result.card_ids:
        print(card_id)
    return 0


def run_export(service: CardConversionService, card_id: str, format: str, output: Optional[Path]) -> int:
    result = asyncio.run(service.export_card(card_id, format))

    for warning in result.warnings:
        print(f"warning: {warning}")
    for fix in result.fixes:
        print(f"fixed: {fix}")
    if not result.success:
        print(f"error: {result.error}", file=sys.stderr)
        return 1

    if output is None:
        target = Path(result.filename)
    elif output.is_dir():
        target = output / result.filename
    else:
        target = output
    target.write_bytes(result.buffer)
    print(f"Wrote {target} ({result.total_size} bytes, {result.asset_count} asset(s))")
    return 0


def run_detect(registry: HandlerRegistry, path: Path) -> int:
    data = path.read_bytes()
    mimetype, _ = mimetypes.guess_type(path.name)
    detection = registry.detect(data, path.name, mimetype)
    print(f"{detection.format.value}\t{detection.confidence.value}\t{detection.reason}")
    return 0 if detection.is_known else 1


def main(argv=None) -> int:
    """Run the command-line interface."""
    args = build_parser().parse_args(argv)

    system_config = load_config(args.config)
    debug_mode = args.debug or system_config.debug
    setup_logging(debug=debug_mode, log_dir=Path(system_config.paths.data) / "debug_logs")

    logger = logging.getLogger(__name__)
    logger.debug(f"Running '{args.command}' (debug mode: {debug_mode})")

    if args.command == "detect":
        # Detection needs neither the database nor storage
        return run_detect(create_default_registry(system_config), args.file)

    engine = create_db_engine(system_config.paths.database_url)
    init_db(engine, system_config.paths.database_url)
    session_factory = create_session_factory(engine)

    db = session_factory()
    try:
        service = CardConversionService.from_config(system_config, db)
        if args.command == "import":
            return run_import(service, args.file)
        return run_export(service, args.card_id, args.format, args.output)
    finally:
        db.close()
        engine.dispose()


if __name__ == "__main__":
    sys.exit(main())
