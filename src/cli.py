#!/usr/bin/env python3
"""
CLI for running the intake engine and inspecting its queue.

Usage:
    python -m src.cli run --db data/intake.db
    python -m src.cli import-shows shows.json
    python -m src.cli queue
    python -m src.cli retry <file-id>
"""

import argparse
import json
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv

# Load .env from project root
_env_file = Path(__file__).parent.parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    load_dotenv()

from src.intake import (
    IntakeConfig,
    IntakeEngine,
    IntakeError,
    QueueStore,
    SettingsManager,
    ShowStore,
)


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("cli")


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure console logging, plus a DEBUG file log when requested."""
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else level.upper())

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level.upper())
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # watchdog is chatty at DEBUG
    logging.getLogger("watchdog").setLevel(logging.WARNING)


class GracefulShutdown:
    """Handle graceful shutdown on SIGINT/SIGTERM."""

    def __init__(self):
        self.should_exit = False
        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)

    def _handler(self, signum, frame):
        logger.info("Received shutdown signal, stopping...")
        self.should_exit = True


def build_config(args) -> IntakeConfig:
    overrides = {}
    if args.db:
        overrides["db_path"] = Path(args.db).resolve()
    if getattr(args, "stability_ms", None) is not None:
        overrides["stability_ms"] = args.stability_ms
    config = IntakeConfig.from_env(**overrides)
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    return config


def build_engine(config: IntakeConfig) -> IntakeEngine:
    return IntakeEngine(
        show_source=ShowStore(config.db_path),
        queue_store=QueueStore(config.db_path),
        config=config,
        settings=SettingsManager(config.db_path),
    )


def _print_record(record) -> None:
    line = f"{record.id}  {record.status.value:<10}  {record.filename}"
    if record.output_path:
        line += f"  -> {record.output_path}"
    if record.error:
        line += f"  [{record.error}]"
    print(line)


def cmd_run(args):
    """Run the intake engine until interrupted."""
    config = build_config(args)
    logger.info("Starting intake engine...")
    logger.info(f"Database: {config.db_path}")

    shutdown = GracefulShutdown()

    with build_engine(config) as engine:
        if args.shows:
            engine.queue_store.recover_interrupted()
            engine.start_watching_shows(args.shows)
        else:
            engine.initialize()

        status = engine.get_status()
        if not status.watched_shows:
            logger.warning("No shows are being watched")
        for show_id in status.active_watchers:
            logger.info(f"  Watching show: {show_id}")
        logger.info("Press Ctrl+C to stop")

        while not shutdown.should_exit:
            time.sleep(1)

    logger.info("Intake engine stopped")


def cmd_status(args):
    """Show queue counts."""
    config = build_config(args)
    with QueueStore(config.db_path) as store:
        counts = store.count_by_status()

    print("\n=== Intake Queue ===")
    print(f"Database: {config.db_path}")
    for status, count in counts.items():
        print(f"  {status:<10} {count}")
    print(f"  {'total':<10} {sum(counts.values())}")
    print()


def cmd_queue(args):
    """List queue records."""
    config = build_config(args)
    with QueueStore(config.db_path) as store:
        records = store.get_queue()

    if args.status:
        records = [r for r in records if r.status.value == args.status]

    if args.json:
        print(json.dumps([r.to_dict() for r in records], indent=2))
        return

    if not records:
        print("Queue is empty.")
        return
    for record in records:
        _print_record(record)


def cmd_retry(args):
    """Retry a failed record."""
    config = build_config(args)
    with build_engine(config) as engine:
        try:
            record = engine.retry_file(args.file_id)
        except IntakeError as e:
            logger.error(f"Retry failed: {e}")
            sys.exit(1)

    if record is not None:
        _print_record(record)
        if record.status.value == "failed":
            sys.exit(1)


def cmd_process_pending(args):
    """Process every pending record."""
    config = build_config(args)
    with build_engine(config) as engine:
        outcomes = engine.process_pending()

    for outcome in outcomes:
        status = outcome.status.value if outcome.status else "skipped"
        suffix = f"  [{outcome.error}]" if outcome.error else ""
        print(f"{outcome.file_id}  {status}{suffix}")

    if any(not o.ok for o in outcomes):
        sys.exit(1)


def cmd_enqueue(args):
    """Queue a file for a show by hand."""
    config = build_config(args)
    with build_engine(config) as engine:
        try:
            record = engine.enqueue_file(args.show_id, Path(args.path), process=not args.no_process)
        except IntakeError as e:
            logger.error(f"Enqueue failed: {e}")
            sys.exit(1)

    if record is None:
        print("File is already queued for this show.")
    else:
        _print_record(record)


def cmd_remove(args):
    """Remove a record from the queue."""
    config = build_config(args)
    with QueueStore(config.db_path) as store:
        if not store.remove_from_queue(args.file_id):
            logger.error(f"File not found in queue: {args.file_id}")
            sys.exit(1)
    print(f"Removed {args.file_id}")


def cmd_clear(args):
    """Remove every record from the queue."""
    config = build_config(args)
    with QueueStore(config.db_path) as store:
        count = store.clear_queue()
    print(f"Cleared {count} record(s)")


def cmd_shows(args):
    """List configured shows."""
    config = build_config(args)
    shows = ShowStore(config.db_path).get_all_shows()

    if not shows:
        print("No shows configured.")
        return

    for show in shows:
        flags = []
        if not show.enabled:
            flags.append("disabled")
        if not show.auto_processing:
            flags.append("manual")
        patterns = ", ".join(p.pattern for p in show.watch_patterns()) or "(no watch patterns)"
        print(f"{show.id}  {show.name}{' [' + ', '.join(flags) + ']' if flags else ''}")
        print(f"    patterns: {patterns}")
        print(f"    output:   {show.output_directory or config.default_output_dir}")


def cmd_import_shows(args):
    """Import show profiles from a JSON file."""
    config = build_config(args)
    path = Path(args.file)
    if not path.exists():
        logger.error(f"File not found: {path}")
        sys.exit(1)

    shows = ShowStore(config.db_path).import_json(path)
    print(f"Imported {len(shows)} show(s).")


def cmd_settings(args):
    """Show or change global directory settings."""
    config = build_config(args)
    settings = SettingsManager(config.db_path)

    if args.watch_dir is not None:
        settings.set_global_watch_directory(Path(args.watch_dir).resolve() if args.watch_dir else None)
    if args.output_dir is not None:
        settings.set_global_output_directory(Path(args.output_dir).resolve() if args.output_dir else None)

    watch_dir = settings.get_global_watch_directory() or config.global_watch_dir
    output_dir = settings.get_global_output_directory() or config.default_output_dir
    print(f"Global watch directory:  {watch_dir}")
    print(f"Global output directory: {output_dir}")


def main():
    parser = argparse.ArgumentParser(
        description="Radio show file intake",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--db",
        default=os.environ.get("INTAKE_DB_PATH", "data/intake.db"),
        help="Path to the intake database (default: data/intake.db)",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        help="Console log level (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=os.environ.get("LOG_FILE"),
        help="Also write DEBUG logs to this file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", help="Watch shows and process incoming files")
    run_parser.add_argument("--shows", nargs="*", help="Show ids to watch (default: all eligible shows)")
    run_parser.add_argument("--stability-ms", type=int, default=None, help="Write-completion quiet period")
    run_parser.set_defaults(func=cmd_run)

    status_parser = subparsers.add_parser("status", help="Show queue counts")
    status_parser.set_defaults(func=cmd_status)

    queue_parser = subparsers.add_parser("queue", help="List queued files")
    queue_parser.add_argument("--status", choices=["pending", "processing", "completed", "failed"])
    queue_parser.add_argument("--json", action="store_true", help="Print records as JSON")
    queue_parser.set_defaults(func=cmd_queue)

    retry_parser = subparsers.add_parser("retry", help="Retry a failed file")
    retry_parser.add_argument("file_id")
    retry_parser.set_defaults(func=cmd_retry)

    pending_parser = subparsers.add_parser("process-pending", help="Process all pending files")
    pending_parser.set_defaults(func=cmd_process_pending)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a file for a show")
    enqueue_parser.add_argument("show_id")
    enqueue_parser.add_argument("path")
    enqueue_parser.add_argument("--no-process", action="store_true", help="Only queue, do not process")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    remove_parser = subparsers.add_parser("remove", help="Remove a file from the queue")
    remove_parser.add_argument("file_id")
    remove_parser.set_defaults(func=cmd_remove)

    clear_parser = subparsers.add_parser("clear", help="Clear the queue")
    clear_parser.set_defaults(func=cmd_clear)

    shows_parser = subparsers.add_parser("shows", help="List configured shows")
    shows_parser.set_defaults(func=cmd_shows)

    import_parser = subparsers.add_parser("import-shows", help="Import shows from a JSON file")
    import_parser.add_argument("file")
    import_parser.set_defaults(func=cmd_import_shows)

    settings_parser = subparsers.add_parser("settings", help="Show or set global directories")
    settings_parser.add_argument("--watch-dir", help="Global watch directory ('' to reset)")
    settings_parser.add_argument("--output-dir", help="Global output directory ('' to reset)")
    settings_parser.set_defaults(func=cmd_settings)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.log_level, Path(args.log_file) if args.log_file else None)
    args.func(args)


if __name__ == "__main__":
    main()
