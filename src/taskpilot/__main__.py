"""TaskPilot entry point — CLI argument parsing, service wiring and maintenance commands."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from taskpilot.config import EXPORT_FORMATS, load_config


def _get_version() -> str:
    """Return the installed package version, or fall back to 'unknown'."""
    from importlib.metadata import PackageNotFoundError, version

    try:
        return f"taskpilot {version('taskpilot')}"
    except PackageNotFoundError:
        return "taskpilot (unknown version — not installed as package)"


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="taskpilot",
        description="TaskPilot — AI assistant for task planning and time tracking",
    )
    parser.add_argument(
        "--version",
        "-V",
        action="version",
        version=_get_version(),
    )
    parser.add_argument(
        "--config",
        "-c",
        help="Path to config.toml file",
    )
    parser.add_argument(
        "--provider",
        choices=("cloud", "local"),
        help="Provider to use (overrides [agent] default_provider)",
    )
    parser.add_argument(
        "--model",
        "-m",
        help="Path to a GGUF model file for the local provider (overrides config)",
    )
    parser.add_argument(
        "--download",
        action="store_true",
        help="Download the default local model and exit",
    )
    parser.add_argument(
        "--headless",
        metavar="PROMPT",
        help="Run a single prompt and exit. "
        "Response text goes to stdout (pipeable), diagnostics to stderr.",
    )
    parser.add_argument(
        "--cleanup-logs",
        action="store_true",
        help="Delete interaction logs older than the retention window and exit",
    )
    parser.add_argument(
        "--export-logs",
        metavar="PATH",
        help="Export interaction logs to PATH and exit",
    )
    parser.add_argument(
        "--format",
        choices=EXPORT_FORMATS,
        help="Export format for --export-logs (default: [logging] export_format)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        metavar="PATH",
        help="Write all log messages (DEBUG level) to a file. "
        "Useful for real-time monitoring with tail -f.",
    )

    args = parser.parse_args()

    # Setup logging
    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s: %(message)s")

    if args.log_file:
        file_handler = logging.FileHandler(args.log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        logging.getLogger().addHandler(file_handler)
        logging.getLogger().setLevel(logging.DEBUG)

    config = load_config(args.config)
    if args.model:
        config.local.model_path = args.model

    if args.download:
        sys.exit(asyncio.run(_download(config)))

    if args.cleanup_logs:
        sys.exit(asyncio.run(_cleanup_logs(config)))

    if args.export_logs:
        sys.exit(asyncio.run(_export_logs(config, Path(args.export_logs), args.format)))

    if args.headless:
        from taskpilot.app import create_service
        from taskpilot.headless import run_headless

        async def _run() -> int:
            manager = await create_service(config, progress=_print_progress)
            return await run_headless(
                manager, args.provider or config.agent.default_provider, args.headless,
            )

        sys.exit(asyncio.run(_run()))

    parser.print_usage(sys.stderr)
    print(
        "taskpilot: nothing to do (use --headless, --download, --cleanup-logs or --export-logs)",
        file=sys.stderr,
    )
    sys.exit(2)


def _print_progress(percent: float) -> None:
    print(f"\rDownloading model... {percent:5.1f}%", end="", file=sys.stderr, flush=True)
    if percent >= 100:
        print(file=sys.stderr)


async def _download(config) -> int:
    from taskpilot.app import build_model_store
    from taskpilot.errors import AIError

    store = build_model_store(config)
    try:
        path = await store.ensure_model(_print_progress)
    except AIError as e:
        print(f"Download failed: {e.message}", file=sys.stderr)
        return 1
    print(f"Model ready at: {path}")
    return 0


async def _cleanup_logs(config) -> int:
    from taskpilot.audit.logger import InteractionLogger

    interaction_logger = await InteractionLogger.open(config.audit_db_path(), config.logging)
    removed = await interaction_logger.cleanup_old_logs()
    print(f"Removed {removed} interaction log(s) older than "
          f"{interaction_logger.config.retention_days} days")
    return 0


async def _export_logs(config, path: Path, fmt: str | None) -> int:
    from taskpilot.audit.logger import InteractionLogger
    from taskpilot.audit.models import LogFilter

    interaction_logger = await InteractionLogger.open(config.audit_db_path(), config.logging)
    stats = await interaction_logger.get_storage_stats()
    payload = await interaction_logger.export_logs(LogFilter(limit=max(stats.total_logs, 1)), fmt)
    path.write_bytes(payload)
    print(f"Exported {stats.total_logs} interaction log(s) to {path}")
    return 0


if __name__ == "__main__":
    main()
