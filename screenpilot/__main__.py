"""CLI entry point.

Usage:
    python -m screenpilot run [--config PATH] [--duration SEC]
    python -m screenpilot report [--config PATH] [--days N]
    python -m screenpilot init-config PATH
"""

import argparse
import sys
import time
from pathlib import Path

from loguru import logger

from .core.bootstrap import bootstrap_from_config_object, resolve_config
from .core.budget import BudgetGovernor
from .core.configs import create_default_config, save_config
from .core.datastore import UsageStore
from .core.events import Events
from .core.loggingx import init_logger


def cmd_run(args: argparse.Namespace) -> int:
    config = resolve_config(args.config)
    init_logger(config.logging.level, Path(config.logging.log_file) if config.logging.log_file else None)

    try:
        components = bootstrap_from_config_object(config)
    except ValueError as e:
        logger.error(f"Startup failed: {e}")
        return 1

    events = components["events"]
    events.on(Events.GUIDANCE, lambda g: logger.info(f"[{g.priority}] {g.title}: {g.summary}"))
    events.on(Events.INSTANT_ERROR, lambda i: logger.warning(f"Error spotted: {i.content}"))
    events.on(Events.AUTOMATION_DETECTED, lambda s: logger.info(f"Automation idea: {s.implementation}"))

    pipeline = components["pipeline"]
    pipeline.start()
    try:
        if args.duration:
            time.sleep(args.duration)
        else:
            while pipeline.running:
                time.sleep(1.0)
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping...")
    finally:
        pipeline.stop()
        components["usage_store"].close()
    return 0


def cmd_report(args: argparse.Namespace) -> int:
    config = resolve_config(args.config)
    init_logger("WARNING")
    store = UsageStore(config.data_dir / config.data.usage_db, history_days=config.budget.history_days)
    try:
        governor = BudgetGovernor(config.budget, store=store)
        print(governor.export_report(days=args.days))
    finally:
        store.close()
    return 0


def cmd_init_config(args: argparse.Namespace) -> int:
    path = Path(args.path)
    if path.exists() and not args.force:
        logger.error(f"{path} already exists (use --force to overwrite)")
        return 1
    save_config(create_default_config(), path)
    logger.info(f"Default configuration written to {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screenpilot", description="Screen capture to guidance pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start the capture pipeline")
    run.add_argument("--config", "-c", type=Path, help="Path to config file")
    run.add_argument("--duration", "-d", type=float, help="Stop after this many seconds")
    run.set_defaults(func=cmd_run)

    report = sub.add_parser("report", help="Print the cost report as JSON")
    report.add_argument("--config", "-c", type=Path, help="Path to config file")
    report.add_argument("--days", type=int, default=30, help="Number of days to include")
    report.set_defaults(func=cmd_report)

    init = sub.add_parser("init-config", help="Write a default configuration file")
    init.add_argument("path", help="Destination YAML file")
    init.add_argument("--force", action="store_true", help="Overwrite an existing file")
    init.set_defaults(func=cmd_init_config)

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
