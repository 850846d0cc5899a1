"""
Meltdown Controller - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the meltdown controller.

- Provides argparse-based CLI
- Loads configuration from environment (.env supported)
- Runs the control loop, a single cycle, or an admin action

============================================================
USAGE
============================================================
python -m meltdown_controller.cli                      # run the loop
python -m meltdown_controller.cli --once               # one cycle
python -m meltdown_controller.cli --status
python -m meltdown_controller.cli --pause "maintenance" --admin 42
python -m meltdown_controller.cli --resume --admin 42

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from .config import MeltdownControllerConfig
from .engine import MeltdownController, build_controller, init_controller
from .repository import init_schema
from .types import Actor, ConfigurationError, CycleOutcome


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
) -> logging.Logger:
    """
    Set up process-wide logging.

    Args:
        level: Log level
        log_format: Output format (json or text)

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    return logging.getLogger("meltdown_controller")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="meltdown-controller",
        description="Meltdown detection and global trading control loop",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                  # Run the control loop
  %(prog)s --once                           # Run a single cycle and exit
  %(prog)s --status                         # Print the trading state
  %(prog)s --pause "maintenance" --admin 42 # Pause trading
  %(prog)s --resume --admin 42              # Resume trading
        """
    )

    # --------------------------------------------------------
    # Actions
    # --------------------------------------------------------
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument(
        "--once",
        action="store_true",
        help="Run one meltdown cycle and exit",
    )
    actions.add_argument(
        "--status",
        action="store_true",
        help="Print the trading state and exit",
    )
    actions.add_argument(
        "--pause",
        type=str,
        metavar="REASON",
        help="Pause trading with the given reason (needs --admin)",
    )
    actions.add_argument(
        "--resume",
        action="store_true",
        help="Resume trading (needs --admin)",
    )

    parser.add_argument(
        "--admin",
        type=str,
        metavar="ID",
        help="Admin id performing --pause or --resume",
    )

    # --------------------------------------------------------
    # Runtime Options
    # --------------------------------------------------------
    runtime_group = parser.add_argument_group("Runtime Options")
    runtime_group.add_argument(
        "--interval",
        type=float,
        metavar="SECONDS",
        help="Seconds between cycles (default: MELTDOWN_CHECK_INTERVAL_SECONDS or 300)",
    )
    runtime_group.add_argument(
        "--init-db",
        action="store_true",
        help="Create missing tables before running",
    )

    # --------------------------------------------------------
    # Logging Options
    # --------------------------------------------------------
    logging_group = parser.add_argument_group("Logging Options")
    logging_group.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    logging_group.add_argument(
        "--log-format",
        type=str,
        choices=["json", "text"],
        default="text",
        help="Log format (default: text)",
    )

    return parser


# ============================================================
# CLI VALIDATION
# ============================================================

def validate_args(args: argparse.Namespace) -> List[str]:
    """
    Validate CLI arguments.

    Args:
        args: Parsed arguments

    Returns:
        List of validation errors
    """
    errors = []

    if (args.pause is not None or args.resume) and not args.admin:
        errors.append("--admin is required for --pause and --resume")

    if args.pause is not None and not args.pause.strip():
        errors.append("--pause needs a non-empty reason")

    if args.interval is not None and args.interval <= 0:
        errors.append("--interval must be positive")

    return errors


def build_config(args: argparse.Namespace) -> MeltdownControllerConfig:
    """Build configuration from environment and CLI overrides."""
    config = MeltdownControllerConfig.from_env()

    if args.interval is not None:
        config.scheduler.interval_seconds = args.interval
    if args.log_level:
        config.log_level = args.log_level

    return config


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(
    args: argparse.Namespace,
    controller: Optional[MeltdownController] = None,
    config: Optional[MeltdownControllerConfig] = None,
) -> int:
    """
    Async main entry point.

    Args:
        args: Parsed arguments
        controller: Pre-built controller (built from config if omitted)
        config: Configuration (loaded from environment if omitted)

    Returns:
        Exit code
    """
    if controller is None:
        try:
            controller = build_controller(config or build_config(args))
        except ConfigurationError as e:
            logger.error(f"Invalid configuration: {e}")
            return 2

    init_controller(controller)

    try:
        if args.init_db and controller.db_engine is not None:
            await init_schema(controller.db_engine)

        if args.once:
            report = await controller.run_cycle_now()
            print(json.dumps(report.to_dict(), indent=2))
            return 1 if report.outcome in (CycleOutcome.ABORTED, CycleOutcome.OVERRUN) else 0

        if args.status:
            print(json.dumps(await controller.get_status(), indent=2))
            return 0

        if args.pause is not None:
            result = await controller.force_pause(args.pause, Actor.admin(args.admin))
            return _print_override(result)

        if args.resume:
            result = await controller.force_resume(Actor.admin(args.admin))
            return _print_override(result)

        await controller.run_forever()
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await controller.stop()


def _print_override(result) -> int:
    if result.success:
        print(json.dumps(result.state.to_dict(), indent=2))
        return 0
    print(f"Error: {result.message}", file=sys.stderr)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    errors = validate_args(args)
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 2

    try:
        config = build_config(args)
    except (ConfigurationError, ValueError) as e:
        print(f"Error: invalid configuration: {e}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, args.log_format)

    try:
        return asyncio.run(async_main(args, config=config))
    except KeyboardInterrupt:
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
