"""
Xedis admin entry point
Inspects and maintains a store directory from the command line.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import XedisConfig
from .core import open_store
from .exceptions import XedisError


def setup_logging(level: str = "WARNING", log_file: Optional[str] = None):
    """Set up logging configuration"""

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    # Command output goes to stdout, logs to stderr
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("asyncio").setLevel(logging.WARNING)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""

    parser = argparse.ArgumentParser(
        prog="xedis",
        description="Xedis - inspect and maintain an embedded key-value store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show statistics of the default store
  python -m xedis.main info

  # Read a key from a named store in a custom directory
  python -m xedis.main --name sessions --data-dir ./data get user:1

  # Compact the journal
  python -m xedis.main --name sessions rewrite
        """,
    )

    parser.add_argument(
        "--config", "-c", type=str, help="Path to YAML configuration file"
    )
    parser.add_argument("--name", "-n", type=str, help="Store name")
    parser.add_argument("--data-dir", type=str, help="Persistence directory")
    parser.add_argument(
        "--fsync-policy",
        choices=["always", "everysec", "no"],
        help="Journal fsync policy",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="WARNING",
        help="Logging level (default: WARNING)",
    )
    parser.add_argument(
        "--log-file", type=str, help="Log file path (logs to stderr if not specified)"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("info", help="Print store statistics as JSON")

    get_parser = commands.add_parser("get", help="Print the value of a key")
    get_parser.add_argument("key")

    set_parser = commands.add_parser("set", help="Set a key")
    set_parser.add_argument("key")
    set_parser.add_argument("value")
    set_parser.add_argument("--ttl", type=float, help="Time-to-live in seconds")

    del_parser = commands.add_parser("del", help="Delete a key")
    del_parser.add_argument("key")

    ttl_parser = commands.add_parser("ttl", help="Print the remaining TTL of a key")
    ttl_parser.add_argument("key")

    keys_parser = commands.add_parser("keys", help="List keys matching a pattern")
    keys_parser.add_argument("pattern", nargs="?", default="*")

    commands.add_parser("save", help="Write a snapshot")
    commands.add_parser("rewrite", help="Compact the journal")

    return parser


def create_config_from_args(args: argparse.Namespace) -> XedisConfig:
    """Create XedisConfig from command line arguments"""

    if args.config:
        config = XedisConfig.from_file(args.config)
    else:
        config = XedisConfig.from_env()

    if args.name:
        config.name = args.name

    if args.data_dir:
        config.data_dir = args.data_dir

    if args.fsync_policy:
        config.fsync_policy = args.fsync_policy

    config.log_level = args.log_level
    # One-shot commands never need the snapshot timer
    config.snapshot_interval = 0

    return config


async def run_command(args: argparse.Namespace, config: XedisConfig) -> List[str]:
    """Run one command against the store and return the output lines"""

    async with open_store(config) as store:
        if args.command == "info":
            return [json.dumps(store.info(), indent=2, default=str)]

        if args.command == "get":
            return [await store.get(args.key)]

        if args.command == "set":
            await store.set(args.key, args.value, ttl=args.ttl)
            return ["OK"]

        if args.command == "del":
            await store.delete(args.key)
            return ["1"]

        if args.command == "ttl":
            return [str(await store.ttl(args.key))]

        if args.command == "keys":
            return sorted(await store.keys(args.pattern))

        if args.command == "save":
            await store.save()
            return ["OK"]

        if args.command == "rewrite":
            await store.bgrewriteaof(wait=True)
            return ["OK"]

    raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""

    parser = create_argument_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)
    logger = logging.getLogger(__name__)

    config = create_config_from_args(args)
    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(error)
        return 2

    try:
        lines = asyncio.run(run_command(args, config))
    except XedisError as e:
        print(f"(error) {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130

    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())
