"""
Run the inventory hub.

    python -m inventory_sync --config settings.yaml --port 8081
"""

import argparse
import logging
import sys
from pathlib import Path

from aiohttp import web

from .config import HubConfig
from .logging_utils import configure_structured_logging, get_sync_logger
from .store import InventoryStore
from .sync import InventoryHub, create_app

logger = get_sync_logger("cli")


def build_config(args: argparse.Namespace) -> HubConfig:
    """YAML file when given, otherwise the environment; flags override both."""
    config = HubConfig.from_yaml(args.config) if args.config else HubConfig.from_environment()
    if args.db_path:
        config.db_path = args.db_path
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port
    return config


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Inventory Sync - realtime inventory hub",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Defaults from INVENTORY_HUB_* environment variables
    python -m inventory_sync

    # Settings file with a local override
    python -m inventory_sync --config settings.yaml --port 9000

    # Plain text logs for local development
    python -m inventory_sync --db-path ./inventory.json --log-format text
        """,
    )
    parser.add_argument("--config", type=Path, help="YAML settings file (hub: section)")
    parser.add_argument("--db-path", type=Path, help="Path of the JSON document")
    parser.add_argument("--host", help="Bind address")
    parser.add_argument("--port", type=int, help="Listen port")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--log-format",
        default="json",
        choices=["json", "text"],
        help="Log output format (default: json)",
    )

    args = parser.parse_args(argv)

    configure_structured_logging(
        level=getattr(logging, args.log_level),
        json_format=args.log_format == "json",
    )

    config = build_config(args)
    hub = InventoryHub(InventoryStore(config.db_path), config)
    logger.info(f"Starting inventory hub on {config.host}:{config.port} (db={config.db_path})")

    try:
        web.run_app(create_app(hub, config), host=config.host, port=config.port, print=None)
    except OSError as e:
        logger.error(f"Failed to start hub: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
