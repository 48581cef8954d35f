"""bookrelay - Entry Point

Usage:
    python -m bookrelay [--config PATH] [--log-level LEVEL] [command]

Commands:
    run     - Relay to WebSocket observers (default)
    monitor - Relay to the terminal only, no listener
    health  - Query a running relay's /health endpoint
    version - Show version

Examples:
    python -m bookrelay
    python -m bookrelay --config config/production.toml
    python -m bookrelay --log-level DEBUG monitor
    python -m bookrelay health --url http://localhost:8080/health
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from bookrelay import __version__

if TYPE_CHECKING:
    from bookrelay.core.config import ConfigManager


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="bookrelay",
        description="Relays node health and order-book state from Redis to observers",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"bookrelay {__version__}",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (TOML)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Log level",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", help="Relay to WebSocket observers")
    subparsers.add_parser("monitor", help="Relay to the terminal only")

    health = subparsers.add_parser("health", help="Check health status")
    health.add_argument(
        "--url",
        default=None,
        help="Health endpoint URL (defaults to the configured server port)",
    )

    subparsers.add_parser("version", help="Show version")

    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> "ConfigManager":
    from bookrelay.core.config import ConfigManager, find_config_file

    config = ConfigManager(find_config_file(args.config))
    if args.log_level:
        config.set("bookrelay.log_level", args.log_level)
    config.validate()
    return config


async def run_relay(args: argparse.Namespace) -> int:
    """Run the relay until a shutdown signal arrives."""
    from bookrelay.app import RelayApp
    from bookrelay.core.logging import setup_logging_from_config

    config = load_config(args)

    log = setup_logging_from_config(config)

    monitor = args.command == "monitor"
    log.info(
        "starting_bookrelay",
        version=__version__,
        config=str(config.config_path) if config.config_path else "defaults",
        mode="monitor" if monitor else "run",
    )

    app = RelayApp(
        config,
        serve=not monitor,
        terminal=True if monitor else None,
    )

    try:
        await app.run_forever()
        return 0
    except OSError as e:
        # Listener could not bind
        log.error("listener_bind_failed", error=str(e))
        return 1
    except Exception as e:
        log.error("fatal_error", error=str(e))
        return 1


async def check_health(args: argparse.Namespace) -> int:
    """Check health status."""
    import httpx

    url = args.url
    if url is None:
        config = load_config(args)
        url = f"http://localhost:{config.get_int('server.port', 8080)}/health"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(url, timeout=5.0)

        data = response.json()
        print(f"Status: {data.get('status', 'unknown')}")
        print(f"Bus connected: {data.get('bus_connected')}")
        print(f"Degraded mode: {data.get('degraded_mode')}")
        print(f"Observers: {data.get('observers', 0)}")
        print(f"Uptime: {data.get('uptime_seconds', 0):.0f}s")

        entities = data.get("entities", {})
        for name, count in entities.items():
            print(f"  {name}: {count}")

        return 0 if response.status_code == 200 else 1

    except httpx.ConnectError:
        print("Cannot connect to bookrelay (is it running?)")
        return 1
    except Exception as e:
        print(f"Health check error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    if args.command == "version":
        print(f"bookrelay {__version__}")
        return 0

    from bookrelay.core.errors import ConfigError

    try:
        if args.command == "health":
            return asyncio.run(check_health(args))
        return asyncio.run(run_relay(args))
    except ConfigError as e:
        print(f"bookrelay: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
