"""Command-line interface for MD Viewer Edge."""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

from mdviewer_edge import __version__
from mdviewer_edge.core.service import RateLimitService
from mdviewer_edge.utils.logger import configure_logging


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load configuration from JSON file."""
    try:
        with open(config_path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        print(f"Error: Configuration file not found: {config_path}")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in configuration file: {e}")
        sys.exit(1)


def create_default_config() -> Dict[str, Any]:
    """Create a default configuration."""
    # Use environment variable for database path if set (for CI)
    db_path = os.environ.get("MDVIEWER_EDGE_DB_PATH", "mdviewer_edge.db")
    log_level = os.environ.get("MDVIEWER_EDGE_LOG_LEVEL", "INFO")

    return {
        "server": {"host": "127.0.0.1", "port": 8787},
        "security": {"require_secure_key": True},
        "rate_limit": {"window_seconds": 60, "max_requests": 10, "database_path": db_path},
        "cache": {"database_path": db_path, "prefix": "mdviewer", "version": "v3.2"},
        "logging": {"level": log_level},
    }


def check_connection(api_url: str, timeout: float) -> int:
    from mdviewer_edge.monitoring.connection import ConnectionMonitor

    state = ConnectionMonitor(api_url=api_url, probe_timeout=timeout).evaluate()
    print(json.dumps(state.to_dict(), indent=2))
    return 0 if state.is_server_reachable else 1


def list_generations(config: Dict[str, Any]) -> int:
    from mdviewer_edge.cache.store import CacheStore, current_cache_version
    from mdviewer_edge.core.config import ConfigurationManager
    from mdviewer_edge.database.manager import DatabaseManager

    cache_cfg = ConfigurationManager(config).config["cache"]
    db_manager = DatabaseManager(cache_cfg["database_path"])
    try:
        store = CacheStore(db_manager)
        names = store.list_namespaces(cache_cfg["prefix"])
        current = current_cache_version(store, cache_cfg["prefix"])
    finally:
        db_manager.close()
    if not names:
        print("No cache generations found.")
        return 0
    for name in names:
        marker = "*" if name.endswith(f"-{current}") else " "
        print(f"{marker} {name}")
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="MD Viewer Edge - rate limiting and offline cache tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  mdviewer-edge --config config.json                 # Start with config file
  mdviewer-edge --port 9090 --host 0.0.0.0           # Custom host/port
  mdviewer-edge --generate-config                    # Generate default config
  mdviewer-edge --security-key-only                  # Just print security key
  mdviewer-edge --check-connection https://api.example.com
  mdviewer-edge --config config.json --list-generations

Endpoints:
  POST /check   count one request for the caller and return the decision
  POST /reset   clear the caller's counter (admin key when required)
  GET  /health  liveness probe used by the connection monitor
        """,
    )

    parser.add_argument("--config", "-c", type=Path, help="Path to configuration JSON file")

    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")

    parser.add_argument("--port", "-p", type=int, default=8787, help="Port to bind to (default: 8787)")

    parser.add_argument("--generate-config", action="store_true", help="Generate a default configuration file and exit")

    parser.add_argument(
        "--security-key-only", action="store_true", help="Generate and print security key only, then exit"
    )

    parser.add_argument(
        "--check-connection", metavar="API_URL", help="Probe API_URL/health once, print the status and exit"
    )

    parser.add_argument(
        "--list-generations", action="store_true", help="List cache generations in the cache database and exit"
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Set logging level (default: INFO)",
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    args = parser.parse_args()

    # Handle special modes
    if args.generate_config:
        config = create_default_config()
        config_file = Path("mdviewer_edge_config.json")
        with open(config_file, "w") as f:
            json.dump(config, f, indent=2)
        print(f"Generated default configuration: {config_file}")
        return

    if args.security_key_only:
        from mdviewer_edge.security.manager import SecurityManager

        manager = SecurityManager({})
        key = manager.generate_secure_key()
        print(f"Generated security key: {key}")
        return

    if args.check_connection:
        configure_logging({"level": args.log_level})
        sys.exit(check_connection(args.check_connection, timeout=3))

    # Load configuration
    if args.config:
        config = load_config(args.config)
    else:
        config = create_default_config()
        if not args.list_generations:
            print("Using default configuration. Use --generate-config to create a config file.")

    # Override with CLI arguments
    if args.host != "127.0.0.1":
        config.setdefault("server", {})["host"] = args.host
    if args.port != 8787:
        config.setdefault("server", {})["port"] = args.port

    # Configure logging
    config.setdefault("logging", {})["level"] = args.log_level
    configure_logging(config["logging"])

    if args.list_generations:
        try:
            sys.exit(list_generations(config))
        except ValueError as e:
            print(f"Error: {e}")
            sys.exit(1)

    host = config.get("server", {}).get("host", "127.0.0.1")
    port = config.get("server", {}).get("port", 8787)

    # Start service
    try:
        service = RateLimitService(config)

        print(f"Starting MD Viewer Edge rate limiter on {host}:{port}")
        sys.stdout.flush()  # Ensure output is flushed for CI

        key = service.get_secure_key()
        if key:
            print(f"Security key: {key}")
            print("Include this key in /reset and /admin requests:")
            print(f"  Query param: ?key={key}")
            print(f"  Header: X-Edge-Key: {key}")

        print("\nPress Ctrl+C to stop")
        sys.stdout.flush()  # Ensure output is flushed for CI
        service.start(blocking=True)

    except KeyboardInterrupt:
        print("\nShutting down...")
        if "service" in locals():
            service.stop()
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    except OSError as e:
        print(f"Error binding to {host}:{port}: {e}")
        # Try to provide helpful error message for common issues
        if "Address already in use" in str(e):
            print(f"Port {port} is already in use. Try a different port with --port option.")
        elif "Permission denied" in str(e):
            print(f"Permission denied to bind to {host}:{port}. Try using a port above 1024.")
        sys.exit(1)
    except Exception as e:
        print(f"Error starting service: {e}")
        import traceback

        print(f"Traceback: {traceback.format_exc()}")
        sys.exit(1)


if __name__ == "__main__":
    main()
