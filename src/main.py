"""
Main application entry point for the devtools MCP server.

Standalone mode: serves introspection tools for this process, optionally
pointed at an ASGI or WSGI application importable as ``module:attribute``
so its route table is exposed too.
"""

# Standard library imports
import argparse
import importlib
import signal
import sys
from pathlib import Path
from typing import Any

# Third-party imports
from dotenv import load_dotenv
import yaml
from pydantic import ValidationError

# Local imports
from common.config import load_config
from common.logging import setup_logging, get_logger
from devtools_mcp.embed import build_server
from devtools_mcp.errors import AssemblyError, ListenerError
from devtools_mcp.host import HostContext

# Load environment variables from .env file at module level
load_dotenv()

logger = get_logger(__name__)


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Python Devtools MCP Server")
    parser.add_argument("--port", type=int, help="Override the port to run on")
    parser.add_argument("--host", type=str, help="Override the host to run on")
    parser.add_argument("--config", type=Path, help="Path to config.yaml")
    parser.add_argument(
        "--asgi-app", type=str, help="ASGI application to inspect, as module:attribute"
    )
    parser.add_argument(
        "--wsgi-app", type=str, help="WSGI application to inspect, as module:attribute"
    )
    return parser.parse_args(argv)


def import_object(reference: str) -> Any:
    """Resolve ``package.module:attribute``."""
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Expected module:attribute, got '{reference}'")

    target: Any = importlib.import_module(module_name)
    for part in attribute.split("."):
        target = getattr(target, part)
    return target


def main(argv=None) -> int:
    """Main entry point. Returns the process exit code."""
    args = parse_args(argv)

    try:
        config = load_config(args.config)
    except (ValidationError, ValueError, yaml.YAMLError) as e:
        # Logging is not configured yet
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config)

    try:
        overrides = {}
        if args.asgi_app:
            overrides["asgi_app"] = import_object(args.asgi_app)
        if args.wsgi_app:
            overrides["wsgi_app"] = import_object(args.wsgi_app)

        host = HostContext.from_config(config, **overrides)
        listener = build_server(host, config)

        logger.info(
            event="starting_server",
            host=args.host or config.server.host,
            port=args.port if args.port is not None else config.server.port,
        )

        handle = listener.start(port=args.port, host=args.host)

    except (ImportError, AttributeError, ValueError) as e:
        logger.critical(event="startup_failed", reason="Cannot import application", error=str(e))
        return 1
    except AssemblyError as e:
        logger.critical(event="startup_failed", reason="Tool registry assembly failed", error=str(e))
        return 1
    except ListenerError as e:
        logger.critical(event="startup_failed", reason="Listener failed", error=str(e))
        return 1

    signal.signal(signal.SIGTERM, lambda signum, frame: handle.stop())

    try:
        handle.wait()
    except KeyboardInterrupt:
        logger.info(event="application_shutdown", reason="Keyboard interrupt")
    finally:
        handle.stop()

    return 0


if __name__ == "__main__":
    sys.exit(main())
