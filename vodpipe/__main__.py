"""
Command line entry point: `vodpipe serve`.
"""

import argparse
import logging
import sys
from typing import List, Optional

from . import __version__
from .config import LoggingConfig, load_config, set_config


def setup_logging(config: LoggingConfig) -> None:
    """Configure root logging once, from the `logging` config section."""
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    logging.basicConfig(
        level=getattr(logging, config.level.upper(), logging.INFO),
        format=config.format,
        handlers=handlers,
        force=True,
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="vodpipe", description="Video ingest and HLS transcoding pipeline")
    parser.add_argument("--version", action="version", version=f"vodpipe {__version__}")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP API and transcode workers")
    serve.add_argument("--config", "-c", help="Path to vodpipe.yaml")
    serve.add_argument("--host", help="Override server.host")
    serve.add_argument("--port", type=int, help="Override server.port")

    args = parser.parse_args(argv)
    if args.command != "serve":
        parser.print_help()
        return 1

    config = load_config(args.config)
    if args.host:
        config.server.host = args.host
    if args.port:
        config.server.port = args.port
    set_config(config)
    setup_logging(config.logging)

    import uvicorn
    from .api import create_app

    logging.getLogger(__name__).info(
        f"Starting VodPipe v{__version__} on {config.server.host}:{config.server.port}"
    )
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
