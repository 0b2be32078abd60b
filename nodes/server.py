#!/usr/bin/env python3
"""
Start the EthML coordinator: dispatch core + HTTP intake + worker WebSocket.

    python -m nodes.server --port 3000
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from ethml.server import config
from ethml.server.api import run_api

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EthML coordinator")
    parser.add_argument("--host", type=str, default=config.HTTP_HOST, help="Bind address.")
    parser.add_argument("--port", type=int, default=config.HTTP_PORT, help="HTTP/WebSocket port.")
    parser.add_argument("--log-level", type=str, default=config.LOG_LEVEL, help="Logging level.")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)
    logger.info(
        "coordinator env=%s mock_ledger=%s queue_db=%s",
        config.ENVIRONMENT,
        config.USE_MOCK_LEDGER,
        config.QUEUE_DB_PATH,
    )
    try:
        run_api(host=args.host, port=args.port)
    except KeyboardInterrupt:
        logger.info("coordinator shutting down")


if __name__ == "__main__":
    main()
