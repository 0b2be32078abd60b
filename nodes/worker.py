#!/usr/bin/env python3
"""
Start an EthML worker agent that runs model scripts for the coordinator.

    python -m nodes.worker --server ws://127.0.0.1:3000/ws/worker --models-dir ./models
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parents[1]
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from compute.predictor import SubprocessPredictor
from ethml.agent import config
from ethml.agent.base import WorkerAgent

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="EthML worker agent")
    parser.add_argument("--server", type=str, default=config.SERVER_URL, help="Coordinator WebSocket URL.")
    parser.add_argument("--models-dir", type=str, default=config.MODELS_DIR, help="Directory of model_<id>.py scripts.")
    parser.add_argument("--python", type=str, default=config.PREDICTOR_PYTHON, help="Interpreter for model scripts.")
    parser.add_argument(
        "--predictor-timeout", type=float, default=config.PREDICTOR_TIMEOUT_SECONDS, help="Seconds per prediction."
    )
    parser.add_argument(
        "--reconnect-delay", type=float, default=config.RECONNECT_DELAY_SECONDS, help="Seconds between reconnects."
    )
    parser.add_argument("--log-level", type=str, default=config.LOG_LEVEL, help="Logging level.")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args.log_level)
    predictor = SubprocessPredictor(
        models_dir=Path(args.models_dir),
        python=Path(args.python),
        timeout_s=args.predictor_timeout,
    )
    agent = WorkerAgent(
        predictor,
        server_url=args.server,
        heartbeat_interval=config.HEARTBEAT_SECONDS or None,
        reconnect_delay=args.reconnect_delay,
    )
    logger.info("worker starting server=%s models_dir=%s", args.server, args.models_dir)
    try:
        asyncio.run(agent.run())
    except KeyboardInterrupt:
        logger.info("worker shutting down")


if __name__ == "__main__":
    main()
