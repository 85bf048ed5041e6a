#!/usr/bin/env python3
"""
AnalysisFlow Coordinator Server

Runs the analysis coordinator HTTP API:
- POST /api/v1/analysis-coordinator (users, agent workers, rebalance batches)
- /health, /health/live, /health/ready

Usage:
    python -m analysisflow.run_coordinator [--host HOST] [--port PORT] [--log-level LEVEL]

Environment:
    Reads .env from the project root (database credentials,
    ANALYSISFLOW_SERVICE_TOKEN, ANALYSISFLOW_FUNCTIONS_URL)
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

# Load environment variables before any other imports
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).parent.parent
ENV_FILE = PROJECT_ROOT / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE)

import uvicorn

LOGS_DIR = PROJECT_ROOT / 'logs'


def configure_logging(level: str) -> None:
    LOGS_DIR.mkdir(exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOGS_DIR / 'coordinator.log', mode='a'),
        ],
    )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the analysis coordinator API")
    parser.add_argument('--host', default='0.0.0.0')
    parser.add_argument('--port', type=int, default=8000)
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args(argv)


def print_banner(host: str, port: int) -> None:
    print()
    print("=" * 60)
    print("  AnalysisFlow Coordinator")
    print("  Multi-agent stock analysis workflow")
    print("=" * 60)
    print(f"  Listening: http://{host}:{port}")
    print(f"  Started: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')}")
    print("=" * 60)
    print()


def main(argv=None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    if not ENV_FILE.exists():
        logging.getLogger(__name__).warning(f"No .env file found at {ENV_FILE}")

    print_banner(args.host, args.port)
    uvicorn.run(
        "analysisflow.src.api.app:get_app",
        host=args.host,
        port=args.port,
        factory=True,
        log_level=args.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nInterrupted by user")
