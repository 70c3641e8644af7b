#!/usr/bin/env python3
"""
Run the HealthChain API server.

Usage:
    python run.py [--host HOST] [--port PORT] [--reload]
"""

import argparse
import logging

import uvicorn

from healthchain.constants import CONTENT_STORE_URL, LEDGER_BACKEND

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("healthchain")


def main():
    """Main function"""
    parser = argparse.ArgumentParser(description="Run the HealthChain API server")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8000, help="Port to listen on")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    logger.info(f"Ledger backend: {LEDGER_BACKEND}, content store: {CONTENT_STORE_URL}")
    uvicorn.run("healthchain.api:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
