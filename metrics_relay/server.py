from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from dataclasses import asdict

import uvicorn

from metrics_relay import db as dbm
from metrics_relay.app import create_app
from metrics_relay.logging_config import configure_logging
from metrics_relay.runner import run_sweep
from metrics_relay.settings import RelaySettings


def _serve(settings: RelaySettings) -> int:
    host = os.getenv("METRICS_RELAY_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("METRICS_RELAY_PORT", "8787"))
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="metrics-relay", description="Apps Script metrics to webhook relay")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("serve", help="Run the HTTP API and the scheduled sweep (default)")
    sub.add_parser("init-db", help="Create or upgrade the database schema")
    sub.add_parser("sweep", help="Run one monitoring sweep now and print the summary")
    args = parser.parse_args(argv)

    settings = RelaySettings()
    configure_logging(settings.log_level)

    command = args.command or "serve"
    if command == "init-db":
        dbm.ensure_schema(settings)
        print(f"Schema ready at {settings.db_path}")
        return 0
    if command == "sweep":
        dbm.ensure_schema(settings)
        summary = asyncio.run(run_sweep(settings))
        print(json.dumps(asdict(summary), indent=2))
        return 0 if not summary.errors else 1
    return _serve(settings)


if __name__ == "__main__":
    sys.exit(main())
