from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Sequence

import uvicorn

from calmirror.config_manager import ConfigManager
from calmirror.state_store import StateStore
from calmirror.sync_engine import SyncEngine


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(log_level: str = "INFO", json_format: bool = False) -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    if json_format:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calmirror", description="Mirror an ICS feed into store records.")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the HTTP trigger and background scheduler.")

    sync_parser = subparsers.add_parser("sync", help="Run one reconciliation and exit.")
    sync_parser.add_argument("--feed-url", default=None, help="Override the ICS feed URL for this run.")
    sync_parser.add_argument("--lookahead-days", type=int, default=None, help="Override the lookahead window.")
    return parser


def serve() -> None:
    host = os.getenv("CALMIRROR_HOST", "0.0.0.0")
    port = int(os.getenv("CALMIRROR_PORT", os.getenv("PORT", "8080")))
    uvicorn.run("calmirror.web_admin:create_app", host=host, port=port, reload=False, factory=True)


def sync_once(feed_url: str | None = None, lookahead_days: int | None = None) -> int:
    config_manager = ConfigManager(os.getenv("CALMIRROR_CONFIG_PATH", "config.yaml"))
    state_store = StateStore(os.getenv("CALMIRROR_STATE_PATH", "data/state.db"))
    engine = SyncEngine(config_manager, state_store)
    result = engine.run_once(trigger="cli", feed_url_override=feed_url, lookahead_override=lookahead_days)
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    return 0 if result.status == "success" else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(
        os.getenv("LOG_LEVEL", "INFO"),
        json_format=os.getenv("CALMIRROR_LOG_FORMAT", "").strip().lower() == "json",
    )
    if args.command == "sync":
        return sync_once(args.feed_url, args.lookahead_days)
    serve()
    return 0


if __name__ == "__main__":
    sys.exit(main())
