#!/usr/bin/env python3
"""
Relay entry point.

    python -m relay                 run the relay and its control server
    python -m relay ctl health      query a running relay
    python -m relay ctl seek --segment-id 42
"""

import argparse
import json
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from relay.config import load_config
from relay.http.client import RelayControlClient
from relay.http.server import ControlServer
from relay.log import configure_logging
from relay.service import RelayService

logger = logging.getLogger("relay")

CTL_ACTIONS = ("health", "stats", "start", "stop", "restart", "seek", "fallback", "restore")


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="relay", description="Supervised ffmpeg RTMP relay")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("serve", help="Run the relay (default)")

    ctl = subparsers.add_parser("ctl", help="Send a command to a running relay")
    ctl.add_argument("action", choices=CTL_ACTIONS)
    ctl.add_argument("--host", default="127.0.0.1", help="Relay control host (default: 127.0.0.1)")
    ctl.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")), help="Relay control port")
    ctl.add_argument("--segment-id", type=int, help="Segment id for 'seek'")
    return parser.parse_args(argv)


def run_ctl(args: argparse.Namespace) -> int:
    client = RelayControlClient(host=args.host, port=args.port)
    if args.action == "seek":
        if args.segment_id is None:
            print("seek requires --segment-id", file=sys.stderr)
            return 2
        result = client.seek(args.segment_id)
    elif args.action == "fallback":
        result = client.fallback_quality()
    elif args.action == "restore":
        result = client.restore_quality()
    else:
        result = getattr(client, args.action)()

    if result is None:
        print(f"{args.action} failed (relay unreachable or request rejected)", file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


def run_serve() -> int:
    try:
        config = load_config()
    except ValueError:
        return 1
    configure_logging(config.log_level, config.log_file)

    logger.info("=== Relay control service starting ===")
    logger.info(f"- VIDEO_URL: {'set' if config.video_url else 'MISSING'}")
    logger.info(f"- RTMP_URL: {'set' if config.rtmp_url else 'MISSING'}")
    logger.info(f"- STREAM_KEY: {'set' if config.stream_key else 'MISSING'}")
    logger.info(f"- backup endpoint: {'set' if config.backup_rtmp_url else 'not configured'}")

    service = RelayService(config)
    server = ControlServer(service, host=config.host, port=config.port)
    try:
        server.start()
    except OSError as e:
        logger.error(f"Control server failed to start: {e}")
        return 1

    def _signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        service.request_shutdown()

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    auto_start = None
    if config.auto_start:
        logger.info(f"Auto-starting stream in {config.auto_start_delay_sec:.0f} seconds")
        auto_start = threading.Timer(config.auto_start_delay_sec, service.start)
        auto_start.daemon = True
        auto_start.start()

    try:
        service.run_forever()
    finally:
        if auto_start is not None:
            auto_start.cancel()
        server.stop()
    logger.info("=== Relay control service stopped ===")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    if args.command == "ctl":
        configure_logging(os.getenv("RELAY_LOG_LEVEL", "WARNING"))
        return run_ctl(args)

    configure_logging(os.getenv("RELAY_LOG_LEVEL", "INFO"))
    try:
        return run_serve()
    except Exception as e:
        logger.error(f"Relay failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
