#!/usr/bin/env python3
"""
ws-relay main entry point.

Allows the relay to be run as a module: python3 -m relay

    ffmpeg -i rtsp://camera/stream -f image2pipe -c:v mjpeg - | python3 -m relay -l :8080
"""

import argparse
import logging
import logging.handlers
import sys
from typing import List, Optional

from relay import __version__
from relay.config import RelayConfig, parse_listen_address, verbosity_to_level
from relay.service import RelayService

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ws-relay",
        description="Relay a stream of JPEG/PNG images from stdin to WebSocket clients.",
    )
    parser.add_argument("-l", "--listen", dest="listen", help="listen address (default :8080)")
    parser.add_argument("-s", "--format", dest="frame_format", help="input format: jpg or png (default jpg)")
    parser.add_argument("-q", "--queue", dest="mailbox_capacity", type=int,
                        help="frames held per client before dropping (default 1)")
    parser.add_argument("-v", "--verbosity", dest="verbosity", type=int,
                        help="log verbosity 1-5 (default 3)")
    parser.add_argument("--wscomp", dest="ws_compression", action="store_true", default=None,
                        help="enable permessage-deflate")
    parser.add_argument("--root", dest="static_root", help="directory served over HTTP (default .)")
    parser.add_argument("--verify-crc", dest="verify_png_crc", action="store_true", default=None,
                        help="verify PNG chunk CRCs")
    parser.add_argument("--log-file", dest="log_file", help="also log to this file")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_config(args: argparse.Namespace) -> RelayConfig:
    """Environment / env file first, then command-line flags."""
    overrides = {
        "frame_format": args.frame_format,
        "mailbox_capacity": args.mailbox_capacity,
        "verbosity": args.verbosity,
        "ws_compression": args.ws_compression,
        "static_root": args.static_root,
        "verify_png_crc": args.verify_png_crc,
        "log_file": args.log_file,
    }
    if args.listen is not None:
        overrides["host"], overrides["port"] = parse_listen_address(args.listen)
    return RelayConfig.load_config().with_overrides(**overrides)


def configure_logging(verbosity: int, log_file: Optional[str] = None) -> None:
    logging.basicConfig(level=verbosity_to_level(verbosity), format=LOG_FORMAT, force=True)
    if log_file:
        # WatchedFileHandler reopens the file after external rotation
        try:
            handler = logging.handlers.WatchedFileHandler(log_file, mode='a')
        except OSError as e:
            # A log file problem must not keep the relay from running
            logging.warning(f"Cannot open log file {log_file}: {e}, logging to stderr only")
            return
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ValueError as e:
        # Logging isn't configured yet
        print(f"ws-relay: invalid configuration: {e}", file=sys.stderr)
        return 2

    configure_logging(config.verbosity, config.log_file)

    relay = None
    try:
        relay = RelayService(config)
        relay.start()
        relay.run_forever()
    except KeyboardInterrupt:
        logging.info("ws-relay shutdown requested")
        if relay is not None:
            relay.stop()
        return 0
    except Exception as e:
        logging.error(f"ws-relay failed: {e}", exc_info=True)
        if relay is not None:
            relay.stop()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
