"""netdispatch command line

Usage:
    netdispatch                          # Server mode on 0.0.0.0:61000
    netdispatch --port 7000              # Server mode on another port
    netdispatch --join 10.0.0.5          # Client mode: send STRING and GOB
    netdispatch --join 10.0.0.5:7000 --message "hi"

Exit status is 0 on success, 1 when the listener or a client request
fails, 2 for bad arguments and 130 when interrupted.
"""

import argparse
import logging
import sys
from typing import List, Optional

from netdispatch.client import Node
from netdispatch.config import DEFAULT_PORT, EndpointConfig
from netdispatch.endpoint import Endpoint, ListenerError
from netdispatch.framing import DispatchError
from netdispatch.handlers import default_registry, sample_data


logger = logging.getLogger("netdispatch")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="netdispatch",
        description="Send or serve newline-framed commands over TCP.",
    )
    parser.add_argument(
        "--join",
        metavar="HOST[:PORT]",
        help="address of the process to join; if omitted, go into listen mode",
    )
    parser.add_argument("--host", help="interface to listen on (server mode)")
    parser.add_argument("--port", type=int, help="port to listen on, or default peer port")
    parser.add_argument("--timeout", type=float, help="per-operation socket timeout in seconds")
    parser.add_argument(
        "--message",
        default="Hello from netdispatch",
        help="text to send with the STRING command (client mode)",
    )
    parser.add_argument(
        "--multi-command",
        action="store_true",
        help="keep connections open for further commands (server mode)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def run_client(args: argparse.Namespace) -> int:
    default_port = args.port if args.port is not None else DEFAULT_PORT
    node = Node.parse(args.join, default_port=default_port, timeout=args.timeout)

    try:
        logger.info("sending STRING to %s", node.address)
        reply = node.send_string(args.message)
        logger.info("reply: %s", reply)

        logger.info("sending GOB to %s", node.address)
        node.send_record(sample_data())
    except DispatchError as e:
        logger.error("client request to %s failed: %s", node.address, e)
        return EXIT_FAILURE
    return EXIT_OK


def run_server(args: argparse.Namespace) -> int:
    config = EndpointConfig(host=args.host, port=args.port, timeout=args.timeout)
    config.with_multi_command(args.multi_command)
    endpoint = Endpoint(default_registry(), config)
    try:
        endpoint.serve_forever()
    except ListenerError as e:
        logger.error("listener failed: %s", e)
        return EXIT_FAILURE
    finally:
        endpoint.close()
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.join:
            return run_client(args)
        return run_server(args)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except ValueError as e:
        logger.error("%s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
