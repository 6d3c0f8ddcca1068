"""Query one SNTP server and print the local clock correction.

Usage examples:
  - sntp-query
  - sntp-query time.cloudflare.com --timeout 2
  - sntp-query 192.0.2.10 --port 10123 --json

Defaults come from the SNTP_* environment variables (see
``sntp_client.config.settings``).
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from pydantic import ValidationError

from sntp_client.config.settings import Settings
from sntp_client.time.exchange import NtpClient
from sntp_client.transport.udp import split_host_port
from sntp_client.utils.errors import (
    NtpConfigurationError,
    NtpError,
    NtpProtocolError,
    NtpTimeoutError,
    NtpTransportError,
)
from sntp_client.utils.logging_config import setup_logging

EXIT_OK = 0
EXIT_CONFIGURATION = 2
EXIT_TIMEOUT = 3
EXIT_TRANSPORT = 4
EXIT_PROTOCOL = 5


def _exit_code(error: NtpError) -> int:
    if isinstance(error, NtpConfigurationError):
        return EXIT_CONFIGURATION
    if isinstance(error, NtpTimeoutError):
        return EXIT_TIMEOUT
    if isinstance(error, NtpTransportError):
        return EXIT_TRANSPORT
    if isinstance(error, NtpProtocolError):
        return EXIT_PROTOCOL
    return 1


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sntp-query",
        description="Query an SNTP server and print the local clock offset",
    )
    parser.add_argument(
        "server",
        nargs="?",
        default=settings.SERVER,
        help=f"Server host name or address (default: {settings.SERVER})",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"Server UDP port (default: {settings.PORT})",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=settings.TIMEOUT,
        help=f"Seconds to wait for the reply (default: {settings.TIMEOUT})",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the full result as JSON",
    )
    parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=settings.LOG_LEVEL.upper(),
        help=f"Log level (default: {settings.LOG_LEVEL})",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    try:
        settings = Settings()
    except ValidationError as e:
        print(f"error: invalid SNTP_* configuration: {e}", file=sys.stderr)
        return EXIT_CONFIGURATION
    args = build_parser(settings).parse_args(argv)

    logger = setup_logging(args.log_level, component="sntp-query")

    try:
        port = args.port
        if port is None and split_host_port(args.server.strip())[1] is None:
            port = settings.PORT
        client = NtpClient(args.server, timeout=args.timeout, port=port, max_delay=settings.MAX_DELAY)
        result = client.get_correction_response()
    except NtpError as e:
        logger.info("Query failed", server=args.server, error=str(e), kind=type(e).__name__)
        print(f"error: {e}", file=sys.stderr)
        return _exit_code(e)

    if args.json:
        payload = {"server": str(client.endpoint), **result.to_dict()}
        print(json.dumps(payload))
    else:
        print(f"Server: {client.endpoint}")
        print(f"  offset: {result.offset * 1000:+.3f} ms")
        print(f"  delay:  {result.delay * 1000:.3f} ms")
        print(f"  stratum: {result.reply.stratum}")
        print(f"  corrected time: {result.corrected_datetime().isoformat()}")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
