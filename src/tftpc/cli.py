from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import BinaryIO

from .constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MS, MODE_NETASCII, MODE_OCTET, TFTP_PORT
from .errors import ConnectError, TftpError, UsageError
from .net import Impairment, UdpEndpoint
from .packet import EncodingError, ReadRequest, WriteRequest
from .session import Direction, Metrics, TransferSession


def _open_local(path: str, mode: str) -> BinaryIO:
    try:
        return open(path, mode)
    except OSError as exc:
        raise ConnectError(f"cannot open local file {path!r}: {exc}") from exc


def _validate(args: argparse.Namespace) -> None:
    if not args.filename or not args.hostname:
        raise UsageError("FILENAME and HOSTNAME must not be empty")
    if not 0 < args.port <= 0xFFFF:
        raise UsageError(f"port out of range: {args.port}")
    if args.timeout_ms <= 0:
        raise UsageError("--timeout-ms must be positive")
    if args.max_retries < 0:
        raise UsageError("--max-retries must not be negative")
    if not 0.0 <= args.loss_rate < 1.0:
        raise UsageError("--loss-rate must be in [0, 1)")
    request = ReadRequest if args.direction is Direction.DOWNLOAD else WriteRequest
    try:
        request(args.filename, args.mode).to_bytes()
    except EncodingError as exc:
        raise UsageError(str(exc)) from exc


def run_transfer(args: argparse.Namespace) -> Metrics:
    _validate(args)
    impair = Impairment(args.loss_rate, args.delay_ms)

    # a download must not truncate the local file before the server is known
    if args.direction is Direction.UPLOAD:
        f = _open_local(args.filename, "rb")
        try:
            udp, server = UdpEndpoint.connect(args.hostname, args.port, impairment=impair)
        except TftpError:
            f.close()
            raise
    else:
        udp, server = UdpEndpoint.connect(args.hostname, args.port, impairment=impair)
        try:
            f = _open_local(args.filename, "wb")
        except TftpError:
            udp.close()
            raise

    with udp, f:
        session = TransferSession(
            udp,
            server,
            args.direction,
            args.filename,
            f,
            mode=args.mode,
            timeout_ms=args.timeout_ms,
            max_retries=args.max_retries,
        )
        return session.run()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tftpc", description="TFTP client: fetch or send a single file.")
    action = p.add_mutually_exclusive_group(required=True)
    action.add_argument(
        "-g",
        dest="direction",
        action="store_const",
        const=Direction.DOWNLOAD,
        help="download FILENAME from HOSTNAME into a local file of the same name",
    )
    action.add_argument(
        "-p",
        dest="direction",
        action="store_const",
        const=Direction.UPLOAD,
        help="upload the local file FILENAME to HOSTNAME",
    )
    p.add_argument("filename", metavar="FILENAME")
    p.add_argument("hostname", metavar="HOSTNAME")
    p.add_argument("--port", type=int, default=TFTP_PORT, help="server request port")
    p.add_argument("--mode", choices=[MODE_OCTET, MODE_NETASCII], default=MODE_OCTET)
    p.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
    p.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
    p.add_argument("--loss-rate", type=float, default=0.0, help="simulate datagram loss")
    p.add_argument("--delay-ms", type=int, default=0, help="simulate per-datagram delay")
    p.add_argument("--json", action="store_true")
    p.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
    )
    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")

    try:
        metrics = run_transfer(args)
    except UsageError as exc:
        parser.print_usage(sys.stderr)
        print(f"tftpc: {exc}", file=sys.stderr)
        return 2
    except TftpError as exc:
        print(f"tftpc: {exc}", file=sys.stderr)
        return 1

    payload = {
        "role": args.direction.value,
        "file": args.filename,
        "bytes": metrics.bytes_transferred,
        "blocks": metrics.blocks,
        "seconds": metrics.duration_s,
        "mbps": metrics.throughput_mbps,
        "timeouts": metrics.timeouts,
        "retransmits": metrics.retransmits,
    }
    print(json.dumps(payload, indent=2) if args.json else payload)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
