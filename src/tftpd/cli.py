from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading

from .client import TftpClient, TransferError, TransferStats
from .constants import DEFAULT_MAX_RETRIES, DEFAULT_PORT, DEFAULT_TIMEOUT_MS, MODE_NETASCII, MODE_OCTET
from .dispatcher import Dispatcher
from .net import Impairment, UdpEndpoint
from .session import SessionConfig
from .storage import Directory, Policy

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def cmd_serve(args: argparse.Namespace) -> int:
    impair = Impairment(args.loss_rate, args.delay_ms)
    udp = UdpEndpoint.bind(args.host, args.port, impair)
    dispatcher = Dispatcher(
        udp,
        Directory(args.root, overwrite=args.overwrite),
        Policy(allow_read=True, allow_write=args.allow_write),
        SessionConfig(timeout_ms=args.timeout_ms, max_retries=args.max_retries),
        ephemeral_ports=not args.single_port,
    )
    stop = threading.Event()
    try:
        dispatcher.serve_forever(stop)
    except KeyboardInterrupt:
        logging.info("interrupted; shutting down")
    finally:
        stop.set()
        dispatcher.shutdown()
        udp.close()
    return 0


def _client(args: argparse.Namespace) -> TftpClient:
    return TftpClient(
        args.host,
        args.port,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        mode=args.mode,
        impairment=Impairment(args.loss_rate, args.delay_ms),
    )


def _report(role: str, name: str, stats: TransferStats, as_json: bool) -> None:
    payload = {
        "role": role,
        "file": name,
        "bytes": stats.bytes_transferred,
        "blocks": stats.blocks,
        "seconds": stats.duration_s,
        "timeouts": stats.timeouts,
        "retransmits": stats.retransmits,
    }
    print(json.dumps(payload, indent=2) if as_json else payload)


def cmd_get(args: argparse.Namespace) -> int:
    out_path = args.out or os.path.basename(args.file)
    try:
        with open(out_path, "wb") as out:
            stats = _client(args).download(args.file, out)
    except TransferError as exc:
        os.unlink(out_path)
        print(f"tftpd get: {exc}", file=sys.stderr)
        return 1
    _report("get", args.file, stats, args.json)
    return 0


def cmd_put(args: argparse.Namespace) -> int:
    remote = args.remote or os.path.basename(args.file)
    try:
        with open(args.file, "rb") as src:
            stats = _client(args).upload(remote, src)
    except TransferError as exc:
        print(f"tftpd put: {exc}", file=sys.stderr)
        return 1
    _report("put", remote, stats, args.json)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tftpd", description="TFTP (RFC 1350) server and client.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--port", type=int, default=DEFAULT_PORT)
        x.add_argument("--timeout-ms", type=int, default=DEFAULT_TIMEOUT_MS)
        x.add_argument("--max-retries", type=int, default=DEFAULT_MAX_RETRIES)
        x.add_argument("--loss-rate", type=float, default=0.0, help="simulate packet loss")
        x.add_argument("--delay-ms", type=int, default=0, help="simulate per-packet delay")

    serve = sub.add_parser("serve", help="serve files from a directory")
    add_common(serve)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--root", default=".")
    serve.add_argument("--allow-write", action="store_true", help="accept write requests")
    serve.add_argument("--overwrite", action="store_true", help="let write requests replace existing files")
    serve.add_argument("--single-port", action="store_true", help="answer from the listening port")
    serve.set_defaults(func=cmd_serve)

    def add_client(x: argparse.ArgumentParser) -> None:
        add_common(x)
        x.add_argument("--host", required=True)
        x.add_argument("--mode", choices=[MODE_OCTET, MODE_NETASCII], default=MODE_OCTET)
        x.add_argument("--json", action="store_true")

    get = sub.add_parser("get", help="download a file")
    add_client(get)
    get.add_argument("file")
    get.add_argument("--out")
    get.set_defaults(func=cmd_get)

    put = sub.add_parser("put", help="upload a file")
    add_client(put)
    put.add_argument("file")
    put.add_argument("--remote")
    put.set_defaults(func=cmd_put)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
