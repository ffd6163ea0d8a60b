from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict

from .bench import DEFAULT_BENCH_TIMEOUT_S, run_benchmark
from .constants import DEFAULT_TIMEOUT_S, DIGESTS, SHA1
from .net import Connection, Listener


def _report(payload: dict, as_json: bool) -> None:
    print(json.dumps(payload, indent=2) if as_json else payload)


def cmd_send(args: argparse.Namespace) -> int:
    with Connection(args.host, args.port, timeout=args.timeout, segment_size=args.segment_size) as conn:
        connected = conn.connect()
        if not connected.ok:
            raise SystemExit(f"connect failed: {connected.error}")
        result = conn.send_file(args.file, digest=args.digest)

    t = result.value
    payload = {
        "role": "sender",
        "bytes": t.count,
        "seconds": t.duration_s,
        "mbps": t.throughput_mbps,
        "digest": t.hexdigest,
        "error": str(result.error) if result.error else None,
    }
    _report(payload, args.json)
    return 0 if result.ok else 1


def cmd_recv(args: argparse.Namespace) -> int:
    with Listener(args.port, host=args.listen_host, timeout=args.timeout) as listener:
        listening = listener.listen()
        if not listening.ok:
            raise SystemExit(f"listen failed: {listening.error}")
        accepted = listener.accept(connection_timeout=args.timeout)
        if not accepted.ok or accepted.value is None:
            raise SystemExit(f"accept failed: {accepted.error}")

    with accepted.value as conn:
        if args.segment_size is not None:
            resized = conn.set_segment_size(args.segment_size)
            if not resized.ok:
                raise SystemExit(f"segment size rejected: {resized.error}")
        result = conn.receive_file(args.out, args.length, digest=args.digest)

    t = result.value
    payload = {
        "role": "receiver",
        "bytes": t.count,
        "seconds": t.duration_s,
        "mbps": t.throughput_mbps,
        "digest": t.hexdigest,
        "error": str(result.error) if result.error else None,
    }
    _report(payload, args.json)
    return 0 if result.ok else 1


def cmd_bench(args: argparse.Namespace) -> int:
    r = run_benchmark(
        size_bytes=args.size_bytes,
        digest=args.digest or SHA1,
        segment_size=args.segment_size,
        timeout=args.timeout,
    )
    payload = {"role": "bench", **asdict(r)}
    _report(payload, args.json)
    return 0 if r.digest_match else 1


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="fastsock", description="Buffered TCP file transfer with digests.")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser, timeout: float = DEFAULT_TIMEOUT_S) -> None:
        x.add_argument("--timeout", type=float, default=timeout, help=f"seconds; 0 waits forever (default {timeout})")
        x.add_argument("--segment-size", type=int, default=None, help="advisory TCP segment size in bytes")
        x.add_argument("--digest", choices=DIGESTS, default=None)
        x.add_argument("--json", action="store_true")

    send = sub.add_parser("send", help="connect and send a file")
    add_common(send)
    send.add_argument("--host", required=True)
    send.add_argument("--port", required=True)
    send.add_argument("--file", required=True)
    send.set_defaults(func=cmd_send)

    recv = sub.add_parser("recv", help="accept one connection and write a file of known length")
    add_common(recv)
    recv.add_argument("--listen-host", default="0.0.0.0")
    recv.add_argument("--port", required=True)
    recv.add_argument("--out", required=True)
    recv.add_argument("--length", type=int, required=True, help="bytes to expect from the sender")
    recv.set_defaults(func=cmd_recv)

    bench = sub.add_parser("bench", help="loopback benchmark")
    add_common(bench, timeout=DEFAULT_BENCH_TIMEOUT_S)
    bench.add_argument("--size-bytes", type=int, default=10 * 1024 * 1024)
    bench.set_defaults(func=cmd_bench)

    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(asctime)s [%(levelname)s] %(message)s")
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
