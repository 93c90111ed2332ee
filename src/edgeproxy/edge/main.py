"""Uvicorn entrypoint for the edge proxy."""

from __future__ import annotations

import argparse

import uvicorn


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the caching edge proxy")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to bind")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    parser.add_argument(
        "--forwarded-allow-ips",
        default="127.0.0.1",
        help="Comma-separated proxy addresses trusted for X-Forwarded-* headers",
    )
    parser.add_argument("--workers", type=int, default=1, help="Number of worker processes")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    uvicorn.run(
        "edgeproxy.edge.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        workers=args.workers,
        proxy_headers=True,
        forwarded_allow_ips=args.forwarded_allow_ips,
        log_config=None,
    )


if __name__ == "__main__":
    main()
